"""Package version information."""

APP_VERSION = "0.3.0"
