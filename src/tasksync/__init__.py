"""Task to Google Calendar reconciliation service."""

__all__ = ["__version__"]

__version__ = "0.1.0"
