"""Commerce data sync and reconciliation service."""

__version__ = "1.0.0"
