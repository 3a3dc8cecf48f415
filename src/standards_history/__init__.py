"""Standards history: period rollups of activity logs against standards."""

__version__ = "0.1.0"
