"""SQL Server environment refresh automation."""

__version__ = "1.0.0"
