"""Lead routing core."""

__version__ = "1.0.0"
