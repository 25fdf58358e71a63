"""Shell execution and background-process management for terminal agents."""

__version__ = "0.1.0"
