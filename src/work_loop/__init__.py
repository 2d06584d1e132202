"""Plan-driven autonomous work loop for CLI reasoning agents."""

__version__ = "0.1.0"
