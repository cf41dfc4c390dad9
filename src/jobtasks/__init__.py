"""Task ordering and hierarchy engine for collaboratively edited job task lists."""

__version__ = "0.1.0"
