"""aichat-sync: streaming chat synchronization engine."""

__version__ = "0.1.0"
