"""Session tracking and orphan cleanup for long-running worker sessions."""

__version__ = "0.3.0"

__all__ = ["__version__"]
