"""Laboratory sensor alert evaluation service."""

__version__ = "1.0.0"
