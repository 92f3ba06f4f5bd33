"""Helpers behind the SaveClip download API."""

__version__ = "1.0.0"
