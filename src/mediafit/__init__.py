"""Batch resizing of photos to media-profile pixel sizes."""

__version__ = "1.0.0"
