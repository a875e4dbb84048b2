"""Encrypted blog workflow: publish posts with encrypted bodies and read them back."""

from .service import BlogService

__all__ = ["BlogService"]
