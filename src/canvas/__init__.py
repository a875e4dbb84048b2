"""Creative-canvas workflow: mint encrypted creations, reveal and appreciate them."""

from .service import CanvasService, parse_tags

__all__ = ["CanvasService", "parse_tags"]
