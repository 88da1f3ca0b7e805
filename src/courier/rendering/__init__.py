"""Template rendering."""

from courier.rendering.renderer import RenderedContent, TemplateRenderer

__all__ = ["RenderedContent", "TemplateRenderer"]
