"""API module for Contextual Clarity."""

from contextual_clarity.api.routes import router

__all__ = ["router"]
