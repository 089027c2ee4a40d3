"""HTTP routes for the runtime."""

from .router import create_router

__all__ = ["create_router"]
