"""HTTP API for the render queue."""

from .main import create_app

__all__ = ["create_app"]
