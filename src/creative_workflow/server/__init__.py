"""HTTP surface for the creative workflow engine."""

from .api import create_app

__all__ = ["create_app"]
