"""HTTP status and artifact surface."""
from .app import create_app

__all__ = ["create_app"]
