"""Web interface for the session recorder and mixer."""

from .server import create_app

__all__ = ["create_app"]
