"""FastAPI web boundary for calkeeper."""

from calkeeper.api.app import create_app

__all__ = ["create_app"]
