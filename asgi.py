"""
asgi.py -- ASGI entry point for Homeboard.

The dashboard UI is served separately; this process only hosts the API.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
