"""
asgi.py -- ASGI entry point for va-auth.

Run with:  uvicorn asgi:app --reload

Kept separate from api/main.py so process managers have a stable import path
that does not depend on the package layout under api/.
"""

from api.main import app

__all__ = ["app"]
