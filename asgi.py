"""
asgi.py -- ASGI entry point for the admin dashboard.

Run with:  uvicorn asgi:app --reload

Kept separate from api/main.py so process managers point at one stable
module path regardless of how the api/ package is organised.
"""

from api.main import app

__all__ = ["app"]
