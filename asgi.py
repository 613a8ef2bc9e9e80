"""
asgi.py -- ASGI entry point for Restwarden.

Host applications mount their own resource routers here and protect them
with the Depends() helpers from auth/dependencies.py.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
