"""
api/limiter.py -- Shared slowapi limiter for the password login route.

Import this in api/main.py (to mount SlowAPIMiddleware) and in
api/routes/v1/auth.py (to apply @limiter.limit() on POST /auth/login).

This guards only the credential-guessing surface in front of bcrypt. The
per-IP / per-credential / per-user layers that apply to every authenticated
request live in auth/ratelimit.py and share the cache backend.

One instance only: each Limiter owns its own counter storage.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://", strategy="fixed-window")
