"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

A single shared instance means every route shares one in-memory counter
store. Separate instances per module would each count in isolation and the
limits would never trigger.

AUTH_LIMIT is read once from Settings.auth_rate_limit (default
"10/15minutes", enough for a full lockout cycle of five failures plus the
locked attempt) and applied to signup, login, and refresh. Each route keeps
its own counter per client address.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

AUTH_LIMIT: str = get_settings().auth_rate_limit

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
