"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and the route
modules that apply per-route limits with @limiter.limit() (login,
registration, device registration).

Using a single shared instance ensures all routes share the same counter
store. The store itself comes from RATE_LIMIT_STORAGE_URI; the in-memory
default only counts within one process.

Limits key on the client address. Device registration is public, so the
address is the only identity available before a device key exists.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri=get_settings().rate_limit_storage_uri)
