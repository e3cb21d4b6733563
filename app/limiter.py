# app/limiter.py
# Shared rate limiter instance; lives in its own module so routers and main.py
# can both import it without a cycle.

from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import get_settings

_settings = get_settings()

limiter = Limiter(key_func=get_remote_address, enabled=_settings.rate_limit_enabled)

BOOKING_LIMIT = _settings.booking_rate_limit
