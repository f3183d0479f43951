from __future__ import annotations
import logging
import redis.asyncio as redis
from redis.exceptions import RedisError
from .config import get_settings

_settings = get_settings()
_r: redis.Redis | None = None
logger = logging.getLogger(__name__)

def get_redis() -> redis.Redis:
    global _r
    if _r is None:
        _r = redis.from_url(_settings.redis_url, decode_responses=True)
    return _r

async def ping_redis() -> bool:
    try:
        r = get_redis()
        pong = await r.ping()
        return bool(pong)
    except Exception:
        return False

# ---- Simple fixed-window rate limit per IP/route ----
async def allow_request(ip: str, route_key: str, r: redis.Redis | None = None) -> bool:
    """Fails open when Redis is unreachable."""
    if not _settings.rl_enabled:
        return True
    r = r or get_redis()
    key = f"rl:{route_key}:{ip}"
    try:
        pipe = r.pipeline()
        pipe.incr(key)
        pipe.expire(key, _settings.rl_window_seconds)
        count, _ = await pipe.execute()
    except RedisError as exc:
        logger.warning("rate limit skipped for %s, redis unavailable: %s", route_key, exc)
        return True
    return int(count) <= _settings.rl_max_reqs
