"""Redis client for distributed locks and caching"""
import redis
import json
import logging
from typing import Optional, Dict
from app.core.config import settings

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None


def get_redis_client():
    """Get or create Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


def set_redis_client(client) -> None:
    """Replace the shared client (used by tests to install fakeredis)"""
    global _client
    _client = client


# Key prefixes
WEBHOOK_LOCK_PREFIX = "lock:webhook"
LIMIT_LOCK_PREFIX = "lock:limit"
LIMIT_CACHE_PREFIX = "limit"


def webhook_lock_key(processor_event_id: str) -> str:
    return f"{WEBHOOK_LOCK_PREFIX}:{processor_event_id}"


def limit_lock_key(donor_fingerprint: str, jurisdiction: str) -> str:
    return f"{LIMIT_LOCK_PREFIX}:{donor_fingerprint}:{jurisdiction}"


def acquire_lock(lock_key: str, timeout: int = 30, owner: str = "1") -> bool:
    """Acquire a distributed lock using Redis SET with NX and EX.

    Args:
        lock_key: The lock key to acquire
        timeout: Lock timeout in seconds (default 30)
        owner: Value stored in the lock so only the holder releases it

    Returns:
        True if lock was acquired, False if lock already exists
    """
    # SET key value NX EX timeout - atomically set if not exists with expiration
    result = get_redis_client().set(lock_key, owner, nx=True, ex=timeout)
    return result is True


def release_lock(lock_key: str, owner: Optional[str] = None) -> None:
    """Release a distributed lock by deleting the key.

    With an owner the check and the delete run as one WATCH/MULTI transaction,
    so a lock that expired and was taken over in between is left alone.

    Args:
        lock_key: The lock key to release
        owner: If given, the lock is only released while it still holds this value
    """
    client = get_redis_client()
    if owner is None:
        client.delete(lock_key)
        return

    with client.pipeline() as pipe:
        while True:
            try:
                pipe.watch(lock_key)
                if pipe.get(lock_key) != owner:
                    # Lock expired and was taken by someone else
                    pipe.unwatch()
                    logger.warning(f"Lock {lock_key} no longer held by {owner}, not releasing")
                    return
                pipe.multi()
                pipe.delete(lock_key)
                pipe.execute()
                return
            except redis.WatchError:
                # Key changed between the check and the delete; look again
                continue


def get_cached_limit(jurisdiction: str, cycle_id: str) -> Optional[Dict]:
    """Get a cached limit lookup. Returns {"limit_cents": int|None} or None on miss."""
    key = f"{LIMIT_CACHE_PREFIX}:{jurisdiction}:{cycle_id}"
    data = get_redis_client().get(key)
    return json.loads(data) if data else None


def set_cached_limit(jurisdiction: str, cycle_id: str, limit_cents: Optional[int]) -> None:
    """Cache a limit lookup, including the absence of a limit"""
    key = f"{LIMIT_CACHE_PREFIX}:{jurisdiction}:{cycle_id}"
    get_redis_client().setex(key, settings.LIMIT_CACHE_TTL, json.dumps({"limit_cents": limit_cents}))


def invalidate_limit_cache(jurisdiction: str, cycle_id: Optional[str] = None) -> None:
    """Invalidate cached limits for a jurisdiction (one cycle or all)"""
    client = get_redis_client()
    if cycle_id:
        client.delete(f"{LIMIT_CACHE_PREFIX}:{jurisdiction}:{cycle_id}")
        return

    pattern = f"{LIMIT_CACHE_PREFIX}:{jurisdiction}:*"
    keys = list(client.scan_iter(match=pattern))
    if keys:
        client.delete(*keys)
