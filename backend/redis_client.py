"""
Redis access: menu caching, rate limiting and order change events.
"""
import os
import json
import logging
import redis
from typing import Optional, List, Dict, Any, Tuple
from functools import wraps
from fastapi import HTTPException, status
import time

from order_lifecycle import UserRole, in_available_pool

logger = logging.getLogger(__name__)

MENU_CACHE_KEY = "menu:available"

OWNER_CHANNEL = "orders:owner"
POOL_CHANNEL = "orders:pool"
MENU_CHANNEL = "menu"


def customer_channel(profile_id: str) -> str:
    return f"orders:customer:{profile_id}"


def courier_channel(profile_id: str) -> str:
    return f"orders:courier:{profile_id}"


def order_channels(order) -> List[str]:
    """Channels whose subscribers are allowed to read ``order``."""
    channels = [OWNER_CHANNEL, customer_channel(order.customer_id)]
    if order.delivery_boy_id:
        channels.append(courier_channel(order.delivery_boy_id))
    if in_available_pool(order):
        channels.append(POOL_CHANNEL)
    return channels


def subscription_channels(profile) -> List[str]:
    """Channels a dashboard for ``profile`` listens to."""
    role = UserRole(profile.role)
    if role == UserRole.OWNER:
        return [OWNER_CHANNEL, MENU_CHANNEL]
    if role == UserRole.DELIVERY:
        return [courier_channel(profile.id), POOL_CHANNEL]
    return [customer_channel(profile.id), MENU_CHANNEL]


def detect_redis_port() -> int:
    # Kubernetes injects REDIS_PORT as tcp://host:port
    raw = os.getenv("REDIS_SERVICE_PORT") or os.getenv("REDIS_PORT") or "6379"
    try:
        return int(raw.rsplit(":", 1)[-1])
    except ValueError:
        return 6379


class RedisClient:
    """Thin wrapper that degrades to no-ops when Redis is down."""

    def __init__(self):
        self.redis_host = os.getenv("REDIS_HOST", "redis")
        self.redis_port = detect_redis_port()

        try:
            self.client = redis.Redis(
                host=self.redis_host,
                port=self.redis_port,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5
            )
            self.client.ping()
        except redis.RedisError as e:
            logger.warning(f"Could not connect to Redis: {e}")
            self.client = None

    def is_available(self) -> bool:
        if not self.client:
            return False
        try:
            self.client.ping()
            return True
        except redis.RedisError:
            return False

    # ========== Menu cache ==========

    def cache_menu(self, items: List[Dict], ttl: int = 300) -> bool:
        """
        Caches the customer-facing menu.
        ttl: seconds to keep the cache (5 minutes by default)
        """
        if not self.is_available():
            return False
        try:
            self.client.setex(MENU_CACHE_KEY, ttl, json.dumps(items, default=str))
            return True
        except redis.RedisError as e:
            logger.warning(f"Error caching menu: {e}")
            return False

    def get_cached_menu(self) -> Optional[List[Dict]]:
        if not self.is_available():
            return None
        try:
            cached = self.client.get(MENU_CACHE_KEY)
            if cached:
                return json.loads(cached)
        except redis.RedisError as e:
            logger.warning(f"Error reading menu from cache: {e}")
        return None

    def invalidate_menu_cache(self) -> bool:
        """Drops the menu cache after any menu write."""
        if not self.is_available():
            return False
        try:
            self.client.delete(MENU_CACHE_KEY)
            return True
        except redis.RedisError as e:
            logger.warning(f"Error invalidating menu cache: {e}")
            return False

    # ========== Rate Limiting ==========

    def check_rate_limit(self, key: str, max_requests: int = 10, window: int = 60) -> Tuple[bool, int]:
        """
        Fixed-window rate limit for ``key``.
        Returns (allowed, remaining requests)
        """
        if not self.is_available():
            return True, max_requests

        try:
            current = self.client.incr(key)
            if current == 1:
                self.client.expire(key, window)

            remaining = max(0, max_requests - current)
            allowed = current <= max_requests

            return allowed, remaining
        except redis.RedisError as e:
            logger.warning(f"Rate limit check failed: {e}")
            return True, max_requests

    # ========== Change events ==========

    def publish(self, channel: str, message: Dict[str, Any]) -> int:
        """Publishes ``message`` and returns the number of receivers."""
        if not self.is_available():
            return 0
        try:
            return self.client.publish(channel, json.dumps(message, default=str))
        except redis.RedisError as e:
            logger.warning(f"Error publishing to {channel}: {e}")
            return 0

    def publish_order_event(self, order, event: str) -> int:
        message = {
            "entity": "order",
            "event": event,
            "order_id": order.id,
            "status": order.status,
            "delivery_boy_id": order.delivery_boy_id,
        }
        return sum(self.publish(channel, message) for channel in order_channels(order))

    def publish_menu_event(self, event: str, item_id: int) -> int:
        return self.publish(MENU_CHANNEL, {"entity": "menu_item", "event": event, "item_id": item_id})

    # ========== Utilities ==========

    def get_cache_info(self) -> Dict[str, Any]:
        if not self.is_available():
            return {"status": "unavailable"}

        try:
            return {
                "status": "available",
                "menu_cached": self.client.exists(MENU_CACHE_KEY),
                "rate_limit_keys_count": len(self.client.keys("rate_limit:*")),
            }
        except redis.RedisError as e:
            return {"status": "error", "error": str(e)}


redis_client = RedisClient()


# ========== Rate limiting decorator ==========

def rate_limit(max_requests: int = 10, window: int = 60, key_prefix: str = "rate_limit"):
    """
    Rate limits an async FastAPI endpoint per client host.
    max_requests: requests allowed per window
    window: window length in seconds
    key_prefix: prefix of the Redis key
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            request = kwargs.get('request') or (args[0] if args and hasattr(args[0], 'client') else None)

            if request is not None and getattr(request, 'client', None) is not None:
                client_host = getattr(request.client, 'host', None) or "unknown"
                rate_key = f"{key_prefix}:{func.__name__}:{client_host}"
            else:
                rate_key = f"{key_prefix}:{func.__name__}:global"

            allowed, remaining = redis_client.check_rate_limit(rate_key, max_requests, window)

            if not allowed:
                raise HTTPException(
                    status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                    detail=f"Rate limit exceeded. Try again in {window} seconds."
                )

            response = await func(*args, **kwargs)
            if hasattr(response, 'headers'):
                response.headers["X-RateLimit-Limit"] = str(max_requests)
                response.headers["X-RateLimit-Remaining"] = str(remaining)
                response.headers["X-RateLimit-Reset"] = str(int(time.time()) + window)

            return response
        return wrapper
    return decorator
