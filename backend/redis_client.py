"""
Redis helpers: catalog and floor caching, change-event publishing and rate limiting.

Redis is optional. When it is down every helper degrades to a no-op and the
database stays the only source of truth.
"""
import os
import json
import logging
import redis
from typing import Optional, List, Dict, Any, Tuple
from functools import wraps
from fastapi import HTTPException, status
import time

logger = logging.getLogger("pos.redis")


class RedisClient:
    """Thin wrapper over the Redis connection"""

    def __init__(self, host: Optional[str] = None, port: Optional[int] = None):
        self.redis_host = os.getenv("REDIS_HOST", "redis") if host is None else host
        redis_port_env = port or os.getenv("REDIS_SERVICE_PORT") or os.getenv("REDIS_PORT") or "6379"
        self.redis_port = int(str(redis_port_env).split(":")[-1])
        self.client = None

        if not self.redis_host:
            logger.info("REDIS_HOST is empty, caching disabled")
            return

        try:
            self.client = redis.Redis(
                host=self.redis_host,
                port=self.redis_port,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5
            )
            self.client.ping()
        except Exception as e:
            logger.warning(f"Could not connect to Redis: {e}")
            self.client = None

    def is_available(self) -> bool:
        if not self.client:
            return False
        try:
            self.client.ping()
            return True
        except Exception:
            return False

    # ========== Product catalog ==========

    def cache_products(self, products: List[Dict], ttl: int = 300) -> bool:
        """
        Cache the product list
        ttl: lifetime in seconds (5 minutes by default)
        """
        if not self.is_available():
            return False
        try:
            self.client.setex("products:all", ttl, json.dumps(products, default=str))
            return True
        except Exception as e:
            logger.warning(f"Failed to cache products: {e}")
            return False

    def get_cached_products(self) -> Optional[List[Dict]]:
        if not self.is_available():
            return None
        try:
            cached = self.client.get("products:all")
            if cached:
                return json.loads(cached)
        except Exception as e:
            logger.warning(f"Failed to read products from cache: {e}")
        return None

    def invalidate_products_cache(self) -> bool:
        """Drop the product cache (after any catalog or station change)"""
        if not self.is_available():
            return False
        try:
            self.client.delete("products:all")
            return True
        except Exception as e:
            logger.warning(f"Failed to invalidate products cache: {e}")
            return False

    # ========== Floor (tables) ==========

    def cache_tables(self, tables: List[Dict], ttl: int = 30) -> bool:
        """
        Cache the floor state
        ttl: short, tables change on every order
        """
        if not self.is_available():
            return False
        try:
            self.client.setex("tables:all", ttl, json.dumps(tables, default=str))
            return True
        except Exception as e:
            logger.warning(f"Failed to cache tables: {e}")
            return False

    def get_cached_tables(self) -> Optional[List[Dict]]:
        if not self.is_available():
            return None
        try:
            cached = self.client.get("tables:all")
            if cached:
                return json.loads(cached)
        except Exception as e:
            logger.warning(f"Failed to read tables from cache: {e}")
        return None

    def invalidate_tables_cache(self) -> bool:
        if not self.is_available():
            return False
        try:
            self.client.delete("tables:all")
            return True
        except Exception as e:
            logger.warning(f"Failed to invalidate tables cache: {e}")
            return False

    # ========== Change events ==========

    def publish_event(self, channel: str, event: Dict[str, Any]) -> bool:
        """Publish a change event for clients attached to other API workers"""
        if not self.is_available():
            return False
        try:
            self.client.publish(channel, json.dumps(event, default=str))
            return True
        except Exception as e:
            logger.warning(f"Failed to publish event {event.get('type')}: {e}")
            return False

    # ========== Rate Limiting ==========

    def check_rate_limit(self, key: str, max_requests: int = 10, window: int = 60) -> Tuple[bool, int]:
        """
        Check the rate limit for a key
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
        except Exception as e:
            logger.warning(f"Rate limit check failed: {e}")
            return True, max_requests

    # ========== Utilities ==========

    def get_cache_info(self) -> Dict[str, Any]:
        if not self.is_available():
            return {"status": "unavailable"}

        try:
            return {
                "status": "available",
                "products_cached": self.client.exists("products:all"),
                "tables_cached": self.client.exists("tables:all"),
            }
        except Exception as e:
            return {"status": "error", "error": str(e)}


redis_client = RedisClient()


def rate_limit(max_requests: int = 10, window: int = 60, key_prefix: str = "rate_limit"):
    """
    Rate limiting decorator for async FastAPI endpoints
    max_requests: requests allowed per window
    window: window length in seconds
    key_prefix: Redis key prefix
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
