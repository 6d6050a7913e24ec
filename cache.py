"""
Best-effort Redis cache and the key invalidation policy.

Every call degrades instead of raising: a cache outage turns reads into
misses and writes/clears into no-ops, the request carries on against the
store. Each state-changing operation invalidates a fixed set of key patterns
right after its unit of work commits.
"""
import json
from typing import Any, Iterable, List, Optional

import redis
import structlog

log = structlog.get_logger(__name__)

DEFAULT_TTL = 3600
CLEAR_BATCH = 100


class RedisCache:
    def __init__(self, client: Optional[redis.Redis] = None, default_ttl: int = DEFAULT_TTL):
        self.client = client
        self.default_ttl = default_ttl

    @classmethod
    def connect(cls, settings) -> "RedisCache":
        if not settings.REDIS_URL:
            log.info("cache.disabled", reason="REDIS_URL not set")
            return cls(None, settings.CACHE_TTL)
        client = redis.Redis.from_url(
            settings.REDIS_URL,
            socket_timeout=2,
            socket_connect_timeout=2,
            retry_on_timeout=False,
        )
        return cls(client, settings.CACHE_TTL)

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def get(self, key: str) -> Optional[Any]:
        if not self.enabled:
            return None
        try:
            data = self.client.get(key)
            return json.loads(data) if data else None
        except (redis.RedisError, ValueError) as exc:
            log.warning("cache.read_error", key=key, error=str(exc))
            return None

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        if not self.enabled:
            return False
        try:
            self.client.set(key, json.dumps(value, default=str), ex=ttl or self.default_ttl)
            return True
        except (redis.RedisError, TypeError, ValueError) as exc:
            log.warning("cache.write_error", key=key, error=str(exc))
            return False

    def clear(self, pattern: str) -> int:
        """Delete one key, or every key matching a glob. Returns -1 on backend failure."""
        if not self.enabled:
            return 0
        try:
            if "*" not in pattern:
                return 1 if self.client.delete(pattern) else 0
            keys = list(self.client.scan_iter(match=pattern, count=CLEAR_BATCH))
            deleted = 0
            for i in range(0, len(keys), CLEAR_BATCH):
                deleted += self.client.delete(*keys[i:i + CLEAR_BATCH])
            log.debug("cache.cleared", pattern=pattern, deleted=deleted)
            return deleted
        except redis.RedisError as exc:
            log.warning("cache.clear_error", pattern=pattern, error=str(exc))
            return -1


# ----- Keys -----

def cart_key(user_id: str) -> str:
    return f"cart:{user_id}"


def wishlist_key(user_id: str) -> str:
    return f"wishlist:{user_id}"


def wallet_key(user_id: str) -> str:
    return f"wallet:{user_id}"


def order_key(order_id: str) -> str:
    return f"order:{order_id}"


def customer_orders_key(user_id: str, page: int, limit: int) -> str:
    return f"user:{user_id}:orders:page:{page}:limit:{limit}"


def stylist_orders_key(stylist_id: str, status: Optional[str], page: int, limit: int) -> str:
    return f"stylist:{stylist_id}:orders:status:{status or 'all'}:page:{page}:limit:{limit}"


def transactions_key(user_id: str, page: int, limit: int, type_: Optional[str], status: Optional[str]) -> str:
    return f"user:{user_id}:transactions:type:{type_ or 'all'}:status:{status or 'all'}:page:{page}:limit:{limit}"


# ----- Invalidation sets -----

def wallet_keys(user_id: str) -> List[str]:
    return [wallet_key(user_id), f"user:{user_id}:transactions*"]


def order_keys(order: dict) -> List[str]:
    """Customer list, every owning stylist's lists and the order itself."""
    keys = [f"user:{order['customer_id']}:orders*"]
    for stylist_id in sorted({item["stylist_id"] for item in order.get("order_items", [])}):
        keys.append(f"stylist:{stylist_id}:orders*")
    keys.append(order_key(str(order["_id"])))
    return keys


def order_created_keys(order: dict) -> List[str]:
    return [cart_key(order["customer_id"])] + order_keys(order) + wallet_keys(order["customer_id"])


def payment_settled_keys(transaction: dict, order: Optional[dict] = None) -> List[str]:
    keys = wallet_keys(transaction["user_id"])
    if order is not None:
        keys = order_keys(order) + keys
    return keys


def invalidate(cache: RedisCache, patterns: Iterable[str]) -> None:
    for pattern in patterns:
        cache.clear(pattern)
