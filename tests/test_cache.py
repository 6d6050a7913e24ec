import fakeredis
import redis

from cache import (
    RedisCache,
    customer_orders_key,
    order_created_keys,
    order_keys,
    payment_settled_keys,
    stylist_orders_key,
    transactions_key,
)


class BrokenRedis:
    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise redis.ConnectionError("connection refused")
        return fail


def test_values_round_trip_as_json():
    cache = RedisCache(fakeredis.FakeRedis())
    assert cache.set("order:1", {"total_price": 125.0, "items": [1, 2]})
    assert cache.get("order:1") == {"total_price": 125.0, "items": [1, 2]}
    assert cache.get("order:2") is None


def test_glob_clear_only_touches_matching_keys():
    cache = RedisCache(fakeredis.FakeRedis())
    for page in range(1, 4):
        cache.set(customer_orders_key("u1", page, 10), [])
    cache.set(customer_orders_key("u2", 1, 10), [])

    assert cache.clear("user:u1:orders*") == 3
    assert cache.get(customer_orders_key("u1", 1, 10)) is None
    assert cache.get(customer_orders_key("u2", 1, 10)) == []


def test_exact_clear():
    cache = RedisCache(fakeredis.FakeRedis())
    cache.set("wallet:u1", {"balance": 10})
    assert cache.clear("wallet:u1") == 1
    assert cache.clear("wallet:u1") == 0


def test_disabled_cache_is_inert():
    cache = RedisCache(None)
    assert not cache.enabled
    assert cache.get("cart:u1") is None
    assert cache.set("cart:u1", {}) is False
    assert cache.clear("cart:*") == 0


def test_backend_failures_degrade():
    cache = RedisCache(BrokenRedis())
    assert cache.get("cart:u1") is None
    assert cache.set("cart:u1", {"items": []}) is False
    assert cache.clear("user:u1:orders*") == -1


def test_key_shapes():
    assert stylist_orders_key("s1", None, 2, 5) == "stylist:s1:orders:status:all:page:2:limit:5"
    assert transactions_key("u1", 1, 10, "credit", None) == \
        "user:u1:transactions:type:credit:status:all:page:1:limit:10"


def test_invalidation_sets():
    order = {"_id": "o1", "customer_id": "u1",
             "order_items": [{"stylist_id": "s2"}, {"stylist_id": "s1"}, {"stylist_id": "s2"}]}

    assert order_keys(order) == ["user:u1:orders*", "stylist:s1:orders*", "stylist:s2:orders*", "order:o1"]
    assert order_created_keys(order) == ["cart:u1"] + order_keys(order) + ["wallet:u1", "user:u1:transactions*"]
    assert payment_settled_keys({"user_id": "u1"}) == ["wallet:u1", "user:u1:transactions*"]
    assert payment_settled_keys({"user_id": "u1"}, order)[:4] == order_keys(order)
