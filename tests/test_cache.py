"""Tests for the product read cache and its invalidation."""
import redis

from app.services.product_service import ProductService
from app.utils.cache import CacheService


class FakeRedis:
    """Minimal in-memory stand-in for the redis client methods used."""

    def __init__(self):
        self.store = {}

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = value

    def delete(self, *keys):
        for key in keys:
            self.store.pop(key, None)

    def ping(self):
        return True


class BrokenRedis:
    def get(self, key):
        raise redis.ConnectionError("down")

    def setex(self, key, ttl, value):
        raise redis.ConnectionError("down")

    def delete(self, *keys):
        raise redis.ConnectionError("down")


def make_service(db_session, client):
    return ProductService(db_session, cache=CacheService(client=client, ttl=60, enabled=True))


def test_get_by_id_populates_cache(db_session):
    fake = FakeRedis()
    service = make_service(db_session, fake)
    product = service.create({"name": "Lamp", "price": 12.5, "stock": 2})
    
    first = service.get_by_id(product.id)
    
    assert f"product:{product.id}" in fake.store
    assert service.get_by_id(product.id) == first
    assert first["name"] == "Lamp"


def test_mutations_invalidate_cache(db_session):
    fake = FakeRedis()
    service = make_service(db_session, fake)
    product = service.create({"name": "Lamp", "price": 12.5, "stock": 2})
    key = f"product:{product.id}"
    
    service.get_by_id(product.id)
    service.patch(product.id, {"price": 20})
    assert key not in fake.store
    assert service.get_by_id(product.id)["price"] == 20
    
    service.update_stock(product.id, {"quantity": 1, "operation": "decrement"})
    assert key not in fake.store
    assert service.get_by_id(product.id)["stock"] == 1
    
    service.bulk_delete({"ids": [product.id]})
    assert key not in fake.store


def test_cache_failures_are_not_fatal(db_session):
    service = make_service(db_session, BrokenRedis())
    product = service.create({"name": "Lamp", "price": 12.5})
    
    assert service.get_by_id(product.id)["name"] == "Lamp"
    assert service.patch(product.id, {"name": "Desk lamp"}).name == "Desk lamp"


def test_disabled_cache_is_a_no_op():
    fake = FakeRedis()
    cache = CacheService(client=fake, enabled=False)
    
    assert cache.set("product", "1", {"a": 1}) is False
    assert cache.get("product", "1") is None
    assert fake.store == {}
