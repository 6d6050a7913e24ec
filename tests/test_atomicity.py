"""
Checkout and reconciliation against a MongoDB replica set, where units of
work run in real multi-document transactions. Set MONGO_REPLICA_URL (for
example ``mongodb://localhost:27017/?replicaSet=rs0``) to run them.
"""
import os
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor

import pytest
from pymongo import MongoClient

from conftest import SHIPPING, balance_of, shrink_stock_after_snapshot, stock_of
from database import Database
from errors import BadRequest
from schemas import ShippingAddress

REPLICA_URL = os.getenv("MONGO_REPLICA_URL", "")

pytestmark = pytest.mark.skipif(not REPLICA_URL, reason="MONGO_REPLICA_URL is not set")

ADDRESS = ShippingAddress(**SHIPPING)


@pytest.fixture
def database():
    client = MongoClient(REPLICA_URL, serverSelectionTimeoutMS=5000, tz_aware=True)
    name = f"stylist_market_test_{uuid.uuid4().hex[:8]}"
    database = Database(client, name, transactions=True)
    database.ensure_indexes()
    yield database
    client.drop_database(name)
    client.close()


def test_failed_checkout_persists_nothing(services, database, customer, product, monkeypatch):
    services.carts.add(str(customer["_id"]), str(product["_id"]), 2)
    shrink_stock_after_snapshot(monkeypatch, services, database, product, stock=1)

    with pytest.raises(BadRequest, match="Insufficient stock"):
        services.orders.create_order(customer, ADDRESS, "wallet")

    assert database.orders.count_documents({}) == 0
    assert database.transactions.count_documents({}) == 0
    assert balance_of(database, customer) == 500.0
    assert stock_of(database, product) == 1
    assert database.carts.find_one({"user_id": str(customer["_id"])}) is not None


def test_concurrent_reconciliation_settles_once(services, database, customer, product, monkeypatch):
    services.carts.add(str(customer["_id"]), str(product["_id"]), 2)
    _, outcome = services.orders.create_order(customer, ADDRESS, "credit_card")
    verification = services.gateway.verify(outcome.reference)

    # both callers read the pending row before either claims it
    barrier = threading.Barrier(2, timeout=10)
    local = threading.local()
    real_find = services.ledger.find

    def find_then_wait(reference, uow=None):
        txn = real_find(reference, uow)
        if not getattr(local, "waited", False):
            local.waited = True
            barrier.wait()
        return txn

    monkeypatch.setattr(services.ledger, "find", find_then_wait)

    with ThreadPoolExecutor(max_workers=2) as pool:
        futures = [
            pool.submit(services.reconciliation.reconcile, outcome.reference, verification, verified_by)
            for verified_by in ("webhook", "manual")
        ]
        results = [future.result() for future in futures]

    assert all(result.success for result in results)
    assert sorted(result.already_processed for result in results) == [False, True]
    assert database.transactions.count_documents({"reference": outcome.reference, "status": "completed"}) == 1
    assert database.transactions.count_documents({"reference": f"{outcome.reference}_SETTLE"}) == 1
    assert stock_of(database, product) == 3
    assert balance_of(database, customer) == 500.0
    order = database.orders.find_one({"_id": results[0].order["_id"]})
    assert order["payment_info"]["amount_paid"] == 125.0
    assert services.ledger.audit() == []
