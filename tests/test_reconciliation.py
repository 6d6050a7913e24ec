import httpx
import pytest

from conftest import SHIPPING, balance_of, charge_success, sign, stock_of
from errors import BadRequest, NotFound
from schemas import Measurements, ShippingAddress

ADDRESS = ShippingAddress(**SHIPPING)


def gateway_order(services, customer, product, quantity=2, order_type="standard", measurements=None):
    services.carts.add(str(customer["_id"]), str(product["_id"]), quantity)
    return services.orders.create_order(customer, ADDRESS, "credit_card", order_type, measurements)


def test_successful_payment_settles_order(services, database, customer, product):
    order, outcome = gateway_order(services, customer, product)
    verification = services.gateway.verify(outcome.reference)

    result = services.reconciliation.reconcile(outcome.reference, verification, "manual")

    assert result.success and not result.already_processed
    assert result.order["payment_info"]["payment_status"] == "completed"
    assert result.order["payment_info"]["amount_paid"] == 125.0
    assert result.order["order_status"] == "processing"
    assert result.transaction["status"] == "completed"
    assert result.transaction["metadata"]["verified_by"] == "manual"
    assert stock_of(database, product) == 3
    # the gateway credit is spent on the order straight away
    assert balance_of(database, customer) == 500.0
    settle = database.transactions.find_one({"reference": f"{outcome.reference}_SETTLE"})
    assert settle["type"] == "debit" and settle["amount"] == 125.0
    assert services.ledger.audit() == []


def test_replayed_success_is_a_noop(services, database, customer, product):
    _, outcome = gateway_order(services, customer, product)
    verification = services.gateway.verify(outcome.reference)
    first = services.reconciliation.reconcile(outcome.reference, verification, "webhook")

    second = services.reconciliation.reconcile(outcome.reference, verification, "manual")

    assert second.success and second.already_processed
    assert second.order["_id"] == first.order["_id"]
    assert database.transactions.count_documents({"reference": outcome.reference}) == 1
    assert database.transactions.count_documents({"reference": f"{outcome.reference}_SETTLE"}) == 1
    assert stock_of(database, product) == 3
    assert balance_of(database, customer) == 500.0


def test_losing_a_race_changes_nothing(services, database, customer, product, monkeypatch):
    _, outcome = gateway_order(services, customer, product)
    verification = services.gateway.verify(outcome.reference)
    stale = services.ledger.find(outcome.reference)
    services.reconciliation.reconcile(outcome.reference, verification, "webhook")

    real_find = services.ledger.find
    calls = []

    def stale_then_real(reference, uow=None):
        calls.append(reference)
        return stale if len(calls) == 1 else real_find(reference, uow)

    monkeypatch.setattr(services.ledger, "find", stale_then_real)
    result = services.reconciliation.reconcile(outcome.reference, verification, "manual")

    assert result.success and result.already_processed
    assert stock_of(database, product) == 3
    assert balance_of(database, customer) == 500.0
    assert database.transactions.count_documents({}) == 2


def test_amount_mismatch_is_rejected(services, database, paystack, customer, product):
    order, outcome = gateway_order(services, customer, product)
    paystack.settle_as(outcome.reference, amount=10000)
    verification = services.gateway.verify(outcome.reference)

    with pytest.raises(BadRequest, match="Amount mismatch"):
        services.reconciliation.reconcile(outcome.reference, verification, "manual")

    assert services.ledger.find(outcome.reference)["status"] == "pending"
    assert database.orders.find_one({"_id": order["_id"]})["payment_info"]["payment_status"] == "pending"
    assert stock_of(database, product) == 5


def test_amount_within_one_unit_is_accepted(services, paystack, customer, product):
    _, outcome = gateway_order(services, customer, product)
    paystack.settle_as(outcome.reference, amount=12450)

    result = services.reconciliation.verify(outcome.reference, str(customer["_id"]))
    assert result.success


def test_failed_payment_marks_transaction_failed(services, database, paystack, customer, product):
    order, outcome = gateway_order(services, customer, product)
    paystack.settle_as(outcome.reference, status="abandoned")

    result = services.reconciliation.verify(outcome.reference, str(customer["_id"]))
    assert not result.success and result.status == "failed"
    assert database.orders.find_one({"_id": order["_id"]})["payment_info"]["payment_status"] == "pending"

    again = services.reconciliation.verify(outcome.reference, str(customer["_id"]))
    assert again.status == "failed"


def test_pending_payment_changes_nothing(services, paystack, customer, product):
    _, outcome = gateway_order(services, customer, product)
    paystack.settle_as(outcome.reference, status="ongoing")

    result = services.reconciliation.verify(outcome.reference, str(customer["_id"]))
    assert result.status == "pending"
    assert services.ledger.find(outcome.reference)["status"] == "pending"


def test_unknown_reference(services, customer):
    with pytest.raises(NotFound):
        services.reconciliation.verify("ORD_missing", str(customer["_id"]))


def test_verify_is_limited_to_owner(services, database, customer, product):
    other = database.insert_document("user", {"name": "Eve", "email": "eve@example.com", "wallet_balance": 0})
    _, outcome = gateway_order(services, customer, product)
    with pytest.raises(NotFound):
        services.reconciliation.verify(outcome.reference, str(other["_id"]))


def test_stock_shortfall_is_recorded_not_failed(services, database, customer, product):
    order, outcome = gateway_order(services, customer, product)
    database.products.update_one({"_id": product["_id"]}, {"$set": {"stock": 1}})

    result = services.reconciliation.verify(outcome.reference, str(customer["_id"]))

    assert result.success
    assert stock_of(database, product) == 1
    saved = database.orders.find_one({"_id": order["_id"]})
    assert saved["stock_shortfall"] == [{"product_id": str(product["_id"]), "quantity": 2}]
    assert saved["payment_info"]["payment_status"] == "completed"


def test_custom_order_paid_through_gateway_in_two_steps(services, database, customer, product):
    measurements = Measurements(waist=70)
    order, outcome = gateway_order(services, customer, product, order_type="custom", measurements=measurements)
    user_id = str(customer["_id"])

    first = services.reconciliation.verify(outcome.reference, user_id)
    assert first.order["payment_info"]["payment_status"] == "partially_paid"
    assert first.order["payment_info"]["amount_paid"] == 75.0
    assert first.order["payment_info"]["balance_due"] == 50.0

    _, balance = services.orders.pay_balance(customer, str(order["_id"]), "bank_transfer")
    assert balance.authorization_url
    assert services.ledger.find(balance.reference)["metadata"]["purpose"] == "order_balance"

    second = services.reconciliation.verify(balance.reference, user_id)
    assert second.order["payment_info"]["payment_status"] == "completed"
    assert second.order["payment_info"]["balance_due"] == 0.0
    assert second.order["payment_info"]["amount_paid"] == 125.0
    assert stock_of(database, product) == 5
    assert balance_of(database, customer) == 500.0
    assert services.ledger.audit() == []


def test_wallet_funding_round_trip(services, database, paystack, customer):
    funding = services.reconciliation.fund_wallet(customer, 200)
    assert paystack.initialized[funding["reference"]]["metadata"]["purpose"] == "wallet_funding"
    assert balance_of(database, customer) == 500.0

    result = services.reconciliation.verify(funding["reference"], str(customer["_id"]))
    assert result.success and result.order is None
    assert balance_of(database, customer) == 700.0
    assert services.notifier.unread_count(str(customer["_id"])) == 1

    services.reconciliation.verify(funding["reference"], str(customer["_id"]))
    assert balance_of(database, customer) == 700.0


def test_wallet_funding_minimum(services, customer):
    with pytest.raises(BadRequest, match="Minimum funding amount"):
        services.reconciliation.fund_wallet(customer, 99.99)


def test_webhook_settles_once(services, database, customer, product):
    _, outcome = gateway_order(services, customer, product)
    body = charge_success(outcome.reference, 12500)

    assert services.reconciliation.handle_webhook(body, sign(body)) == {"received": True, "success": True}
    assert services.reconciliation.handle_webhook(body, sign(body)) == {"received": True, "success": True}
    assert stock_of(database, product) == 3
    assert services.ledger.find(outcome.reference)["metadata"]["verified_by"] == "webhook"


def test_webhook_rejects_bad_signature(services):
    body = charge_success("ORD_x", 100)
    with pytest.raises(BadRequest, match="Invalid signature"):
        services.reconciliation.handle_webhook(body, "deadbeef")


def test_webhook_acknowledges_failures_and_other_events(services):
    unknown = charge_success("ORD_unknown", 100)
    assert services.reconciliation.handle_webhook(unknown, sign(unknown)) == {"received": True, "success": False}

    transfer = b'{"event": "transfer.success", "data": {}}'
    assert services.reconciliation.handle_webhook(transfer, sign(transfer)) == {"received": True, "success": True}


def test_status_polling_never_mutates(services, paystack, customer, product):
    _, outcome = gateway_order(services, customer, product)
    user_id = str(customer["_id"])

    status = services.reconciliation.check_status(outcome.reference, user_id)
    assert status["status"] == "success" and status["should_verify"] is True
    assert services.ledger.find(outcome.reference)["status"] == "pending"

    paystack.error = httpx.ReadTimeout("slow")
    assert services.reconciliation.check_status(outcome.reference, user_id)["status"] == "pending"

    paystack.error = None
    services.reconciliation.verify(outcome.reference, user_id)
    assert services.reconciliation.check_status(outcome.reference, user_id)["status"] == "completed"


def test_balance_payment_cannot_overpay_order(services, database, customer, product):
    services.carts.add(str(customer["_id"]), str(product["_id"]), 2)
    order, _ = services.orders.create_order(customer, ADDRESS, "wallet", "custom", Measurements(waist=70))
    user_id, order_id = str(customer["_id"]), str(order["_id"])
    assert balance_of(database, customer) == 425.0

    _, first = services.orders.pay_balance(customer, order_id, "credit_card")
    with pytest.raises(BadRequest, match="already in progress"):
        services.orders.pay_balance(customer, order_id, "bank_transfer")

    services.reconciliation.verify(first.reference, user_id)
    info = database.orders.find_one({"_id": order["_id"]})["payment_info"]
    assert info["payment_status"] == "completed" and info["amount_paid"] == 125.0

    # a second gateway payment for a balance that is already settled
    stray = "ORD_stray_balance"
    services.gateway.initialize(email=customer["email"], amount_minor=5000, reference=stray,
                                callback_url="http://localhost:3000/account/orders")
    services.ledger.open_pending(user_id, 50, stray, purpose="order_balance", metadata={"order_id": order_id})

    result = services.reconciliation.verify(stray, user_id)

    assert result.success and not result.already_processed
    assert result.order["payment_info"]["amount_paid"] == 125.0
    assert database.orders.find_one({"_id": order["_id"]})["payment_info"]["amount_paid"] == 125.0
    assert balance_of(database, customer) == 475.0
    assert database.transactions.find_one({"reference": f"{stray}_SETTLE"}) is None
    assert services.ledger.find(stray)["metadata"]["unapplied_reason"] == "Order balance due is 0.00"
    assert services.ledger.audit() == []


def test_webhook_acknowledges_a_body_that_is_not_an_object(services):
    for body in (b"[]", b"not json", b'{"event": "charge.success", "data": []}'):
        assert services.reconciliation.handle_webhook(body, sign(body)) == {"received": True, "success": False}


def test_status_of_reversed_payment_reads_failed(services, customer):
    funding = services.reconciliation.fund_wallet(customer, 150)
    user_id = str(customer["_id"])
    services.reconciliation.verify(funding["reference"], user_id)
    services.ledger.reverse(funding["reference"], "Chargeback")

    assert services.ledger.find(funding["reference"])["status"] == "reversed"
    assert services.reconciliation.check_status(funding["reference"], user_id)["status"] == "failed"
