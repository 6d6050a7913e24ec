"""
Payment reconciliation.

Three entry points can learn that a gateway payment succeeded: the signed
webhook, a manual verify call and status polling. All of them funnel into
``ReconciliationEngine.reconcile``, which is idempotent per reference: the
ledger's ``pending -> completed`` claim decides the single winner, every other
caller (replays, races) gets an ``already_processed`` answer and changes
nothing.
"""
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog

from cache import RedisCache, invalidate, payment_settled_keys, wallet_keys
from database import Database, UnitOfWork, oid
from errors import AppError, BadRequest, NotFound
from ledger import Ledger, money
from orders import OrderEvents, OrderService
from payments import GatewayVerification, PaystackGateway, generate_reference, to_minor_units

log = structlog.get_logger(__name__)

AMOUNT_TOLERANCE = 1.0
ORDER_PURPOSES = ("order_payment", "order_balance")
MIN_WALLET_FUNDING = 100.0


@dataclass
class ReconcileResult:
    success: bool
    status: str
    message: str
    already_processed: bool = False
    transaction: Optional[dict] = None
    order: Optional[dict] = None


class ReconciliationEngine:
    def __init__(self, database: Database, ledger: Ledger, orders: OrderService, gateway: PaystackGateway,
                 cache: RedisCache, events: OrderEvents, origin: str = "http://localhost:3000",
                 min_funding: float = MIN_WALLET_FUNDING):
        self.database = database
        self.ledger = ledger
        self.orders = orders
        self.gateway = gateway
        self.cache = cache
        self.events = events
        self.origin = origin
        self.min_funding = min_funding

    def _already(self, txn: dict) -> ReconcileResult:
        order = self._order_for(txn)
        return ReconcileResult(True, "completed", "Payment already verified", already_processed=True,
                               transaction=txn, order=order)

    def _order_for(self, txn: dict) -> Optional[dict]:
        order_id = (txn.get("metadata") or {}).get("order_id")
        if not order_id:
            return None
        return self.database.orders.find_one({"_id": oid(order_id)})

    def reconcile(self, reference: str, verification: GatewayVerification, verified_by: str) -> ReconcileResult:
        txn = self.ledger.find(reference)
        if txn is None:
            raise NotFound(f"Transaction not found: {reference}")

        if txn["status"] == "completed":
            log.info("reconcile.replayed", reference=reference, verified_by=verified_by)
            return self._already(txn)
        if txn["status"] in ("failed", "reversed"):
            return ReconcileResult(False, txn["status"], f"Transaction is {txn['status']}", transaction=txn)

        if verification.status == "failed":
            failed = self.ledger.fail(reference, verification.gateway_response or "Payment failed")
            invalidate(self.cache, wallet_keys(txn["user_id"]))
            return ReconcileResult(False, "failed", "Payment failed", transaction=failed or self.ledger.find(reference))
        if verification.status != "success":
            return ReconcileResult(False, "pending", "Payment is still pending", transaction=txn)

        expected = money(txn["metadata"].get("expected_amount", txn["amount"]))
        paid = money(verification.amount_major)
        if abs(paid - expected) > AMOUNT_TOLERANCE:
            log.warning("reconcile.amount_mismatch", reference=reference, expected=expected, paid=paid)
            raise BadRequest(f"Amount mismatch: expected {expected:.2f}, received {paid:.2f}")

        purpose = txn["metadata"].get("purpose")
        audit = {
            "amount": verification.amount,
            "gateway_response": verification.gateway_response,
            "paid_at": verification.paid_at,
        }

        def settle(uow: UnitOfWork):
            settled = self.ledger.settle(reference, verified_by, audit, uow)
            if settled is None:
                return None, None, False
            if purpose not in ORDER_PURPOSES:
                return settled, None, False
            order_id = settled["metadata"]["order_id"]
            order = self.database.orders.find_one({"_id": oid(order_id)}, **uow.opts)
            if order is None:
                raise NotFound(f"Order not found with id: {order_id}")
            info = order["payment_info"]
            if settled["amount"] > money(info["balance_due"]) + AMOUNT_TOLERANCE:
                # the credit stays in the wallet; an order is never paid past its balance
                settled = self.ledger.annotate(reference, {
                    "unapplied_reason": f"Order balance due is {info['balance_due']:.2f}",
                }, uow)
                return settled, order, False
            # gateway money lands in the wallet and is spent on the order in the same unit
            self.ledger.debit(
                settled["user_id"], settled["amount"], f"{reference}_SETTLE",
                f"Payment for order {order_id}",
                {"purpose": purpose, "order_id": order_id, "settles": reference}, uow,
            )
            order = self.orders.apply_payment(order_id, settled["amount"], reference, uow,
                                              expected_paid=info["amount_paid"])
            return settled, order, True

        settled, order, applied = self.database.run_atomic(settle)
        if settled is None:
            log.info("reconcile.lost_race", reference=reference, verified_by=verified_by)
            return self._already(self.ledger.find(reference))

        invalidate(self.cache, payment_settled_keys(settled, order))
        if purpose in ORDER_PURPOSES and not applied:
            log.warning("reconcile.unapplied", reference=reference, order_id=str(order["_id"]),
                        amount=settled["amount"], balance_due=order["payment_info"]["balance_due"])
            self.events.wallet_funded(settled)
            return ReconcileResult(True, "completed", "Order has no balance due, payment credited to wallet",
                                   transaction=settled, order=order)

        log.info("reconcile.settled", reference=reference, verified_by=verified_by, purpose=purpose,
                 amount=settled["amount"])
        if order is not None:
            self.events.payment_settled(order, settled["amount"])
        else:
            self.events.wallet_funded(settled)
        return ReconcileResult(True, "completed", "Payment verified successfully",
                               transaction=settled, order=order)

    # ----- entry points -----

    def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Signature failure raises; anything after that is logged and acknowledged."""
        if not self.gateway.validate_webhook_signature(raw_body, signature):
            log.warning("webhook.invalid_signature")
            raise BadRequest("Invalid signature")
        try:
            event = json.loads(raw_body)
            if event.get("event") != "charge.success":
                log.info("webhook.ignored", event=event.get("event"))
                return {"received": True, "success": True}
            verification = GatewayVerification.from_payload(event.get("data") or {})
            result = self.reconcile(verification.reference, verification, "webhook")
            return {"received": True, "success": result.success}
        except Exception as exc:
            log.error("webhook.processing_failed", error=str(exc), exc_info=True)
            return {"received": True, "success": False}

    def verify(self, reference: str, user_id: str) -> ReconcileResult:
        self.ledger.get(reference, user_id)
        verification = self.gateway.verify(reference)
        return self.reconcile(reference, verification, "manual")

    def check_status(self, reference: str, user_id: str) -> Dict[str, Any]:
        """Read-only view for polling clients; gateway trouble reads as pending."""
        txn = self.ledger.get(reference, user_id)
        data = {"reference": reference, "amount": txn["amount"]}
        if txn["status"] != "pending":
            # a reversed payment is no longer money received
            return {**data, "status": "failed" if txn["status"] == "reversed" else txn["status"]}
        try:
            verification = self.gateway.verify(reference)
        except AppError as exc:
            log.warning("payments.status_check_failed", reference=reference, error=exc.message)
            return {**data, "status": "pending"}
        if verification.status == "success":
            return {**data, "status": "success", "should_verify": True}
        return {**data, "status": verification.status}

    def fund_wallet(self, user: dict, amount: float, description: Optional[str] = None) -> Dict[str, Any]:
        amount = money(amount)
        if amount < self.min_funding:
            raise BadRequest(f"Minimum funding amount is {self.min_funding:.2f}")
        user_id = str(user["_id"])
        reference = generate_reference("WALLET", user_id)
        init = self.gateway.initialize(
            email=user["email"],
            amount_minor=to_minor_units(amount),
            reference=reference,
            callback_url=f"{self.origin}/account/wallet/verify?reference={reference}",
            metadata={"user_id": user_id, "purpose": "wallet_funding"},
        )
        self.ledger.open_pending(
            user_id, amount, init.reference, purpose="wallet_funding",
            description=description or "Wallet funding",
            metadata={"authorization_url": init.authorization_url, "access_code": init.access_code},
        )
        log.info("wallet.funding_initialized", user_id=user_id, amount=amount, reference=init.reference)
        return {
            "authorization_url": init.authorization_url,
            "access_code": init.access_code,
            "reference": init.reference,
            "amount": amount,
        }
