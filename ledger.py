"""
Wallet ledger.

The ledger is the only writer of ``user.wallet_balance``. Every balance
mutation is a conditional atomic update on the user document paired with
exactly one transaction row whose ``previous_balance``/``current_balance``
bracket the change. Transaction references are unique and double as
idempotency keys: a reference moves ``pending -> completed|failed`` once,
and ``completed -> reversed`` is the only move after that.
"""
from typing import Any, Dict, List, Optional, Tuple

import structlog
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import Database, UnitOfWork, oid, opts, utcnow
from errors import BadRequest, NotFound
from payments import generate_reference
from schemas import Transaction

log = structlog.get_logger(__name__)

AUDIT_SLACK = 0.005


def money(value) -> float:
    return round(float(value), 2)


def signed_amount(txn: dict) -> float:
    return txn["amount"] if txn["type"] == "credit" else -txn["amount"]


class Ledger:
    def __init__(self, database: Database):
        self.database = database

    @property
    def _txns(self):
        return self.database.transactions

    # ----- reads -----

    def find(self, reference: str, uow: Optional[UnitOfWork] = None) -> Optional[dict]:
        return self._txns.find_one({"reference": reference}, **opts(uow))

    def get(self, reference: str, user_id: Optional[str] = None) -> dict:
        query: Dict[str, Any] = {"reference": reference}
        if user_id is not None:
            query["user_id"] = user_id
        txn = self._txns.find_one(query)
        if not txn:
            raise NotFound(f"Transaction not found: {reference}")
        return txn

    def pending_for_order(self, order_id: str, purpose: str) -> Optional[dict]:
        return self._txns.find_one({"metadata.order_id": str(order_id), "metadata.purpose": purpose,
                                    "status": "pending"})

    def balance(self, user_id: str) -> float:
        user = self.database.users.find_one({"_id": oid(user_id)}, {"wallet_balance": 1})
        if not user:
            raise NotFound("User not found")
        return money(user.get("wallet_balance", 0))

    def list(self, query: Dict[str, Any], page: int = 1, limit: int = 10) -> Tuple[List[dict], int]:
        cursor = (
            self._txns.find(query)
            .sort("created_at", DESCENDING)
            .skip(max(page - 1, 0) * limit)
            .limit(limit)
        )
        return list(cursor), self._txns.count_documents(query)

    def statistics(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {"by_type": {}, "by_status": {}}
        pipeline = [{"$group": {"_id": {"type": "$type", "status": "$status"},
                                "total": {"$sum": "$amount"}, "count": {"$sum": 1}}}]
        for row in self._txns.aggregate(pipeline):
            type_, status = row["_id"]["type"], row["_id"]["status"]
            by_type = stats["by_type"].setdefault(type_, {"total": 0.0, "count": 0})
            by_status = stats["by_status"].setdefault(status, {"total": 0.0, "count": 0})
            for bucket in (by_type, by_status):
                bucket["total"] = money(bucket["total"] + row["total"])
                bucket["count"] += row["count"]
        return stats

    def audit(self, user_id: Optional[str] = None) -> List[dict]:
        """Rows whose balance snapshots do not bracket their amount. Empty when the ledger is sound."""
        query: Dict[str, Any] = {"status": {"$in": ["completed", "reversed"]}}
        if user_id is not None:
            query["user_id"] = user_id
        broken = []
        for txn in self._txns.find(query):
            moved = money(txn["current_balance"] - txn["previous_balance"])
            if abs(moved - signed_amount(txn)) > AUDIT_SLACK:
                broken.append(txn)
        return broken

    # ----- balance mutations -----

    def _move_balance(self, user_id: str, delta: float, uow: Optional[UnitOfWork]) -> Tuple[float, float]:
        query: Dict[str, Any] = {"_id": oid(user_id)}
        if delta < 0:
            query["wallet_balance"] = {"$gte": -delta}
        before = self.database.users.find_one_and_update(
            query,
            {"$inc": {"wallet_balance": delta}, "$set": {"updated_at": utcnow()}},
            projection={"wallet_balance": 1},
            return_document=ReturnDocument.BEFORE,
            **opts(uow),
        )
        if before is None:
            if self.database.users.find_one({"_id": oid(user_id)}, {"_id": 1}, **opts(uow)) is None:
                raise NotFound("User not found")
            raise BadRequest("Insufficient wallet balance")
        previous = money(before.get("wallet_balance", 0))
        return previous, money(previous + delta)

    def debit(self, user_id: str, amount: float, reference: Optional[str] = None,
              description: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None,
              uow: Optional[UnitOfWork] = None) -> dict:
        amount = money(amount)
        if amount <= 0:
            raise BadRequest("Please provide a valid positive amount")
        reference = reference or generate_reference("DBT", user_id)
        if self.find(reference, uow) is not None:
            raise BadRequest(f"Duplicate transaction reference: {reference}")
        previous, current = self._move_balance(user_id, -amount, uow)
        txn = Transaction(
            user_id=user_id,
            amount=amount,
            type="debit",
            previous_balance=previous,
            current_balance=current,
            reference=reference,
            description=description or "Wallet debit",
            status="completed",
            metadata=metadata or {},
        )
        try:
            doc = self.database.insert_document("transaction", txn, uow)
        except DuplicateKeyError:
            raise BadRequest(f"Duplicate transaction reference: {reference}")
        log.info("ledger.debit", user_id=user_id, amount=amount, reference=reference, balance=current)
        return doc

    def open_pending(self, user_id: str, amount: float, reference: str, purpose: str,
                     description: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None,
                     uow: Optional[UnitOfWork] = None) -> dict:
        """Pending credit row for a gateway payment; settled later by reconciliation."""
        amount = money(amount)
        if amount <= 0:
            raise BadRequest("Please provide a valid positive amount")
        user = self.database.users.find_one({"_id": oid(user_id)}, {"wallet_balance": 1}, **opts(uow))
        if not user:
            raise NotFound("User not found")
        balance = money(user.get("wallet_balance", 0))
        txn = Transaction(
            user_id=user_id,
            amount=amount,
            type="credit",
            previous_balance=balance,
            current_balance=balance,
            reference=reference,
            description=description or f"{purpose} initiated",
            status="pending",
            metadata={"payment_gateway": "paystack", "purpose": purpose,
                      "expected_amount": amount, "initialized_at": utcnow(), **(metadata or {})},
        )
        try:
            return self.database.insert_document("transaction", txn, uow)
        except DuplicateKeyError:
            raise BadRequest(f"Duplicate transaction reference: {reference}")

    def _claim(self, reference: str, fields: Dict[str, Any], uow: Optional[UnitOfWork]) -> Optional[dict]:
        # the pending -> completed flip is the serialization point; one caller gets the document
        return self._txns.find_one_and_update(
            {"reference": reference, "status": "pending"},
            {"$set": {"status": "completed", "updated_at": utcnow(), **fields}},
            return_document=ReturnDocument.AFTER,
            **opts(uow),
        )

    def _apply_credit(self, txn: dict, uow: Optional[UnitOfWork]) -> dict:
        previous, current = self._move_balance(txn["user_id"], txn["amount"], uow)
        updated = self._txns.find_one_and_update(
            {"_id": txn["_id"]},
            {"$set": {"previous_balance": previous, "current_balance": current, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
            **opts(uow),
        )
        log.info("ledger.credit", user_id=txn["user_id"], amount=txn["amount"],
                 reference=txn["reference"], balance=current)
        return updated

    def credit(self, user_id: str, amount: float, reference: str, description: Optional[str] = None,
               metadata: Optional[Dict[str, Any]] = None, uow: Optional[UnitOfWork] = None) -> dict:
        """Credit the wallet once per reference; a replay returns the completed row untouched."""
        amount = money(amount)
        if amount <= 0:
            raise BadRequest("Please provide a valid positive amount")
        existing = self.find(reference, uow)
        if existing is None:
            pending = Transaction(
                user_id=user_id, amount=amount, type="credit", reference=reference,
                description=description or "Wallet credit", status="pending", metadata=metadata or {},
            )
            try:
                self.database.insert_document("transaction", pending, uow)
            except DuplicateKeyError:
                existing = self.find(reference, uow)
        if existing is not None and existing["status"] == "completed":
            log.info("ledger.credit_replayed", reference=reference)
            return existing

        claimed = self._claim(reference, {"amount": amount}, uow)
        if claimed is None:
            current = self.find(reference, uow)
            if current is not None and current["status"] == "completed":
                return current
            raise BadRequest(f"Transaction {reference} cannot be credited")
        return self._apply_credit(claimed, uow)

    def settle(self, reference: str, verified_by: str, verification: Optional[Dict[str, Any]] = None,
               uow: Optional[UnitOfWork] = None) -> Optional[dict]:
        """Complete a pending gateway credit. Returns None when another caller already did."""
        claimed = self._claim(reference, {
            "metadata.verified_by": verified_by,
            "metadata.verified_at": utcnow(),
            "metadata.verification": verification or {},
        }, uow)
        if claimed is None:
            return None
        return self._apply_credit(claimed, uow)

    def annotate(self, reference: str, fields: Dict[str, Any], uow: Optional[UnitOfWork] = None) -> Optional[dict]:
        """Set ``metadata.<name>`` fields on a row without touching its status or balances."""
        return self._txns.find_one_and_update(
            {"reference": reference},
            {"$set": {**{f"metadata.{name}": value for name, value in fields.items()}, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
            **opts(uow),
        )

    def fail(self, reference: str, reason: str, uow: Optional[UnitOfWork] = None) -> Optional[dict]:
        failed = self._txns.find_one_and_update(
            {"reference": reference, "status": "pending"},
            {"$set": {"status": "failed", "metadata.failure_reason": reason,
                      "metadata.verified_at": utcnow(), "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
            **opts(uow),
        )
        if failed is not None:
            log.info("ledger.failed", reference=reference, reason=reason)
        return failed

    def reverse(self, reference: str, reason: str) -> Tuple[dict, dict]:
        """Mark a completed row reversed and book the opposite balance movement."""
        with self.database.unit_of_work() as uow:
            txn = self._txns.find_one_and_update(
                {"reference": reference, "status": "completed"},
                {"$set": {"status": "reversed", "metadata.reversal_reason": reason,
                          "metadata.reversed_at": utcnow(), "updated_at": utcnow()}},
                return_document=ReturnDocument.AFTER,
                **uow.opts,
            )
            if txn is None:
                if self.find(reference, uow) is None:
                    raise NotFound(f"Transaction not found: {reference}")
                raise BadRequest("Only completed transactions can be reversed")
            counter_ref = f"{reference}_REV"
            meta = {"reverses": reference, "reason": reason}
            if txn["type"] == "credit":
                counter = self.debit(txn["user_id"], txn["amount"], counter_ref,
                                     f"Reversal of {reference}", meta, uow)
            else:
                counter = self.credit(txn["user_id"], txn["amount"], counter_ref,
                                      f"Reversal of {reference}", meta, uow)
        log.info("ledger.reversed", reference=reference, reason=reason)
        return txn, counter
