"""
Order aggregate: pricing, checkout, payment-method strategies and order
lifecycle.

Checkout turns the caller's cart into an order inside a single unit of work:
the wallet debit or pending gateway transaction, the order document, any
immediate stock decrement and the cart deletion commit together or not at
all. Gateway-paid orders stay ``pending`` here; only the reconciliation
engine moves them to a paid state and commits their stock.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

import structlog
from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument

from cache import (
    RedisCache,
    customer_orders_key,
    invalidate,
    order_created_keys,
    order_key,
    order_keys,
    payment_settled_keys,
    stylist_orders_key,
)
from cart import CartService
from database import Database, UnitOfWork, oid, serialize, utcnow
from errors import BadRequest, NotFound
from ledger import Ledger, money
from notifications import ADMIN_ROOM, Mailer, Notifier
from payments import GatewayInitialization, PaystackGateway, generate_reference, to_minor_units
from schemas import GATEWAY_METHODS, Measurements, Order, OrderItem, PaymentInfo, ShippingAddress

log = structlog.get_logger(__name__)

TAX_RATE = 0.10
SHIPPING_PRICE = 15.0
CUSTOM_INITIAL_SHARE = 0.6
PAID_EPSILON = 0.01

ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled")
ITEM_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled", "returned")


@dataclass
class Pricing:
    items_price: float
    tax_price: float
    shipping_price: float
    total_price: float


def compute_pricing(lines: Iterable[Tuple[float, int]], tax_rate: float = TAX_RATE,
                    shipping_price: float = SHIPPING_PRICE) -> Pricing:
    """``lines`` are ``(unit_price, quantity)`` pairs."""
    items_price = money(sum(price * quantity for price, quantity in lines))
    tax_price = money(items_price * tax_rate)
    shipping_price = money(shipping_price)
    return Pricing(items_price, tax_price, shipping_price, money(items_price + tax_price + shipping_price))


def split_payment(total_price: float, order_type: str) -> Tuple[float, float]:
    """Upfront payment and the balance left due."""
    if order_type == "custom":
        initial = money(total_price * CUSTOM_INITIAL_SHARE)
        return initial, money(total_price - initial)
    return money(total_price), 0.0


def settlement_state(total_price: float, amount_paid: float) -> Tuple[float, str]:
    balance_due = money(max(total_price - amount_paid, 0))
    if balance_due < PAID_EPSILON:
        return 0.0, "completed"
    return balance_due, "partially_paid"


# ----- Payment-method strategies -----

@dataclass
class Checkout:
    user: dict
    order_id: ObjectId
    order_type: str
    payment_method: str
    total: float
    amount: float
    paid_before: float = 0.0
    status_before: str = "pending"
    purpose: str = "order_payment"
    initialization: Optional[GatewayInitialization] = None

    @property
    def user_id(self) -> str:
        return str(self.user["_id"])


@dataclass
class PaymentOutcome:
    payment_status: str
    amount_paid: float
    balance_due: float
    transaction_id: Optional[str] = None
    reference: Optional[str] = None
    payment_date: Optional[datetime] = None
    authorization_url: Optional[str] = None
    access_code: Optional[str] = None

    def as_response(self) -> dict:
        data = {
            "payment_status": self.payment_status,
            "amount_paid": self.amount_paid,
            "balance_due": self.balance_due,
            "transaction_id": self.transaction_id,
        }
        if self.authorization_url:
            data["authorization_url"] = self.authorization_url
            data["reference"] = self.reference
        return data


class PaymentHandler:
    def prepare(self, checkout: Checkout) -> None:
        """Checks and external calls that must happen before any store write."""

    def apply(self, checkout: Checkout, uow: UnitOfWork) -> PaymentOutcome:
        raise NotImplementedError


class WalletPayment(PaymentHandler):
    def __init__(self, ledger: Ledger):
        self.ledger = ledger

    def apply(self, checkout: Checkout, uow: UnitOfWork) -> PaymentOutcome:
        txn = self.ledger.debit(
            checkout.user_id,
            checkout.amount,
            reference=generate_reference("ORD", checkout.user_id),
            description=f"Payment for order {checkout.order_id}",
            metadata={"purpose": checkout.purpose, "order_id": str(checkout.order_id)},
            uow=uow,
        )
        amount_paid = money(checkout.paid_before + checkout.amount)
        balance_due, status = settlement_state(checkout.total, amount_paid)
        return PaymentOutcome(status, amount_paid, balance_due, txn["reference"], txn["reference"], utcnow())


class CashOnDeliveryPayment(PaymentHandler):
    def prepare(self, checkout: Checkout) -> None:
        if checkout.order_type == "custom":
            raise BadRequest("Cash on delivery is not available for custom orders")

    def apply(self, checkout: Checkout, uow: UnitOfWork) -> PaymentOutcome:
        return PaymentOutcome("pending", 0.0, checkout.total)


class GatewayPayment(PaymentHandler):
    def __init__(self, ledger: Ledger, gateway: PaystackGateway, origin: str):
        self.ledger = ledger
        self.gateway = gateway
        self.origin = origin

    def prepare(self, checkout: Checkout) -> None:
        reference = generate_reference("ORD", checkout.user_id)
        checkout.initialization = self.gateway.initialize(
            email=checkout.user["email"],
            amount_minor=to_minor_units(checkout.amount),
            reference=reference,
            callback_url=f"{self.origin}/account/orders/verify?reference={reference}",
            metadata={
                "user_id": checkout.user_id,
                "order_id": str(checkout.order_id),
                "purpose": checkout.purpose,
                "payment_method": checkout.payment_method,
            },
        )

    def apply(self, checkout: Checkout, uow: UnitOfWork) -> PaymentOutcome:
        init = checkout.initialization
        self.ledger.open_pending(
            checkout.user_id,
            checkout.amount,
            init.reference,
            purpose=checkout.purpose,
            description=f"Payment for order {checkout.order_id}",
            metadata={
                "order_id": str(checkout.order_id),
                "authorization_url": init.authorization_url,
                "access_code": init.access_code,
            },
            uow=uow,
        )
        return PaymentOutcome(
            payment_status=checkout.status_before,
            amount_paid=checkout.paid_before,
            balance_due=money(checkout.total - checkout.paid_before),
            transaction_id=init.reference,
            reference=init.reference,
            authorization_url=init.authorization_url,
            access_code=init.access_code,
        )


class OrderEvents:
    """Post-commit side channel. Failures are logged, never raised."""

    def __init__(self, database: Database, notifier: Notifier, mailer: Mailer):
        self.database = database
        self.notifier = notifier
        self.mailer = mailer

    def _safe(self, action: str, fn, *args) -> None:
        try:
            fn(*args)
        except Exception as exc:
            log.error("order.side_effect_failed", action=action, error=str(exc), exc_info=True)

    def _stylists(self, order: dict) -> List[str]:
        return sorted({item["stylist_id"] for item in order["order_items"]})

    def _email(self, order: dict, customer: Optional[dict], subject: str) -> None:
        if customer is None:
            customer = self.database.users.find_one({"_id": oid(order["customer_id"])})
        if not customer or not customer.get("email"):
            return
        info = order["payment_info"]
        self.mailer.send_order_email({
            "to": customer["email"],
            "name": customer.get("name"),
            "subject": subject,
            "order_id": str(order["_id"]),
            "payment_status": info["payment_status"],
            "amount_paid": info["amount_paid"],
            "balance_due": info["balance_due"],
            "total_price": order["total_price"],
        })

    def order_placed(self, order: dict, customer: Optional[dict] = None) -> None:
        order_id = str(order["_id"])
        data = {"order_id": order_id, "payment_status": order["payment_info"]["payment_status"]}
        for stylist_id in self._stylists(order):
            items = [
                {"product_id": item["product_id"], "quantity": item["quantity"]}
                for item in order["order_items"] if item["stylist_id"] == stylist_id
            ]
            self._safe("notify_stylist", self.notifier.notify, "newOrder", {
                "type": "new_order",
                "message": f"New order {order_id}",
                "data": {**data, "items": items},
            }, stylist_id)
        self._safe("notify_admin", self.notifier.notify, "newOrder", {
            "type": "new_order", "message": f"New order {order_id}", "data": data,
        }, ADMIN_ROOM)
        self._safe("email_customer", self._email, order, customer, f"Order {order_id} received")

    def payment_settled(self, order: dict, amount: float) -> None:
        order_id = str(order["_id"])
        data = {"order_id": order_id, "amount": amount,
                "payment_status": order["payment_info"]["payment_status"]}
        message = f"Payment of {amount:.2f} received for order {order_id}"
        self._safe("notify_stylists", self.notifier.notify, "orderPaid", {
            "type": "new_order", "message": message, "data": data,
        }, self._stylists(order))
        self._safe("notify_admin", self.notifier.notify, "orderPaid", {
            "type": "system_alert", "message": message, "data": data,
        }, ADMIN_ROOM)
        self._safe("email_customer", self._email, order, None, f"Payment received for order {order_id}")

    def wallet_funded(self, txn: dict) -> None:
        self._safe("notify_customer", self.notifier.notify, "walletCredited", {
            "type": "credit_wallet",
            "message": f"Your wallet was credited with {txn['amount']:.2f}",
            "data": {"reference": txn["reference"], "balance": txn["current_balance"]},
        }, txn["user_id"])

    def status_changed(self, order: dict, status: str) -> None:
        self._safe("notify_customer", self.notifier.notify, "orderStatusChanged", {
            "type": "order_delivered" if status == "delivered" else "order_status_update",
            "message": f"Order {order['_id']} is now {status}",
            "data": {"order_id": str(order["_id"]), "status": status},
        }, order["customer_id"])


class OrderService:
    def __init__(self, database: Database, ledger: Ledger, carts: CartService, gateway: PaystackGateway,
                 cache: RedisCache, events: OrderEvents, origin: str = "http://localhost:3000",
                 tax_rate: float = TAX_RATE, shipping_price: float = SHIPPING_PRICE):
        self.database = database
        self.ledger = ledger
        self.carts = carts
        self.cache = cache
        self.events = events
        self.tax_rate = tax_rate
        self.shipping_price = shipping_price
        gateway_handler = GatewayPayment(ledger, gateway, origin)
        self.handlers: Dict[str, PaymentHandler] = {
            "wallet": WalletPayment(ledger),
            "cash_on_delivery": CashOnDeliveryPayment(),
            **{method: gateway_handler for method in GATEWAY_METHODS},
        }

    def _handler(self, payment_method: str) -> PaymentHandler:
        handler = self.handlers.get(payment_method)
        if handler is None:
            raise BadRequest(f"Invalid payment method: {payment_method}")
        return handler

    # ----- checkout -----

    def create_order(self, user: dict, shipping_address: ShippingAddress, payment_method: str,
                     order_type: str = "standard", measurements: Optional[Measurements] = None,
                     material_sample: Optional[str] = None) -> Tuple[dict, PaymentOutcome]:
        handler = self._handler(payment_method)
        if order_type not in ("standard", "custom"):
            raise BadRequest(f"Invalid order type: {order_type}")
        if order_type == "custom" and payment_method == "cash_on_delivery":
            raise BadRequest("Cash on delivery is not available for custom orders")
        if order_type == "custom" and measurements is None:
            raise BadRequest("Measurements are required for custom orders")

        user_id = str(user["_id"])
        snapshot = self.carts.snapshot(user_id, check_stock=order_type == "standard")
        pricing = compute_pricing(((line.price, line.quantity) for line in snapshot.lines),
                                  self.tax_rate, self.shipping_price)
        initial, _ = split_payment(pricing.total_price, order_type)
        checkout = Checkout(
            user=user,
            order_id=ObjectId(),
            order_type=order_type,
            payment_method=payment_method,
            total=pricing.total_price,
            amount=initial,
        )
        handler.prepare(checkout)

        custom = order_type == "custom"
        items = [
            OrderItem(
                product_id=line.product_id,
                name=line.name,
                quantity=line.quantity,
                price_at_purchase=line.price,
                stylist_id=line.stylist_id,
                order_type=order_type,
                measurements=measurements if custom else None,
                material_sample=material_sample if custom else None,
                payment_plan="partial" if custom else "full",
            )
            for line in snapshot.lines
        ]

        def place(uow: UnitOfWork) -> PaymentOutcome:
            outcome = handler.apply(checkout, uow)
            order = Order(
                customer_id=user_id,
                order_type=order_type,
                order_items=items,
                shipping_address=shipping_address,
                payment_info=PaymentInfo(
                    payment_method=payment_method,
                    payment_status=outcome.payment_status,
                    amount_paid=outcome.amount_paid,
                    balance_due=outcome.balance_due,
                    transaction_id=outcome.transaction_id,
                    reference=outcome.reference,
                    payment_date=outcome.payment_date,
                ),
                items_price=pricing.items_price,
                tax_price=pricing.tax_price,
                shipping_price=pricing.shipping_price,
                total_price=pricing.total_price,
                order_status="processing" if outcome.payment_date else "pending",
            ).model_dump()
            order["_id"] = checkout.order_id
            self.database.insert_document("order", order, uow)
            if not custom and outcome.payment_status == "completed":
                self.commit_stock(checkout.order_id, uow, strict=True)
            self.carts.clear(user_id, uow)
            return outcome

        outcome = self.database.run_atomic(place)
        order = self.database.orders.find_one({"_id": checkout.order_id})
        invalidate(self.cache, order_created_keys(order))
        log.info("order.created", order_id=str(checkout.order_id), customer_id=user_id,
                 payment_method=payment_method, payment_status=outcome.payment_status,
                 total_price=pricing.total_price)
        self.events.order_placed(order, user)
        return order, outcome

    def pay_balance(self, user: dict, order_id: str, payment_method: str) -> Tuple[dict, PaymentOutcome]:
        """Pay the outstanding balance of a partially paid custom order."""
        if payment_method == "cash_on_delivery":
            raise BadRequest("Balance payments cannot be made on delivery")
        handler = self._handler(payment_method)
        user_id = str(user["_id"])
        order = self.database.orders.find_one({"_id": oid(order_id), "customer_id": user_id})
        if not order:
            raise NotFound(f"Order not found with id: {order_id}")
        info = order["payment_info"]
        if info["payment_status"] != "partially_paid" or info["balance_due"] <= 0:
            raise BadRequest("Order has no outstanding balance")
        open_payment = self.ledger.pending_for_order(order["_id"], "order_balance")
        if open_payment is not None:
            raise BadRequest(f"A balance payment is already in progress for this order: {open_payment['reference']}. "
                             "Verify it before starting another")

        checkout = Checkout(
            user=user,
            order_id=order["_id"],
            order_type=order["order_type"],
            payment_method=payment_method,
            total=order["total_price"],
            amount=money(info["balance_due"]),
            paid_before=money(info["amount_paid"]),
            status_before="partially_paid",
            purpose="order_balance",
        )
        handler.prepare(checkout)

        def pay(uow: UnitOfWork) -> PaymentOutcome:
            outcome = handler.apply(checkout, uow)
            if outcome.payment_date is not None:
                # settled synchronously (wallet)
                self.apply_payment(order["_id"], checkout.amount, outcome.reference, uow,
                                   expected_paid=checkout.paid_before)
            else:
                self.database.orders.update_one(
                    {"_id": order["_id"]},
                    {"$set": {"payment_info.reference": outcome.reference,
                              "payment_info.transaction_id": outcome.transaction_id,
                              "updated_at": utcnow()}},
                    **uow.opts,
                )
            return outcome

        outcome = self.database.run_atomic(pay)
        updated = self.database.orders.find_one({"_id": order["_id"]})
        invalidate(self.cache, order_keys(updated) + payment_settled_keys({"user_id": user_id}))
        log.info("order.balance_payment", order_id=order_id, payment_method=payment_method,
                 payment_status=outcome.payment_status)
        if outcome.payment_date is not None:
            self.events.payment_settled(updated, checkout.amount)
        return updated, outcome

    # ----- payment/stock mutations shared with reconciliation -----

    def apply_payment(self, order_id, amount: float, reference: Optional[str], uow: UnitOfWork,
                      expected_paid: Optional[float] = None) -> dict:
        """Add a settled amount to the order's payment info; commits stock once a standard order is paid."""
        order = self.database.orders.find_one({"_id": oid(order_id)}, **uow.opts)
        if not order:
            raise NotFound(f"Order not found with id: {order_id}")
        info = order["payment_info"]
        amount_paid = money(info["amount_paid"] + amount)
        balance_due, status = settlement_state(order["total_price"], amount_paid)
        query = {"_id": order["_id"]}
        if expected_paid is not None:
            query["payment_info.amount_paid"] = expected_paid
        fields = {
            "payment_info.amount_paid": amount_paid,
            "payment_info.balance_due": balance_due,
            "payment_info.payment_status": status,
            "payment_info.payment_date": utcnow(),
            "updated_at": utcnow(),
        }
        if reference:
            fields["payment_info.reference"] = reference
            fields["payment_info.transaction_id"] = reference
        if order["order_status"] == "pending":
            fields["order_status"] = "processing"
        updated = self.database.orders.find_one_and_update(
            query, {"$set": fields}, return_document=ReturnDocument.AFTER, **uow.opts,
        )
        if updated is None:
            raise BadRequest("Order payment changed concurrently, refresh and retry")
        if updated["order_type"] == "standard" and status == "completed":
            self.commit_stock(updated["_id"], uow, strict=False)
            updated = self.database.orders.find_one({"_id": updated["_id"]}, **uow.opts)
        return updated

    def commit_stock(self, order_id: ObjectId, uow: UnitOfWork, strict: bool = True) -> List[dict]:
        """Decrement product stock for an order exactly once.

        The ``stock_committed`` flag is claimed first, so replays find nothing to
        do. Each decrement is conditional on ``stock >= quantity``; with
        ``strict`` a shortfall aborts the unit, otherwise it is recorded on the
        order for manual follow-up (the customer has already paid).
        """
        order = self.database.orders.find_one_and_update(
            {"_id": order_id, "stock_committed": False},
            {"$set": {"stock_committed": True, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
            **uow.opts,
        )
        if order is None:
            return []
        shortfall = []
        for item in order["order_items"]:
            result = self.database.products.update_one(
                {"_id": oid(item["product_id"]), "stock": {"$gte": item["quantity"]}},
                {"$inc": {"stock": -item["quantity"]}, "$set": {"updated_at": utcnow()}},
                **uow.opts,
            )
            if result.matched_count == 0:
                if strict:
                    raise BadRequest(f"Insufficient stock for {item['name']}")
                shortfall.append({"product_id": item["product_id"], "quantity": item["quantity"]})
        if shortfall:
            self.database.orders.update_one({"_id": order_id}, {"$set": {"stock_shortfall": shortfall}}, **uow.opts)
            log.warning("order.stock_shortfall", order_id=str(order_id), shortfall=shortfall)
        return shortfall

    # ----- queries -----

    def get(self, order_id: str, user_id: str) -> dict:
        key = order_key(order_id)
        order = self.cache.get(key)
        if order is None:
            doc = self.database.orders.find_one({"_id": oid(order_id)})
            if doc:
                order = serialize(doc)
                self.cache.set(key, order)
        if not order or (order["customer_id"] != user_id
                         and user_id not in {item["stylist_id"] for item in order["order_items"]}):
            raise NotFound(f"Order not found with id: {order_id}")
        return order

    def _page(self, query: dict, page: int, limit: int) -> List[dict]:
        cursor = (
            self.database.orders.find(query)
            .sort("created_at", DESCENDING)
            .skip(max(page - 1, 0) * limit)
            .limit(limit)
        )
        return [serialize(doc) for doc in cursor]

    def list_for_customer(self, user_id: str, page: int = 1, limit: int = 10) -> Tuple[List[dict], bool]:
        key = customer_orders_key(user_id, page, limit)
        cached = self.cache.get(key)
        if cached is not None:
            return cached, True
        orders = self._page({"customer_id": user_id}, page, limit)
        self.cache.set(key, orders, 600)
        return orders, False

    def list_for_stylist(self, stylist_id: str, status: Optional[str] = None, page: int = 1,
                         limit: int = 10) -> Tuple[List[dict], bool]:
        key = stylist_orders_key(stylist_id, status, page, limit)
        cached = self.cache.get(key)
        if cached is not None:
            return cached, True
        query = {"order_items.stylist_id": stylist_id}
        if status:
            query["order_status"] = status
        orders = self._page(query, page, limit)
        self.cache.set(key, orders, 600)
        return orders, False

    # ----- lifecycle -----

    def update_status(self, order_id: str, stylist_id: str, status: str) -> dict:
        if status not in ORDER_STATUSES:
            raise BadRequest(f"Invalid order status: {status}")
        fields = {"order_status": status, "updated_at": utcnow()}
        if status == "delivered":
            fields["delivered_at"] = utcnow()
        order = self.database.orders.find_one_and_update(
            {"_id": oid(order_id), "order_items.stylist_id": stylist_id},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        if not order:
            raise NotFound(f"Order not found with id: {order_id}")
        invalidate(self.cache, order_keys(order))
        log.info("order.status_changed", order_id=order_id, status=status, stylist_id=stylist_id)
        self.events.status_changed(order, status)
        return order

    def update_item_status(self, order_id: str, index: int, stylist_id: str, status: str) -> dict:
        if status not in ITEM_STATUSES:
            raise BadRequest(f"Invalid item status: {status}")
        order = self.database.orders.find_one({"_id": oid(order_id), "order_items.stylist_id": stylist_id})
        if not order:
            raise NotFound(f"Order not found with id: {order_id}")
        items = order["order_items"]
        if not 0 <= index < len(items) or items[index]["stylist_id"] != stylist_id:
            raise NotFound("Order item not found or unauthorized")
        order = self.database.orders.find_one_and_update(
            {"_id": order["_id"]},
            {"$set": {f"order_items.{index}.status": status, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        invalidate(self.cache, order_keys(order))
        log.info("order.item_status_changed", order_id=order_id, index=index, status=status)
        self.events.status_changed(order, status)
        return order
