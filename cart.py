from dataclasses import dataclass
from typing import List, Optional

import structlog
from bson import ObjectId

from cache import RedisCache, cart_key
from database import Database, UnitOfWork, oid, opts, serialize, utcnow
from errors import BadRequest, NotFound
from ledger import money
from schemas import Cart, CartItem

log = structlog.get_logger(__name__)


@dataclass
class CartLine:
    product_id: str
    name: str
    quantity: int
    price: float
    stylist_id: str
    stock: int

    @property
    def subtotal(self) -> float:
        return money(self.price * self.quantity)


@dataclass
class CartSnapshot:
    cart_id: ObjectId
    user_id: str
    lines: List[CartLine]

    @property
    def stylist_ids(self) -> List[str]:
        return sorted({line.stylist_id for line in self.lines})


def totals(items: List[dict]):
    total_price = money(sum(item["price"] * item["quantity"] for item in items))
    total_items = sum(item["quantity"] for item in items)
    return total_price, total_items


class CartService:
    def __init__(self, database: Database, cache: RedisCache):
        self.database = database
        self.cache = cache

    def _product(self, product_id: str, uow: Optional[UnitOfWork] = None) -> dict:
        product = self.database.products.find_one({"_id": oid(product_id)}, **opts(uow))
        if not product:
            raise NotFound(f"Product not found: {product_id}")
        return product

    def _save(self, user_id: str, items: List[dict], uow: Optional[UnitOfWork] = None) -> dict:
        total_price, total_items = totals(items)
        data = Cart(
            user_id=user_id,
            items=[CartItem(**item) for item in items],
            total_price=total_price,
            total_items=total_items,
        ).model_dump()
        now = utcnow()
        self.database.carts.update_one(
            {"user_id": user_id},
            {"$set": {**data, "updated_at": now}, "$setOnInsert": {"created_at": now}},
            upsert=True,
            **opts(uow),
        )
        return data

    def get(self, user_id: str) -> dict:
        key = cart_key(user_id)
        cached = self.cache.get(key)
        if cached:
            return cached
        cart = self.database.carts.find_one({"user_id": user_id})
        data = serialize(cart) if cart else {"user_id": user_id, "items": [], "total_price": 0, "total_items": 0}
        self.cache.set(key, data)
        return data

    def add(self, user_id: str, product_id: str, quantity: int = 1, uow: Optional[UnitOfWork] = None) -> dict:
        if quantity < 1:
            raise BadRequest("Quantity cannot be less than 1")
        product = self._product(product_id, uow)
        cart = self.database.carts.find_one({"user_id": user_id}, **opts(uow))
        items = list(cart.get("items", [])) if cart else []
        for item in items:
            if item["product_id"] == product_id:
                item["quantity"] += quantity
                break
        else:
            # price is fixed at add time; later product price edits do not reprice the line
            items.append({"product_id": product_id, "quantity": quantity, "price": money(product["price"])})
        saved = self._save(user_id, items, uow)
        if uow is None:
            self.cache.clear(cart_key(user_id))
        log.info("cart.item_added", user_id=user_id, product_id=product_id, quantity=quantity)
        return saved

    def update(self, user_id: str, product_id: str, quantity: int) -> dict:
        if quantity < 1:
            raise BadRequest("Quantity cannot be less than 1")
        cart = self.database.carts.find_one({"user_id": user_id})
        if not cart:
            raise NotFound("Cart not found")
        items = cart.get("items", [])
        for item in items:
            if item["product_id"] == product_id:
                item["quantity"] = quantity
                break
        else:
            raise NotFound("Product not found in cart")
        saved = self._save(user_id, items)
        self.cache.clear(cart_key(user_id))
        return saved

    def remove(self, user_id: str, product_id: str) -> dict:
        cart = self.database.carts.find_one({"user_id": user_id})
        if not cart:
            raise NotFound("Cart not found")
        items = [item for item in cart.get("items", []) if item["product_id"] != product_id]
        if len(items) == len(cart.get("items", [])):
            raise NotFound("Product not found in cart")
        saved = self._save(user_id, items)
        self.cache.clear(cart_key(user_id))
        return saved

    def snapshot(self, user_id: str, check_stock: bool = True, uow: Optional[UnitOfWork] = None) -> CartSnapshot:
        """Read the active cart and validate it for checkout. Nothing is reserved here."""
        cart = self.database.carts.find_one({"user_id": user_id}, **opts(uow))
        if not cart or not cart.get("items"):
            raise BadRequest("No items in cart")
        lines = []
        for item in cart["items"]:
            product = self._product(item["product_id"], uow)
            stock = int(product.get("stock", 0))
            if check_stock and stock < item["quantity"]:
                raise BadRequest(f"Insufficient stock for {product['name']}. Only {stock} available")
            lines.append(CartLine(
                product_id=item["product_id"],
                name=product["name"],
                quantity=int(item["quantity"]),
                price=money(item["price"]),
                stylist_id=product["stylist_id"],
                stock=stock,
            ))
        return CartSnapshot(cart_id=cart["_id"], user_id=user_id, lines=lines)

    def clear(self, user_id: str, uow: Optional[UnitOfWork] = None) -> None:
        self.database.carts.delete_one({"user_id": user_id}, **opts(uow))
