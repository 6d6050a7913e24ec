import structlog

from cache import RedisCache, cart_key, wishlist_key
from cart import CartService
from database import Database, oid, utcnow
from errors import BadRequest, NotFound
from schemas import Wishlist, WishlistItem

log = structlog.get_logger(__name__)


class WishlistService:
    def __init__(self, database: Database, cache: RedisCache, carts: CartService):
        self.database = database
        self.cache = cache
        self.carts = carts

    def get(self, user_id: str) -> dict:
        key = wishlist_key(user_id)
        cached = self.cache.get(key)
        if cached:
            return cached
        wishlist = self.database.wishlists.find_one({"user_id": user_id})
        items = []
        for item in (wishlist or {}).get("items", []):
            product = self.database.products.find_one({"_id": oid(item["product_id"])})
            if not product:
                continue
            items.append({
                "product_id": item["product_id"],
                "name": product["name"],
                "price": product["price"],
                "image_url": product.get("image_url"),
                "stylist_id": product["stylist_id"],
                "added_at": item["added_at"],
            })
        data = {"items": items}
        self.cache.set(key, data)
        return data

    def add(self, user_id: str, product_id: str) -> dict:
        if not self.database.products.find_one({"_id": oid(product_id)}, {"_id": 1}):
            raise NotFound("Product not found")
        entry = WishlistItem(product_id=product_id, added_at=utcnow()).model_dump()
        wishlist = self.database.wishlists.find_one({"user_id": user_id})
        if wishlist is None:
            self.database.insert_document("wishlist", Wishlist(user_id=user_id, items=[entry]))
        else:
            if any(item["product_id"] == product_id for item in wishlist.get("items", [])):
                raise BadRequest("Product already in wishlist")
            self.database.wishlists.update_one(
                {"_id": wishlist["_id"]},
                {"$push": {"items": entry}, "$set": {"updated_at": utcnow()}},
            )
        self.cache.clear(wishlist_key(user_id))
        return self.database.wishlists.find_one({"user_id": user_id})

    def remove(self, user_id: str, product_id: str) -> dict:
        result = self.database.wishlists.update_one(
            {"user_id": user_id, "items.product_id": product_id},
            {"$pull": {"items": {"product_id": product_id}}},
        )
        if result.matched_count == 0:
            if self.database.wishlists.find_one({"user_id": user_id}) is None:
                raise NotFound("Wishlist not found")
            raise NotFound("Product not found in wishlist")
        self.cache.clear(wishlist_key(user_id))
        return self.database.wishlists.find_one({"user_id": user_id})

    def move_to_cart(self, user_id: str, product_id: str) -> dict:
        with self.database.unit_of_work() as uow:
            result = self.database.wishlists.update_one(
                {"user_id": user_id, "items.product_id": product_id},
                {"$pull": {"items": {"product_id": product_id}}},
                **uow.opts,
            )
            if result.matched_count == 0:
                raise NotFound("Product not found in wishlist")
            cart = self.carts.add(user_id, product_id, 1, uow)
        self.cache.clear(wishlist_key(user_id))
        self.cache.clear(cart_key(user_id))
        log.info("wishlist.moved_to_cart", user_id=user_id, product_id=product_id)
        return cart
