from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from typing import List, Literal, Optional

import structlog
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from cache import RedisCache, invalidate, transactions_key, wallet_key, wallet_keys
from cart import CartService
from config import Settings, configure_logging
from database import Database, oid, serialize, utcnow
from errors import AppError, NotFound, Unauthenticated
from ledger import Ledger
from notifications import ADMIN_ROOM, ConnectionHub, Mailer, Notifier
from orders import OrderEvents, OrderService
from payments import PaystackGateway
from reconciliation import ReconciliationEngine
from schemas import Measurements, PaymentMethod, Product as ProductSchema, ShippingAddress, TransactionStatus, TransactionType
from wishlist import WishlistService

log = structlog.get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    database: Database
    cache: RedisCache
    gateway: PaystackGateway
    hub: ConnectionHub
    notifier: Notifier
    ledger: Ledger
    carts: CartService
    wishlists: WishlistService
    orders: OrderService
    reconciliation: ReconciliationEngine


def build_services(settings: Settings, database: Optional[Database] = None, cache: Optional[RedisCache] = None,
                   gateway: Optional[PaystackGateway] = None, hub: Optional[ConnectionHub] = None,
                   mailer: Optional[Mailer] = None) -> Services:
    database = database or Database.connect(settings)
    cache = cache or RedisCache.connect(settings)
    gateway = gateway or PaystackGateway.from_settings(settings)
    hub = hub or ConnectionHub()
    notifier = Notifier(database, hub)
    events = OrderEvents(database, notifier, mailer or Mailer.from_settings(settings))
    ledger = Ledger(database)
    carts = CartService(database, cache)
    orders = OrderService(database, ledger, carts, gateway, cache, events, origin=settings.ORIGIN,
                          tax_rate=settings.TAX_RATE, shipping_price=settings.SHIPPING_PRICE)
    return Services(
        settings=settings,
        database=database,
        cache=cache,
        gateway=gateway,
        hub=hub,
        notifier=notifier,
        ledger=ledger,
        carts=carts,
        wishlists=WishlistService(database, cache, carts),
        orders=orders,
        reconciliation=ReconciliationEngine(database, ledger, orders, gateway, cache, events,
                                            origin=settings.ORIGIN, min_funding=settings.MIN_WALLET_FUNDING),
    )


# Request models

class StockUpdateRequest(BaseModel):
    stock: int = Field(..., ge=0)


class AddToCartRequest(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class UpdateCartRequest(BaseModel):
    quantity: int = Field(..., ge=1)


class WishlistRequest(BaseModel):
    product_id: str


class CreateOrderRequest(BaseModel):
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    order_type: Literal["standard", "custom"] = "standard"
    measurements: Optional[Measurements] = None
    material_sample: Optional[str] = None


class PayBalanceRequest(BaseModel):
    payment_method: PaymentMethod


class StatusUpdateRequest(BaseModel):
    status: str


class FundWalletRequest(BaseModel):
    amount: float = Field(..., gt=0)
    description: Optional[str] = None


class VerifyPaymentRequest(BaseModel):
    reference: str


class ReverseRequest(BaseModel):
    reason: str = "Reversed by admin"


# Dependencies

def get_services(request: Request) -> Services:
    return request.app.state.services


def current_user(x_user_id: Optional[str] = Header(None), services: Services = Depends(get_services)) -> dict:
    if not x_user_id:
        raise Unauthenticated("Authentication required")
    user = services.database.users.find_one({"_id": oid(x_user_id)})
    if not user:
        raise Unauthenticated("Unknown user")
    return user


def require_admin(x_admin_key: Optional[str] = Header(None), services: Services = Depends(get_services)) -> None:
    # open when no key is configured
    if services.settings.ADMIN_API_KEY and x_admin_key != services.settings.ADMIN_API_KEY:
        raise Unauthenticated("Admin access required")


def uid(user: dict) -> str:
    return str(user["_id"])


router = APIRouter()


# Routes
@router.get("/")
def root():
    return {"message": "Stylist marketplace API running"}


@router.get("/test")
def test_database(services: Services = Depends(get_services)):
    settings = services.settings
    resp = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if settings.DATABASE_URL else "❌ Not Set",
        "database_name": "✅ Set" if settings.DATABASE_NAME else "❌ Not Set",
        "cache": "✅ Enabled" if services.cache.enabled else "⚠️ Disabled",
        "transactions": "✅ Enabled" if services.database.use_transactions else "❌ Disabled (writes are not atomic)",
        "socket_rooms": services.hub.room_count(),
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        resp["collections"] = services.database.db.list_collection_names()[:10]
        resp["database"] = "✅ Connected & Working"
        resp["connection_status"] = "Connected"
    except PyMongoError as e:
        resp["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return resp


# Products
@router.post("/products", dependencies=[Depends(require_admin)])
def create_product(product: ProductSchema, services: Services = Depends(get_services)):
    pid = services.database.create_document("product", product)
    return {"id": pid}


@router.get("/products")
def list_products(stylist_id: Optional[str] = None, services: Services = Depends(get_services)):
    query = {"stylist_id": stylist_id} if stylist_id else {}
    return [serialize(p) for p in services.database.get_documents("product", query, limit=100)]


@router.patch("/products/{product_id}/stock", dependencies=[Depends(require_admin)])
def update_stock(product_id: str, payload: StockUpdateRequest, services: Services = Depends(get_services)):
    product = services.database.products.find_one_and_update(
        {"_id": oid(product_id)},
        {"$set": {"stock": payload.stock, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not product:
        raise NotFound("Product not found")
    log.info("product.stock_set", product_id=product_id, stock=payload.stock)
    return serialize(product)


# Cart
@router.get("/cart")
def get_cart(user: dict = Depends(current_user), services: Services = Depends(get_services)):
    return services.carts.get(uid(user))


@router.post("/cart/add")
def add_to_cart(payload: AddToCartRequest, user: dict = Depends(current_user),
                services: Services = Depends(get_services)):
    return services.carts.add(uid(user), payload.product_id, payload.quantity)


@router.patch("/cart/{product_id}")
def update_cart_item(product_id: str, payload: UpdateCartRequest, user: dict = Depends(current_user),
                     services: Services = Depends(get_services)):
    return services.carts.update(uid(user), product_id, payload.quantity)


@router.delete("/cart/{product_id}")
def remove_cart_item(product_id: str, user: dict = Depends(current_user),
                     services: Services = Depends(get_services)):
    return services.carts.remove(uid(user), product_id)


# Wishlist
@router.get("/wishlist")
def get_wishlist(user: dict = Depends(current_user), services: Services = Depends(get_services)):
    return services.wishlists.get(uid(user))


@router.post("/wishlist")
def add_to_wishlist(payload: WishlistRequest, user: dict = Depends(current_user),
                    services: Services = Depends(get_services)):
    return serialize(services.wishlists.add(uid(user), payload.product_id))


@router.delete("/wishlist/{product_id}")
def remove_from_wishlist(product_id: str, user: dict = Depends(current_user),
                         services: Services = Depends(get_services)):
    return serialize(services.wishlists.remove(uid(user), product_id))


@router.post("/wishlist/move-to-cart")
def move_to_cart(payload: WishlistRequest, user: dict = Depends(current_user),
                 services: Services = Depends(get_services)):
    return services.wishlists.move_to_cart(uid(user), payload.product_id)


# Orders
@router.post("/orders", status_code=201)
def create_order(payload: CreateOrderRequest, user: dict = Depends(current_user),
                 services: Services = Depends(get_services)):
    order, outcome = services.orders.create_order(
        user,
        payload.shipping_address,
        payload.payment_method,
        payload.order_type,
        payload.measurements,
        payload.material_sample,
    )
    return {"success": True, "order": serialize(order), "payment": outcome.as_response()}


@router.get("/orders/me")
def my_orders(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
              user: dict = Depends(current_user), services: Services = Depends(get_services)):
    orders, cached = services.orders.list_for_customer(uid(user), page, limit)
    return {"success": True, "orders": orders, "page": page, "limit": limit, "cached": cached}


@router.get("/orders/stylist")
def stylist_orders(status: Optional[str] = None, page: int = Query(1, ge=1),
                   limit: int = Query(10, ge=1, le=100), user: dict = Depends(current_user),
                   services: Services = Depends(get_services)):
    orders, cached = services.orders.list_for_stylist(uid(user), status, page, limit)
    return {"success": True, "orders": orders, "page": page, "limit": limit, "cached": cached}


@router.get("/orders/{order_id}")
def get_order(order_id: str, user: dict = Depends(current_user), services: Services = Depends(get_services)):
    return {"success": True, "order": services.orders.get(order_id, uid(user))}


@router.patch("/orders/{order_id}/status")
def update_order_status(order_id: str, payload: StatusUpdateRequest, user: dict = Depends(current_user),
                        services: Services = Depends(get_services)):
    order = services.orders.update_status(order_id, uid(user), payload.status)
    return {"success": True, "order": serialize(order)}


@router.patch("/orders/{order_id}/items/{index}/status")
def update_item_status(order_id: str, index: int, payload: StatusUpdateRequest,
                       user: dict = Depends(current_user), services: Services = Depends(get_services)):
    order = services.orders.update_item_status(order_id, index, uid(user), payload.status)
    return {"success": True, "order": serialize(order)}


@router.post("/orders/{order_id}/pay-balance")
def pay_balance(order_id: str, payload: PayBalanceRequest, user: dict = Depends(current_user),
                services: Services = Depends(get_services)):
    order, outcome = services.orders.pay_balance(user, order_id, payload.payment_method)
    return {"success": True, "order": serialize(order), "payment": outcome.as_response()}


# Wallet and transactions
@router.post("/wallet/fund")
def fund_wallet(payload: FundWalletRequest, user: dict = Depends(current_user),
                services: Services = Depends(get_services)):
    data = services.reconciliation.fund_wallet(user, payload.amount, payload.description)
    return {"success": True, "data": data}


@router.get("/wallet/balance")
def wallet_balance(user: dict = Depends(current_user), services: Services = Depends(get_services)):
    key = wallet_key(uid(user))
    cached = services.cache.get(key)
    if cached is not None:
        return {"success": True, "balance": cached["balance"], "cached": True}
    balance = services.ledger.balance(uid(user))
    services.cache.set(key, {"balance": balance}, 300)
    return {"success": True, "balance": balance, "cached": False}


@router.get("/transactions/me")
def my_transactions(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                    type: Optional[TransactionType] = None, status: Optional[TransactionStatus] = None,
                    user: dict = Depends(current_user), services: Services = Depends(get_services)):
    key = transactions_key(uid(user), page, limit, type, status)
    cached = services.cache.get(key)
    if cached is not None:
        return {"success": True, **cached, "cached": True}
    query = {"user_id": uid(user)}
    if type:
        query["type"] = type
    if status:
        query["status"] = status
    docs, total = services.ledger.list(query, page, limit)
    data = {"transactions": [serialize(d) for d in docs], "total": total, "page": page, "limit": limit}
    services.cache.set(key, data, 300)
    return {"success": True, **data, "cached": False}


@router.get("/transactions", dependencies=[Depends(require_admin)])
def all_transactions(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                     user_id: Optional[str] = None, type: Optional[TransactionType] = None,
                     status: Optional[TransactionStatus] = None, services: Services = Depends(get_services)):
    query = {key: value for key, value in (("user_id", user_id), ("type", type), ("status", status)) if value}
    docs, total = services.ledger.list(query, page, limit)
    return {"success": True, "transactions": [serialize(d) for d in docs], "total": total,
            "page": page, "limit": limit}


@router.get("/transactions/statistics", dependencies=[Depends(require_admin)])
def transaction_statistics(services: Services = Depends(get_services)):
    return {"success": True, "statistics": services.ledger.statistics()}


@router.get("/transactions/{reference}")
def get_transaction(reference: str, user: dict = Depends(current_user), services: Services = Depends(get_services)):
    return {"success": True, "transaction": serialize(services.ledger.get(reference, uid(user)))}


@router.post("/transactions/{reference}/reverse", dependencies=[Depends(require_admin)])
def reverse_transaction(reference: str, payload: ReverseRequest, services: Services = Depends(get_services)):
    txn, counter = services.ledger.reverse(reference, payload.reason)
    invalidate(services.cache, wallet_keys(txn["user_id"]))
    return {"success": True, "transaction": serialize(txn), "reversal": serialize(counter)}


# Payments
def _result(result) -> dict:
    data = asdict(result)
    data["transaction"] = serialize(result.transaction)
    data["order"] = serialize(result.order)
    return data


@router.post("/payments/verify")
def verify_payment(payload: VerifyPaymentRequest, user: dict = Depends(current_user),
                   services: Services = Depends(get_services)):
    return _result(services.reconciliation.verify(payload.reference, uid(user)))


@router.get("/payments/status")
def payment_status(reference: str, user: dict = Depends(current_user), services: Services = Depends(get_services)):
    return {"success": True, **services.reconciliation.check_status(reference, uid(user))}


@router.post("/webhooks/paystack")
async def paystack_webhook(request: Request, x_paystack_signature: Optional[str] = Header(None)):
    raw_body = await request.body()
    services: Services = request.app.state.services
    return await run_in_threadpool(services.reconciliation.handle_webhook, raw_body, x_paystack_signature)


# Notifications
@router.get("/notifications")
def list_notifications(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                       user: dict = Depends(current_user), services: Services = Depends(get_services)):
    return {"success": True, "notifications": services.notifier.list(uid(user), page, limit)}


@router.get("/notifications/unread-count")
def unread_count(user: dict = Depends(current_user), services: Services = Depends(get_services)):
    return {"success": True, "count": services.notifier.unread_count(uid(user))}


@router.patch("/notifications/{notification_id}/read")
def mark_read(notification_id: str, user: dict = Depends(current_user), services: Services = Depends(get_services)):
    return {"success": True, "notification": services.notifier.mark_read(uid(user), notification_id)}


@router.delete("/notifications/{notification_id}")
def delete_notification(notification_id: str, user: dict = Depends(current_user),
                        services: Services = Depends(get_services)):
    services.notifier.delete(uid(user), notification_id)
    return {"success": True}


@router.websocket("/ws/{user_id}")
async def notifications_socket(websocket: WebSocket, user_id: str):
    services: Services = websocket.app.state.services
    try:
        user = await run_in_threadpool(services.database.users.find_one, {"_id": oid(user_id)})
    except AppError:
        user = None
    if not user:
        await websocket.close(code=4401)
        return
    rooms: List[str] = [user_id]
    if user.get("role") == "admin":
        rooms.append(ADMIN_ROOM)
    await services.hub.connect(websocket, rooms)
    try:
        while True:
            if await websocket.receive_text() == "ping":
                await websocket.send_json({"event": "pong"})
    except WebSocketDisconnect:
        services.hub.disconnect(websocket)


async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        log.error("request.failed", path=request.url.path, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.message})


def create_app(settings: Optional[Settings] = None, database: Optional[Database] = None,
               cache: Optional[RedisCache] = None, gateway: Optional[PaystackGateway] = None,
               hub: Optional[ConnectionHub] = None, mailer: Optional[Mailer] = None) -> FastAPI:
    settings = settings or Settings()
    configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)
    services = build_services(settings, database, cache, gateway, hub, mailer)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            await run_in_threadpool(services.database.ensure_indexes)
        except PyMongoError as exc:
            log.warning("database.indexes_skipped", error=str(exc))
        yield
        services.gateway.close()
        services.database.close()

    app = FastAPI(title="Stylist Marketplace API", lifespan=lifespan)
    app.state.services = services
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(AppError, app_error_handler)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=Settings().PORT)
