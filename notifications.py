"""
Real-time notification fan-out and order emails.

Notifications are persisted, then pushed to every WebSocket joined to the
recipient's room. Callers in the order/payment core only fire these after
their unit of work has committed and never let a failure here escape.
"""
import asyncio
import smtplib
import threading
from collections import defaultdict
from email.message import EmailMessage
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

import structlog
from bson import ObjectId
from fastapi import WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from pymongo import DESCENDING, ReturnDocument

from database import Database, oid, serialize
from errors import NotFound
from schemas import Notification

log = structlog.get_logger(__name__)

ADMIN_ROOM = "admin"


class ConnectionHub:
    """WebSocket rooms keyed by user id, plus the shared admin room."""

    def __init__(self):
        self._rooms: Dict[str, Set[WebSocket]] = defaultdict(set)
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    async def connect(self, websocket: WebSocket, rooms: Iterable[str]) -> None:
        await websocket.accept()
        self._loop = asyncio.get_running_loop()
        with self._lock:
            for room in rooms:
                self._rooms[room].add(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        with self._lock:
            for room in list(self._rooms):
                self._rooms[room].discard(websocket)
                if not self._rooms[room]:
                    del self._rooms[room]

    def room_count(self) -> int:
        with self._lock:
            return len(self._rooms)

    def members(self, room: str) -> int:
        with self._lock:
            return len(self._rooms.get(room, ()))

    def emit(self, room: str, event: str, data: Any) -> int:
        """Schedule delivery on the server loop; safe to call from worker threads."""
        with self._lock:
            sockets = list(self._rooms.get(room, ()))
        if not sockets or self._loop is None:
            return 0
        message = jsonable_encoder({"event": event, "data": data}, custom_encoder={ObjectId: str})
        for websocket in sockets:
            asyncio.run_coroutine_threadsafe(self._send(websocket, message), self._loop)
        return len(sockets)

    async def _send(self, websocket: WebSocket, message: dict) -> None:
        try:
            await websocket.send_json(message)
        except (WebSocketDisconnect, RuntimeError) as exc:
            log.info("hub.dropped_socket", error=str(exc))
            self.disconnect(websocket)


class Notifier:
    def __init__(self, database: Database, hub: ConnectionHub):
        self.database = database
        self.hub = hub

    def notify(self, event: str, payload: Dict[str, Any], target: Union[str, List[str]]) -> List[dict]:
        recipients = target if isinstance(target, list) else [target]
        sent = []
        for recipient in recipients:
            doc = self.database.insert_document("notification", Notification(
                recipient=str(recipient),
                type=payload["type"],
                message=payload["message"],
                data=payload.get("data", {}),
            ))
            notification = serialize(doc)
            self.hub.emit(str(recipient), event, notification)
            sent.append(notification)
        return sent

    def list(self, recipient: str, page: int = 1, limit: int = 20) -> List[dict]:
        cursor = (
            self.database.notifications.find({"recipient": recipient})
            .sort("created_at", DESCENDING)
            .skip(max(page - 1, 0) * limit)
            .limit(limit)
        )
        return [serialize(doc) for doc in cursor]

    def unread_count(self, recipient: str) -> int:
        return self.database.notifications.count_documents({"recipient": recipient, "read": False})

    def mark_read(self, recipient: str, notification_id: str) -> dict:
        doc = self.database.notifications.find_one_and_update(
            {"_id": oid(notification_id), "recipient": recipient},
            {"$set": {"read": True}},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            raise NotFound("Notification not found")
        return serialize(doc)

    def delete(self, recipient: str, notification_id: str) -> None:
        result = self.database.notifications.delete_one({"_id": oid(notification_id), "recipient": recipient})
        if result.deleted_count == 0:
            raise NotFound("Notification not found")


class Mailer:
    def __init__(self, host: str = "", port: int = 587, user: str = "", password: str = "",
                 sender: str = "orders@localhost"):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender

    @classmethod
    def from_settings(cls, settings) -> "Mailer":
        return cls(settings.SMTP_HOST, settings.SMTP_PORT, settings.SMTP_USER,
                   settings.SMTP_PASSWORD, settings.MAIL_FROM)

    @staticmethod
    def render_order_email(payload: Dict[str, Any]) -> Tuple[str, str]:
        subject = payload.get("subject") or f"Order {payload['order_id']} update"
        lines = [
            f"Hello {payload.get('name') or 'there'},",
            "",
            f"Order: {payload['order_id']}",
            f"Payment status: {payload.get('payment_status', 'pending')}",
            f"Amount paid: {payload.get('amount_paid', 0):.2f}",
            f"Balance due: {payload.get('balance_due', 0):.2f}",
            f"Total: {payload.get('total_price', 0):.2f}",
        ]
        return subject, "\n".join(lines)

    def send_order_email(self, payload: Dict[str, Any]) -> bool:
        subject, body = self.render_order_email(payload)
        if not self.host:
            log.info("mail.skipped", to=payload.get("to"), subject=subject)
            return False
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = payload["to"]
        message["Subject"] = subject
        message.set_content(body)
        with smtplib.SMTP(self.host, self.port, timeout=10) as smtp:
            if self.user:
                smtp.starttls()
                smtp.login(self.user, self.password)
            smtp.send_message(message)
        log.info("mail.sent", to=payload["to"], subject=subject)
        return True
