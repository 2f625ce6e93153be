import json
import logging
import uuid
from typing import Any, Dict, Protocol

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def send_order_confirmation(self, user: Dict[str, Any], order: Dict[str, Any]) -> Dict[str, Any]:
        ...

    def send_status_update(self, user: Dict[str, Any], order: Dict[str, Any]) -> Dict[str, Any]:
        ...

    def send_welcome(self, user: Dict[str, Any]) -> Dict[str, Any]:
        ...


def _display_name(user: Dict[str, Any]) -> str:
    name = " ".join(p for p in (user.get("first_name"), user.get("last_name")) if p)
    return name or user.get("email") or "customer"


class ConsoleNotifier:
    """Writes outgoing emails to the log instead of sending them."""

    def send_email(self, to: str, subject: str, body: str) -> Dict[str, Any]:
        logger.info("========== EMAIL SENT ==========\nTo: %s\nSubject: %s\n%s\n================================",
                    to, subject, body)
        return {"success": True, "message_id": f"MOCK-EMAIL-{uuid.uuid4().hex[:12]}"}

    def send_order_confirmation(self, user, order):
        summary = {k: order.get(k) for k in ("id", "status", "total_amount", "payment_intent_id")}
        return self.send_email(
            user["email"],
            f"Order Confirmation #{order['id']}",
            f"Thank you for your order, {_display_name(user)}!\n\n"
            f"Order details: {json.dumps(summary, indent=2, default=str)}",
        )

    def send_status_update(self, user, order):
        return self.send_email(
            user["email"],
            f"Order #{order['id']} is now {order['status']}",
            f"Hello {_display_name(user)},\n\nYour order #{order['id']} status changed to {order['status']}.",
        )

    def send_welcome(self, user):
        return self.send_email(
            user["email"],
            "Welcome to Our E-commerce Store!",
            f"Hello {_display_name(user)},\n\nThank you for registering with our store.",
        )
