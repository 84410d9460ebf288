"""
Transactional e-mail over SMTP.

``send`` never raises: delivery problems are logged and reported as ``False`` so the
order transition that triggered the mail is never rolled back because of it.
"""
import logging
import smtplib
from email.message import EmailMessage
from typing import Callable, Dict, Tuple

from bson import ObjectId

from config import config

logger = logging.getLogger(__name__)

STORE_NAME = "ShopEasy"


def _order_confirmation(name: str, order_id: str, total: float) -> Tuple[str, str]:
    return (
        f"Order #{order_id} confirmed - {STORE_NAME}",
        f"Hi {name},\n\nThank you for shopping with {STORE_NAME}. Your order #{order_id} "
        f"for ₹{total:.2f} has been placed.\n\nWe will let you know when it ships.",
    )


def _order_cancelled(name: str, order_id: str, requires_bank_details: bool = False) -> Tuple[str, str]:
    body = f"Hi {name},\n\nYour order #{order_id} has been cancelled."
    if requires_bank_details:
        body += "\n\nPlease submit your bank details from My Orders so we can process your refund."
    return f"Order #{order_id} cancelled - {STORE_NAME}", body


def _refund_completed(name: str, order_id: str, amount: float) -> Tuple[str, str]:
    return (
        f"Refund processed for order #{order_id} - {STORE_NAME}",
        f"Hi {name},\n\nA refund of ₹{amount:.2f} for order #{order_id} has been processed. "
        "It may take 5-7 business days to reflect in your account.",
    )


TEMPLATES: Dict[str, Callable[..., Tuple[str, str]]] = {
    "order_confirmation": _order_confirmation,
    "order_cancelled": _order_cancelled,
    "refund_completed": _refund_completed,
}


def render(template_name: str, *args, **kwargs) -> Tuple[str, str]:
    return TEMPLATES[template_name](*args, **kwargs)


def send(to_address: str, template_name: str, *args, **kwargs) -> bool:
    if not to_address:
        return False
    if not config.SMTP_USER or not config.SMTP_PASSWORD:
        logger.warning("SMTP credentials missing; skipping '%s' e-mail to %s", template_name, to_address)
        return False
    try:
        subject, body = render(template_name, *args, **kwargs)
        msg = EmailMessage()
        msg["From"] = config.EMAIL_FROM
        msg["To"] = to_address
        msg["Subject"] = subject
        msg.set_content(body)
        with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT, timeout=20) as smtp:
            smtp.starttls()
            smtp.login(config.SMTP_USER, config.SMTP_PASSWORD)
            smtp.send_message(msg)
    except Exception:
        logger.exception("Failed to send '%s' e-mail to %s", template_name, to_address)
        return False
    logger.info("Sent '%s' e-mail to %s", template_name, to_address)
    return True


def notify_user(db, user_id: str, template_name: str, *args, **kwargs) -> bool:
    """Look up the user's address and send; missing users are skipped."""
    try:
        user = db["user"].find_one({"_id": ObjectId(str(user_id))})
    except Exception:
        logger.exception("Could not look up user %s for '%s' e-mail", user_id, template_name)
        return False
    if not user:
        return False
    return send(user.get("email"), template_name, user.get("name", "there"), *args, **kwargs)
