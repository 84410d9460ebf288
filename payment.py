"""Payment gateway client (Razorpay REST API) and callback signature verification."""
import hashlib
import hmac
import logging
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from config import config
from errors import PaymentGatewayError

logger = logging.getLogger(__name__)


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


def expected_signature(gateway_order_id: str, payment_id: str, secret: str) -> str:
    message = f"{gateway_order_id}|{payment_id}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_signature(gateway_order_id: str, payment_id: str, signature: str,
                     secret: Optional[str] = None) -> bool:
    secret = config.RAZORPAY_KEY_SECRET if secret is None else secret
    if not secret or not gateway_order_id or not payment_id or not signature:
        return False
    expected = expected_signature(gateway_order_id, payment_id, secret)
    return hmac.compare_digest(expected.encode(), signature.encode())


class RazorpayGateway:
    """Creates remote payment orders; network failures and 5xx answers are retried."""

    def __init__(self, key_id: str, key_secret: str, base_url: str = config.RAZORPAY_API_URL,
                 timeout: float = config.PAYMENT_TIMEOUT, max_retries: int = config.PAYMENT_MAX_RETRIES):
        self.key_id = key_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.auth = (key_id, key_secret)
        retry = Retry(
            total=max_retries,
            backoff_factor=0.5,
            status_forcelist=(500, 502, 503, 504),
            allowed_methods=frozenset({"GET", "POST"}),
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry)
        self.session.mount("https://", adapter)
        self.session.mount("http://", adapter)

    def create_remote_order(self, amount_minor: int, currency: str, receipt: str) -> dict:
        payload = {
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt,
            "payment_capture": 1,
        }
        try:
            resp = self.session.post(f"{self.base_url}/orders", json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning("Payment gateway unreachable for receipt %s: %s", receipt, e)
            raise PaymentGatewayError("Error creating payment order")
        if resp.status_code >= 400:
            logger.warning("Payment gateway rejected receipt %s: %s %s", receipt, resp.status_code, resp.text[:200])
            raise PaymentGatewayError("Error creating payment order")
        data = resp.json()
        return {"gateway_order_id": data["id"], "amount": data["amount"], "currency": data["currency"]}


def get_gateway() -> RazorpayGateway:
    if not config.RAZORPAY_KEY_ID or not config.RAZORPAY_KEY_SECRET:
        raise PaymentGatewayError("Payment gateway is not configured")
    return RazorpayGateway(config.RAZORPAY_KEY_ID, config.RAZORPAY_KEY_SECRET)
