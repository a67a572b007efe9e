# gateway.py
import hashlib
import hmac
import logging
from typing import Dict, Any, Optional

import requests

from config import Settings, settings as default_settings
from errors import GatewayError, Unconfigured

logger = logging.getLogger(__name__)


def compute_signature(secret: str, order_id: str, payment_id: str) -> str:
    """Razorpay checkout signature: hex HMAC-SHA256 over ``order_id|payment_id``."""
    return hmac.new(
        secret.encode("utf-8"),
        f"{order_id}|{payment_id}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def signature_matches(secret: str, order_id: str, payment_id: str, signature: str) -> bool:
    expected = compute_signature(secret, order_id, payment_id)
    return hmac.compare_digest(expected.encode("ascii"), (signature or "").encode("utf-8"))


class RazorpayGateway:
    """Minimal client for the Razorpay Orders API."""

    def __init__(self, cfg: Settings = default_settings, http=None):
        self.cfg = cfg
        self.http = http or requests

    @property
    def configured(self) -> bool:
        return self.cfg.gateway_configured

    @property
    def key_id(self) -> str:
        return self.cfg.RAZORPAY_KEY_ID

    @property
    def secret(self) -> str:
        return self.cfg.RAZORPAY_KEY_SECRET

    def create_order(
        self,
        amount_minor_units: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        if not self.configured:
            raise Unconfigured("Payment gateway not configured. Please contact administrator.")

        payload = {
            "amount": amount_minor_units,
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
        }
        try:
            resp = self.http.post(
                f"{self.cfg.RAZORPAY_API_URL}/orders",
                auth=(self.cfg.RAZORPAY_KEY_ID, self.cfg.RAZORPAY_KEY_SECRET),
                json=payload,
                timeout=self.cfg.GATEWAY_TIMEOUT_SECONDS,
            )
        except requests.RequestException as e:
            logger.error(f"Razorpay order request failed (network): {e}")
            raise GatewayError(str(e) or "Razorpay API error") from e

        if resp.status_code >= 400:
            raise GatewayError(_error_description(resp))

        try:
            data = resp.json()
        except ValueError as e:
            raise GatewayError("Invalid response from payment gateway") from e

        if not data or not data.get("id"):
            raise GatewayError("Invalid response from payment gateway")
        return data

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        return signature_matches(self.secret, order_id, payment_id, signature)


def _error_description(resp) -> str:
    try:
        body = resp.json()
    except ValueError:
        return f"Razorpay API error ({resp.status_code})"
    error = body.get("error") or {}
    return error.get("description") or body.get("message") or f"Razorpay API error ({resp.status_code})"
