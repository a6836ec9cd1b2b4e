"""
Stripe gateway adapter.

Talks to the Stripe REST API directly with ``requests``. Every call returns
the decoded Stripe object as a dict; HTTP and transport errors are raised as
GatewayFailure so the calling service can record them on the local entity.
"""

import hashlib
import hmac
import json
import logging
import time
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import requests

from ..calculators import to_minor_units
from ..exceptions import GatewayFailure, WebhookSignatureError

logger = logging.getLogger(__name__)

STRIPE_API_BASE = "https://api.stripe.com/v1"
DEFAULT_TOLERANCE = 300


def encode_params(params: Dict[str, Any], prefix: str = "") -> List[Tuple[str, str]]:
    """Flatten nested params into Stripe's bracketed form encoding."""
    pairs: List[Tuple[str, str]] = []
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            pairs.extend(encode_params(value, name))
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                if isinstance(item, dict):
                    pairs.extend(encode_params(item, f"{name}[{index}]"))
                else:
                    pairs.append((f"{name}[{index}]", _scalar(item)))
        else:
            pairs.append((name, _scalar(value)))
    return pairs


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class StripeGateway:
    def __init__(self, secret_key: str, webhook_secret: str = "", api_base: str = STRIPE_API_BASE,
                 timeout: int = 30, tolerance: int = DEFAULT_TOLERANCE, session: Optional[requests.Session] = None):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.tolerance = tolerance
        self.session = session or requests.Session()

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key)

    @property
    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.secret_key}"}

    def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                 idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        if not self.is_configured:
            raise GatewayFailure("Stripe secret key is not configured", code="not_configured")

        headers = dict(self.headers)
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        url = f"{self.api_base}/{path.lstrip('/')}"
        encoded = encode_params(params or {})

        try:
            if method == "GET":
                response = self.session.request(method, url, headers=headers, params=encoded, timeout=self.timeout)
            else:
                response = self.session.request(method, url, headers=headers, data=encoded, timeout=self.timeout)
        except requests.exceptions.RequestException as exc:
            logger.error(f"Stripe {method} {path} connection error: {exc}")
            raise GatewayFailure(f"Connection error: {exc}", code="connection_error") from exc

        try:
            data = response.json()
        except ValueError:
            logger.error(f"Stripe {method} {path} returned non-JSON response ({response.status_code})")
            raise GatewayFailure("Invalid response format from Stripe", status_code=response.status_code)

        if response.status_code >= 400:
            error = data.get("error", {}) if isinstance(data, dict) else {}
            message = error.get("message") or f"Stripe request failed with status {response.status_code}"
            code = error.get("decline_code") or error.get("code") or error.get("type")
            logger.error(f"Stripe {method} {path} failed: {message} ({code})")
            raise GatewayFailure(message, code=code, status_code=response.status_code)

        return data

    # Payment intents

    def create_payment_intent(self, amount: Decimal, currency: str, *, customer: str = "",
                              payment_method: str = "", description: str = "",
                              metadata: Optional[Dict[str, Any]] = None, confirm: bool = False,
                              idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": currency.lower(),
            "metadata": metadata or {},
        }
        if customer:
            params["customer"] = customer
        if description:
            params["description"] = description
        if payment_method:
            params["payment_method"] = payment_method
            params["confirm"] = confirm
            if confirm:
                params["automatic_payment_methods"] = {"enabled": True, "allow_redirects": "never"}
        return self._request("POST", "payment_intents", params, idempotency_key=idempotency_key)

    def confirm_payment_intent(self, intent_id: str, payment_method: str = "") -> Dict[str, Any]:
        params = {"payment_method": payment_method} if payment_method else {}
        return self._request("POST", f"payment_intents/{intent_id}/confirm", params)

    def cancel_payment_intent(self, intent_id: str, reason: str = "requested_by_customer") -> Dict[str, Any]:
        return self._request("POST", f"payment_intents/{intent_id}/cancel", {"cancellation_reason": reason})

    def create_refund(self, payment_intent_id: str, amount: Optional[Decimal] = None, reason: str = "",
                      metadata: Optional[Dict[str, Any]] = None,
                      idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {"payment_intent": payment_intent_id, "metadata": dict(metadata or {})}
        if amount is not None:
            params["amount"] = to_minor_units(amount)
        if reason in ("duplicate", "fraudulent", "requested_by_customer"):
            params["reason"] = reason
        elif reason:
            params["metadata"]["reason"] = reason
        return self._request("POST", "refunds", params, idempotency_key=idempotency_key)

    # Subscriptions

    def create_subscription(self, customer: str, price_id: str, *, quantity: int = 1, trial_days: int = 0,
                            payment_method: str = "", metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "customer": customer,
            "items": [{"price": price_id, "quantity": quantity}],
            "metadata": metadata or {},
            "expand": ["latest_invoice.payment_intent"],
        }
        if trial_days:
            params["trial_period_days"] = trial_days
        if payment_method:
            params["default_payment_method"] = payment_method
        return self._request("POST", "subscriptions", params)

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self._request("GET", f"subscriptions/{subscription_id}")

    def update_subscription(self, subscription_id: str, **changes: Any) -> Dict[str, Any]:
        """Update a subscription.

        ``price_id``/``quantity`` change the first subscription item; any other
        keyword (``pause_collection``, ``cancel_at_period_end``, ``metadata``)
        is passed through as a Stripe parameter.
        """
        price_id = changes.pop("price_id", None)
        quantity = changes.pop("quantity", None)
        params: Dict[str, Any] = dict(changes)
        if price_id or quantity:
            current = self.retrieve_subscription(subscription_id)
            item_id = subscription_item(current).get("id")
            item: Dict[str, Any] = {"id": item_id}
            if price_id:
                item["price"] = price_id
            if quantity:
                item["quantity"] = quantity
            params["items"] = [item]
            params.setdefault("proration_behavior", "create_prorations")
        return self._request("POST", f"subscriptions/{subscription_id}", params)

    def cancel_subscription(self, subscription_id: str, immediately: bool = False) -> Dict[str, Any]:
        if immediately:
            return self._request("DELETE", f"subscriptions/{subscription_id}")
        return self._request("POST", f"subscriptions/{subscription_id}", {"cancel_at_period_end": True})

    def retrieve_price(self, price_id: str) -> Dict[str, Any]:
        return self._request("GET", f"prices/{price_id}")

    # Payment methods

    def retrieve_payment_method(self, payment_method_id: str) -> Dict[str, Any]:
        return self._request("GET", f"payment_methods/{payment_method_id}")

    def attach_payment_method(self, payment_method_id: str, customer: str) -> Dict[str, Any]:
        return self._request("POST", f"payment_methods/{payment_method_id}/attach", {"customer": customer})

    def detach_payment_method(self, payment_method_id: str) -> Dict[str, Any]:
        return self._request("POST", f"payment_methods/{payment_method_id}/detach")

    # Webhooks

    def construct_webhook_event(self, payload: Union[bytes, str], signature: str) -> Dict[str, Any]:
        if not self.webhook_secret:
            raise WebhookSignatureError("Webhook secret is not configured")
        if isinstance(payload, str):
            payload = payload.encode("utf-8")

        timestamp, signatures = _parse_signature_header(signature)
        if timestamp is None or not signatures:
            raise WebhookSignatureError("Malformed Stripe-Signature header")

        expected = _signature(self.webhook_secret, timestamp, payload)
        if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
            raise WebhookSignatureError("No signatures found matching the expected signature")
        if self.tolerance and abs(time.time() - timestamp) > self.tolerance:
            raise WebhookSignatureError("Timestamp outside the tolerance zone")

        try:
            return json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise WebhookSignatureError("Webhook payload is not valid JSON") from exc


def _signature(secret: str, timestamp: int, payload: bytes) -> str:
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def _parse_signature_header(header: str) -> Tuple[Optional[int], List[str]]:
    timestamp = None
    signatures: List[str] = []
    for part in (header or "").split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == "v1":
            signatures.append(value)
    return timestamp, signatures


def sign_payload(payload: Union[bytes, str], secret: str, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header value for ``payload``."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return f"t={timestamp},v1={_signature(secret, timestamp, payload)}"


def subscription_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
    """First item of a subscription; single-plan subscriptions only have one."""
    items: Iterable[Dict[str, Any]] = (subscription.get("items") or {}).get("data") or []
    return next(iter(items), {})
