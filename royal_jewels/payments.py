"""Checkout-session client for the card payment provider, plus webhook signature checks."""

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from . import config
from .errors import InvalidInput, SignatureError, UpstreamFailure

logger = logging.getLogger(__name__)


@dataclass
class LineItem:
    name: str
    unit_amount: float
    quantity: int = 1
    description: Optional[str] = None


@dataclass
class CheckoutSession:
    id: str
    url: str


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


def is_paid(session: Dict[str, Any]) -> bool:
    return session.get("payment_status") == "paid"


def session_form(
    items: List[LineItem],
    success_url: str,
    cancel_url: str,
    metadata: Dict[str, Any],
    currency: str,
) -> Dict[str, Any]:
    """Flatten a checkout session request into the provider's bracketed form encoding."""
    form: Dict[str, Any] = {
        "mode": "payment",
        "payment_method_types[0]": "card",
        "success_url": success_url,
        "cancel_url": cancel_url,
    }
    for i, item in enumerate(items):
        prefix = f"line_items[{i}]"
        form[f"{prefix}[price_data][currency]"] = currency
        form[f"{prefix}[price_data][product_data][name]"] = item.name
        if item.description:
            form[f"{prefix}[price_data][product_data][description]"] = item.description
        form[f"{prefix}[price_data][unit_amount]"] = to_minor_units(item.unit_amount)
        form[f"{prefix}[quantity]"] = item.quantity
    for key, value in metadata.items():
        form[f"metadata[{key}]"] = str(value)
    return form


class StripeGateway:
    """
    Thin client over the hosted checkout API.

    Every request is retried a bounded number of times with exponential backoff.
    Session creation always carries an Idempotency-Key, so a retried POST can
    never open a second session for the same purchase.
    """

    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        currency: Optional[str] = None,
    ):
        self.secret_key = secret_key if secret_key is not None else config.STRIPE_SECRET_KEY
        self.base_url = (base_url or config.STRIPE_API_BASE).rstrip("/")
        self.timeout = timeout or config.PAYMENT_TIMEOUT
        self.currency = currency or config.CURRENCY
        retries = Retry(
            total=config.PAYMENT_MAX_RETRIES if max_retries is None else max_retries,
            backoff_factor=0.5,
            status_forcelist=(429, 500, 502, 503, 504),
            allowed_methods=frozenset({"GET", "POST"}),
            raise_on_status=False,
        )
        # Use a session for connection pooling
        self.session = requests.Session()
        self.session.mount("https://", HTTPAdapter(max_retries=retries))
        self.session.mount("http://", HTTPAdapter(max_retries=retries))

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if extra:
            headers.update(extra)
        return headers

    def _handle_error(self, response: requests.Response, prefix: str) -> None:
        """Log the provider's error text and raise a generic UpstreamFailure."""
        try:
            response.raise_for_status()
        except requests.HTTPError as e:
            logger.error("%s failed (%s): %s", prefix, response.status_code, response.text[:500])
            raise UpstreamFailure() from e

    def _request(self, method: str, path: str, prefix: str, **kwargs) -> Dict[str, Any]:
        if not self.secret_key:
            logger.error("%s skipped: STRIPE_SECRET_KEY is not configured", prefix)
            raise UpstreamFailure()
        try:
            r = self.session.request(method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.error("%s failed: %s", prefix, e)
            raise UpstreamFailure() from e

        self._handle_error(r, prefix)
        try:
            return r.json()
        except ValueError as e:
            logger.error("%s returned a non-JSON body", prefix)
            raise UpstreamFailure() from e

    def create_session(
        self,
        items: List[LineItem],
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, Any],
        idempotency_key: str,
    ) -> CheckoutSession:
        """
        POST /checkout/sessions

        Opens a hosted checkout for the given line items and returns its id and redirect URL.
        """
        data = self._request(
            "POST",
            "/checkout/sessions",
            "Checkout session creation",
            data=session_form(items, success_url, cancel_url, metadata, self.currency),
            headers=self._headers({"Idempotency-Key": idempotency_key}),
        )
        if not data.get("id") or not data.get("url"):
            logger.error("Checkout session creation returned no id/url: %s", data)
            raise UpstreamFailure()
        return CheckoutSession(id=data["id"], url=data["url"])

    def retrieve_session(self, session_id: str) -> Dict[str, Any]:
        """
        GET /checkout/sessions/{id}

        Returns the session with its ``payment_status`` and ``metadata``.
        """
        return self._request(
            "GET",
            f"/checkout/sessions/{quote(session_id, safe='')}",
            "Checkout session lookup",
            headers=self._headers(),
        )


@lru_cache()
def get_gateway() -> StripeGateway:
    return StripeGateway()


def verify_signature(
    payload: bytes,
    header: Optional[str],
    secret: str,
    tolerance: int = config.WEBHOOK_TOLERANCE,
    now: Optional[float] = None,
) -> None:
    """Check a ``t=<unix>,v1=<hex hmac>`` signature header against the raw request body."""
    if not secret:
        raise SignatureError("Webhook secret is not configured")
    if not header:
        raise SignatureError("Missing signature header")

    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    if not timestamp or not signatures:
        raise SignatureError("Malformed signature header")
    try:
        signed_at = int(timestamp)
    except ValueError:
        raise SignatureError("Malformed signature header")

    expected = hmac.new(secret.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise SignatureError("Signature mismatch")

    current = time.time() if now is None else now
    if abs(current - signed_at) > tolerance:
        raise SignatureError("Signature timestamp outside tolerance")


def parse_event(payload: bytes, header: Optional[str], secret: Optional[str] = None) -> Dict[str, Any]:
    verify_signature(payload, header, config.STRIPE_WEBHOOK_SECRET if secret is None else secret)
    try:
        event = json.loads(payload)
    except ValueError:
        raise InvalidInput("Malformed event payload")
    if not isinstance(event, dict):
        raise InvalidInput("Malformed event payload")
    return event
