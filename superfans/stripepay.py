from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple, TypedDict
import logging

import orjson
import stripe
from starlette.concurrency import run_in_threadpool

from . import config
from .errors import Retryable, ServerError, Unauthorized, ValidationFailed
from .infra.timings import timeit

log = logging.getLogger(__name__)


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CheckoutSession(TypedDict):
    session_id: str
    url: str


class PaymentAdapter(ABC):
    @abstractmethod
    async def create_checkout_session(
        self, *, line_items: List[Dict[str, Any]], metadata: Dict[str, str],
        success_url: str, cancel_url: str, idempotency_key: str,
        customer_email: Optional[str] = None,
        client_reference_id: Optional[str] = None,
    ) -> CheckoutSession: ...

    # session object incl. expanded payment_intent
    @abstractmethod
    async def retrieve_session(self, session_id: str) -> Dict[str, Any]: ...

    @abstractmethod
    async def expire_session(self, session_id: str) -> None: ...

    # returns the provider's refund id
    @abstractmethod
    async def create_refund(
        self, *, payment_intent: str, amount: int, metadata: Dict[str, str],
        idempotency_key: str,
    ) -> str: ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    def event_kind(self, event: dict) -> str:
        return event.get("type", "")

    # (event_id, object_id)
    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        obj = (event.get("data") or {}).get("object") or {}
        return event.get("id", ""), obj.get("id")


def _plain(obj: Any) -> Dict[str, Any]:
    # StripeObject -> plain dict, independent of SDK version
    return orjson.loads(str(obj))


def line_item(name: str, description: str, unit_amount: int,
              quantity: int = 1, currency: str = config.CURRENCY,
              metadata: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    product: Dict[str, Any] = {"name": name, "description": description}
    if metadata:
        product["metadata"] = metadata
    return {
        "price_data": {
            "currency": currency,
            "product_data": product,
            "unit_amount": unit_amount,
        },
        "quantity": quantity,
    }


# ----------------------------
# Stripe implementation
# ----------------------------
class StripePay(PaymentAdapter):

    def __init__(self, api_key: str = config.STRIPE_SECRET_KEY,
                 webhook_secret: str = config.STRIPE_WEBHOOK_SECRET,
                 api_version: str = config.STRIPE_API_VERSION) -> None:
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.api_version = api_version

    def _opts(self) -> Dict[str, Any]:
        if not self.api_key:
            raise ServerError("Stripe is not configured")
        return {"api_key": self.api_key, "stripe_version": self.api_version}

    async def _call(self, kind: str, fn, *args, **kw):
        try:
            async with timeit(f"stripe.{kind}"):
                return await run_in_threadpool(fn, *args, **kw)
        except stripe.APIConnectionError as e:
            log.warning("[Stripe] %s: connection error: %s", kind, e)
            raise Retryable("Payment provider unreachable, retry shortly")
        except stripe.RateLimitError as e:
            log.warning("[Stripe] %s: rate limited: %s", kind, e)
            raise Retryable("Payment provider busy, retry shortly")
        except stripe.StripeError as e:
            log.error("[Stripe] %s failed: %s", kind, e)
            raise ServerError("Payment provider error",
                              details=getattr(e, "user_message", None))

    async def create_checkout_session(
        self, *, line_items, metadata, success_url, cancel_url,
        idempotency_key, customer_email=None, client_reference_id=None,
    ) -> CheckoutSession:
        params: Dict[str, Any] = {
            "mode": "payment",
            "line_items": line_items,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
        }
        if customer_email:
            params["customer_email"] = customer_email
        if client_reference_id:
            params["client_reference_id"] = client_reference_id
        session = await self._call(
            "checkout_session", stripe.checkout.Session.create,
            idempotency_key=idempotency_key, **params, **self._opts(),
        )
        return {"session_id": session.id, "url": session.url}

    async def retrieve_session(self, session_id: str) -> Dict[str, Any]:
        session = await self._call(
            "retrieve_session", stripe.checkout.Session.retrieve,
            session_id, expand=["payment_intent"], **self._opts(),
        )
        return _plain(session)

    async def expire_session(self, session_id: str) -> None:
        await self._call(
            "expire_session", stripe.checkout.Session.expire,
            session_id, **self._opts(),
        )

    async def create_refund(self, *, payment_intent, amount, metadata,
                            idempotency_key) -> str:
        refund = await self._call(
            "refund", stripe.Refund.create,
            payment_intent=payment_intent,
            amount=amount,
            reason="requested_by_customer",
            metadata=metadata,
            idempotency_key=idempotency_key,
            **self._opts(),
        )
        return refund.id

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("stripe-signature")
        if not sig:
            raise ValidationFailed("Missing stripe-signature header")
        if not self.webhook_secret:
            log.error("[Stripe] STRIPE_WEBHOOK_SECRET not configured")
            raise ServerError("Webhook secret not configured")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"), sig, self.webhook_secret,
                stripe.Webhook.DEFAULT_TOLERANCE,
            )
        except stripe.SignatureVerificationError as e:
            log.warning("[Stripe] webhook signature verification failed: %s",
                        e)
            raise Unauthorized("Invalid webhook signature")
        try:
            return orjson.loads(payload)
        except orjson.JSONDecodeError:
            raise ValidationFailed("Invalid JSON")
