"""Stripe payment processor client using the REST API over httpx."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from cally.scheduling.errors import PaymentProcessorError, sanitize_error_message
from cally.scheduling.ports import PaymentIntent, PaymentProcessor, Refund

logger = logging.getLogger(__name__)

STRIPE_API_BASE_URL = "https://api.stripe.com/v1"


def _stripe_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return sanitize_error_message(error["message"])
    return sanitize_error_message(response.text or "Request failed without an error payload")


class StripePaymentProcessor(PaymentProcessor):
    def __init__(
        self,
        api_key: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 20.0,
    ) -> None:
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self._headers = {"Authorization": f"Bearer {api_key}"}

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        data: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        headers = dict(self._headers)
        if idempotency_key is not None:
            headers["Idempotency-Key"] = idempotency_key
        try:
            response = await self._http_client.request(
                method, f"{STRIPE_API_BASE_URL}{path}", data=data, headers=headers
            )
        except httpx.HTTPError as exc:
            raise PaymentProcessorError(f"request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise PaymentProcessorError(
                _stripe_error_message(response), status_code=response.status_code
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise PaymentProcessorError("Stripe returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise PaymentProcessorError("Stripe returned an unexpected payload shape")
        return payload

    async def get_payment_intent(self, intent_id: str) -> PaymentIntent:
        payload = await self._request("GET", f"/payment_intents/{quote(intent_id, safe='')}")
        amount = payload.get("amount_received") or payload.get("amount")
        if not isinstance(amount, int):
            raise PaymentProcessorError(f"payment intent {intent_id} has no amount")
        return PaymentIntent(
            id=str(payload.get("id", intent_id)),
            amount=amount,
            currency=str(payload.get("currency", "aud")),
        )

    async def create_full_refund(self, intent_id: str) -> Refund:
        payload = await self._request(
            "POST",
            "/refunds",
            data={"payment_intent": intent_id},
            idempotency_key=f"cally-refund-{intent_id}",
        )
        refund_id = payload.get("id")
        if not isinstance(refund_id, str) or not refund_id:
            raise PaymentProcessorError("refund response missing id")
        amount = payload.get("amount")
        logger.info("Refunded payment intent %s (refund %s)", intent_id, refund_id)
        return Refund(
            id=refund_id,
            amount=amount if isinstance(amount, int) else 0,
            status=str(payload.get("status", "succeeded")),
        )
