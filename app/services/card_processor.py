"""Card escrow processor: authorization holds, capture, refund, renewal.

Supports two backends:
- Stripe PaymentIntents with ``capture_method=manual`` (production)
- Log-only (development / testing) - logs each call and returns synthetic ids

Set CARD_PROCESSOR_BACKEND=stripe and STRIPE_SECRET_KEY for production.

Card networks drop an uncaptured hold after about seven days, and a hold
cannot be extended in place, so ``renew`` places a fresh hold for the same
amount and card and then voids the old one.
"""

import logging
import secrets
from dataclasses import dataclass
from typing import Protocol

import httpx

from app.config import settings

logger = logging.getLogger(__name__)


class CardProcessorError(Exception):
    """The processor rejected or failed a call."""


@dataclass(frozen=True)
class Authorization:
    payment_intent_id: str
    amount_cents: int


class CardProcessor(Protocol):
    async def authorize(
        self, customer_id: str | None, amount_cents: int, metadata: dict[str, str]
    ) -> Authorization: ...

    async def capture(self, payment_intent_id: str) -> None: ...

    async def refund(self, payment_intent_id: str) -> None: ...

    async def cancel(self, payment_intent_id: str) -> None: ...

    async def renew(self, payment_intent_id: str) -> Authorization: ...


class LogCardProcessor:
    """Development processor - logs calls instead of charging cards."""

    async def authorize(
        self, customer_id: str | None, amount_cents: int, metadata: dict[str, str]
    ) -> Authorization:
        intent_id = f"pi_log_{secrets.token_hex(8)}"
        logger.info("CARD authorize customer=%s amount_cents=%d -> %s", customer_id, amount_cents, intent_id)
        return Authorization(intent_id, amount_cents)

    async def capture(self, payment_intent_id: str) -> None:
        logger.info("CARD capture %s", payment_intent_id)

    async def refund(self, payment_intent_id: str) -> None:
        logger.info("CARD refund %s", payment_intent_id)

    async def cancel(self, payment_intent_id: str) -> None:
        logger.info("CARD cancel %s", payment_intent_id)

    async def renew(self, payment_intent_id: str) -> Authorization:
        new_id = f"pi_log_{secrets.token_hex(8)}"
        logger.info("CARD renew %s -> %s", payment_intent_id, new_id)
        return Authorization(new_id, 0)


class StripeCardProcessor:
    """Production processor - Stripe REST API via httpx."""

    def _client(self) -> httpx.AsyncClient:
        if not settings.stripe_secret_key:
            raise CardProcessorError("Stripe not configured")
        return httpx.AsyncClient(
            base_url=settings.stripe_api_base,
            auth=(settings.stripe_secret_key, ""),
            timeout=settings.stripe_timeout_seconds,
        )

    async def _post(self, path: str, data: dict | None = None) -> dict:
        try:
            async with self._client() as client:
                resp = await client.post(path, data=data or {})
                resp.raise_for_status()
                return resp.json()
        except httpx.HTTPError as e:
            raise CardProcessorError(f"Stripe call {path} failed: {e}") from e

    async def _get(self, path: str) -> dict:
        try:
            async with self._client() as client:
                resp = await client.get(path)
                resp.raise_for_status()
                return resp.json()
        except httpx.HTTPError as e:
            raise CardProcessorError(f"Stripe call {path} failed: {e}") from e

    async def authorize(
        self, customer_id: str | None, amount_cents: int, metadata: dict[str, str]
    ) -> Authorization:
        if not customer_id:
            raise CardProcessorError("Agent has no Stripe customer on file")
        data: dict[str, str | int] = {
            "amount": amount_cents,
            "currency": "usd",
            "customer": customer_id,
            "capture_method": "manual",
            "confirm": "true",
            "off_session": "true",
        }
        for key, value in metadata.items():
            data[f"metadata[{key}]"] = value
        intent = await self._post("/payment_intents", data)
        if intent.get("status") != "requires_capture":
            raise CardProcessorError(f"Authorization not placed. Status: {intent.get('status')}")
        return Authorization(intent["id"], amount_cents)

    async def capture(self, payment_intent_id: str) -> None:
        await self._post(f"/payment_intents/{payment_intent_id}/capture")

    async def refund(self, payment_intent_id: str) -> None:
        await self._post("/refunds", {"payment_intent": payment_intent_id})

    async def cancel(self, payment_intent_id: str) -> None:
        await self._post(f"/payment_intents/{payment_intent_id}/cancel")

    async def renew(self, payment_intent_id: str) -> Authorization:
        old = await self._get(f"/payment_intents/{payment_intent_id}")
        data: dict[str, str | int] = {
            "amount": old["amount"],
            "currency": old.get("currency", "usd"),
            "customer": old["customer"],
            "payment_method": old["payment_method"],
            "capture_method": "manual",
            "confirm": "true",
            "off_session": "true",
        }
        for key, value in (old.get("metadata") or {}).items():
            data[f"metadata[{key}]"] = value
        data["metadata[renewed_from]"] = payment_intent_id
        intent = await self._post("/payment_intents", data)
        if intent.get("status") != "requires_capture":
            raise CardProcessorError(f"Renewal hold not placed. Status: {intent.get('status')}")
        try:
            await self.cancel(payment_intent_id)
        except CardProcessorError:
            # New hold is in place; the old one lapses on its own
            logger.warning("Could not void superseded hold %s", payment_intent_id)
        return Authorization(intent["id"], old["amount"])


def get_card_processor() -> CardProcessor:
    if settings.card_processor_backend == "stripe":
        return StripeCardProcessor()
    return LogCardProcessor()
