"""Signed webhook delivery with retry."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
from enum import Enum
from typing import Any, Dict, List, Optional

import requests

from ..config.settings import WebhookConfig, get_app_config
from ..datalake.schemas import PersistedTransaction, TransactionStatus
from ..monitoring.logger import get_logger, log_fields
from ..monitoring.metrics import METRICS
from ..realtime.publisher import Event, EventType, address_from_topic
from ..utils.constants import utc_now
from ..utils.retry import RetryPolicy

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"


class WebhookEvent(str, Enum):
    PAYMENT_RECEIVED = "payment_received"
    BALANCE_UPDATED = "balance_updated"
    TRANSACTION_STATUS_CHANGED = "transaction_status_changed"
    DAILY_SUMMARY = "daily_summary"
    TEST = "webhook_test"


class WebhookDeliveryError(RuntimeError):
    """Raised for a single failed delivery attempt."""


def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str, secret: str) -> bool:
    return hmac.compare_digest(sign_payload(body, secret), signature or "")


class WebhookNotifier:
    """Posts JSON envelopes ``{event, timestamp, data}`` to every configured URL.

    Each URL is retried with exponential backoff; a URL that still fails is
    logged and reported as ``False``, never raised.
    """

    def __init__(
        self,
        config: Optional[WebhookConfig] = None,
        session: Optional[requests.Session] = None,
        *,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self._config = config or get_app_config().webhooks
        self._session = session or requests.Session()
        self._retry = retry_policy or RetryPolicy.for_webhooks(self._config)
        self._logger = get_logger(__name__)

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    def _encode(self, event: WebhookEvent, data: Dict[str, Any]) -> bytes:
        envelope = {"event": event.value, "timestamp": utc_now().isoformat(), "data": data}
        return json.dumps(envelope, default=str, separators=(",", ":")).encode("utf-8")

    def _headers(self, body: bytes) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._config.user_agent,
            TIMESTAMP_HEADER: utc_now().isoformat(),
        }
        if self._config.secret:
            headers[SIGNATURE_HEADER] = sign_payload(body, self._config.secret)
        return headers

    def _post(self, url: str, body: bytes) -> None:
        try:
            response = self._session.post(
                url, data=body, headers=self._headers(body), timeout=self._config.timeout_seconds
            )
        except requests.RequestException as exc:
            raise WebhookDeliveryError(f"{url}: {exc}") from exc
        if not 200 <= response.status_code < 300:
            raise WebhookDeliveryError(f"{url}: HTTP {response.status_code}")

    async def _deliver(self, url: str, body: bytes) -> bool:
        async def attempt() -> None:
            await asyncio.to_thread(self._post, url, body)

        try:
            await self._retry.run(attempt, retry_on=(WebhookDeliveryError,))
        except WebhookDeliveryError as exc:
            METRICS.increment("webhooks.failed")
            self._logger.error("Webhook failed after %d attempts: %s", self._retry.max_attempts, exc)
            return False
        METRICS.increment("webhooks.delivered")
        return True

    async def send(self, event: WebhookEvent, data: Dict[str, Any], urls: Optional[List[str]] = None) -> bool:
        targets = urls if urls is not None else [str(url) for url in self._config.urls]
        if not targets:
            self._logger.debug("No webhook URL configured, skipping %s", event.value)
            return False
        body = self._encode(event, data)
        with log_fields(webhook_event=event.value):
            results = await asyncio.gather(*(self._deliver(url, body) for url in targets))
        return all(results)

    async def send_balance(self, address: str, balance: Dict[str, Any]) -> bool:
        return await self.send(WebhookEvent.BALANCE_UPDATED, {"address": address, **balance})

    async def send_status_change(
        self, record: PersistedTransaction, previous: TransactionStatus
    ) -> bool:
        return await self.send(
            WebhookEvent.TRANSACTION_STATUS_CHANGED,
            {
                "signature": record.signature,
                "oldStatus": previous.value,
                "newStatus": record.status.value,
                "amountSOL": record.amount_sol,
                "sender": record.sender,
                "receiver": record.receiver,
            },
        )

    async def send_daily_summary(self, summary: Dict[str, Any]) -> bool:
        return await self.send(WebhookEvent.DAILY_SUMMARY, summary)

    async def send_test(self, url: str) -> bool:
        return await self.send(
            WebhookEvent.TEST,
            {"message": "Webhook test delivery", "timestamp": utc_now().isoformat()},
            urls=[url],
        )

    async def handle_event(self, event: Event) -> None:
        """Publisher hook: forward inbound payments and balance changes."""

        if not self.enabled:
            return
        if event.type is EventType.TRANSACTION and event.payload.get("direction") == "IN":
            await self.send(
                WebhookEvent.PAYMENT_RECEIVED,
                {
                    "signature": event.payload.get("signature"),
                    "sender": event.payload.get("fromAddress"),
                    "receiver": event.payload.get("toAddress"),
                    "amountSOL": event.payload.get("amount"),
                    "amountUSD": event.payload.get("amountUSD"),
                    "status": event.payload.get("status"),
                    "blockTime": event.payload.get("blockTime"),
                },
            )
        elif event.type is EventType.BALANCE:
            address = address_from_topic(event.topic)
            if address:
                await self.send_balance(address, event.payload)

    def close(self) -> None:
        self._session.close()


__all__ = [
    "SIGNATURE_HEADER",
    "WebhookDeliveryError",
    "WebhookEvent",
    "WebhookNotifier",
    "sign_payload",
    "verify_signature",
]
