"""Webhook adapter - POSTs notifications as signed JSON."""

import hashlib
import hmac
import json
import logging
import time
from typing import Optional

import httpx

from ..models import NotificationChannel
from .base import ChannelAdapter, NotificationPayload, SendResult
from .errors import format_error

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Shipnotify-Signature"
TIMESTAMP_HEADER = "X-Shipnotify-Timestamp"
IDEMPOTENCY_HEADER = "Idempotency-Key"


def sign_payload(secret: str, timestamp: str, body: bytes) -> str:
    """HMAC-SHA256 over ``{timestamp}.{body}``, hex encoded."""
    message = timestamp.encode() + b"." + body
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_signature(secret: str, timestamp: str, body: bytes, signature: str) -> bool:
    """Receiver-side check for a signature produced by ``sign_payload``."""
    if not secret or not signature:
        return False
    expected = sign_payload(secret, timestamp, body)
    return hmac.compare_digest(expected, signature)


class WebhookAdapter(ChannelAdapter):
    """Delivers WEBHOOK notifications; the recipient is the target URL."""

    channel = NotificationChannel.WEBHOOK

    def __init__(
        self,
        signing_secret: str = "",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.signing_secret = signing_secret
        self.timeout = timeout
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def build_body(self, payload: NotificationPayload) -> bytes:
        return json.dumps(
            {
                "channel": payload.channel.value,
                "recipient": payload.recipient,
                "subject": payload.subject,
                "body": payload.body,
                "metadata": payload.metadata,
                "dedupeKey": payload.dedupe_key,
            },
            default=str,
        ).encode()

    async def send(self, payload: NotificationPayload) -> SendResult:
        body = self.build_body(payload)
        headers = {"Content-Type": "application/json"}
        if payload.dedupe_key:
            headers[IDEMPOTENCY_HEADER] = payload.dedupe_key
        if self.signing_secret:
            timestamp = str(int(time.time()))
            headers[TIMESTAMP_HEADER] = timestamp
            headers[SIGNATURE_HEADER] = sign_payload(
                self.signing_secret, timestamp, body
            )

        try:
            client = await self._get_client()
            response = await client.post(payload.recipient, content=body, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as e:
            error = format_error(e, "webhook receiver")
            logger.error(f"Webhook delivery to {payload.recipient} failed: {error}")
            return SendResult(success=False, error=error)

        provider_id = response.headers.get("X-Request-Id") or f"webhook-{response.status_code}"
        logger.info(f"Delivered webhook to {payload.recipient} ({response.status_code})")
        return SendResult(success=True, provider_id=provider_id)

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
