"""Delivery provider implementations.

- ``HttpDeliveryProvider`` posts messages to an external delivery service.
- ``LoggingDeliveryProvider`` only logs; used in development and demos.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from app.config import Settings
from delivery.base import DeliveryProvider, DispatchResult

logger = logging.getLogger(__name__)

# Statuses worth another attempt; any other 4xx is permanent
RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


class HttpDeliveryProvider(DeliveryProvider):
    """Dispatch through an HTTP delivery service.

    Request:
        POST {base_url}/messages
        Idempotency-Key: <run_id>:<node_id>
        {"recipient": {...}, "template": {...}, "idempotency_key": "..."}

    Response (2xx):
        {"id": "<provider message id>"}
    """

    name = "http"

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def dispatch(
        self,
        recipient_context: dict[str, Any],
        template_ref: dict[str, Any],
        idempotency_key: str,
    ) -> DispatchResult:
        headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": idempotency_key,
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        payload = {
            "recipient": recipient_context,
            "template": template_ref,
            "idempotency_key": idempotency_key,
        }

        try:
            response = await self._get_client().post(
                f"{self.base_url}/messages", json=payload, headers=headers
            )
        except httpx.TimeoutException:
            logger.warning(f"Delivery timed out after {self.timeout}s ({idempotency_key})")
            return DispatchResult(
                success=False,
                error=f"Delivery timed out after {self.timeout}s",
                retryable=True,
            )
        except httpx.TransportError as e:
            logger.warning(f"Delivery transport error ({idempotency_key}): {e}")
            return DispatchResult(success=False, error=f"Transport error: {e}", retryable=True)

        if response.is_success:
            try:
                body = response.json()
            except ValueError:
                body = {}
            message_id = body.get("id") or body.get("message_id") or response.headers.get("X-Message-Id")
            return DispatchResult(
                success=True,
                provider_message_id=message_id,
                delivered_at=datetime.now(timezone.utc).isoformat(),
            )

        retryable = response.status_code in RETRYABLE_STATUS_CODES
        error = f"HTTP {response.status_code}: {response.text[:500]}"
        logger.warning(
            f"Delivery failed ({idempotency_key}): {error} "
            f"[{'retryable' if retryable else 'permanent'}]"
        )
        return DispatchResult(success=False, error=error, retryable=retryable)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


class LoggingDeliveryProvider(DeliveryProvider):
    """Log the message instead of sending it."""

    name = "log"

    def __init__(self):
        self.sent: list[dict[str, Any]] = []

    async def dispatch(
        self,
        recipient_context: dict[str, Any],
        template_ref: dict[str, Any],
        idempotency_key: str,
    ) -> DispatchResult:
        message_id = f"log-{uuid.uuid4().hex[:12]}"
        recipient = recipient_context.get("email") or recipient_context.get("subject_id", "?")
        label = template_ref.get("template") or template_ref.get("subject") or "(content)"
        logger.info(f"[delivery:log] {label} -> {recipient} ({idempotency_key}, {message_id})")
        self.sent.append({
            "recipient": recipient_context,
            "template": template_ref,
            "idempotency_key": idempotency_key,
            "message_id": message_id,
        })
        return DispatchResult(
            success=True,
            provider_message_id=message_id,
            delivered_at=datetime.now(timezone.utc).isoformat(),
        )


def build_delivery_provider(settings: Settings) -> DeliveryProvider:
    """Create the provider selected by ``DELIVERY_BACKEND``."""
    settings.validate_delivery()
    if settings.DELIVERY_BACKEND == "http":
        return HttpDeliveryProvider(
            base_url=settings.DELIVERY_SERVICE_URL,
            api_key=settings.DELIVERY_API_KEY,
            timeout=settings.DELIVERY_TIMEOUT,
        )
    return LoggingDeliveryProvider()
