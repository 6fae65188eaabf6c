"""Delivery collaborator contract.

The engine hands an action's template reference and the recipient's context
to a ``DeliveryProvider`` and only looks at the ``DispatchResult``. Template
rendering, provider selection and rate limiting live behind this contract.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class DispatchResult:
    """Result of one dispatch attempt."""
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False
    delivered_at: Optional[str] = None

    def to_event_data(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "provider_message_id": self.provider_message_id}
        return {"success": False, "error": self.error, "retryable": self.retryable}


class DeliveryProvider(ABC):
    """Abstract base for message delivery providers."""

    name: str = "base"

    @abstractmethod
    async def dispatch(
        self,
        recipient_context: dict[str, Any],
        template_ref: dict[str, Any],
        idempotency_key: str,
    ) -> DispatchResult:
        """Send one message.

        Implementations report failures through the result instead of
        raising. ``idempotency_key`` is stable across retries of one visit
        to an action and changes when a loop revisits it.
        """
        ...

    async def close(self) -> None:
        """Release any held connections."""
        return None
