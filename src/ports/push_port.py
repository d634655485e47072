"""Push port — abstract interface for the push delivery primitive.

The dispatcher depends on this protocol, never on a specific Web Push library.
A transport reports one of three outcomes per subscription: delivered,
subscription gone for good, or a (transient) error.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from src.data.models import PushSubscriptionRecord

SUCCESS = "success"
GONE = "gone"
ERROR = "error"

DEFAULT_TTL_SECONDS = 3600
DEFAULT_URGENCY = "normal"


@dataclass
class DeliveryOptions:
    ttl: int = DEFAULT_TTL_SECONDS
    urgency: str = DEFAULT_URGENCY
    topic: str | None = None          # collapses notifications sharing a topic


@dataclass
class DeliveryOutcome:
    status: str                       # success | gone | error
    error: str | None = None
    status_code: int | None = None

    @property
    def success(self) -> bool:
        return self.status == SUCCESS


class PushTransport(Protocol):
    """Abstract delivery interface used by the push dispatcher."""

    async def deliver(
        self,
        payload: str,
        subscription: PushSubscriptionRecord,
        options: DeliveryOptions,
    ) -> DeliveryOutcome: ...
