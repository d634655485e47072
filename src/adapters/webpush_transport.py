"""Web Push transport — implements PushTransport with pywebpush.

Also holds the factory that decides whether dispatch is enabled: without
a complete, loadable VAPID key set it returns None and the dispatcher runs
disabled.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import re

import requests
from py_vapid import Vapid
from pywebpush import WebPushException, webpush

from src.config import Settings, settings
from src.data.models import PushSubscriptionRecord
from src.ports.push_port import ERROR, GONE, SUCCESS, DeliveryOptions, DeliveryOutcome

logger = logging.getLogger(__name__)

# Push services answer 404/410 for subscriptions that will never work again.
GONE_STATUS_CODES = (404, 410)

_TOPIC_MAX_LENGTH = 32
_TOPIC_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def topic_header(topic: str) -> str:
    """Fit a topic into the Web Push Topic header (<= 32 URL-safe base64 chars)."""
    if len(topic) <= _TOPIC_MAX_LENGTH and _TOPIC_PATTERN.match(topic):
        return topic
    digest = hashlib.sha256(topic.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")[:_TOPIC_MAX_LENGTH]


class WebPushTransport:
    """pywebpush implementation of PushTransport."""

    def __init__(self, vapid_private_key: str, vapid_subject: str, timeout: int = 10) -> None:
        self._vapid_private_key = vapid_private_key
        self._vapid_subject = vapid_subject
        self._timeout = timeout

    def _send(self, payload: str, subscription: PushSubscriptionRecord, options: DeliveryOptions):
        headers = {"Urgency": options.urgency}
        if options.topic:
            headers["Topic"] = topic_header(options.topic)
        return webpush(
            subscription_info={
                "endpoint": subscription.endpoint,
                "keys": {"p256dh": subscription.p256dh_key, "auth": subscription.auth_key},
            },
            data=payload,
            vapid_private_key=self._vapid_private_key,
            # pywebpush adds aud/exp to the claims dict, so pass a fresh one.
            vapid_claims={"sub": self._vapid_subject},
            ttl=options.ttl,
            headers=headers,
            timeout=self._timeout,
        )

    async def deliver(
        self,
        payload: str,
        subscription: PushSubscriptionRecord,
        options: DeliveryOptions,
    ) -> DeliveryOutcome:
        try:
            await asyncio.to_thread(self._send, payload, subscription, options)
        except WebPushException as exc:
            status_code = getattr(exc.response, "status_code", None)
            if status_code in GONE_STATUS_CODES:
                return DeliveryOutcome(status=GONE, error=str(exc), status_code=status_code)
            return DeliveryOutcome(status=ERROR, error=str(exc), status_code=status_code)
        except requests.RequestException as exc:
            return DeliveryOutcome(status=ERROR, error=f"network error: {exc}")
        return DeliveryOutcome(status=SUCCESS)


def create_push_transport(config: Settings | None = None) -> WebPushTransport | None:
    """Return a transport when VAPID credentials are configured, else None."""
    config = config or settings
    if not config.push_configured:
        logger.warning("VAPID keys not configured; push notifications disabled")
        return None

    try:
        Vapid.from_string(private_key=config.VAPID_PRIVATE_KEY)
    except Exception as exc:
        logger.error("VAPID private key could not be loaded, push disabled: %s", exc)
        return None

    return WebPushTransport(
        vapid_private_key=config.VAPID_PRIVATE_KEY,
        vapid_subject=config.VAPID_SUBJECT,
        timeout=config.PUSH_TIMEOUT_SECONDS,
    )
