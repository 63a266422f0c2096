"""Fire-and-forget event delivery for fixture, verification and deployment changes.

Failures are logged but never raised: a state change that already
committed must not be reported as failed because a listener is down.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable

import httpx

logger = logging.getLogger(__name__)

_TIMEOUT = 5.0

EventListener = Callable[[str, str, dict], Awaitable[None]]

FIXTURE_CREATED = "fixture:created"
FIXTURE_UPDATED = "fixture:updated"
FIXTURE_STATUS_CHANGE = "fixture:status_change"
FIXTURE_DELETED = "fixture:deleted"
SPEC_UPLOADED = "spec:uploaded"
VERIFICATION_CREATED = "verification:created"
VERIFICATION_COMPLETED = "verification:completed"
DEPLOYMENT_CREATED = "deployment:created"


class WebhookEventSink:
    """POST events to an external notification service."""

    def __init__(self, url: str, timeout: float = _TIMEOUT):
        self.url = url
        self.timeout = timeout

    async def notify(self, tenant_id: str, event_type: str, payload: dict) -> None:
        if not self.url:
            logger.debug("notification_webhook_url not configured, skipping %s", event_type)
            return

        body = {
            "tenant_id": tenant_id,
            "type": event_type,
            "payload": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(self.url, json=body)
            resp.raise_for_status()
            logger.info("Event %s delivered to %s", event_type, self.url)


class EventDispatcher:
    """Fan an event out to every listener, swallowing listener failures."""

    def __init__(self, listeners: Iterable[EventListener] = ()):
        self._listeners: list[EventListener] = list(listeners)

    def subscribe(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    async def notify(self, tenant_id: str, event_type: str, payload: dict) -> None:
        for listener in self._listeners:
            try:
                await listener(tenant_id, event_type, payload)
            except Exception as exc:
                logger.warning("Event %s listener failed (non-fatal): %s", event_type, exc)


async def emit(sink, tenant_id: str, event_type: str, payload: dict) -> None:
    """Deliver one event through ``sink``. Silent on failure."""
    if sink is None:
        return
    try:
        await sink.notify(tenant_id, event_type, payload)
    except Exception as exc:
        logger.warning("Event %s delivery failed (non-fatal): %s", event_type, exc)
