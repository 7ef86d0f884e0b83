"""Fire-and-forget notification emitter invoked on every state transition."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, Field

from gametrust.config import Settings, get_settings
from gametrust.utils.time import utcnow

logger = logging.getLogger(__name__)


class NotificationEvent(BaseModel):
    type: str
    order_id: int | None = None
    dispute_id: int | None = None
    actor: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utcnow)


class NotificationEmitter(Protocol):
    def emit(self, event: NotificationEvent) -> None: ...


class LoggingEmitter:
    """Default emitter: structured log line per event."""

    def emit(self, event: NotificationEvent) -> None:
        logger.info("Notification", extra={"event": event.model_dump(mode="json")})


class WebhookEmitter:
    """POST each event as JSON to a downstream delivery service."""

    def __init__(self, url: str, *, timeout: float = 3.0, client: httpx.Client | None = None) -> None:
        self.url = url
        self._client = client or httpx.Client(timeout=timeout)

    def emit(self, event: NotificationEvent) -> None:
        try:
            response = self._client.post(self.url, json=event.model_dump(mode="json"))
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "Notification delivery failed",
                extra={"type": event.type, "order_id": event.order_id, "error": str(exc)},
            )

    def close(self) -> None:
        self._client.close()


_emitter: NotificationEmitter | None = None


def build_notification_emitter(settings: Settings) -> NotificationEmitter:
    if settings.NOTIFICATION_WEBHOOK_URL:
        return WebhookEmitter(settings.NOTIFICATION_WEBHOOK_URL, timeout=settings.NOTIFICATION_TIMEOUT_SECONDS)
    return LoggingEmitter()


def get_notification_emitter() -> NotificationEmitter:
    global _emitter
    if _emitter is None:
        _emitter = build_notification_emitter(get_settings())
    return _emitter


def set_notification_emitter(emitter: NotificationEmitter | None) -> None:
    global _emitter
    _emitter = emitter


def emit(
    event_type: str,
    *,
    order_id: int | None = None,
    dispute_id: int | None = None,
    actor: str | None = None,
    **data: Any,
) -> None:
    """Build and emit an event. Never raises into the caller."""

    event = NotificationEvent(type=event_type, order_id=order_id, dispute_id=dispute_id, actor=actor, data=data)
    try:
        get_notification_emitter().emit(event)
    except Exception:  # noqa: BLE001
        logger.exception("Notification emitter raised", extra={"type": event_type, "order_id": order_id})


__all__ = [
    "LoggingEmitter",
    "NotificationEmitter",
    "NotificationEvent",
    "WebhookEmitter",
    "build_notification_emitter",
    "emit",
    "get_notification_emitter",
    "set_notification_emitter",
]
