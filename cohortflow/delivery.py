"""Delivery providers and delivery-event bookkeeping.

A provider exposes one coroutine, ``send(to, subject, html)``, returning a
:class:`DeliveryReceipt` or raising :class:`DeliveryError`. The dispatcher
treats every ``DeliveryError`` as a retryable failure.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from cohortflow.config import Settings, get_settings
from cohortflow.models import EmailCommunication, EmailDeliveryEvent
from cohortflow.utils import utcnow

log = logging.getLogger(__name__)


class DeliveryError(Exception):
    """The delivery provider refused or failed to accept a message."""
    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


@dataclass
class DeliveryReceipt:
    id: str
    raw: dict[str, Any] | None = None


class DeliveryProvider(Protocol):
    async def send(self, to: str, subject: str, html: str) -> DeliveryReceipt: ...


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class ResendProvider:
    """Sends mail through the Resend HTTP API."""

    def __init__(self, settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings or get_settings()
        self._transport = transport

    def _from_address(self) -> str:
        if self.settings.sandbox:
            return self.settings.sandbox_from
        if not self.settings.resend_from:
            raise DeliveryError("RESEND_FROM must be set for production sending", retryable=False)
        return self.settings.resend_from

    async def send(self, to: str, subject: str, html: str) -> DeliveryReceipt:
        if not self.settings.resend_api_key:
            raise DeliveryError("RESEND_API_KEY is not configured", retryable=False)
        if self.settings.sandbox:
            log.info("Sandbox mode: redirecting message for %s to %s", to, self.settings.sandbox_recipient)
            html = (
                f"<p><strong>SANDBOX:</strong> this message would normally be sent to {to}</p>{html}"
            )
            subject = f"[SANDBOX] {subject}"
            to = self.settings.sandbox_recipient
        payload = {"from": self._from_address(), "to": [to], "subject": subject, "html": html}
        try:
            async with httpx.AsyncClient(
                base_url=self.settings.resend_base_url,
                timeout=httpx.Timeout(self.settings.request_timeout_seconds),
                headers={"Authorization": f"Bearer {self.settings.resend_api_key}"},
                transport=self._transport,
            ) as client:
                resp = await client.post("/emails", json=payload)
        except httpx.HTTPError as exc:
            raise DeliveryError(f"Resend request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise DeliveryError(f"Resend returned {resp.status_code}: {resp.text[:200]}")
        data = resp.json()
        if not data.get("id"):
            raise DeliveryError(f"Resend response missing id: {data}")
        return DeliveryReceipt(id=str(data["id"]), raw=data)


class LoggingProvider:
    """Logs instead of sending. Used when no API key is configured."""

    def __init__(self) -> None:
        self._counter = 0

    async def send(self, to: str, subject: str, html: str) -> DeliveryReceipt:
        self._counter += 1
        log.info("Would send %r to %s", subject, to)
        return DeliveryReceipt(id=f"log-{self._counter}")


def provider_from_settings(settings: Settings | None = None) -> DeliveryProvider:
    settings = settings or get_settings()
    if settings.resend_api_key:
        return ResendProvider(settings)
    log.warning("RESEND_API_KEY not set, messages will only be logged")
    return LoggingProvider()


# ---------------------------------------------------------------------------
# Provider webhooks
# ---------------------------------------------------------------------------

WEBHOOK_EVENT_TYPES = {
    "email.sent": "sent",
    "email.delivered": "delivered",
    "email.delivery_delayed": "delivery_delayed",
    "email.bounced": "bounced",
    "email.complained": "complained",
    "email.opened": "opened",
    "email.clicked": "clicked",
}


def record_delivery_event(
    session: Session,
    provider_message_id: str,
    event_type: str,
    occurred_at: datetime | None = None,
    payload: dict[str, Any] | None = None,
) -> EmailCommunication | None:
    """Apply a provider webhook event to its message (caller must commit).

    Returns None for unknown messages or event types; those are logged and
    acknowledged rather than treated as errors.
    """
    mapped = WEBHOOK_EVENT_TYPES.get(event_type)
    if mapped is None:
        log.warning("Unknown delivery event type: %s", event_type)
        return None
    comm = session.execute(
        select(EmailCommunication).where(EmailCommunication.provider_message_id == provider_message_id)
    ).scalars().first()
    if comm is None:
        log.warning("No message found for provider id %s", provider_message_id)
        return None

    when = occurred_at or utcnow()
    session.add(EmailDeliveryEvent(
        communication_id=comm.id, event_type=mapped, provider_event_id=provider_message_id,
        occurred_at=when, payload_json=json.dumps(payload or {}, default=str),
    ))

    if mapped == "delivered":
        if comm.status not in ("opened", "clicked"):
            comm.status = "delivered"
        comm.delivered_at = when
    elif mapped == "bounced":
        comm.status = "bounced"
        comm.bounced_at = when
        payload = payload or {}
        reason = payload.get("reason") or (payload.get("data") or {}).get("reason")
        comm.error_message = str(reason or "Email bounced")
    elif mapped == "complained":
        comm.status = "complained"
        comm.error_message = "Recipient marked as spam"
    elif mapped == "opened":
        if comm.status != "clicked":
            comm.status = "opened"
        comm.opened_at = when
    elif mapped == "clicked":
        comm.status = "clicked"
        comm.clicked_at = when
        if comm.opened_at is None:
            comm.opened_at = when
    return comm
