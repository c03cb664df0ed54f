"""
Outbound alert notifications — Slack, generic webhook, e-mail and in-app.

Each channel has a sender with one async ``send`` method. ``Notifier`` fans an
alert out to its channels; ``deliver_alert`` never raises (failures are logged
and reported per channel), ``send_test`` raises ``DeliveryError`` so the
test-delivery endpoint can surface it.
"""
from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
from abc import ABC, abstractmethod
from dataclasses import dataclass
from urllib.parse import urlsplit

import httpx

from grc_api.config import settings
from grc_api.models.alert import Alert, AlertRule
from grc_api.models.base import utcnow
from grc_api.schemas.common import iso

logger = logging.getLogger(__name__)

ALLOWED_WEBHOOK_HEADERS = {
    "authorization", "content-type", "x-api-key",
    "x-request-id", "x-correlation-id", "user-agent",
}
CUSTOM_HEADER_PREFIX = "x-custom-"
ALLOWED_HEADERS_HINT = (
    "Authorization, Content-Type, X-API-Key, X-Request-ID, X-Correlation-ID, User-Agent, X-Custom-*"
)

_PRIVATE_NETWORKS = [ipaddress.ip_network(n) for n in (
    "10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16", "169.254.0.0/16",
    "127.0.0.0/8", "::1/128", "fc00::/7", "fe80::/10",
)]


class DeliveryError(Exception):
    pass


def is_https(url: str | None) -> bool:
    return bool(url) and url.lower().startswith("https://")


def is_allowed_header(name: str) -> bool:
    lower = name.lower()
    return lower in ALLOWED_WEBHOOK_HEADERS or lower.startswith(CUSTOM_HEADER_PREFIX)


def disallowed_headers(headers: dict | None) -> list[str]:
    return [k for k in (headers or {}) if not is_allowed_header(k)]


def _is_private(ip: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    return ip.is_loopback or any(ip in net for net in _PRIVATE_NETWORKS)


async def check_public_https(url: str) -> None:
    """Reject non-HTTPS URLs and hosts that resolve to private addresses."""
    if not is_https(url):
        raise DeliveryError("Webhook URL must use HTTPS")
    host = urlsplit(url).hostname
    if not host:
        raise DeliveryError("Invalid URL")
    try:
        addresses = [ipaddress.ip_address(host)]
    except ValueError:
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
        except socket.gaierror as exc:
            raise DeliveryError(f"Cannot resolve hostname: {exc}") from exc
        addresses = [ipaddress.ip_address(info[4][0]) for info in infos]
    if any(_is_private(ip) for ip in addresses):
        raise DeliveryError("Webhook URL resolves to a private IP address")


def alert_payload(alert: Alert) -> dict:
    return {
        "event": "alert.created",
        "alert": {
            "id": alert.id,
            "alert_number": alert.alert_number,
            "title": alert.title,
            "severity": alert.severity,
            "status": alert.status,
            "control_id": alert.control_id,
            "test_id": alert.test_id,
            "sla_deadline": iso(alert.sla_deadline),
            "created_at": iso(alert.created_at),
        },
    }


def alert_text(alert: Alert) -> str:
    return f"[{alert.severity.upper()}] Alert #{alert.alert_number}: {alert.title}"


# ──────────────────────────────────────────────
# Senders
# ──────────────────────────────────────────────

QUEUED = "queued"


class ChannelSender(ABC):
    @abstractmethod
    async def send(self, target: dict, payload: dict, text: str) -> str | None:
        """
        Deliver one notification or raise ``DeliveryError``.

        Returns ``QUEUED`` when the message was only handed off and delivery
        is not yet confirmed; ``None`` means delivered.
        """


class _HTTPSender(ChannelSender):
    def __init__(self, transport: httpx.AsyncBaseTransport | None = None, timeout: float | None = None):
        self.transport = transport
        self.timeout = timeout or settings.NOTIFICATION_TIMEOUT_SECONDS

    async def _post(self, url: str, json: dict, headers: dict | None = None) -> httpx.Response:
        await check_public_https(url)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                return await client.post(url, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            raise DeliveryError(f"Request timed out after {self.timeout:g}s") from exc
        except httpx.HTTPError as exc:
            raise DeliveryError(str(exc) or exc.__class__.__name__) from exc


class SlackSender(_HTTPSender):
    async def send(self, target, payload, text):
        url = target.get("slack_webhook_url")
        if not url:
            raise DeliveryError("slack_webhook_url is required for Slack delivery")
        resp = await self._post(url, {"text": text})
        if resp.status_code != 200:
            raise DeliveryError(f"Slack returned status {resp.status_code}")


class WebhookSender(_HTTPSender):
    async def send(self, target, payload, text):
        url = target.get("webhook_url")
        if not url:
            raise DeliveryError("webhook_url is required for webhook delivery")
        headers = dict(target.get("webhook_headers") or {})
        bad = disallowed_headers(headers)
        if bad:
            raise DeliveryError(f"Header '{bad[0]}' is not allowed. Allowed: {ALLOWED_HEADERS_HINT}")
        headers["Content-Type"] = "application/json"
        resp = await self._post(url, payload, headers)
        if not resp.is_success:
            raise DeliveryError(f"Webhook returned status {resp.status_code}")


class EmailSender(ChannelSender):
    """Queues the message for the outbound mail relay; delivery is not confirmed here."""

    async def send(self, target, payload, text):
        recipients = target.get("email_recipients") or []
        if not recipients:
            raise DeliveryError("email_recipients is required for email delivery")
        logger.info("Queued e-mail notification to %d recipient(s): %s", len(recipients), text)
        return QUEUED


class InAppSender(ChannelSender):
    async def send(self, target, payload, text):
        return None


# ──────────────────────────────────────────────
# Notifier
# ──────────────────────────────────────────────

@dataclass
class DeliveryOutcome:
    success: bool
    delivered_at: str | None = None
    error: str | None = None
    queued: bool = False

    def as_dict(self) -> dict:
        out: dict = {"success": self.success, "delivered_at": self.delivered_at}
        if self.queued:
            out["queued"] = True
        if self.error:
            out["error"] = self.error
        return out


class Notifier:
    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self.senders: dict[str, ChannelSender] = {
            "slack": SlackSender(transport),
            "webhook": WebhookSender(transport),
            "email": EmailSender(),
            "in_app": InAppSender(),
        }

    async def deliver_alert(self, alert: Alert, rule: AlertRule | None, channels: list[str]) -> dict[str, DeliveryOutcome]:
        """Send ``alert`` to each channel; failures are logged, never raised."""
        target = _rule_target(rule)
        payload, text = alert_payload(alert), alert_text(alert)
        outcomes: dict[str, DeliveryOutcome] = {}
        for channel in channels:
            sender = self.senders.get(channel)
            if sender is None:
                outcomes[channel] = DeliveryOutcome(False, error="Unknown channel")
                continue
            try:
                state = await sender.send(target, payload, text)
            except DeliveryError as exc:
                logger.error("Alert delivery failed [alert_id=%s channel=%s]: %s", alert.id, channel, exc)
                outcomes[channel] = DeliveryOutcome(False, error=str(exc))
                continue
            if state == QUEUED:
                outcomes[channel] = DeliveryOutcome(True, queued=True)
            else:
                outcomes[channel] = DeliveryOutcome(True, delivered_at=iso(utcnow()))
        return outcomes

    async def send_test(self, channel: str, target: dict) -> None:
        sender = self.senders[channel]
        payload = {"event": "test_delivery", "message": "This is a test notification from Raisin Protect."}
        text = "Raisin Protect test alert. If you see this, your integration is working."
        await sender.send(target, payload, text)


def _rule_target(rule: AlertRule | None) -> dict:
    if rule is None:
        return {}
    return {
        "slack_webhook_url": rule.slack_webhook_url,
        "webhook_url": rule.webhook_url,
        "webhook_headers": rule.webhook_headers or {},
        "email_recipients": rule.email_recipients or [],
    }


def get_notifier() -> Notifier:
    """FastAPI dependency; tests override it with a ``MockTransport``-backed notifier."""
    return Notifier()
