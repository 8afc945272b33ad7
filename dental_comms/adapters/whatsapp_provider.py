"""WhatsApp gateway adapters.

``EvolutionApiClient`` talks to an Evolution-API style REST gateway where each
sending number is a named instance. ``DryRunProvider`` records messages
without leaving the process and is what development and tests wire in.
"""

from __future__ import annotations

import itertools
import logging
import threading
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any, Protocol
from urllib.parse import urlsplit

import httpx

from dental_comms.domain.errors import ProviderSendFailure
from dental_comms.domain.models import Channel, ChannelEvent, ChannelEventKind, SendOutcome
from dental_comms.utils.logging import mask_phone

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0

# statusReason values the gateway sends when WhatsApp bans the number.
BLOCKED_STATUS_REASONS = {403}

MEDIA_TYPES_BY_SUFFIX = {
    ".jpg": "image",
    ".jpeg": "image",
    ".png": "image",
    ".webp": "image",
    ".gif": "image",
    ".mp4": "video",
    ".3gp": "video",
    ".mov": "video",
    ".mp3": "audio",
    ".ogg": "audio",
    ".opus": "audio",
    ".m4a": "audio",
}


def media_type_for(url: str) -> str:
    """Gateway ``mediatype`` for a media URL; unknown extensions go out as documents."""
    suffix = PurePosixPath(urlsplit(url).path).suffix.lower()
    return MEDIA_TYPES_BY_SUFFIX.get(suffix, "document")


class MessagingProvider(Protocol):
    def send_message(
        self,
        channel: Channel,
        phone: str,
        content: str,
        media: str | None = None,
    ) -> SendOutcome: ...


class EvolutionApiClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)
        self._headers = {"apikey": api_key, "Content-Type": "application/json"}
        self.timeout = timeout

    def close(self) -> None:
        self._client.close()

    def send_message(
        self,
        channel: Channel,
        phone: str,
        content: str,
        media: str | None = None,
    ) -> SendOutcome:
        instance = channel.instance_name or channel.channel_id
        if media:
            path = f"/message/sendMedia/{instance}"
            mediatype = media_type_for(media)
            body: dict[str, Any] = {"number": phone, "mediatype": mediatype, "media": media, "caption": content}
            if mediatype == "document":
                body["fileName"] = PurePosixPath(urlsplit(media).path).name or "documento"
        else:
            path = f"/message/sendText/{instance}"
            body = {"number": phone, "text": content}

        try:
            response = self._client.post(
                f"{self.base_url}{path}",
                json=body,
                headers=self._headers,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as exc:
            raise ProviderSendFailure(f"Gateway timed out after {self.timeout}s on instance {instance}") from exc
        except httpx.HTTPError as exc:
            raise ProviderSendFailure(f"Gateway request failed on instance {instance}: {exc}") from exc

        if response.status_code not in (200, 201):
            error = _error_message(response)
            logger.error(
                "Gateway rejected send on %s to %s: HTTP %s %s",
                instance,
                mask_phone(phone),
                response.status_code,
                error,
            )
            return SendOutcome(success=False, error=f"HTTP {response.status_code}: {error}")

        message_id = _message_id(response)
        logger.info("Gateway accepted send on %s to %s (id %s)", instance, mask_phone(phone), message_id)
        return SendOutcome(success=True, provider_message_id=message_id)


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, dict):
        nested = payload.get("response")
        if isinstance(nested, dict) and nested.get("message"):
            return str(nested["message"])
        return str(payload.get("message") or payload.get("error") or "unknown error")
    return str(payload)


def _message_id(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    key = payload.get("key")
    if isinstance(key, dict) and key.get("id"):
        return str(key["id"])
    return payload.get("id")


class DryRunProvider:
    """Accepts every send and keeps it in ``sent`` for inspection."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def send_message(
        self,
        channel: Channel,
        phone: str,
        content: str,
        media: str | None = None,
    ) -> SendOutcome:
        with self._lock:
            message_id = f"dry-run-{next(self._ids)}"
            self.sent.append(
                {
                    "channel_id": channel.channel_id,
                    "phone": phone,
                    "content": content,
                    "media": media,
                    "provider_message_id": message_id,
                }
            )
        logger.info("DRY RUN send on %s to %s len=%d", channel.channel_id, mask_phone(phone), len(content))
        return SendOutcome(success=True, provider_message_id=message_id)


GENERIC_EVENT_KINDS = {kind.value: kind for kind in ChannelEventKind}


def parse_status_callback(payload: dict[str, Any]) -> ChannelEvent | None:
    """Turn a gateway status callback into a ``ChannelEvent``.

    Understands the gateway's ``connection.update`` shape and a plain
    ``{"channelId": ..., "event": "blocked"}`` shape. Anything else,
    including transient ``connecting`` states, yields None.
    """
    event_name = str(payload.get("event") or "").lower().replace("_", ".")
    occurred_at = _parse_timestamp(payload.get("date_time") or payload.get("timestamp"))

    if event_name == "connection.update":
        instance = payload.get("instance")
        data = payload.get("data") or {}
        if isinstance(instance, dict):
            instance = instance.get("instanceName")
        if not instance or not isinstance(data, dict):
            return None
        state = str(data.get("state") or "").lower()
        reason = data.get("statusReason")
        if state == "open":
            kind = ChannelEventKind.CONNECTED
        elif state == "close":
            kind = ChannelEventKind.BLOCKED if reason in BLOCKED_STATUS_REASONS else ChannelEventKind.DISCONNECTED
        else:
            return None
        detail = f"state={state} statusReason={reason}" if reason is not None else f"state={state}"
        return ChannelEvent(channel_ref=str(instance), kind=kind, occurred_at=occurred_at, detail=detail)

    channel_ref = payload.get("channelId") or payload.get("channel_id") or payload.get("instance")
    kind = GENERIC_EVENT_KINDS.get(event_name)
    if not channel_ref or kind is None:
        return None
    return ChannelEvent(
        channel_ref=str(channel_ref),
        kind=kind,
        occurred_at=occurred_at,
        detail=payload.get("detail"),
    )


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e12 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
