"""
Provider payload adapters.

Turn a verified raw delivery into an ``InboundEvent``: event id, event type,
provider retry attempt and the parsed payload. Everything provider-specific
about the envelope lives here so the receiver and the ledger stay generic.
"""
from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Mapping

from app.core.exceptions import MalformedPayloadError

# Never persisted with the raw event
_SENSITIVE_HEADERS = frozenset({"authorization", "cookie", "proxy-authorization"})

# Width of the event_id columns
MAX_EVENT_ID_LENGTH = 200


@dataclass(frozen=True)
class InboundEvent:
    """A verified, parsed delivery ready to be recorded"""

    provider: str
    event_id: str
    event_type: str
    payload: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)
    attempt_number: int | None = None


def normalize_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Lower-case header names (Starlette headers are already case-insensitive)."""
    return {str(k).lower(): str(v) for k, v in headers.items()}


def transport_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Headers worth keeping for forensic replay, without credentials."""
    return {k: v for k, v in headers.items() if k not in _SENSITIVE_HEADERS}


def is_ping(raw_body: bytes) -> bool:
    """Empty body, whitespace only, or ``{}``: a connectivity check from the provider."""
    stripped = raw_body.strip()
    if not stripped:
        return True
    if stripped.startswith(b"{") and stripped.endswith(b"}"):
        return not stripped[1:-1].strip()
    return False


def parse_json_object(provider: str, raw_body: bytes) -> dict[str, Any]:
    """Decode the body as a JSON object or raise MalformedPayloadError."""
    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedPayloadError(provider, f"invalid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedPayloadError(provider, "body is not a JSON object")
    return payload


def fingerprint(event_type: str, payload: Any) -> str:
    """sha256 of the event type and the canonical JSON of the payload."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(f"{event_type}|{canonical}".encode("utf-8")).hexdigest()


def synthesize_event_id(provider: str, event_type: str, payload: Any) -> str:
    """
    Deterministic id for deliveries without one.

    Two deliveries of the same body map to the same id, so provider retries
    still deduplicate.
    """
    return f"{provider}_{fingerprint(event_type, payload)[:32]}"


def bounded_event_id(provider: str, event_id: str) -> str:
    """
    ``event_id`` itself, or a digest of it when it would not fit the column.

    The digest is stable, so redeliveries of an oversized id still collide.
    """
    if len(event_id) <= MAX_EVENT_ID_LENGTH:
        return event_id
    digest = hashlib.sha256(event_id.encode("utf-8")).hexdigest()
    return f"{provider}_sha256_{digest}"


def _parse_attempt(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


class FinixAdapter:
    """
    Finix sends either its documented envelope::

        {"id": "...", "entity": "transfer", "type": "updated",
         "_embedded": {"transfers": [{...}]}}

    or a flat form with a dotted type::

        {"id": "...", "type": "transfer.updated", "transfer": {...}}
    """

    provider = "finix"
    attempt_headers = ("finix-webhook-attempt", "x-retry-count")

    def parse(self, raw_body: bytes, headers: Mapping[str, str]) -> InboundEvent:
        payload = parse_json_object(self.provider, raw_body)
        event_type = self.event_type_of(payload)

        event_id = payload.get("id")
        if not isinstance(event_id, str) or not event_id.strip():
            event_id = synthesize_event_id(self.provider, event_type, payload)

        attempt = None
        for name in self.attempt_headers:
            attempt = _parse_attempt(headers.get(name))
            if attempt is not None:
                break

        return InboundEvent(
            provider=self.provider,
            event_id=bounded_event_id(self.provider, event_id.strip()),
            event_type=event_type,
            payload=payload,
            headers=transport_headers(headers),
            attempt_number=attempt,
        )

    def event_type_of(self, payload: dict[str, Any]) -> str:
        raw_type = payload.get("type")
        if not isinstance(raw_type, str) or not raw_type:
            raise MalformedPayloadError(self.provider, "missing event type")
        if "." in raw_type:
            return raw_type
        entity = payload.get("entity")
        if not isinstance(entity, str) or not entity:
            raise MalformedPayloadError(self.provider, "missing entity")
        return f"{entity}.{raw_type}"

    @staticmethod
    def resource(payload: dict[str, Any], entity: str) -> dict[str, Any] | None:
        """
        The embedded resource for ``entity`` (e.g. the transfer of a
        transfer.updated event), from either envelope form.
        """
        embedded = payload.get("_embedded")
        if isinstance(embedded, dict):
            items = embedded.get(f"{entity}s")
            if isinstance(items, list) and items and isinstance(items[0], dict):
                return items[0]
        flat = payload.get(entity)
        if isinstance(flat, dict):
            return flat
        return None


class GetstreamAdapter:
    """GetStream puts the delivery id and attempt counter in headers."""

    provider = "getstream"

    def parse(self, raw_body: bytes, headers: Mapping[str, str]) -> InboundEvent:
        payload = parse_json_object(self.provider, raw_body)

        event_type = payload.get("type")
        if not isinstance(event_type, str) or not event_type:
            raise MalformedPayloadError(self.provider, "missing event type")

        event_id = headers.get("x-webhook-id", "").strip()
        if not event_id:
            event_id = synthesize_event_id(self.provider, event_type, payload)

        return InboundEvent(
            provider=self.provider,
            event_id=bounded_event_id(self.provider, event_id),
            event_type=event_type,
            payload=payload,
            headers=transport_headers(headers),
            attempt_number=_parse_attempt(headers.get("x-webhook-attempt")),
        )


ADAPTERS = {
    FinixAdapter.provider: FinixAdapter(),
    GetstreamAdapter.provider: GetstreamAdapter(),
}
