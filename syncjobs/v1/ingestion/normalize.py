"""
Per-source normalizers for ingestion records.

Each normalizer turns a raw payload into the common shape
``{title, body, participants, occurred_at, source_kind}`` or raises
MalformedPayloadError.
"""

from datetime import UTC, datetime
from typing import Any

from syncjobs.v1.core.registries import normalizer_registry
from syncjobs.v1.jobs.exceptions import MalformedPayloadError


def _require(payload: dict[str, Any], key: str, source: str) -> Any:
    value = payload.get(key)
    if value in (None, ""):
        raise MalformedPayloadError(
            f"Malformed {source} payload: missing '{key}'", provider=source
        )
    return value


def parse_timestamp(value: Any, source: str = "source") -> datetime | None:
    """Accept ISO strings, epoch seconds or datetimes; returns aware UTC."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        parsed = datetime.fromtimestamp(value, UTC)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise MalformedPayloadError(
                f"Invalid timestamp format in {source} payload: {value!r}",
                provider=source,
            ) from None
    else:
        raise MalformedPayloadError(
            f"Invalid timestamp format in {source} payload: {value!r}",
            provider=source,
        )
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _addresses(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip().lower() for part in value.split(",") if part.strip()]
    if isinstance(value, list):
        return [str(part).strip().lower() for part in value if str(part).strip()]
    raise MalformedPayloadError(f"Invalid address list: {value!r}")


class MessageNormalizer:
    """provider_a: message-like items (subject, from, to, body)."""

    source = "provider_a"

    def normalize(
        self, payload: dict[str, Any], source_meta: dict[str, Any]
    ) -> dict[str, Any]:
        sender = _require(payload, "from", self.source)
        occurred_at = parse_timestamp(
            payload.get("sent_at") or source_meta.get("internal_date"), self.source
        )
        return {
            "source_kind": "message",
            "title": payload.get("subject") or "(no subject)",
            "body": payload.get("body") or payload.get("snippet") or "",
            "participants": sorted(
                set(_addresses(sender)) | set(_addresses(payload.get("to")))
            ),
            "occurred_at": occurred_at.isoformat() if occurred_at else None,
        }


class EventNormalizer:
    """provider_b: calendar-like items (summary, start, end, attendees)."""

    source = "provider_b"

    def normalize(
        self, payload: dict[str, Any], source_meta: dict[str, Any]
    ) -> dict[str, Any]:
        start = parse_timestamp(_require(payload, "start", self.source), self.source)
        end = parse_timestamp(payload.get("end"), self.source)
        if end is not None and start is not None and end < start:
            raise MalformedPayloadError(
                "Malformed provider_b payload: event ends before it starts",
                provider=self.source,
            )
        return {
            "source_kind": "event",
            "title": payload.get("summary") or "(untitled event)",
            "body": payload.get("description") or "",
            "participants": sorted(set(_addresses(payload.get("attendees")))),
            "occurred_at": start.isoformat() if start else None,
            "ends_at": end.isoformat() if end else None,
            "location": payload.get("location"),
        }


class GenericNormalizer:
    """Fallback for sources without a dedicated normalizer."""

    source = "generic"

    def normalize(
        self, payload: dict[str, Any], source_meta: dict[str, Any]
    ) -> dict[str, Any]:
        if not isinstance(payload, dict):
            raise MalformedPayloadError("Malformed payload: expected an object")
        occurred_at = parse_timestamp(payload.get("occurred_at"), self.source)
        return {
            "source_kind": "item",
            "title": str(payload.get("title") or payload.get("name") or ""),
            "body": str(payload.get("body") or payload.get("text") or ""),
            "participants": [],
            "occurred_at": occurred_at.isoformat() if occurred_at else None,
        }


def register_normalizers() -> None:
    for normalizer in (MessageNormalizer(), EventNormalizer(), GenericNormalizer()):
        if not normalizer_registry.has(normalizer.source):
            normalizer_registry.register(normalizer.source, normalizer)


def normalizer_for(source: str):
    if normalizer_registry.has(source):
        return normalizer_registry.get(source)
    return normalizer_registry.get("generic")
