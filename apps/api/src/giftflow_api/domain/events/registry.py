"""Registry of inbound event adapters keyed by provider name.

Adapters are plain objects satisfying :class:`EventAdapter`. Registering a new
provider is enough for the ingestion pipeline to accept its webhooks.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Protocol, Sequence

from giftflow_api.domain.events.signatures import SignatureCheck
from giftflow_api.services.errors import ValidationError


def clean_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_timestamp(value: Any) -> datetime | None:
    """Accept ISO-8601 strings and epoch seconds or milliseconds."""

    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 10_000_000_000 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


@dataclass(frozen=True, slots=True)
class IdentityFields:
    phone: str | None = None
    email: str | None = None
    external_id: str | None = None


@dataclass(frozen=True, slots=True)
class NormalizedEvent:
    """Provider-neutral event handed to matching and evaluation."""

    provider: str
    event_type: str
    raw_event_type: str
    provider_event_type: str | None = None
    identity: IdentityFields = field(default_factory=IdentityFields)
    data: Mapping[str, Any] = field(default_factory=dict)
    occurred_at: datetime | None = None

    def metadata(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "raw_event_type": self.raw_event_type,
            "crm_event_type": self.provider_event_type,
        }


class EventAdapter(Protocol):
    provider: str
    signature_headers: Sequence[str]

    def verify_signature(self, body: bytes, signature: str | None, secret: str | None) -> SignatureCheck:
        ...

    def parse_event(self, payload: Any) -> NormalizedEvent:
        ...


_ADAPTERS: Dict[str, EventAdapter] = {}


def register_adapter(adapter: EventAdapter, *, replace: bool = False) -> EventAdapter:
    key = adapter.provider.lower()
    if key in _ADAPTERS and not replace:
        raise ValueError(f"Adapter already registered for provider {adapter.provider!r}")
    _ADAPTERS[key] = adapter
    return adapter


def get_adapter(provider: str | None) -> EventAdapter:
    adapter = _ADAPTERS.get((provider or "").strip().lower())
    if adapter is None:
        raise ValidationError(f"Unknown event provider: {provider}", code="unknown_provider")
    return adapter


def list_providers() -> list[str]:
    return sorted(_ADAPTERS)


def is_provider_supported(provider: str | None) -> bool:
    return (provider or "").strip().lower() in _ADAPTERS


__all__ = [
    "EventAdapter",
    "IdentityFields",
    "NormalizedEvent",
    "clean_str",
    "get_adapter",
    "is_provider_supported",
    "list_providers",
    "parse_timestamp",
    "register_adapter",
]
