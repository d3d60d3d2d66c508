"""Call-center disposition webhooks."""

from __future__ import annotations

from typing import Any, Iterable, Mapping

from giftflow_api.core.settings import settings
from giftflow_api.domain.events.registry import (
    IdentityFields,
    NormalizedEvent,
    clean_str,
    parse_timestamp,
    register_adapter,
)
from giftflow_api.domain.events.signatures import SIGNATURE_OK, SignatureCheck, verify_hmac_signature
from giftflow_api.services.errors import ValidationError

CALL_COMPLETED_EVENT_TYPE = "call_completed"

_DISPOSITION_KEYS = ("disposition", "call_disposition", "outcome", "CallDisposition")
_PHONE_KEYS = ("caller_phone", "caller_number", "from", "From", "phone", "ani")
_CALL_ID_KEYS = ("call_id", "CallSid", "callSid", "id")


def _first(body: Mapping[str, Any], keys: Iterable[str]) -> str | None:
    for key in keys:
        value = clean_str(body.get(key))
        if value:
            return value
    return None


class TelephonyAdapter:
    """Maps qualifying dispositions to ``call_completed``; everything else is inert."""

    provider = "telephony"
    signature_headers = ("x-telephony-signature", "x-twilio-signature")

    def __init__(self, qualifying_dispositions: Iterable[str] | None = None) -> None:
        self._qualifying = (
            {item.strip().lower() for item in qualifying_dispositions}
            if qualifying_dispositions is not None
            else None
        )

    @property
    def qualifying_dispositions(self) -> set[str]:
        if self._qualifying is not None:
            return self._qualifying
        return set(settings.qualifying_call_dispositions)

    def verify_signature(self, body: bytes, signature: str | None, secret: str | None) -> SignatureCheck:
        if not secret:
            return SIGNATURE_OK
        if not signature:
            return SignatureCheck(valid=False, error="Missing signature")
        return verify_hmac_signature(body, signature, secret, "sha256")

    def parse_event(self, payload: Any) -> NormalizedEvent:
        if not isinstance(payload, Mapping):
            raise ValidationError("telephony payload must be an object")
        body = dict(payload)
        disposition = (_first(body, _DISPOSITION_KEYS) or "unknown").lower()
        if disposition in self.qualifying_dispositions:
            event_type = CALL_COMPLETED_EVENT_TYPE
        else:
            event_type = f"call.{disposition}"
        return NormalizedEvent(
            provider=self.provider,
            event_type=event_type,
            raw_event_type=f"call.{disposition}",
            provider_event_type=disposition,
            identity=IdentityFields(
                phone=_first(body, _PHONE_KEYS),
                email=clean_str(body.get("email")),
                external_id=_first(body, _CALL_ID_KEYS),
            ),
            data=body,
            occurred_at=parse_timestamp(body.get("ended_at") or body.get("timestamp")),
        )


register_adapter(TelephonyAdapter(), replace=True)


__all__ = ["CALL_COMPLETED_EVENT_TYPE", "TelephonyAdapter"]
