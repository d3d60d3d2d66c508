"""CRM webhook adapters."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Sequence

from giftflow_api.domain.events.registry import (
    IdentityFields,
    NormalizedEvent,
    clean_str,
    parse_timestamp,
    register_adapter,
)
from giftflow_api.domain.events.signatures import SIGNATURE_OK, SignatureCheck, verify_hmac_signature
from giftflow_api.services.errors import ValidationError

CRM_EVENT_TYPE = "crm_event"


def _as_mapping(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, Mapping) else {}


def _require_mapping(payload: Any, provider: str) -> dict[str, Any]:
    if not isinstance(payload, Mapping):
        raise ValidationError(f"{provider} payload must be an object")
    return dict(payload)


class _CrmAdapter:
    provider = "crm"
    signature_headers: Sequence[str] = ()

    def verify_signature(self, body: bytes, signature: str | None, secret: str | None) -> SignatureCheck:
        return SIGNATURE_OK

    def _event(
        self,
        *,
        native_type: str | None,
        phone: Any = None,
        email: Any = None,
        external_id: Any = None,
        data: Mapping[str, Any] | None = None,
        occurred_at: datetime | None = None,
    ) -> NormalizedEvent:
        native = native_type or "unknown"
        return NormalizedEvent(
            provider=self.provider,
            event_type=CRM_EVENT_TYPE,
            raw_event_type=f"{self.provider}.{native}",
            provider_event_type=native_type,
            identity=IdentityFields(
                phone=clean_str(phone),
                email=clean_str(email),
                external_id=clean_str(external_id),
            ),
            data=dict(data or {}),
            occurred_at=occurred_at,
        )


class SalesforceAdapter(_CrmAdapter):
    """Salesforce outbound messages; trust is established by IP allowlisting."""

    provider = "salesforce"
    signature_headers = ("x-salesforce-signature", "x-sfdc-signature")

    def parse_event(self, payload: Any) -> NormalizedEvent:
        body = _require_mapping(payload, self.provider)
        sobject = _as_mapping(body.get("sobject"))
        return self._event(
            native_type=clean_str(sobject.get("Type")) or clean_str(body.get("event")),
            phone=sobject.get("Phone"),
            email=sobject.get("Email"),
            external_id=sobject.get("WhoId") or sobject.get("ContactId"),
            data=sobject or body,
            occurred_at=parse_timestamp(sobject.get("CreatedDate") or body.get("timestamp")),
        )


class HubSpotAdapter(_CrmAdapter):
    provider = "hubspot"
    signature_headers = ("x-hubspot-signature-v3", "x-hubspot-signature", "x-hub-signature-256")

    def verify_signature(self, body: bytes, signature: str | None, secret: str | None) -> SignatureCheck:
        if not signature:
            return SignatureCheck(valid=False, error="Missing signature")
        if not secret:
            return SignatureCheck(valid=False, error="No webhook secret configured")
        return verify_hmac_signature(body, signature, secret, "sha256")

    def parse_event(self, payload: Any) -> NormalizedEvent:
        # Subscriptions arrive batched; only the first event is routed.
        if isinstance(payload, list):
            if not payload:
                raise ValidationError("hubspot payload contained no events")
            payload = payload[0]
        body = _require_mapping(payload, self.provider)
        properties = _as_mapping(body.get("properties"))
        return self._event(
            native_type=clean_str(body.get("subscriptionType")) or clean_str(body.get("eventType")),
            phone=properties.get("phone"),
            email=properties.get("email"),
            external_id=body.get("objectId"),
            data=body,
            occurred_at=parse_timestamp(body.get("occurredAt")),
        )


class ZohoAdapter(_CrmAdapter):
    """Zoho authenticates with a static token header rather than a signature."""

    provider = "zoho"
    signature_headers = ("x-zoho-token", "x-zoho-signature")

    def parse_event(self, payload: Any) -> NormalizedEvent:
        body = _require_mapping(payload, self.provider)
        data = _as_mapping(body.get("data"))
        module = clean_str(body.get("module")) or ""
        operation = clean_str(body.get("operation")) or ""
        ids = body.get("ids")
        return self._event(
            native_type=f"{module}.{operation}",
            phone=data.get("Phone"),
            email=data.get("Email"),
            external_id=ids[0] if isinstance(ids, list) and ids else None,
            data=data,
            occurred_at=parse_timestamp(data.get("Modified_Time")),
        )


class GoHighLevelAdapter(_CrmAdapter):
    provider = "gohighlevel"
    signature_headers = ("x-ghl-signature", "x-signature")

    def verify_signature(self, body: bytes, signature: str | None, secret: str | None) -> SignatureCheck:
        # Unsigned deliveries rely on the location API key instead.
        if not signature:
            return SIGNATURE_OK
        if not secret:
            return SignatureCheck(valid=False, error="No webhook secret configured")
        return verify_hmac_signature(body, signature, secret, "sha256")

    def parse_event(self, payload: Any) -> NormalizedEvent:
        body = _require_mapping(payload, self.provider)
        contact = _as_mapping(body.get("contact"))
        return self._event(
            native_type=clean_str(body.get("type")),
            phone=body.get("phone") or contact.get("phone"),
            email=body.get("email") or contact.get("email"),
            external_id=body.get("contact_id") or body.get("contactId"),
            data=body,
            occurred_at=parse_timestamp(body.get("dateAdded") or body.get("timestamp")),
        )


class PipedriveAdapter(_CrmAdapter):
    """Pipedrive webhooks are unsigned; basic auth lives in the webhook URL."""

    provider = "pipedrive"
    signature_headers = ()

    def parse_event(self, payload: Any) -> NormalizedEvent:
        body = _require_mapping(payload, self.provider)
        meta = _as_mapping(body.get("meta"))
        current = _as_mapping(body.get("current"))
        object_type = clean_str(meta.get("object")) or "unknown"
        action = clean_str(meta.get("action")) or "unknown"
        return self._event(
            native_type=f"{object_type}.{action}",
            phone=_first_value(current.get("phone")),
            email=_first_value(current.get("email")),
            external_id=current.get("person_id"),
            data=current,
            occurred_at=parse_timestamp(meta.get("timestamp")),
        )


class CustomAdapter(_CrmAdapter):
    provider = "custom"
    signature_headers = ("x-signature", "x-webhook-signature", "x-hmac-signature")

    def verify_signature(self, body: bytes, signature: str | None, secret: str | None) -> SignatureCheck:
        if not signature:
            return SIGNATURE_OK
        if not secret:
            return SignatureCheck(valid=False, error="No webhook secret configured")
        result = verify_hmac_signature(body, signature, secret, "sha256")
        if result.valid:
            return result
        return verify_hmac_signature(body, signature, secret, "sha1")

    def parse_event(self, payload: Any) -> NormalizedEvent:
        body = _require_mapping(payload, self.provider)
        return self._event(
            native_type=clean_str(body.get("event_type")) or clean_str(body.get("type")),
            phone=body.get("phone"),
            email=body.get("email"),
            external_id=body.get("contact_id"),
            data=body,
            occurred_at=parse_timestamp(body.get("occurred_at") or body.get("timestamp")),
        )


def _first_value(value: Any) -> Any:
    """Pipedrive sends phone/email as ``[{"value": ..., "primary": true}]``."""

    if isinstance(value, list):
        primary = next((item for item in value if isinstance(item, Mapping) and item.get("primary")), None)
        chosen = primary or (value[0] if value else None)
        return chosen.get("value") if isinstance(chosen, Mapping) else chosen
    return value


CRM_ADAPTERS = (
    SalesforceAdapter(),
    HubSpotAdapter(),
    ZohoAdapter(),
    GoHighLevelAdapter(),
    PipedriveAdapter(),
    CustomAdapter(),
)

for _adapter in CRM_ADAPTERS:
    register_adapter(_adapter, replace=True)


__all__ = [
    "CRM_ADAPTERS",
    "CRM_EVENT_TYPE",
    "CustomAdapter",
    "GoHighLevelAdapter",
    "HubSpotAdapter",
    "PipedriveAdapter",
    "SalesforceAdapter",
    "ZohoAdapter",
]
