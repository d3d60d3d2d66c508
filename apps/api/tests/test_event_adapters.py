from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from giftflow_api.domain.events import (
    compute_hmac,
    extract_signature,
    get_adapter,
    is_provider_supported,
    list_providers,
)
from giftflow_api.domain.events.registry import NormalizedEvent, parse_timestamp
from giftflow_api.domain.events.telephony import TelephonyAdapter
from giftflow_api.services.errors import ValidationError
from giftflow_api.services.events.ingestion import decode_webhook_body, resolve_event_mapping


def test_every_crm_provider_is_registered() -> None:
    providers = set(list_providers())
    assert {"salesforce", "hubspot", "zoho", "gohighlevel", "pipedrive", "custom", "telephony"} <= providers
    assert is_provider_supported("HubSpot")
    assert not is_provider_supported("myspace")


def test_unknown_provider_is_rejected() -> None:
    with pytest.raises(ValidationError) as excinfo:
        get_adapter("myspace")
    assert excinfo.value.code == "unknown_provider"


def test_hubspot_signature_and_first_event() -> None:
    adapter = get_adapter("hubspot")
    payload = [
        {
            "subscriptionType": "contact.propertyChange",
            "objectId": 901,
            "occurredAt": 1760745600000,
            "properties": {"phone": "(555) 555-0123", "email": "Jamie@Example.com"},
        },
        {"subscriptionType": "contact.deletion", "objectId": 902},
    ]
    body = json.dumps(payload).encode()
    signature = compute_hmac(body, "hub-secret")

    assert adapter.verify_signature(body, signature, "hub-secret").valid
    assert adapter.verify_signature(body, f"sha256={signature}", "hub-secret").valid
    assert not adapter.verify_signature(body, signature, "other-secret").valid
    assert adapter.verify_signature(body, None, "hub-secret").error == "Missing signature"

    event = adapter.parse_event(payload)
    assert event.event_type == "crm_event"
    assert event.raw_event_type == "hubspot.contact.propertyChange"
    assert event.identity.phone == "(555) 555-0123"
    assert event.identity.external_id == "901"
    assert event.occurred_at == datetime(2025, 10, 18, tzinfo=timezone.utc)


def test_empty_hubspot_batch_is_invalid() -> None:
    with pytest.raises(ValidationError):
        get_adapter("hubspot").parse_event([])


def test_pipedrive_prefers_primary_contact_values() -> None:
    event = get_adapter("pipedrive").parse_event(
        {
            "meta": {"object": "deal", "action": "updated"},
            "current": {
                "person_id": 77,
                "phone": [{"value": "555-000-1111"}, {"value": "555-555-0123", "primary": True}],
                "email": [{"value": "jamie@example.com", "primary": True}],
                "status": "won",
            },
        }
    )
    assert event.raw_event_type == "pipedrive.deal.updated"
    assert event.identity.phone == "555-555-0123"
    assert event.identity.email == "jamie@example.com"
    assert event.data["status"] == "won"


def test_zoho_and_salesforce_native_types() -> None:
    zoho = get_adapter("zoho").parse_event(
        {"module": "Leads", "operation": "insert", "ids": ["z-1"], "data": {"Phone": "5555550123"}}
    )
    assert zoho.raw_event_type == "zoho.Leads.insert"
    assert zoho.identity.external_id == "z-1"

    salesforce = get_adapter("salesforce").parse_event(
        {"sobject": {"Type": "Opportunity", "Email": "jamie@example.com", "WhoId": "003xx"}}
    )
    assert salesforce.provider_event_type == "Opportunity"
    assert salesforce.identity.email == "jamie@example.com"


def test_custom_adapter_accepts_sha1_fallback() -> None:
    adapter = get_adapter("custom")
    body = b'{"event_type": "appointment.booked"}'
    assert adapter.verify_signature(body, compute_hmac(body, "s3cret", "sha1"), "s3cret").valid
    assert adapter.verify_signature(body, None, None).valid
    assert not adapter.verify_signature(body, "deadbeef", None).valid


def test_gohighlevel_unsigned_requests_pass() -> None:
    adapter = get_adapter("gohighlevel")
    assert adapter.verify_signature(b"{}", None, "secret").valid
    event = adapter.parse_event({"type": "ContactTagUpdate", "contact": {"phone": "+15555550123"}})
    assert event.identity.phone == "+15555550123"


def test_telephony_only_qualifying_dispositions_complete_a_call() -> None:
    adapter = TelephonyAdapter(qualifying_dispositions=["Interested", "sale"])

    qualifying = adapter.parse_event({"disposition": "INTERESTED", "caller_phone": "+15555550123", "call_id": "c-1"})
    assert qualifying.event_type == "call_completed"
    assert qualifying.raw_event_type == "call.interested"
    assert qualifying.identity.external_id == "c-1"

    voicemail = adapter.parse_event({"call_disposition": "voicemail", "From": "+15555550123"})
    assert voicemail.event_type == "call.voicemail"

    missing = adapter.parse_event({"from": "+15555550123"})
    assert missing.event_type == "call.unknown"


def test_telephony_signature_required_only_with_secret() -> None:
    adapter = TelephonyAdapter()
    body = b'{"disposition": "completed"}'
    assert adapter.verify_signature(body, None, None).valid
    assert not adapter.verify_signature(body, None, "secret").valid
    assert adapter.verify_signature(body, compute_hmac(body, "secret"), "secret").valid


def test_extract_signature_is_case_insensitive() -> None:
    headers = {"X-HubSpot-Signature-V3": "abc", "X-Signature": "fallback"}
    assert extract_signature(headers, ("x-hubspot-signature-v3",)) == "abc"
    assert extract_signature(headers, ("x-zoho-token",)) == "fallback"
    assert extract_signature({}, ("x-zoho-token",)) is None


def test_parse_timestamp_variants() -> None:
    assert parse_timestamp("2026-10-18T12:00:00Z") == datetime(2026, 10, 18, 12, tzinfo=timezone.utc)
    assert parse_timestamp(1792324800) == parse_timestamp(1792324800000)
    assert parse_timestamp("not a date") is None
    assert parse_timestamp(True) is None


def test_decode_webhook_body_handles_json_and_forms() -> None:
    assert decode_webhook_body(b'{"a": 1}', "application/json") == {"a": 1}
    assert decode_webhook_body(b"From=%2B15555550123&Body=YES", "application/x-www-form-urlencoded") == {
        "From": "+15555550123",
        "Body": "YES",
    }
    with pytest.raises(ValidationError):
        decode_webhook_body(b"  ", "application/json")
    with pytest.raises(ValidationError):
        decode_webhook_body(b"{not json", "application/json")


def _event(**data) -> NormalizedEvent:
    return NormalizedEvent(
        provider="pipedrive",
        event_type="crm_event",
        raw_event_type="pipedrive.deal.updated",
        provider_event_type="deal.updated",
        data=data,
    )


def test_event_mapping_matches_type_and_filter() -> None:
    mappings = [
        {"event_type": "pipedrive.deal.updated", "event_filter": {"status": "won"}, "condition_number": 2},
        {"event_type": "deal.updated", "condition_number": 3},
    ]
    assert resolve_event_mapping(mappings, _event(status="won")) == 2
    assert resolve_event_mapping(mappings, _event(status="lost")) == 3
    assert resolve_event_mapping({"deal": mappings[0]}, _event(status="won")) == 2
    assert resolve_event_mapping([{"event_type": "contact.created", "condition_number": 1}], _event()) is None
    assert resolve_event_mapping(None, _event()) is None
