"""Webhook intake: normalize, match, record, evaluate.

Each inbound webhook becomes one ``pipeline_events`` row. The row is written
before evaluation so that a crash or error leaves an unprocessed record that
``replay`` can pick up again.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Mapping
from urllib.parse import parse_qsl
from uuid import UUID

from loguru import logger
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from giftflow_api.domain.events import NormalizedEvent, extract_signature, get_adapter
from giftflow_api.domain.events.telephony import TelephonyAdapter
from giftflow_api.models.campaign import Campaign
from giftflow_api.models.pipeline_event import (
    CrmIntegration,
    EventSource,
    PipelineEvent,
    mark_event_processed,
)
from giftflow_api.observability.rewards import get_reward_store
from giftflow_api.observability.tracing import pipeline_span
from giftflow_api.services.conditions.evaluator import OUTCOME_PROVISIONING_FAILED, ConditionEvaluator
from giftflow_api.services.errors import NotFoundError, RewardPipelineError, ValidationError
from giftflow_api.services.recipients.matcher import IdentityHint, RecipientMatcher
from giftflow_api.services.rewards.alerts import jsonable


@dataclass(slots=True)
class IngestionResult:
    event_id: UUID
    matched: bool
    condition_triggered: bool
    processed: bool
    outcome: str | None = None

    def as_payload(self) -> Dict[str, Any]:
        return {
            "event_id": str(self.event_id),
            "matched": self.matched,
            "condition_triggered": self.condition_triggered,
            "processed": self.processed,
            "outcome": self.outcome,
        }


def decode_webhook_body(body: bytes, content_type: str | None) -> Any:
    """Decode JSON or form-encoded webhook bodies."""

    if not body or not body.strip():
        raise ValidationError("Empty payload body")
    if content_type and "application/x-www-form-urlencoded" in content_type.lower():
        try:
            return dict(parse_qsl(body.decode("utf-8"), keep_blank_values=True))
        except UnicodeDecodeError as exc:
            raise ValidationError("Invalid payload body") from exc
    try:
        return json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError("Invalid payload body") from exc


def resolve_event_mapping(mappings: Any, event: NormalizedEvent) -> int | None:
    """Condition number of the first mapping matching the event, if any.

    A mapping's ``event_type`` may name the canonical, provider-prefixed or
    provider-native event type; ``event_filter`` is equality over data fields.
    """

    candidates: Iterable[Any]
    if isinstance(mappings, Mapping):
        candidates = mappings.values()
    elif isinstance(mappings, list):
        candidates = mappings
    else:
        return None

    names = {event.event_type, event.raw_event_type, event.provider_event_type}
    for mapping in candidates:
        if not isinstance(mapping, Mapping) or mapping.get("event_type") not in names:
            continue
        filters = mapping.get("event_filter") or {}
        if not isinstance(filters, Mapping):
            continue
        if all(event.data.get(field) == value for field, value in filters.items()):
            try:
                return int(mapping["condition_number"])
            except (KeyError, TypeError, ValueError):
                logger.warning("Event mapping has no usable condition number", mapping=dict(mapping))
                return None
    return None


def _has_mappings(mappings: Any) -> bool:
    return bool(mappings) and isinstance(mappings, (list, Mapping))


class WebhookIngestionService:
    def __init__(
        self,
        db_session: AsyncSession,
        *,
        evaluator: ConditionEvaluator | None = None,
        telephony_adapter: TelephonyAdapter | None = None,
    ) -> None:
        self._db = db_session
        self._evaluator = evaluator or ConditionEvaluator(db_session)
        self._telephony = telephony_adapter or get_adapter("telephony")
        self._matcher = RecipientMatcher(db_session)
        self._store = get_reward_store()

    async def ingest_crm(
        self,
        integration_id: UUID,
        body: bytes,
        headers: Mapping[str, str],
        content_type: str | None = None,
    ) -> IngestionResult:
        integration = await self._db.get(CrmIntegration, integration_id)
        if integration is None or not integration.is_active:
            raise NotFoundError("CRM integration not found")
        campaign_id = integration.campaign_id
        secret = integration.webhook_secret
        mappings = integration.event_mappings

        payload = decode_webhook_body(body, content_type)
        adapter = get_adapter(integration.provider)
        signature = extract_signature(headers, adapter.signature_headers)
        check = adapter.verify_signature(body, signature, secret)
        if not check.valid:
            # Logged only; availability wins over strict rejection.
            logger.warning(
                "CRM webhook signature check failed",
                integration_id=str(integration_id),
                provider=adapter.provider,
                error=check.error,
            )

        event = adapter.parse_event(payload)
        condition_number = resolve_event_mapping(mappings, event)
        routed = condition_number is not None or not _has_mappings(mappings)

        with pipeline_span("ingest_crm", integration_id=integration_id, provider=adapter.provider):
            result = await self._ingest(
                source=EventSource.CRM,
                provider=adapter.provider,
                campaign_id=campaign_id,
                integration_id=integration_id,
                payload=payload,
                event=event,
                signature_valid=check.valid,
                routed=routed,
                metadata={"source": "crm", "condition_number": condition_number},
            )

        await self._db.execute(
            update(CrmIntegration)
            .where(CrmIntegration.id == integration_id)
            .values(last_event_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        await self._db.commit()
        return result

    async def ingest_call(
        self,
        campaign_id: UUID,
        body: bytes,
        headers: Mapping[str, str],
        content_type: str | None = None,
        *,
        secret: str | None = None,
    ) -> IngestionResult:
        if await self._db.get(Campaign, campaign_id) is None:
            raise NotFoundError("Campaign not found")

        payload = decode_webhook_body(body, content_type)
        signature = extract_signature(headers, self._telephony.signature_headers)
        check = self._telephony.verify_signature(body, signature, secret)
        if not check.valid:
            logger.warning("Telephony webhook signature check failed", campaign_id=str(campaign_id), error=check.error)

        event = self._telephony.parse_event(payload)
        with pipeline_span("ingest_call", campaign_id=campaign_id, disposition=event.provider_event_type):
            return await self._ingest(
                source=EventSource.TELEPHONY,
                provider=self._telephony.provider,
                campaign_id=campaign_id,
                integration_id=None,
                payload=payload,
                event=event,
                signature_valid=check.valid,
                routed=event.event_type == "call_completed",
                metadata={"source": "call"},
            )

    async def replay(self, event_id: UUID) -> IngestionResult:
        """Re-run matching and evaluation for an unprocessed event."""

        row = await self._db.get(PipelineEvent, event_id)
        if row is None:
            raise NotFoundError("Event not found")
        if row.processed:
            return IngestionResult(
                event_id=row.id,
                matched=bool(row.matched),
                condition_triggered=bool(row.condition_triggered),
                processed=True,
            )
        if row.campaign_id is None:
            raise ValidationError("Event has no campaign to replay against")

        campaign_id = row.campaign_id
        payload = row.raw_payload
        if row.source == EventSource.CRM:
            integration = await self._db.get(CrmIntegration, row.integration_id) if row.integration_id else None
            if integration is None:
                raise NotFoundError("CRM integration not found")
            mappings = integration.event_mappings
            event = get_adapter(integration.provider).parse_event(payload)
            condition_number = resolve_event_mapping(mappings, event)
            routed = condition_number is not None or not _has_mappings(mappings)
            metadata: Dict[str, Any] = {"source": "crm", "condition_number": condition_number}
        elif row.source == EventSource.TELEPHONY:
            event = self._telephony.parse_event(payload)
            routed = event.event_type == "call_completed"
            metadata = {"source": "call"}
        else:
            raise ValidationError(f"Events from {row.source.value} cannot be replayed")

        recipient = await self._matcher.match(campaign_id, IdentityHint(event.identity.phone, event.identity.email))
        recipient_id = recipient.id if recipient is not None else None
        row.recipient_id = recipient_id
        row.matched = recipient is not None
        row.condition_triggered = recipient is not None and routed
        await self._db.commit()

        logger.info("Replaying pipeline event", event_id=str(event_id), source=row.source.value)
        return await self._evaluate_and_finish(
            event_id=event_id,
            source=row.source,
            campaign_id=campaign_id,
            recipient_id=recipient_id,
            event=event,
            routed=routed,
            metadata=metadata,
        )

    async def _ingest(
        self,
        *,
        source: EventSource,
        provider: str,
        campaign_id: UUID,
        integration_id: UUID | None,
        payload: Any,
        event: NormalizedEvent,
        signature_valid: bool,
        routed: bool,
        metadata: Dict[str, Any],
    ) -> IngestionResult:
        recipient = await self._matcher.match(campaign_id, IdentityHint(event.identity.phone, event.identity.email))
        recipient_id = recipient.id if recipient is not None else None

        row = PipelineEvent(
            source=source,
            provider=provider,
            event_type=event.event_type,
            raw_event_type=event.raw_event_type,
            campaign_id=campaign_id,
            recipient_id=recipient_id,
            integration_id=integration_id,
            raw_payload=jsonable(payload),
            signature_valid=signature_valid,
            matched=recipient is not None,
            condition_triggered=recipient is not None and routed,
            processed=False,
        )
        self._db.add(row)
        await self._db.commit()
        event_id = row.id

        logger.info(
            "Pipeline event recorded",
            event_id=str(event_id),
            source=source.value,
            provider=provider,
            event_type=event.event_type,
            raw_event_type=event.raw_event_type,
            matched=recipient is not None,
        )
        return await self._evaluate_and_finish(
            event_id=event_id,
            source=source,
            campaign_id=campaign_id,
            recipient_id=recipient_id,
            event=event,
            routed=routed,
            metadata=metadata,
        )

    async def _evaluate_and_finish(
        self,
        *,
        event_id: UUID,
        source: EventSource,
        campaign_id: UUID,
        recipient_id: UUID | None,
        event: NormalizedEvent,
        routed: bool,
        metadata: Dict[str, Any],
    ) -> IngestionResult:
        matched = recipient_id is not None
        outcome: str | None = None
        if matched and routed:
            context = {**event.metadata(), **{k: v for k, v in metadata.items() if v is not None}}
            context["event_id"] = str(event_id)
            try:
                evaluation = await self._evaluator.evaluate_conditions(
                    recipient_id, campaign_id, event.event_type, context
                )
            except (RewardPipelineError, SQLAlchemyError) as exc:
                await self._db.rollback()
                logger.exception(
                    "Event evaluation failed; leaving event replayable",
                    event_id=str(event_id),
                    campaign_id=str(campaign_id),
                    error=str(exc),
                )
                self._store.record_event(source.value, matched=matched, processed=False)
                return IngestionResult(
                    event_id=event_id,
                    matched=matched,
                    condition_triggered=True,
                    processed=False,
                )
            outcome = evaluation.outcome
            if outcome == OUTCOME_PROVISIONING_FAILED:
                logger.warning(
                    "Reward provisioning failed; leaving event replayable",
                    event_id=str(event_id),
                    campaign_id=str(campaign_id),
                    error_code=evaluation.error_code,
                )
                self._store.record_event(source.value, matched=matched, processed=False)
                return IngestionResult(
                    event_id=event_id,
                    matched=matched,
                    condition_triggered=True,
                    processed=False,
                    outcome=outcome,
                )

        await mark_event_processed(self._db, event_id, processed_at=datetime.now(timezone.utc))
        await self._db.commit()
        self._store.record_event(source.value, matched=matched, processed=True)
        return IngestionResult(
            event_id=event_id,
            matched=matched,
            condition_triggered=matched and routed,
            processed=True,
            outcome=outcome,
        )


__all__ = ["IngestionResult", "WebhookIngestionService", "decode_webhook_body", "resolve_event_mapping"]
