"""SMS backend implementations for reward delivery."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Protocol

import httpx
from loguru import logger

from giftflow_api.core.settings import Settings


@dataclass(slots=True)
class SMSSendResult:
    message_id: str | None
    status: str
    provider: str


class SMSDeliveryError(RuntimeError):
    """Raised when the SMS gateway refuses or fails to accept a message."""

    def __init__(self, message: str, *, provider: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class SMSBackend(Protocol):
    """Protocol for SMS dispatchers."""

    provider: str

    async def send_sms(self, recipient: str, body_text: str) -> SMSSendResult:
        ...


class TwilioSMSBackend:
    """Posts messages to a Twilio-compatible ``Messages.json`` endpoint."""

    provider = "twilio"

    def __init__(
        self,
        *,
        base_url: str,
        account_sid: str,
        auth_token: str,
        from_number: str,
        timeout_seconds: float = 10.0,
        status_callback_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number
        self._timeout = timeout_seconds
        self._status_callback_url = status_callback_url
        self._http_client = http_client

    async def send_sms(self, recipient: str, body_text: str) -> SMSSendResult:
        url = f"{self._base_url}/Accounts/{self._account_sid}/Messages.json"
        form = {"To": recipient, "From": self._from_number, "Body": body_text}
        if self._status_callback_url:
            form["StatusCallback"] = self._status_callback_url

        client = self._http_client or httpx.AsyncClient(timeout=self._timeout)
        owns_client = self._http_client is None
        try:
            response = await client.post(
                url,
                data=form,
                auth=(self._account_sid, self._auth_token),
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            raise SMSDeliveryError(str(exc) or exc.__class__.__name__, provider=self.provider) from exc
        finally:
            if owns_client:
                await client.aclose()

        if response.status_code >= 400:
            detail = _error_detail(response)
            logger.warning(
                "SMS gateway rejected message",
                provider=self.provider,
                status_code=response.status_code,
                detail=detail,
            )
            raise SMSDeliveryError(detail, provider=self.provider, status_code=response.status_code)

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        return SMSSendResult(
            message_id=payload.get("sid") if isinstance(payload, dict) else None,
            status=str(payload.get("status") or "queued") if isinstance(payload, dict) else "queued",
            provider=self.provider,
        )


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return f"SMS gateway returned HTTP {response.status_code}"
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return f"SMS gateway returned HTTP {response.status_code}"


@dataclass
class InMemorySMSBackend:
    """Stores SMS payloads for inspection in tests."""

    sent_messages: List[tuple[str, str]]
    provider: str = "memory"

    def __init__(self, *, fail_with: str | None = None) -> None:
        self.sent_messages = []
        self.provider = "memory"
        self._fail_with = fail_with

    async def send_sms(self, recipient: str, body_text: str) -> SMSSendResult:
        if self._fail_with:
            raise SMSDeliveryError(self._fail_with, provider=self.provider)
        self.sent_messages.append((recipient, body_text))
        return SMSSendResult(
            message_id=f"mem-{len(self.sent_messages)}",
            status="sent",
            provider=self.provider,
        )


def build_sms_backend(settings: Settings) -> SMSBackend:
    """Pick the gateway backend when credentials exist, else keep messages in memory."""

    if settings.sms_account_sid and settings.sms_auth_token and settings.sms_from_number:
        return TwilioSMSBackend(
            base_url=settings.sms_gateway_base_url,
            account_sid=settings.sms_account_sid,
            auth_token=settings.sms_auth_token,
            from_number=settings.sms_from_number,
            timeout_seconds=settings.sms_timeout_seconds,
            status_callback_url=settings.sms_status_callback_url
            or f"{settings.api_base_url.rstrip('/')}/api/v1/webhooks/sms/status",
        )
    logger.warning("SMS gateway credentials missing; using in-memory backend", provider=settings.sms_provider)
    return InMemorySMSBackend()


__all__ = [
    "InMemorySMSBackend",
    "SMSBackend",
    "SMSDeliveryError",
    "SMSSendResult",
    "TwilioSMSBackend",
    "build_sms_backend",
]
