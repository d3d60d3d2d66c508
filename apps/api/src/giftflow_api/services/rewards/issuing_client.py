"""HTTP client for on-demand gift card issuing providers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Mapping

import httpx

from giftflow_api.core.settings import Settings


class CardIssuingError(RuntimeError):
    """Raised when the issuing provider cannot return a usable card."""

    def __init__(self, message: str, *, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


@dataclass(slots=True)
class IssuedCard:
    card_code: str
    card_number: str | None
    expiration_date: date | None
    transaction_id: str | None
    payload: Dict[str, Any] = field(default_factory=dict)


def _first_present(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return value
    return None


def _parse_expiration(value: Any) -> date | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None


class CardIssuingClient:
    """Issue a single card synchronously.

    Each ``api_config`` pool may override the endpoint, headers, brand code,
    and timeout; anything missing falls back to the service-wide settings.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout_seconds: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/") if base_url else None
        self._api_key = api_key
        self._timeout = timeout_seconds
        self._http_client = http_client

    @classmethod
    def from_settings(cls, settings: Settings, *, http_client: httpx.AsyncClient | None = None) -> "CardIssuingClient":
        return cls(
            base_url=settings.card_issuing_api_url,
            api_key=settings.card_issuing_api_key,
            timeout_seconds=settings.card_issuing_timeout_seconds,
            http_client=http_client,
        )

    async def issue_card(
        self,
        *,
        brand_code: str,
        denomination: Decimal,
        reference: str,
        api_config: Mapping[str, Any] | None = None,
    ) -> IssuedCard:
        config = api_config or {}
        url = config.get("url") or (f"{self._base_url}/cards" if self._base_url else None)
        if not isinstance(url, str) or not url.strip():
            raise CardIssuingError("Card issuing endpoint is not configured")

        timeout_seconds = config.get("timeoutSeconds")
        timeout = timeout_seconds if isinstance(timeout_seconds, (int, float)) and timeout_seconds > 0 else self._timeout

        headers: Dict[str, str] = {"Accept": "application/json"}
        api_key = config.get("apiKey") or self._api_key
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        extra_headers = config.get("headers")
        if isinstance(extra_headers, Mapping):
            headers.update({str(key): str(value) for key, value in extra_headers.items()})

        body = {
            "brandCode": config.get("brandCode") or brand_code,
            "amount": float(denomination),
            "currency": config.get("currency") or "USD",
            "reference": reference,
        }

        client = self._http_client or httpx.AsyncClient(timeout=timeout)
        owns_client = self._http_client is None
        try:
            response = await client.post(url, json=body, headers=headers, timeout=timeout)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as exc:
            raise CardIssuingError(str(exc) or exc.__class__.__name__, url=url) from exc
        except ValueError as exc:
            raise CardIssuingError("Issuing provider returned a non-JSON body", url=url) from exc
        finally:
            if owns_client:
                await client.aclose()

        if not isinstance(payload, Mapping):
            raise CardIssuingError("Issuing provider returned an unexpected body", url=url)
        card_payload = payload.get("card") if isinstance(payload.get("card"), Mapping) else payload

        card_code = _first_present(card_payload, "cardCode", "code", "claimCode")
        if card_code is None:
            raise CardIssuingError("Issuing provider response did not include a card code", url=url)

        transaction_id = _first_present(payload, "transactionId", "orderId", "id")
        card_number = _first_present(card_payload, "cardNumber", "number")
        return IssuedCard(
            card_code=str(card_code),
            card_number=str(card_number) if card_number is not None else None,
            expiration_date=_parse_expiration(_first_present(card_payload, "expirationDate", "expiresAt")),
            transaction_id=str(transaction_id) if transaction_id is not None else None,
            payload=dict(payload),
        )


__all__ = ["CardIssuingClient", "CardIssuingError", "IssuedCard"]
