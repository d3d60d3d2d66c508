"""Reward SMS templates."""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping

DEFAULT_SMS_TEMPLATE = (
    "Congratulations! You've earned a ${{card_value}} {{brand_name}} gift card. "
    "Code: {{card_code}}"
)

_PLACEHOLDER = re.compile(r"\{\{\s*([a-z_]+)\s*\}\}")


@dataclass(slots=True)
class RewardMessageContext:
    first_name: str | None
    card_value: Decimal | None
    brand_name: str | None
    card_code: str | None
    redemption_code: str | None
    redemption_link: str | None

    def as_mapping(self) -> dict[str, str]:
        return {
            "first_name": self.first_name or "there",
            "card_value": _format_value(self.card_value),
            "brand_name": self.brand_name or "",
            "card_code": self.card_code or "",
            "redemption_code": self.redemption_code or "",
            "redemption_link": self.redemption_link or "",
        }


def _format_value(value: Decimal | None) -> str:
    if value is None:
        return ""
    if value == value.to_integral_value():
        return f"{int(value)}"
    return f"{value:.2f}"


def render_template(template: str, values: Mapping[str, Any]) -> str:
    """Substitute ``{{name}}`` placeholders; unknown names are left untouched."""

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key in values:
            return str(values[key])
        return match.group(0)

    return _PLACEHOLDER.sub(_replace, template)


def render_reward_sms(template: str | None, context: RewardMessageContext) -> str:
    values = context.as_mapping()
    body = render_template(template or DEFAULT_SMS_TEMPLATE, values)
    link = values["redemption_link"]
    if link and link not in body:
        body = f"{body} Redeem: {link}"
    return body.strip()


def build_redemption_link(base_url: str, token: str | None) -> str | None:
    if not token:
        return None
    return f"{base_url.rstrip('/')}/{token}"


__all__ = [
    "DEFAULT_SMS_TEMPLATE",
    "RewardMessageContext",
    "build_redemption_link",
    "render_reward_sms",
    "render_template",
]
