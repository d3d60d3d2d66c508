"""Redemption code normalization and opaque token generation."""

from __future__ import annotations

import re
import secrets

CODE_PATTERN = re.compile(r"^[A-Z0-9-]{4,50}$")


def normalize_code(code: str | None) -> str:
    """Trim and upper-case a code as printed on the mail piece."""

    return (code or "").strip().upper()


def is_valid_code_format(code: str | None) -> bool:
    return bool(CODE_PATTERN.match(normalize_code(code)))


def generate_redemption_token() -> str:
    """Public reference handed to the recipient's browser instead of row ids."""

    return secrets.token_urlsafe(24)


__all__ = ["CODE_PATTERN", "generate_redemption_token", "is_valid_code_format", "normalize_code"]
