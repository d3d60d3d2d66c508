"""HMAC helpers for webhook signature checks."""

from __future__ import annotations

import hashlib
import hmac
import re
from dataclasses import dataclass
from typing import Literal, Mapping, Sequence

Algorithm = Literal["sha256", "sha1"]

_PREFIX = re.compile(r"^sha(1|256)=", re.IGNORECASE)

COMMON_SIGNATURE_HEADERS: tuple[str, ...] = (
    "x-signature",
    "x-webhook-signature",
    "x-hmac-signature",
    "x-hub-signature-256",
)


@dataclass(frozen=True, slots=True)
class SignatureCheck:
    valid: bool
    error: str | None = None


SIGNATURE_OK = SignatureCheck(valid=True)


def compute_hmac(body: bytes, secret: str, algorithm: Algorithm = "sha256") -> str:
    digest = hashlib.sha256 if algorithm == "sha256" else hashlib.sha1
    return hmac.new(secret.encode("utf-8"), body, digest).hexdigest()


def verify_hmac_signature(
    body: bytes,
    signature: str,
    secret: str,
    algorithm: Algorithm = "sha256",
) -> SignatureCheck:
    expected = compute_hmac(body, secret, algorithm)
    provided = _PREFIX.sub("", signature.strip()).lower()
    if hmac.compare_digest(expected, provided):
        return SIGNATURE_OK
    return SignatureCheck(valid=False, error="Signature mismatch")


def extract_signature(headers: Mapping[str, str], provider_headers: Sequence[str]) -> str | None:
    """Provider-specific headers first, then the common signature headers."""

    lowered = {key.lower(): value for key, value in headers.items()}
    for name in (*provider_headers, *COMMON_SIGNATURE_HEADERS):
        value = lowered.get(name)
        if value:
            return value
    return None


__all__ = [
    "COMMON_SIGNATURE_HEADERS",
    "SIGNATURE_OK",
    "SignatureCheck",
    "compute_hmac",
    "extract_signature",
    "verify_hmac_signature",
]
