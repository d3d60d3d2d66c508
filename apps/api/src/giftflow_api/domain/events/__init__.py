"""Inbound event adapters. Importing this package registers every provider."""

from .registry import (  # noqa: F401
    EventAdapter,
    IdentityFields,
    NormalizedEvent,
    get_adapter,
    is_provider_supported,
    list_providers,
    register_adapter,
)
from .signatures import SignatureCheck, compute_hmac, extract_signature, verify_hmac_signature  # noqa: F401
from .crm import CRM_EVENT_TYPE  # noqa: F401
from .telephony import CALL_COMPLETED_EVENT_TYPE, TelephonyAdapter  # noqa: F401
