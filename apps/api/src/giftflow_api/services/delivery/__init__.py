"""Reward delivery package."""

from .backend import (
    InMemorySMSBackend,
    SMSBackend,
    SMSDeliveryError,
    SMSSendResult,
    TwilioSMSBackend,
    build_sms_backend,
)
from .dispatcher import DeliveryDispatcher, DeliveryResult

__all__ = [
    "DeliveryDispatcher",
    "DeliveryResult",
    "InMemorySMSBackend",
    "SMSBackend",
    "SMSDeliveryError",
    "SMSSendResult",
    "TwilioSMSBackend",
    "build_sms_backend",
]
