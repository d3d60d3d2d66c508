"""Shared collaborators injected into reward pipeline endpoints."""

from __future__ import annotations

from functools import lru_cache

from giftflow_api.core.settings import settings
from giftflow_api.services.delivery import SMSBackend, build_sms_backend


@lru_cache
def _default_sms_backend() -> SMSBackend:
    return build_sms_backend(settings)


def get_sms_backend() -> SMSBackend:
    """Process-wide SMS backend; tests override this dependency."""

    return _default_sms_backend()
