"""Domain error taxonomy shared by the reward pipeline services."""

from __future__ import annotations

from fastapi import HTTPException, status


class RewardPipelineError(RuntimeError):
    """Base exception carrying a stable code and an HTTP status."""

    code = "internal_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class ValidationError(RewardPipelineError):
    code = "validation_error"
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(RewardPipelineError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class ForbiddenError(RewardPipelineError):
    """Raised when a recipient and campaign belong to different tenants."""

    code = "forbidden"
    status_code = status.HTTP_403_FORBIDDEN


class OverdraftError(RewardPipelineError):
    code = "GC-006"
    status_code = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(self, message: str = "Insufficient credits", *, account_id=None, requested=None, available=None) -> None:
        super().__init__(message)
        self.account_id = account_id
        self.requested = requested
        self.available = available


class ProvisioningExhaustedError(RewardPipelineError):
    """No inventory card and no issuing API could supply the reward."""

    code = "GC-003"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class ConflictError(RewardPipelineError):
    """Raised when a conditional update lost a race or a state is locked."""

    code = "conflict"
    status_code = status.HTTP_409_CONFLICT


class InternalError(RewardPipelineError):
    code = "internal_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


def to_http_exception(error: RewardPipelineError) -> HTTPException:
    """Translate a domain error into the API's ``{code, message}`` detail."""

    return HTTPException(
        status_code=error.status_code,
        detail={"code": error.code, "message": error.message},
    )


__all__ = [
    "ConflictError",
    "ForbiddenError",
    "InternalError",
    "NotFoundError",
    "OverdraftError",
    "ProvisioningExhaustedError",
    "RewardPipelineError",
    "ValidationError",
    "to_http_exception",
]
