"""
HTTP Error Mapping
Translates billing errors into FastAPI HTTPExceptions.
Source: https://fastapi.tiangolo.com/tutorial/handling-errors/
"""

from fastapi import HTTPException, status

from medbill.core.errors import (
    BillingError,
    ControlNumberExhausted,
    EligibilityDenied,
    SerializationError,
    ValidationError,
)


class EncounterValidationError(HTTPException):
    """Raised when the encounter is missing required data"""

    def __init__(self, detail: str = "Encounter validation failed", field: str | None = None):
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"error": "validation_error", "message": detail, "field": field},
        )


class EligibilityDeniedError(HTTPException):
    """Raised when Node A denies the encounter"""

    def __init__(self, reason: str, detail: str = "Eligibility denied"):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "eligibility_denied", "reason": reason, "message": detail},
        )


class ClaimSerializationError(HTTPException):
    """Raised when the 837P could not be produced"""

    def __init__(self, detail: str = "Claim serialization failed"):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "serialization_error", "message": detail},
        )


class SequencerUnavailableError(HTTPException):
    """Raised when a control-number counter cannot issue values"""

    def __init__(self, detail: str = "Control numbers exhausted"):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "control_number_exhausted", "message": detail},
        )


def to_http_exception(error: BillingError) -> HTTPException:
    """Map a billing error onto the matching HTTP error."""
    if isinstance(error, ValidationError):
        return EncounterValidationError(error.message, field=error.field)
    if isinstance(error, EligibilityDenied):
        return EligibilityDeniedError(error.reason.value, error.message)
    if isinstance(error, SerializationError):
        return ClaimSerializationError(str(error))
    if isinstance(error, ControlNumberExhausted):
        return SequencerUnavailableError(error.message)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"error": "billing_error", "message": error.message},
    )
