"""
Scheduling error taxonomy.

Every error carries a structured ``detail`` of the form
``{"error": code, "field": field, "message": message}`` so clients can tell
a lost slot apart from a bad reason or a forbidden transition.
"""
from typing import Optional
from fastapi import HTTPException, status


class SchedulingError(HTTPException):
    code = "scheduling_error"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, field: Optional[str] = None):
        self.message = message
        self.field = field
        super().__init__(
            status_code=self.status_code,
            detail={"error": self.code, "field": field, "message": message},
        )


class ValidationError(SchedulingError):
    code = "validation_error"
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidTimeRange(ValidationError):
    code = "invalid_time_range"


class PastDate(ValidationError):
    code = "past_date"


class InvalidDoctor(ValidationError):
    code = "invalid_doctor"


class InvalidArgument(ValidationError):
    code = "invalid_argument"


class NotFound(SchedulingError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class Forbidden(SchedulingError):
    code = "forbidden"
    status_code = status.HTTP_403_FORBIDDEN


class SlotConflict(SchedulingError):
    code = "slot_conflict"
    status_code = status.HTTP_409_CONFLICT


class InvalidTransition(SchedulingError):
    code = "invalid_transition"
    status_code = status.HTTP_409_CONFLICT


class StoreUnavailable(SchedulingError):
    code = "store_unavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, message: str = "The scheduling store is temporarily unavailable"):
        super().__init__(message)


class ConflictError(Exception):
    """Raised by the store when an active-slot uniqueness constraint is violated."""
