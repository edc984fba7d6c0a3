from typing import Optional

from fastapi import Header, HTTPException

from .errors import (
    AuthRequired,
    BambooError,
    DailyLimitReached,
    DocumentTooLarge,
    MigrationIncomplete,
    NotFound,
    StorageUnavailable,
    WriteFailed,
)
from .models import Identity


ERROR_STATUS = [
    (AuthRequired, 401),
    (NotFound, 404),
    (DocumentTooLarge, 413),
    (DailyLimitReached, 429),
    (StorageUnavailable, 503),
    (WriteFailed, 502),
    (MigrationIncomplete, 500),
]


# Local store full: the record was not written
NOT_PERSISTED_STATUS = 507


def status_for(error: BambooError) -> int:
    """HTTP status code for a service error."""
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 500


def to_http_error(error: BambooError) -> HTTPException:
    """Translate a service error into an HTTPException for the client."""
    if isinstance(error, MigrationIncomplete):
        return HTTPException(
            status_code=500,
            detail={
                "message": error.message,
                "report": error.report.model_dump(by_alias=True, mode="json"),
            },
        )
    return HTTPException(status_code=status_for(error), detail=error.message)


async def get_identity(
    x_owner_id: Optional[str] = Header(None),
    x_identity_temporary: Optional[str] = Header(None),
    x_user_email: Optional[str] = Header(None),
) -> Optional[Identity]:
    """
    Read the caller's identity from the auth headers.

    Returns None when no owner id is present; the services raise
    AuthRequired for operations that need one.
    """
    if not x_owner_id:
        return None
    return Identity(
        owner_id=x_owner_id,
        is_temporary=(x_identity_temporary or "").lower() in ("1", "true", "yes"),
        email=x_user_email or None,
    )
