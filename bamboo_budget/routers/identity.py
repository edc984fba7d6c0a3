from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from ..deps import get_identity, to_http_error
from ..errors import BambooError
from ..models import Identity, MigrationReport, MigrationRequest
from ..services.migration import migrate_guest_data

router = APIRouter(prefix="/identity", tags=["Identity"])


@router.post("/migrate", response_model=MigrationReport)
async def migrate_identity(
    request: MigrationRequest,
    identity: Optional[Identity] = Depends(get_identity),
) -> MigrationReport:
    """
    Copy a guest's trips and expenses to an existing permanent identity.

    Used when linking a guest to a credential that already has an account.
    On partial failure the response is a 500 whose detail holds the
    migration report (step reached, counts copied).

    The target is not verified here. Callers are trusted the same way as the
    identity headers: the gateway in front of the API must only forward this
    request after the client signed in to the target identity.
    """
    if identity is None:
        raise HTTPException(status_code=401, detail="Sign in to migrate data")
    if not identity.is_temporary:
        raise HTTPException(status_code=409, detail="Only a guest identity can be migrated")
    if request.target_owner_id == identity.owner_id:
        raise HTTPException(status_code=409, detail="Target identity is the same as the guest")

    target = Identity(
        owner_id=request.target_owner_id,
        is_temporary=False,
        email=request.target_email,
    )
    try:
        return await migrate_guest_data(identity, target)
    except BambooError as e:
        raise to_http_error(e)
