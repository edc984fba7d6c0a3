from typing import Optional

from fastapi import APIRouter, Depends, Response

from ..config import get_settings
from ..deps import NOT_PERSISTED_STATUS, get_identity, to_http_error
from ..errors import BambooError
from ..models import Expense, ExpenseDraft, Identity, RepaidUpdate, SaveResult
from ..services.calculator import build_expense
from ..services.storage import (
    delete_expense,
    fetch_expenses_for_trip,
    get_expense,
    get_trip,
    save_expense,
    set_repaid,
    update_expense,
)

router = APIRouter(tags=["Expenses"])


@router.get("/trips/{trip_id}/expenses", response_model=list[Expense])
async def list_expenses(
    trip_id: str,
    identity: Optional[Identity] = Depends(get_identity),
) -> list[Expense]:
    """List a trip's expenses, newest first."""
    try:
        return await fetch_expenses_for_trip(trip_id, identity)
    except BambooError as e:
        raise to_http_error(e)


@router.post("/trips/{trip_id}/expenses", response_model=SaveResult, status_code=201)
async def create_expense(
    trip_id: str,
    draft: ExpenseDraft,
    response: Response,
    identity: Optional[Identity] = Depends(get_identity),
) -> SaveResult:
    """
    Add an expense to a trip.

    Home-currency totals and the split are computed from the draft. If the
    receipt image makes the record too large it is dropped and the response
    carries a warning. When the local store is full nothing is saved and the
    answer is 507 with the warnings.
    """
    try:
        trip = await get_trip(trip_id, identity)
        expense = build_expense(
            draft,
            trip_id=trip.id,
            owner_id=identity.owner_id,
            home_currency=get_settings().home_currency,
        )
        result = await save_expense(expense, identity)
    except BambooError as e:
        raise to_http_error(e)

    if not result.persisted:
        response.status_code = NOT_PERSISTED_STATUS
    return result


@router.put("/expenses/{expense_id}", response_model=SaveResult)
async def replace_expense(
    expense_id: str,
    draft: ExpenseDraft,
    response: Response,
    identity: Optional[Identity] = Depends(get_identity),
) -> SaveResult:
    """Replace an expense with an edited draft, keeping its id and trip."""
    try:
        existing = await get_expense(expense_id, identity)
        expense = build_expense(
            draft,
            trip_id=existing.trip_id,
            owner_id=identity.owner_id,
            expense_id=existing.id,
            home_currency=get_settings().home_currency,
        )
        result = await update_expense(expense, identity)
    except BambooError as e:
        raise to_http_error(e)

    if not result.persisted:
        response.status_code = NOT_PERSISTED_STATUS
    return result


@router.patch("/expenses/{expense_id}/repaid", response_model=Expense)
async def update_repaid(
    expense_id: str,
    request: RepaidUpdate,
    identity: Optional[Identity] = Depends(get_identity),
) -> Expense:
    """Mark the other participants' share of an expense as repaid or not."""
    try:
        return await set_repaid(expense_id, request.repaid, identity)
    except BambooError as e:
        raise to_http_error(e)


@router.delete("/expenses/{expense_id}", status_code=204)
async def remove_expense(
    expense_id: str,
    identity: Optional[Identity] = Depends(get_identity),
) -> Response:
    """Delete an expense."""
    try:
        await delete_expense(expense_id, identity)
    except BambooError as e:
        raise to_http_error(e)
    return Response(status_code=204)
