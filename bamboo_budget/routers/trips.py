from datetime import date
from typing import Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Response

from ..deps import NOT_PERSISTED_STATUS, get_identity, to_http_error
from ..errors import BambooError
from ..models import DeleteReport, Identity, SaveResult, Trip, TripCreate, TripSummary
from ..services.calculator import parse_timestamp, summarize_trip
from ..services.storage import (
    delete_trip,
    fetch_expenses_for_trip,
    fetch_trips,
    get_trip,
    save_trip,
)

router = APIRouter(prefix="/trips", tags=["Trips"])


@router.get("", response_model=list[Trip])
async def list_trips(identity: Optional[Identity] = Depends(get_identity)) -> list[Trip]:
    """List the caller's trips."""
    try:
        return await fetch_trips(identity)
    except BambooError as e:
        raise to_http_error(e)


@router.post("", response_model=SaveResult, status_code=201)
async def create_trip(
    request: TripCreate,
    response: Response,
    identity: Optional[Identity] = Depends(get_identity),
) -> SaveResult:
    """
    Create a trip.

    Start and end dates default to today; the end may not be before the start.
    Answers 507 with the warnings when the local store is full and nothing
    was saved.
    """
    if not request.name.strip():
        raise HTTPException(status_code=422, detail="Trip name is required")

    start = parse_timestamp(request.start_date) if request.start_date else None
    end = parse_timestamp(request.end_date) if request.end_date else None
    if start and end and end < start:
        raise HTTPException(status_code=422, detail="End date cannot be before start date")

    today = date.today().isoformat()
    trip = Trip(
        id=str(uuid4()),
        name=request.name.strip(),
        start_date=request.start_date or today,
        end_date=request.end_date or today,
        budget=request.budget,
    )

    try:
        result = await save_trip(trip, identity)
    except BambooError as e:
        raise to_http_error(e)

    if not result.persisted:
        response.status_code = NOT_PERSISTED_STATUS
    return result


@router.delete("/{trip_id}", response_model=DeleteReport)
async def remove_trip(
    trip_id: str,
    identity: Optional[Identity] = Depends(get_identity),
) -> DeleteReport:
    """Delete a trip and all of its expenses."""
    try:
        return await delete_trip(trip_id, identity)
    except BambooError as e:
        raise to_http_error(e)


@router.get("/{trip_id}/summary", response_model=TripSummary)
async def get_trip_summary(
    trip_id: str,
    identity: Optional[Identity] = Depends(get_identity),
) -> TripSummary:
    """Totals for a trip: spent, owed to the caller, budget left, per-day sums."""
    try:
        trip = await get_trip(trip_id, identity)
        expenses = await fetch_expenses_for_trip(trip_id, identity)
    except BambooError as e:
        raise to_http_error(e)

    return summarize_trip(trip.id, expenses, trip.budget)
