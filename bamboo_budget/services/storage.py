import logging
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel

from ..errors import (
    AuthRequired,
    CascadeDeleteIncomplete,
    DocumentTooLarge,
    LocalQuotaExceeded,
    NotFound,
    StorageUnavailable,
    WriteFailed,
)
from ..models import DeleteReport, Expense, Identity, SaveResult, Trip
from .calculator import sort_newest_first
from .store import DocumentStore, get_document_store, strip_undefined


logger = logging.getLogger(__name__)

TRIPS_COLLECTION = "trips"
EXPENSES_COLLECTION = "expenses"

# Owner field of records written by the first release
LEGACY_OWNER_FIELD = "userId"

QUOTA_WARNING = "Local storage is full; the record was not saved."
IMAGE_DROPPED_WARNING = "The receipt image was too large to store and has been removed."


def require_identity(identity: Optional[Identity]) -> Identity:
    """Fail fast when there is no signed-in identity."""
    if identity is None or not identity.owner_id:
        raise AuthRequired("Sign in to access trips and expenses")
    return identity


def to_document(record: BaseModel) -> dict:
    """Serialize a record with camelCase keys and no undefined fields."""
    return strip_undefined(record.model_dump(by_alias=True, mode="json"))


async def _get_owned(
    store: DocumentStore,
    collection: str,
    doc_id: str,
    identity: Identity,
    model: type[BaseModel],
):
    """Load a record, treating records of other identities as missing."""
    doc = await store.get(collection, doc_id)
    if doc is None:
        return None
    record = model.model_validate(doc)
    if record.owner_id != identity.owner_id:
        raise NotFound(f"{collection}/{doc_id} does not exist")
    return record


async def _query_owned(
    store: DocumentStore,
    collection: str,
    identity: Identity,
    **filters,
) -> list[dict]:
    """
    Query the caller's documents in a collection.

    Records written by the first release keep the owner under "userId"; they
    are matched too so they can be listed and upgraded on read.
    """
    docs = await store.query(collection, ownerId=identity.owner_id, **filters)
    legacy = await store.query(collection, **{LEGACY_OWNER_FIELD: identity.owner_id}, **filters)

    seen = {doc["id"] for doc in docs}
    return docs + [doc for doc in legacy if doc["id"] not in seen]


# --- Trips ---

async def fetch_trips(
    identity: Optional[Identity],
    store: Optional[DocumentStore] = None
) -> list[Trip]:
    """
    Fetch all trips owned by the caller.

    Raises:
        AuthRequired: If there is no identity
        StorageUnavailable: If the store cannot be read
    """
    identity = require_identity(identity)
    store = store or get_document_store()

    docs = await _query_owned(store, TRIPS_COLLECTION, identity)
    return [Trip.model_validate(doc) for doc in docs]


async def get_trip(
    trip_id: str,
    identity: Optional[Identity],
    store: Optional[DocumentStore] = None
) -> Trip:
    """Fetch a single trip owned by the caller."""
    identity = require_identity(identity)
    store = store or get_document_store()

    trip = await _get_owned(store, TRIPS_COLLECTION, trip_id, identity, Trip)
    if trip is None:
        raise NotFound(f"Trip {trip_id} does not exist")
    return trip


async def save_trip(
    trip: Trip,
    identity: Optional[Identity],
    store: Optional[DocumentStore] = None
) -> SaveResult:
    """
    Create or overwrite a trip keyed by its id.

    The caller's owner id is attached before writing. When the local store
    is full the trip is not persisted and a warning is returned instead.

    Raises:
        AuthRequired: If there is no identity
        WriteFailed: If the remote write fails
    """
    identity = require_identity(identity)
    store = store or get_document_store()

    record = trip.model_copy(update={
        "id": trip.id or str(uuid4()),
        "owner_id": identity.owner_id,
    })

    try:
        await store.put(TRIPS_COLLECTION, record.id, to_document(record))
    except LocalQuotaExceeded as e:
        logger.warning(f"Trip {record.id} not saved: {e}")
        return SaveResult(id=record.id, persisted=False, warnings=[QUOTA_WARNING])

    return SaveResult(id=record.id)


async def delete_trip(
    trip_id: str,
    identity: Optional[Identity],
    store: Optional[DocumentStore] = None
) -> DeleteReport:
    """
    Delete a trip and every expense that references it.

    Runs in two phases: the trip document first, then its expenses one by
    one. The phases are not atomic. If the expense phase fails the trip is
    already gone and CascadeDeleteIncomplete reports how far it got; calling
    again resumes with the remaining expenses.

    Raises:
        AuthRequired: If there is no identity
        NotFound: If the trip belongs to another identity
        WriteFailed: If the trip itself could not be deleted
        CascadeDeleteIncomplete: If some expenses were left behind
    """
    identity = require_identity(identity)
    store = store or get_document_store()
    report = DeleteReport(trip_id=trip_id)

    # Phase 1: the trip
    trip = await _get_owned(store, TRIPS_COLLECTION, trip_id, identity, Trip)
    if trip is not None:
        await store.delete(TRIPS_COLLECTION, trip_id)
        report.trip_deleted = True

    # Phase 2: its expenses, filtered by owner as well as trip
    try:
        children = await _query_owned(store, EXPENSES_COLLECTION, identity, tripId=trip_id)
    except StorageUnavailable as e:
        logger.error(f"Could not list expenses of deleted trip {trip_id}", exc_info=True)
        raise CascadeDeleteIncomplete(trip_id, "collect_expenses", 0) from e

    for child in children:
        try:
            await store.delete(EXPENSES_COLLECTION, child["id"])
        except WriteFailed as e:
            logger.error(
                f"Trip {trip_id} delete stopped after {report.expenses_deleted} expenses",
                exc_info=True,
            )
            raise CascadeDeleteIncomplete(
                trip_id,
                "delete_expenses",
                report.expenses_deleted,
                len(children) - report.expenses_deleted,
            ) from e
        report.expenses_deleted += 1

    logger.info(f"Deleted trip {trip_id} with {report.expenses_deleted} expenses")
    return report


# --- Expenses ---

async def fetch_expenses_for_trip(
    trip_id: str,
    identity: Optional[Identity],
    store: Optional[DocumentStore] = None
) -> list[Expense]:
    """
    Fetch the caller's expenses for a trip, newest first.

    Legacy records are upgraded in memory only; the stored documents are
    left as they are until the next save.
    """
    identity = require_identity(identity)
    store = store or get_document_store()

    docs = await _query_owned(store, EXPENSES_COLLECTION, identity, tripId=trip_id)
    return sort_newest_first(Expense.model_validate(doc) for doc in docs)


async def get_expense(
    expense_id: str,
    identity: Optional[Identity],
    store: Optional[DocumentStore] = None
) -> Expense:
    """Fetch a single expense owned by the caller."""
    identity = require_identity(identity)
    store = store or get_document_store()

    expense = await _get_owned(store, EXPENSES_COLLECTION, expense_id, identity, Expense)
    if expense is None:
        raise NotFound(f"Expense {expense_id} does not exist")
    return expense


async def _write_expense(store: DocumentStore, record: Expense) -> SaveResult:
    """Write an expense, retrying once without the receipt image if too large."""
    try:
        await store.put(EXPENSES_COLLECTION, record.id, to_document(record))
        return SaveResult(id=record.id)
    except DocumentTooLarge as e:
        if not record.receipt_image:
            raise
        logger.warning(f"Expense {record.id} too large ({e.size} bytes); retrying without image")
    except LocalQuotaExceeded as e:
        logger.warning(f"Expense {record.id} not saved: {e}")
        return SaveResult(id=record.id, persisted=False, warnings=[QUOTA_WARNING])

    stripped = record.model_copy(update={"receipt_image": None})
    try:
        await store.put(EXPENSES_COLLECTION, stripped.id, to_document(stripped))
    except LocalQuotaExceeded as e:
        logger.warning(f"Expense {record.id} not saved: {e}")
        return SaveResult(id=record.id, persisted=False, warnings=[QUOTA_WARNING])

    return SaveResult(id=record.id, warnings=[IMAGE_DROPPED_WARNING])


async def save_expense(
    expense: Expense,
    identity: Optional[Identity],
    store: Optional[DocumentStore] = None
) -> SaveResult:
    """
    Create or overwrite an expense keyed by its id.

    If the document exceeds the store's size limit because of the embedded
    receipt image, it is saved again without the image and a warning is
    returned rather than an error.

    Raises:
        AuthRequired: If there is no identity
        DocumentTooLarge: If the record is too large even without the image
        WriteFailed: If the remote write fails
    """
    identity = require_identity(identity)
    store = store or get_document_store()

    record = expense.model_copy(update={
        "id": expense.id or str(uuid4()),
        "owner_id": identity.owner_id,
    })
    return await _write_expense(store, record)


async def update_expense(
    expense: Expense,
    identity: Optional[Identity],
    store: Optional[DocumentStore] = None
) -> SaveResult:
    """Overwrite an existing expense; same size fallback as save_expense."""
    identity = require_identity(identity)
    store = store or get_document_store()

    if not expense.id:
        raise NotFound("Expense id is missing")
    existing = await _get_owned(store, EXPENSES_COLLECTION, expense.id, identity, Expense)
    if existing is None:
        raise NotFound(f"Expense {expense.id} does not exist")

    record = expense.model_copy(update={"owner_id": identity.owner_id})
    return await _write_expense(store, record)


async def set_repaid(
    expense_id: str,
    repaid: bool,
    identity: Optional[Identity],
    store: Optional[DocumentStore] = None
) -> Expense:
    """Update only the repaid flag of an expense."""
    identity = require_identity(identity)
    store = store or get_document_store()

    existing = await _get_owned(store, EXPENSES_COLLECTION, expense_id, identity, Expense)
    if existing is None:
        raise NotFound(f"Expense {expense_id} does not exist")

    updated = await store.patch(EXPENSES_COLLECTION, expense_id, {"repaid": repaid})
    return Expense.model_validate(updated)


async def delete_expense(
    expense_id: str,
    identity: Optional[Identity],
    store: Optional[DocumentStore] = None
) -> None:
    """Delete an expense by id. Deleting a missing expense does nothing."""
    identity = require_identity(identity)
    store = store or get_document_store()

    existing = await _get_owned(store, EXPENSES_COLLECTION, expense_id, identity, Expense)
    if existing is None:
        return
    await store.delete(EXPENSES_COLLECTION, expense_id)
