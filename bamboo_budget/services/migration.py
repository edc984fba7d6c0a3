import logging
from typing import Optional
from uuid import uuid4

from ..errors import BambooError, LocalQuotaExceeded, MigrationIncomplete
from ..models import Expense, Identity, MigrationReport, MigrationStep
from .storage import fetch_expenses_for_trip, fetch_trips, save_expense, save_trip
from .store import DocumentStore


logger = logging.getLogger(__name__)


async def migrate_guest_data(
    source: Identity,
    target: Identity,
    store: Optional[DocumentStore] = None
) -> MigrationReport:
    """
    Copy every trip and expense of a temporary identity to a permanent one.

    Each trip and expense gets a new id, and expenses are re-pointed at the
    new trip ids. The copy is not atomic and nothing is rolled back: if a
    step fails, MigrationIncomplete carries the report with the step reached
    and the counts copied so far. The guest records are left in place.

    Args:
        source: The temporary identity whose data is copied
        target: The permanent identity that receives the copies

    Returns:
        MigrationReport with step DONE
    """
    report = MigrationReport(
        source_owner_id=source.owner_id,
        target_owner_id=target.owner_id,
    )

    try:
        # Collect all guest data first
        trips = await fetch_trips(source, store)
        expenses: list[Expense] = []
        for trip in trips:
            expenses.extend(await fetch_expenses_for_trip(trip.id, source, store))

        report.trips_total = len(trips)
        report.expenses_total = len(expenses)
        logger.info(
            f"Migrating {len(trips)} trips and {len(expenses)} expenses "
            f"from {source.owner_id} to {target.owner_id}"
        )

        report.step = MigrationStep.MIGRATE_TRIPS
        for trip in trips:
            new_trip_id = str(uuid4())
            result = await save_trip(
                trip.model_copy(update={"id": new_trip_id, "owner_id": target.owner_id}),
                target,
                store,
            )
            if not result.persisted:
                raise LocalQuotaExceeded(f"Trip {trip.id} could not be stored")
            report.trip_id_map[trip.id] = new_trip_id
            report.trips_migrated += 1

        report.step = MigrationStep.MIGRATE_EXPENSES
        for expense in expenses:
            new_trip_id = report.trip_id_map.get(expense.trip_id)
            if not new_trip_id:
                logger.warning(f"No migrated trip for {expense.trip_id}; skipping expense {expense.id}")
                report.expenses_skipped += 1
                continue

            result = await save_expense(
                expense.model_copy(update={
                    "id": str(uuid4()),
                    "owner_id": target.owner_id,
                    "trip_id": new_trip_id,
                }),
                target,
                store,
            )
            if not result.persisted:
                raise LocalQuotaExceeded(f"Expense {expense.id} could not be stored")
            report.warnings.extend(result.warnings)
            report.expenses_migrated += 1

        report.step = MigrationStep.DONE
    except BambooError as e:
        logger.error(
            f"Migration from {source.owner_id} stopped at {report.step.value}: "
            f"{report.trips_migrated}/{report.trips_total} trips, "
            f"{report.expenses_migrated}/{report.expenses_total} expenses",
            exc_info=True,
        )
        raise MigrationIncomplete(report, e) from e

    logger.info(
        f"Migrated {report.trips_migrated} trips and {report.expenses_migrated} expenses "
        f"to {target.owner_id}"
    )
    return report
