import logging
from datetime import date
from typing import Any, Optional, Protocol
from uuid import uuid4

from ..config import get_settings
from ..errors import BambooError, CascadeDeleteIncomplete, IdentityCollision
from ..models import (
    Expense,
    ExpenseDraft,
    Identity,
    MigrationReport,
    Trip,
    TripSummary,
)
from .calculator import build_expense, parse_timestamp, sort_newest_first, summarize_trip
from .migration import migrate_guest_data
from .preferences import AppState
from .store import DocumentStore
from . import storage


logger = logging.getLogger(__name__)


class IdentityProvider(Protocol):
    """The auth provider as seen by the controller."""

    async def link(self, identity: Identity, credential: Any) -> Identity:
        """Attach a permanent credential to a temporary identity.

        Raises IdentityCollision when the credential already has an identity.
        """

    async def sign_in_with_credential(self, credential: Any) -> Identity:
        """Sign in as the identity that owns a credential."""


class TripExpenseController:
    """
    In-memory view state for the trip list and the open trip.

    Every action goes through the persistence layer first and only touches
    the in-memory lists once the write succeeded. Failures are turned into a
    one-shot notice (see pop_notice) and leave the lists as they were.
    """

    def __init__(
        self,
        store: Optional[DocumentStore] = None,
        app_state: Optional[AppState] = None,
    ):
        self.store = store
        self.app_state = app_state
        self.identity: Optional[Identity] = None
        self.trips: list[Trip] = []
        self.active_trip_id: Optional[str] = None
        self.expenses: list[Expense] = []
        self.notice: Optional[str] = None

    def pop_notice(self) -> Optional[str]:
        """Return the pending user-facing message and clear it."""
        notice, self.notice = self.notice, None
        return notice

    def _report(self, message: str, error: Optional[BaseException] = None) -> None:
        if error is not None:
            logger.error(f"{message}: {error}")
            message = f"{message}: {error}"
        self.notice = message

    @property
    def active_trip(self) -> Optional[Trip]:
        return next((t for t in self.trips if t.id == self.active_trip_id), None)

    async def on_identity(self, identity: Optional[Identity]) -> list[Trip]:
        """Switch to an identity and load its trips."""
        self.identity = identity
        self.trips = []
        self.active_trip_id = None
        self.expenses = []
        if identity is None:
            return self.trips

        try:
            self.trips = await storage.fetch_trips(identity, self.store)
        except BambooError as e:
            self._report("Failed to load trips", e)
        return self.trips

    async def open_trip(self, trip_id: str) -> list[Expense]:
        """Select a trip and load its expenses."""
        self.active_trip_id = trip_id
        self.expenses = []
        try:
            self.expenses = await storage.fetch_expenses_for_trip(trip_id, self.identity, self.store)
        except BambooError as e:
            self._report("Failed to load expenses", e)
        return self.expenses

    async def create_trip(
        self,
        name: str,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        budget: Optional[float] = None,
    ) -> Optional[Trip]:
        if not name or not name.strip():
            self._report("Enter a trip name")
            return None

        start = parse_timestamp(start_date) if start_date else None
        end = parse_timestamp(end_date) if end_date else None
        if start and end and end < start:
            self._report("The end date cannot be before the start date")
            return None

        today = date.today().isoformat()
        trip = Trip(
            id=str(uuid4()),
            owner_id=self.identity.owner_id if self.identity else None,
            name=name.strip(),
            start_date=start_date or today,
            end_date=end_date or today,
            budget=budget,
        )

        try:
            result = await storage.save_trip(trip, self.identity, self.store)
        except BambooError as e:
            self._report("Failed to create the trip", e)
            return None

        if not result.persisted:
            self._report(" ".join(result.warnings))
            return None

        self.trips = [*self.trips, trip]
        return trip

    async def delete_trip(self, trip_id: str) -> bool:
        try:
            await storage.delete_trip(trip_id, self.identity, self.store)
        except CascadeDeleteIncomplete as e:
            # The trip itself is gone; only some of its expenses are left
            self._forget_trip(trip_id)
            self._report("The trip was deleted but some expenses could not be removed", e)
            return False
        except BambooError as e:
            self._report("Failed to delete the trip", e)
            return False

        self._forget_trip(trip_id)
        return True

    def _forget_trip(self, trip_id: str) -> None:
        self.trips = [t for t in self.trips if t.id != trip_id]
        if self.active_trip_id == trip_id:
            self.active_trip_id = None
            self.expenses = []

    async def save_expense(
        self,
        draft: ExpenseDraft,
        editing: Optional[Expense] = None,
    ) -> Optional[Expense]:
        """
        Save the add/edit form.

        A new expense gets a fresh id; an edit keeps the id of the expense
        being edited and is written as a full replacement.
        """
        if self.active_trip_id is None:
            self._report("Open a trip before adding expenses")
            return None

        expense = build_expense(
            draft,
            trip_id=self.active_trip_id,
            owner_id=self.identity.owner_id if self.identity else None,
            expense_id=editing.id if editing else None,
            home_currency=get_settings().home_currency,
        )

        try:
            if editing:
                result = await storage.update_expense(expense, self.identity, self.store)
            else:
                result = await storage.save_expense(expense, self.identity, self.store)
        except BambooError as e:
            self._report("Failed to save the expense", e)
            return None

        if not result.persisted:
            self._report(" ".join(result.warnings))
            return None
        if result.warnings:
            # Only the receipt image is ever dropped on save
            expense = expense.model_copy(update={"receipt_image": None})
            self._report(" ".join(result.warnings))

        if editing:
            updated = [expense if e.id == expense.id else e for e in self.expenses]
        else:
            updated = [expense, *self.expenses]
        self.expenses = sort_newest_first(updated)
        return expense

    async def delete_expense(self, expense_id: str) -> bool:
        try:
            await storage.delete_expense(expense_id, self.identity, self.store)
        except BambooError as e:
            self._report("Failed to delete the expense", e)
            return False

        self.expenses = [e for e in self.expenses if e.id != expense_id]
        return True

    async def toggle_repaid(self, expense: Expense) -> Optional[Expense]:
        try:
            updated = await storage.set_repaid(expense.id, not expense.repaid, self.identity, self.store)
        except BambooError as e:
            self._report("Failed to update the repayment status", e)
            return None

        self.expenses = [updated if e.id == updated.id else e for e in self.expenses]
        return updated

    def summary(self) -> Optional[TripSummary]:
        trip = self.active_trip
        if trip is None:
            return None
        return summarize_trip(trip.id, self.expenses, trip.budget)

    async def link_identity(
        self,
        provider: IdentityProvider,
        credential: Any,
    ) -> Optional[MigrationReport]:
        """
        Upgrade the current temporary identity to a permanent one.

        When the credential already belongs to another identity, the guest
        trips and expenses are copied to that identity and the controller
        switches to it.

        Returns:
            The migration report when data was migrated, otherwise None
        """
        guest = self.identity
        if guest is None or not guest.is_temporary:
            self._report("Only a guest account can be linked")
            return None

        try:
            linked = await provider.link(guest, credential)
        except IdentityCollision as collision:
            return await self._migrate_to_existing(provider, guest, collision.credential or credential)
        except BambooError as e:
            self._report("Failed to link the account", e)
            return None

        self.identity = linked
        if self.app_state is not None:
            await self.app_state.set_login_preference("google")
        self._report("Account linked; your guest data is now kept permanently.")
        return None

    async def _migrate_to_existing(
        self,
        provider: IdentityProvider,
        guest: Identity,
        credential: Any,
    ) -> Optional[MigrationReport]:
        try:
            target = await provider.sign_in_with_credential(credential)
        except BambooError as e:
            self._report("Could not sign in to the existing account", e)
            return None

        try:
            report = await migrate_guest_data(guest, target, self.store)
        except BambooError as e:
            # Stay on the guest identity; the report in the error says how far it got
            self._report("The data migration did not complete", e)
            return getattr(e, "report", None)

        if self.app_state is not None:
            await self.app_state.set_login_preference("google")
        await self.on_identity(target)
        self._report(
            f"Moved {report.trips_migrated} trips and {report.expenses_migrated} expenses "
            f"to your account."
        )
        return report
