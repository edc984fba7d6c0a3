"""Tests for the trip/expense controller."""

import pytest
from unittest.mock import AsyncMock

from bamboo_budget.errors import IdentityCollision, StorageUnavailable, WriteFailed
from bamboo_budget.models import ExpenseDraft, Identity
from bamboo_budget.services.controller import TripExpenseController
from bamboo_budget.services.preferences import AppState
from bamboo_budget.services.storage import (
    EXPENSES_COLLECTION,
    IMAGE_DROPPED_WARNING,
    fetch_expenses_for_trip,
    fetch_trips,
    save_expense,
    save_trip,
)


class FakeIdentityProvider:
    """Identity provider that links unless the credential is already taken."""

    def __init__(self, existing: Identity = None):
        self.existing = existing

    async def link(self, identity, credential):
        if self.existing is not None:
            raise IdentityCollision(credential)
        return identity.model_copy(update={"is_temporary": False, "email": credential})

    async def sign_in_with_credential(self, credential):
        return self.existing


def tokyo_draft(**overrides):
    fields = {
        "store_name": "Ramen Ichiran",
        "date": "2024-01-02T12:00:00+00:00",
        "original_currency": "JPY",
        "original_amount": "1000",
        "exchange_rate": "0.22",
        "split_count": "4",
    }
    fields.update(overrides)
    return ExpenseDraft(**fields)


@pytest.fixture
def controller(store):
    return TripExpenseController(store=store)


class TestTrips:
    """Trip list actions."""

    @pytest.mark.asyncio
    async def test_identity_change_loads_trips(self, controller, store, identity, sample_trip):
        await save_trip(sample_trip, identity, store)

        trips = await controller.on_identity(identity)

        assert [t.id for t in trips] == ["t1"]

    @pytest.mark.asyncio
    async def test_sign_out_clears_state(self, controller, identity, sample_trip, store):
        await save_trip(sample_trip, identity, store)
        await controller.on_identity(identity)
        await controller.open_trip("t1")

        await controller.on_identity(None)

        assert controller.trips == []
        assert controller.active_trip_id is None

    @pytest.mark.asyncio
    async def test_load_failure_sets_notice(self, controller, store, identity):
        store.query = AsyncMock(side_effect=StorageUnavailable("offline"))

        await controller.on_identity(identity)

        assert controller.trips == []
        assert "Failed to load trips" in controller.pop_notice()
        assert controller.pop_notice() is None

    @pytest.mark.asyncio
    async def test_create_trip(self, controller, store, identity):
        await controller.on_identity(identity)

        trip = await controller.create_trip("  Tokyo ", "2024-01-01", "2024-01-05", 30000)

        assert trip.name == "Tokyo"
        assert controller.trips == [trip]
        assert [t.id for t in await fetch_trips(identity, store)] == [trip.id]

    @pytest.mark.asyncio
    async def test_create_trip_validation(self, controller, identity):
        await controller.on_identity(identity)

        assert await controller.create_trip("   ") is None
        assert controller.pop_notice() == "Enter a trip name"

        assert await controller.create_trip("Tokyo", "2024-01-05", "2024-01-01") is None
        assert "end date" in controller.pop_notice()
        assert controller.trips == []

    @pytest.mark.asyncio
    async def test_create_trip_failure_leaves_list_unchanged(self, controller, store, identity):
        await controller.on_identity(identity)
        store.put = AsyncMock(side_effect=WriteFailed("offline"))

        assert await controller.create_trip("Tokyo") is None
        assert controller.trips == []
        assert controller.pop_notice().startswith("Failed to create the trip")

    @pytest.mark.asyncio
    async def test_delete_trip_removes_it_and_its_expenses(self, controller, store, identity):
        await controller.on_identity(identity)
        trip = await controller.create_trip("Tokyo")
        await controller.open_trip(trip.id)
        await controller.save_expense(tokyo_draft())

        assert await controller.delete_trip(trip.id) is True

        assert controller.trips == []
        assert controller.active_trip_id is None
        assert controller.expenses == []
        assert await fetch_expenses_for_trip(trip.id, identity, store) == []

    @pytest.mark.asyncio
    async def test_partial_delete_still_drops_trip(self, controller, store, identity):
        await controller.on_identity(identity)
        trip = await controller.create_trip("Tokyo")
        await controller.open_trip(trip.id)
        await controller.save_expense(tokyo_draft())

        real_delete = store.delete

        async def flaky_delete(collection, doc_id):
            if collection == EXPENSES_COLLECTION:
                raise WriteFailed("offline")
            await real_delete(collection, doc_id)

        store.delete = AsyncMock(side_effect=flaky_delete)

        assert await controller.delete_trip(trip.id) is False
        assert controller.trips == []
        assert "some expenses could not be removed" in controller.pop_notice()


class TestExpenses:
    """Expense actions on the open trip."""

    @pytest.mark.asyncio
    async def test_save_requires_open_trip(self, controller, identity):
        await controller.on_identity(identity)

        assert await controller.save_expense(tokyo_draft()) is None
        assert controller.pop_notice() == "Open a trip before adding expenses"

    @pytest.mark.asyncio
    async def test_add_computes_split(self, controller, store, identity, sample_trip):
        await save_trip(sample_trip, identity, store)
        await controller.on_identity(identity)
        await controller.open_trip("t1")

        expense = await controller.save_expense(tokyo_draft())

        assert expense.total_home == pytest.approx(220)
        assert expense.my_share == pytest.approx(55)
        assert expense.debt_owed == pytest.approx(165)
        assert controller.expenses == [expense]

    @pytest.mark.asyncio
    async def test_list_stays_newest_first(self, controller, store, identity, sample_trip):
        await save_trip(sample_trip, identity, store)
        await controller.on_identity(identity)
        await controller.open_trip("t1")

        await controller.save_expense(tokyo_draft(store_name="Later", date="2024-01-04T09:00:00+00:00"))
        await controller.save_expense(tokyo_draft(store_name="Earlier", date="2024-01-02T09:00:00+00:00"))

        assert [e.store_name for e in controller.expenses] == ["Later", "Earlier"]

    @pytest.mark.asyncio
    async def test_edit_keeps_id(self, controller, store, identity, sample_trip):
        await save_trip(sample_trip, identity, store)
        await controller.on_identity(identity)
        await controller.open_trip("t1")
        original = await controller.save_expense(tokyo_draft())

        edited = await controller.save_expense(tokyo_draft(split_count=2), editing=original)

        assert edited.id == original.id
        assert edited.debt_owed == pytest.approx(110)
        assert len(controller.expenses) == 1
        [stored] = await fetch_expenses_for_trip("t1", identity, store)
        assert stored.split_count == 2

    @pytest.mark.asyncio
    async def test_dropped_image_is_reported(self, controller, store, identity, sample_trip):
        await save_trip(sample_trip, identity, store)
        await controller.on_identity(identity)
        await controller.open_trip("t1")

        expense = await controller.save_expense(
            tokyo_draft(receipt_image="data:image/jpeg;base64," + "A" * 6000)
        )

        assert expense.receipt_image is None
        assert controller.pop_notice() == IMAGE_DROPPED_WARNING

    @pytest.mark.asyncio
    async def test_toggle_repaid_and_summary(self, controller, store, identity, sample_trip):
        await save_trip(sample_trip, identity, store)
        await controller.on_identity(identity)
        await controller.open_trip("t1")
        expense = await controller.save_expense(tokyo_draft())

        updated = await controller.toggle_repaid(expense)

        assert updated.repaid is True
        assert controller.expenses[0].repaid is True
        summary = controller.summary()
        assert summary.total_home == pytest.approx(220)
        assert summary.total_owed_to_me == 0
        assert summary.budget_remaining == pytest.approx(30000 - 55)

    @pytest.mark.asyncio
    async def test_delete_expense(self, controller, store, identity, sample_trip):
        await save_trip(sample_trip, identity, store)
        await controller.on_identity(identity)
        await controller.open_trip("t1")
        expense = await controller.save_expense(tokyo_draft())

        assert await controller.delete_expense(expense.id) is True

        assert controller.expenses == []
        assert await fetch_expenses_for_trip("t1", identity, store) == []


class TestLinkIdentity:
    """Upgrading a guest to a permanent identity."""

    @pytest.mark.asyncio
    async def test_only_guests_can_link(self, controller, identity):
        await controller.on_identity(identity)

        assert await controller.link_identity(FakeIdentityProvider(), "bob@example.com") is None
        assert controller.pop_notice() == "Only a guest account can be linked"

    @pytest.mark.asyncio
    async def test_link_keeps_owner_id(self, store, guest):
        app_state = AppState(guest.owner_id, store)
        controller = TripExpenseController(store=store, app_state=app_state)
        await controller.on_identity(guest)

        result = await controller.link_identity(FakeIdentityProvider(), "bob@example.com")

        assert result is None
        assert controller.identity.owner_id == "guest-1"
        assert controller.identity.is_temporary is False
        assert app_state.login_preference.type == "google"

    @pytest.mark.asyncio
    async def test_collision_migrates_and_switches(self, store, guest, identity, sample_trip, make_expense):
        await save_trip(sample_trip, guest, store)
        await save_expense(make_expense("e1"), guest, store)
        controller = TripExpenseController(store=store)
        await controller.on_identity(guest)

        report = await controller.link_identity(FakeIdentityProvider(existing=identity), "alice@example.com")

        assert report.trips_migrated == 1
        assert report.expenses_migrated == 1
        assert controller.identity == identity
        assert [t.name for t in controller.trips] == ["Tokyo"]
        assert "Moved 1 trips and 1 expenses" in controller.pop_notice()

    @pytest.mark.asyncio
    async def test_failed_migration_stays_on_guest(self, store, guest, identity, sample_trip):
        await save_trip(sample_trip, guest, store)
        controller = TripExpenseController(store=store)
        await controller.on_identity(guest)
        store.put = AsyncMock(side_effect=WriteFailed("offline"))

        report = await controller.link_identity(FakeIdentityProvider(existing=identity), "alice@example.com")

        assert report.step == "migrate_trips"
        assert report.trips_migrated == 0
        assert controller.identity == guest
        assert "did not complete" in controller.pop_notice()
