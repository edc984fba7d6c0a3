import pytest

from bamboo_budget.models import Expense, ExpenseItem, Identity, Trip
from bamboo_budget.services.store import LocalDocumentStore


@pytest.fixture
def store():
    """Empty in-memory store with a small per-document limit."""
    return LocalDocumentStore(max_document_bytes=4096, quota_bytes=1024 * 1024)


@pytest.fixture
def identity():
    """A signed-in permanent user."""
    return Identity(owner_id="user-1", is_temporary=False, email="alice@example.com")


@pytest.fixture
def guest():
    """A temporary (guest) identity."""
    return Identity(owner_id="guest-1", is_temporary=True)


@pytest.fixture
def other_identity():
    """Someone else's identity."""
    return Identity(owner_id="user-2", is_temporary=False)


@pytest.fixture
def sample_trip():
    """Tokyo trip, 2024-01-01 to 2024-01-05."""
    return Trip(
        id="t1",
        name="Tokyo",
        start_date="2024-01-01",
        end_date="2024-01-05",
        budget=30000,
    )


@pytest.fixture
def make_expense():
    """Factory for expenses in trip t1."""
    def _make(expense_id="e1", date="2024-01-02T12:00:00+00:00", **overrides):
        fields = {
            "id": expense_id,
            "trip_id": "t1",
            "store_name": "Ramen Ichiran",
            "date": date,
            "items": [ExpenseItem(name="Ramen", original_name="ラーメン")],
            "original_currency": "JPY",
            "original_amount": 1000,
            "exchange_rate": 0.22,
            "total_home": 220.0,
            "split_count": 4,
            "my_share": 55.0,
            "debt_owed": 165.0,
        }
        fields.update(overrides)
        return Expense(**fields)
    return _make


@pytest.fixture
def legacy_expense_doc():
    """An expense as stored by the first release: string items, TWD field names."""
    return {
        "id": "legacy-1",
        "userId": "user-1",
        "tripId": "t1",
        "storeName": "Cafe",
        "date": "2024-01-03T09:00:00.000Z",
        "items": ["Coffee", "Tea"],
        "originalCurrency": "JPY",
        "originalAmount": 500,
        "exchangeRate": 0.2,
        "totalTWD": 100,
        "paidByMe": True,
        "splitCount": 2,
        "myShareTWD": 50,
        "debtAmountTWD": 50,
        "isRepaid": False,
    }
