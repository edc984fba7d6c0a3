from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, model_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base for models persisted or served with camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Keys written by the first release of the app, mapped to their current names
LEGACY_EXPENSE_KEYS = {
    "userId": "ownerId",
    "totalTWD": "totalHome",
    "myShareTWD": "myShare",
    "debtAmountTWD": "debtOwed",
    "isRepaid": "repaid",
}
LEGACY_TRIP_KEYS = {
    "userId": "ownerId",
    "budgetTWD": "budget",
}


def _rename_legacy_keys(data: Any, mapping: dict[str, str]) -> Any:
    if not isinstance(data, dict):
        return data
    upgraded = dict(data)
    for old_key, new_key in mapping.items():
        if old_key in upgraded:
            value = upgraded.pop(old_key)
            upgraded.setdefault(new_key, value)
    return upgraded


def upgrade_items(items: Any) -> list[dict]:
    """
    Upgrade stored item lists to the two-field shape.

    Bare strings (pre-translation schema) become pairs with the same text
    on both sides; dicts missing one side get it copied from the other.
    """
    if not isinstance(items, list):
        return []

    upgraded = []
    for item in items:
        if isinstance(item, str):
            upgraded.append({"name": item, "originalName": item})
        elif isinstance(item, dict):
            name = item.get("name") or item.get("originalName") or item.get("original_name") or ""
            original = item.get("originalName") or item.get("original_name") or name
            upgraded.append({"name": name, "originalName": original})
        elif isinstance(item, BaseModel):
            upgraded.append(item)
    return upgraded


class ExpenseItem(CamelModel):
    """A purchased item: translated display text plus the receipt text."""
    name: str
    original_name: str


class Trip(CamelModel):
    """A trip owned by a single identity."""
    id: str
    owner_id: Optional[str] = None
    name: str
    start_date: str
    end_date: str
    budget: Optional[float] = None

    @model_validator(mode="before")
    @classmethod
    def upgrade_legacy(cls, data: Any) -> Any:
        return _rename_legacy_keys(data, LEGACY_TRIP_KEYS)


class Expense(CamelModel):
    """An expense with its home-currency totals and split."""
    id: str
    owner_id: Optional[str] = None
    trip_id: str
    store_name: str
    date: str
    items: list[ExpenseItem] = []
    original_currency: str
    original_amount: float
    exchange_rate: float
    total_home: float
    split_count: int = 1
    my_share: float
    debt_owed: float = 0.0
    repaid: bool = False
    receipt_image: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def upgrade_legacy(cls, data: Any) -> Any:
        data = _rename_legacy_keys(data, LEGACY_EXPENSE_KEYS)
        if isinstance(data, dict):
            data.pop("paidByMe", None)
            if "items" in data:
                data["items"] = upgrade_items(data["items"])
        return data


class SplitResult(BaseModel):
    """Home-currency totals for one expense."""
    total_home: float
    my_share: float
    debt_owed: float


class Identity(CamelModel):
    """The caller's identity as issued by the auth provider."""
    owner_id: str
    is_temporary: bool = False
    email: Optional[str] = None


class TripCreate(CamelModel):
    """Request body for creating a trip."""
    name: str = ""
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    budget: Optional[float] = None


class ExpenseDraft(CamelModel):
    """
    Request body for creating or editing an expense.

    Numeric fields are accepted loosely and coerced before the totals are
    computed; items may be given as a list or as "Original || Translation" text.
    """
    store_name: str = ""
    date: Optional[str] = None
    items: list[ExpenseItem] = []
    items_text: Optional[str] = None
    original_currency: str = ""
    original_amount: Union[float, str, None] = None
    exchange_rate: Union[float, str, None] = None
    split_count: Union[int, str, None] = 1
    repaid: bool = False
    receipt_image: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def upgrade_legacy(cls, data: Any) -> Any:
        if isinstance(data, dict) and "items" in data:
            data = dict(data)
            data["items"] = upgrade_items(data["items"])
        return data


class RepaidUpdate(BaseModel):
    """Request body for toggling the repaid flag."""
    repaid: bool


class SaveResult(CamelModel):
    """Outcome of a save: the record id plus any user-facing warnings."""
    id: str
    persisted: bool = True
    warnings: list[str] = []


class DeleteReport(CamelModel):
    """Progress of a cascading trip delete."""
    trip_id: str
    trip_deleted: bool = False
    expenses_deleted: int = 0


class DayTotal(CamelModel):
    """Sum of expenses for one calendar day."""
    date: str
    total_home: float
    count: int


class TripSummary(CamelModel):
    """Totals for a trip in home currency."""
    trip_id: str
    expense_count: int
    total_home: float
    total_spent: float
    total_owed_to_me: float
    budget: Optional[float] = None
    budget_remaining: Optional[float] = None
    days: list[DayTotal] = []


class ReceiptAnalysis(CamelModel):
    """Structured receipt data returned by the AI model."""
    store_name: str
    date: str
    total_amount: float
    currency: str
    items: list[ExpenseItem] = []
    exchange_rate_to_home: float

    @model_validator(mode="before")
    @classmethod
    def upgrade_legacy(cls, data: Any) -> Any:
        if isinstance(data, dict) and "items" in data:
            data = dict(data)
            data["items"] = upgrade_items(data["items"])
        return data


class AnalysisOutcome(CamelModel):
    """Receipt analysis result; `used_fallback` marks a masked failure."""
    ok: bool
    used_fallback: bool = False
    data: ReceiptAnalysis


class OCRParseRequest(CamelModel):
    """Request body for receipt analysis with a base64 image or data URL."""
    image_base64: str
    media_type: Optional[str] = None


class UsageResponse(CamelModel):
    """Shared AI key usage for today."""
    used: int
    limit: int
    remaining: int
    unlimited: bool = False


class ExchangeRateResponse(BaseModel):
    """Response for exchange rate queries."""
    rate: float
    source: str


class MigrationStep(str, Enum):
    COLLECT = "collect"
    MIGRATE_TRIPS = "migrate_trips"
    MIGRATE_EXPENSES = "migrate_expenses"
    DONE = "done"


class MigrationReport(CamelModel):
    """Progress marker for a guest-to-permanent data migration."""
    source_owner_id: str
    target_owner_id: str
    step: MigrationStep = MigrationStep.COLLECT
    trips_total: int = 0
    trips_migrated: int = 0
    expenses_total: int = 0
    expenses_migrated: int = 0
    expenses_skipped: int = 0
    trip_id_map: dict[str, str] = {}
    warnings: list[str] = []


class MigrationRequest(CamelModel):
    """Request body for migrating guest data to a permanent identity."""
    target_owner_id: str
    target_email: Optional[str] = None


ThemeMode = Literal["light", "dark", "system"]
LoginType = Literal["anonymous", "google"]


class LoginPreference(CamelModel):
    type: LoginType
    last_login: str


class Preferences(CamelModel):
    """Per-identity application preferences."""
    theme: ThemeMode = "system"
    login_preference: Optional[LoginPreference] = None
    has_user_api_key: bool = False


class PreferencesUpdate(CamelModel):
    """Request body for updating preferences; omitted fields are unchanged."""
    theme: Optional[str] = None
    login_type: Optional[LoginType] = None
    user_api_key: Optional[str] = None
    clear_user_api_key: bool = False
