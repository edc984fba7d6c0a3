import math
from datetime import datetime, timezone
from typing import Any, Iterable, Optional
from uuid import uuid4

from ..models import (
    DayTotal,
    Expense,
    ExpenseDraft,
    ExpenseItem,
    SplitResult,
    TripSummary,
)


UNNAMED_STORE = "Unnamed expense"
ITEM_SEPARATOR = "||"

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


def compute_split(
    original_amount: float,
    exchange_rate: float,
    split_count: int = 1
) -> SplitResult:
    """
    Convert an amount to home currency and split it between participants.

    Args:
        original_amount: Amount in the original currency
        exchange_rate: Original-to-home currency multiplier
        split_count: Number of people sharing the expense, including the payer

    Returns:
        SplitResult with the home-currency total, the caller's share and
        the amount owed by the others
    """
    total_home = original_amount * exchange_rate

    if split_count <= 1:
        return SplitResult(total_home=total_home, my_share=total_home, debt_owed=0.0)

    my_share = total_home / split_count
    return SplitResult(
        total_home=total_home,
        my_share=my_share,
        debt_owed=total_home - my_share,
    )


def coerce_amount(value: Any) -> float:
    """Coerce user input to a finite number, falling back to 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def coerce_rate(value: Any) -> float:
    """Coerce an exchange rate; anything unusable becomes 1 (no conversion)."""
    rate = coerce_amount(value)
    return rate if rate > 0 else 1.0


def coerce_split_count(value: Any) -> int:
    """Coerce a participant count to an integer of at least 1."""
    count = coerce_amount(value)
    return max(1, int(count))


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO date or datetime; naive values are taken as UTC."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def sort_newest_first(expenses: Iterable[Expense]) -> list[Expense]:
    """Sort expenses by occurrence time, newest first. Unparseable dates go last."""
    return sorted(
        expenses,
        key=lambda e: parse_timestamp(e.date) or _OLDEST,
        reverse=True,
    )


def parse_items_text(text: str) -> list[ExpenseItem]:
    """
    Parse the one-item-per-line editing format.

    "Original || Translation" gives both texts; a line without the
    separator is used for both.
    """
    items = []
    for line in text.splitlines():
        if not line.strip():
            continue
        parts = line.split(ITEM_SEPARATOR)
        if len(parts) > 1:
            items.append(ExpenseItem(original_name=parts[0].strip(), name=parts[1].strip()))
        else:
            items.append(ExpenseItem(original_name=line.strip(), name=line.strip()))
    return items


def format_items_text(items: Iterable[ExpenseItem]) -> str:
    """Inverse of parse_items_text; untranslated items are written once."""
    lines = []
    for item in items:
        if item.original_name == item.name:
            lines.append(item.name)
        else:
            lines.append(f"{item.original_name} {ITEM_SEPARATOR} {item.name}")
    return "\n".join(lines)


def build_expense(
    draft: ExpenseDraft,
    trip_id: str,
    owner_id: Optional[str],
    expense_id: Optional[str] = None,
    home_currency: str = "TWD",
    now: Optional[datetime] = None,
) -> Expense:
    """
    Turn a loosely-typed draft into an Expense with computed totals.

    Args:
        draft: User input from the add/edit flow
        trip_id: Owning trip
        owner_id: Caller's identity
        expense_id: Existing id when editing; a new one is generated otherwise
        home_currency: Currency used when the draft leaves it blank
        now: Timestamp used when the draft has no usable date

    Returns:
        The Expense ready to be saved
    """
    amount = coerce_amount(draft.original_amount)
    rate = coerce_rate(draft.exchange_rate)
    split_count = coerce_split_count(draft.split_count)
    split = compute_split(amount, rate, split_count)

    if draft.items_text is not None:
        items = parse_items_text(draft.items_text)
    else:
        items = list(draft.items)

    occurred = parse_timestamp(draft.date) or now or datetime.now(timezone.utc)

    return Expense(
        id=expense_id or str(uuid4()),
        owner_id=owner_id,
        trip_id=trip_id,
        store_name=draft.store_name.strip() or UNNAMED_STORE,
        date=occurred.isoformat(),
        items=items,
        original_currency=(draft.original_currency or home_currency).upper(),
        original_amount=amount,
        exchange_rate=rate,
        total_home=split.total_home,
        split_count=split_count,
        my_share=split.my_share,
        debt_owed=split.debt_owed,
        repaid=draft.repaid if split.debt_owed > 0 else False,
        receipt_image=draft.receipt_image or None,
    )


def summarize_trip(
    trip_id: str,
    expenses: Iterable[Expense],
    budget: Optional[float] = None
) -> TripSummary:
    """
    Compute the totals shown for a trip.

    total_spent is the caller's own share; total_owed_to_me only counts
    debts that are not yet repaid.
    """
    expenses = list(expenses)

    total_home = sum(e.total_home for e in expenses)
    total_spent = sum(e.my_share for e in expenses)
    total_owed = sum(e.debt_owed for e in expenses if not e.repaid)

    # Group by calendar day
    days: dict[str, list[Expense]] = {}
    for expense in expenses:
        occurred = parse_timestamp(expense.date)
        key = occurred.date().isoformat() if occurred else "unknown"
        days.setdefault(key, []).append(expense)

    day_totals = [
        DayTotal(date=key, total_home=sum(e.total_home for e in group), count=len(group))
        for key, group in sorted(days.items(), key=lambda kv: (kv[0] != "unknown", kv[0]), reverse=True)
    ]

    return TripSummary(
        trip_id=trip_id,
        expense_count=len(expenses),
        total_home=total_home,
        total_spent=total_spent,
        total_owed_to_me=total_owed,
        budget=budget,
        budget_remaining=budget - total_spent if budget is not None else None,
        days=day_totals,
    )
