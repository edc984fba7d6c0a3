import logging
import re
from datetime import date
from typing import Optional

from anthropic import AsyncAnthropic

from ..config import get_settings
from ..errors import WriteFailed
from ..models import ExchangeRateResponse
from .store import DocumentStore, get_local_store


logger = logging.getLogger(__name__)

RATE_CACHE_COLLECTION = "rate_cache"

RATE_LOOKUP_PROMPT = (
    "What is the current exchange rate for 1 {currency} to {home_currency}? "
    "Return ONLY the numeric rate (e.g. 0.21). Do not add any text."
)

NUMBER_PATTERN = re.compile(r"\d+(?:\.\d+)?|\.\d+")


async def get_cached_rate(
    currency: str,
    today: date,
    store: Optional[DocumentStore] = None
) -> Optional[float]:
    """
    Return today's cached rate for a currency.

    Args:
        currency: Currency code
        today: Local calendar date; entries from other days are ignored

    Returns:
        The cached rate, or None if there is no entry for today
    """
    store = store or get_local_store()

    entry = await store.get(RATE_CACHE_COLLECTION, currency.upper())
    if entry and entry.get("date") == today.isoformat():
        return entry["rate"]
    return None


async def save_rate(
    currency: str,
    rate: float,
    today: date,
    store: Optional[DocumentStore] = None
) -> None:
    """Cache a rate for a currency, replacing any entry from an earlier day."""
    store = store or get_local_store()

    try:
        await store.put(
            RATE_CACHE_COLLECTION,
            currency.upper(),
            {"rate": rate, "date": today.isoformat()},
        )
    except WriteFailed as e:
        logger.error(f"Failed to save rate cache for {currency}: {e}")


def parse_rate(text: str) -> float:
    """Parse the first numeric token of a response; 0 if there is none."""
    match = NUMBER_PATTERN.search(text or "")
    if not match:
        return 0.0
    return float(match.group(0))


async def fetch_rate_from_model(currency: str, home_currency: str) -> str:
    """
    Ask the AI model for the current rate.

    Args:
        currency: Source currency code
        home_currency: Target currency code

    Returns:
        The text of the model's answer

    Raises:
        ValueError: If the response has no text
    """
    settings = get_settings()
    client = AsyncAnthropic(api_key=settings.anthropic_api_key)

    message = await client.messages.create(
        model=settings.anthropic_model,
        max_tokens=256,
        tools=[{"type": "web_search_20250305", "name": "web_search", "max_uses": 2}],
        messages=[
            {
                "role": "user",
                "content": RATE_LOOKUP_PROMPT.format(
                    currency=currency,
                    home_currency=home_currency,
                ),
            }
        ],
    )

    # Web search adds tool blocks; only the text blocks carry the answer
    text = "".join(
        block.text for block in message.content
        if getattr(block, "type", None) == "text"
    ).strip()
    if not text:
        raise ValueError("No text in exchange rate response")
    return text


async def resolve_rate(
    currency: str,
    today: Optional[date] = None,
    store: Optional[DocumentStore] = None
) -> ExchangeRateResponse:
    """
    Get the rate from a currency to the home currency.

    Order: home currency (rate 1), today's cache, then the AI model. A rate
    that could not be looked up comes back as 1 with source "failed" or
    "error" and is not cached, so the next call tries again.

    Args:
        currency: Currency code
        today: Local calendar date (defaults to today)

    Returns:
        ExchangeRateResponse with the rate and where it came from
    """
    settings = get_settings()
    currency = currency.strip().upper()
    today = today or date.today()

    if currency == settings.home_currency.upper():
        return ExchangeRateResponse(rate=1, source="default")

    # Check cache first
    cached = await get_cached_rate(currency, today, store)
    if cached is not None:
        return ExchangeRateResponse(rate=cached, source="cache")

    # Ask the model
    try:
        text = await fetch_rate_from_model(currency, settings.home_currency.upper())
    except Exception as e:
        logger.error(f"Exchange rate lookup for {currency} failed: {e}", exc_info=True)
        return ExchangeRateResponse(rate=1, source="error")

    rate = parse_rate(text)
    if rate > 0:
        await save_rate(currency, rate, today, store)
        logger.info(f"Fetched exchange rate {currency} = {rate} {settings.home_currency}")
        return ExchangeRateResponse(rate=rate, source="external")

    logger.warning(f"Exchange rate lookup for {currency} returned no usable number: {text!r}")
    return ExchangeRateResponse(rate=1, source="failed")
