import json
import base64
import logging
import re
from datetime import date
from typing import Optional

from anthropic import AsyncAnthropic

from ..config import get_settings
from ..errors import DailyLimitReached, WriteFailed
from ..models import (
    AnalysisOutcome,
    ExpenseItem,
    Identity,
    ReceiptAnalysis,
    UsageResponse,
)
from .storage import require_identity
from .store import DocumentStore, get_local_store


logger = logging.getLogger(__name__)

USAGE_COLLECTION = "api_usage"

FALLBACK_STORE_NAME = "Unnamed expense"
FALLBACK_ITEM = ExpenseItem(name="Unrecognized item", original_name="Unknown Item")

DATA_URL_PATTERN = re.compile(r"^data:(.*?);base64,")

RECEIPT_ANALYSIS_PROMPT = """Analyze this travel receipt or photo of an expense and extract the following information in JSON format:

{{
  "storeName": "Name of the shop or service",
  "date": "Date of purchase in YYYY-MM-DD format; use {today} if not visible",
  "totalAmount": 1234.5,
  "currency": "Currency code (JPY, USD, KRW, EUR, etc.) - infer from symbols or context",
  "items": [
    {{
      "originalName": "Item name exactly as shown on the receipt",
      "name": "{language} translation of the item name"
    }}
  ],
  "exchangeRateToHome": 0.21
}}

Important:
- All amounts should be numeric values, not strings
- exchangeRateToHome is your estimate of the current rate from the receipt currency to {home_currency}
- List the main items purchased
- Return ONLY the JSON, no additional text"""


def split_data_url(image: str) -> tuple[str, Optional[str]]:
    """
    Separate a data URL into its base64 payload and MIME type.

    Returns:
        Tuple of (base64 data, MIME type or None for a bare base64 string)
    """
    match = DATA_URL_PATTERN.match(image)
    if not match:
        return image, None
    return image[match.end():], match.group(1)


def fallback_analysis(home_currency: str, today: date) -> ReceiptAnalysis:
    """The record returned when the model cannot analyze a receipt."""
    return ReceiptAnalysis(
        store_name=FALLBACK_STORE_NAME,
        date=today.isoformat(),
        total_amount=0,
        currency=home_currency,
        items=[FALLBACK_ITEM],
        exchange_rate_to_home=1,
    )


# --- Daily usage of the shared key ---

def is_quota_exempt(identity: Identity, user_api_key: Optional[str] = None) -> bool:
    """Callers with their own key or on the allow-list are not rate limited."""
    if user_api_key:
        return True
    settings = get_settings()
    return bool(identity.email) and identity.email.lower() in settings.ai_allowlist_set


async def get_usage_today(
    identity: Identity,
    today: date,
    store: Optional[DocumentStore] = None
) -> int:
    """Number of shared-key analyses the identity made today."""
    store = store or get_local_store()

    usage = await store.get(USAGE_COLLECTION, identity.owner_id)
    if not usage or usage.get("date") != today.isoformat():
        return 0
    return int(usage.get("count", 0))


async def increment_usage(
    identity: Identity,
    today: date,
    store: Optional[DocumentStore] = None
) -> None:
    store = store or get_local_store()
    current = await get_usage_today(identity, today, store)

    try:
        await store.put(
            USAGE_COLLECTION,
            identity.owner_id,
            {"date": today.isoformat(), "count": current + 1},
        )
    except WriteFailed as e:
        logger.error(f"Failed to record AI usage for {identity.owner_id}: {e}")


async def remaining_calls(
    identity: Optional[Identity],
    user_api_key: Optional[str] = None,
    today: Optional[date] = None,
    store: Optional[DocumentStore] = None
) -> UsageResponse:
    """Report today's shared-key usage for an identity."""
    identity = require_identity(identity)
    settings = get_settings()
    today = today or date.today()

    used = await get_usage_today(identity, today, store)
    limit = settings.daily_ai_limit
    return UsageResponse(
        used=used,
        limit=limit,
        remaining=max(0, limit - used),
        unlimited=is_quota_exempt(identity, user_api_key),
    )


# --- Model call ---

async def parse_receipt_image(
    image_data: str | bytes,
    media_type: str = "image/jpeg",
    api_key: Optional[str] = None,
    today: Optional[date] = None,
) -> ReceiptAnalysis:
    """
    Parse a receipt image using Claude Vision.

    Args:
        image_data: Base64 encoded image string or raw bytes
        media_type: MIME type of the image (image/jpeg, image/png, etc.)
        api_key: Key to call the model with (defaults to the shared key)
        today: Date the model should assume when none is printed

    Returns:
        ReceiptAnalysis with extracted receipt data

    Raises:
        ValueError: If the response has no text or no JSON object
        pydantic.ValidationError: If the JSON does not have the expected shape
    """
    settings = get_settings()
    client = AsyncAnthropic(api_key=api_key or settings.anthropic_api_key)
    today = today or date.today()

    # Ensure image_data is base64 string
    if isinstance(image_data, bytes):
        image_base64 = base64.b64encode(image_data).decode("utf-8")
    else:
        image_base64 = image_data

    prompt = RECEIPT_ANALYSIS_PROMPT.format(
        today=today.isoformat(),
        language=settings.translation_language,
        home_currency=settings.home_currency,
    )

    message = await client.messages.create(
        model=settings.anthropic_model,
        max_tokens=2048,
        messages=[
            {
                "role": "user",
                "content": [
                    {
                        "type": "image",
                        "source": {
                            "type": "base64",
                            "media_type": media_type,
                            "data": image_base64,
                        },
                    },
                    {
                        "type": "text",
                        "text": prompt,
                    },
                ],
            }
        ],
    )

    if not message.content:
        raise ValueError("No response from the model")
    response_text = message.content[0].text
    if not response_text:
        raise ValueError("Empty response from the model")

    # Find the JSON object in case there's extra text around it
    json_start = response_text.find("{")
    json_end = response_text.rfind("}") + 1
    if json_start == -1 or json_end <= json_start:
        raise ValueError("No JSON object in the model response")
    data = json.loads(response_text[json_start:json_end])

    data.setdefault("date", today.isoformat())
    return ReceiptAnalysis.model_validate(data)


async def analyze_receipt(
    image: str | bytes,
    identity: Optional[Identity],
    media_type: Optional[str] = None,
    user_api_key: Optional[str] = None,
    today: Optional[date] = None,
    store: Optional[DocumentStore] = None,
) -> AnalysisOutcome:
    """
    Analyze a receipt photo, never failing on a bad model response.

    The daily quota is checked before the model is called. Any failure of
    the model call itself is masked by the fallback record, marked with
    used_fallback so callers can tell it apart from a real result.

    Args:
        image: Raw bytes, bare base64, or a data URL
        identity: The caller
        media_type: MIME type; detected from a data URL when omitted
        user_api_key: Caller's own key, which bypasses the quota

    Raises:
        AuthRequired: If there is no identity
        DailyLimitReached: If the shared-key quota for today is used up
    """
    identity = require_identity(identity)
    settings = get_settings()
    today = today or date.today()
    exempt = is_quota_exempt(identity, user_api_key)

    if not exempt:
        used = await get_usage_today(identity, today, store)
        if used >= settings.daily_ai_limit:
            raise DailyLimitReached(
                f"Daily limit of {settings.daily_ai_limit} receipt analyses reached"
            )

    if isinstance(image, str):
        image, detected_type = split_data_url(image)
        media_type = media_type or detected_type
    media_type = media_type or "image/jpeg"

    try:
        result = await parse_receipt_image(image, media_type, user_api_key, today)
    except Exception as e:
        logger.warning(f"Receipt analysis failed, using fallback: {e}", exc_info=True)
        return AnalysisOutcome(
            ok=False,
            used_fallback=True,
            data=fallback_analysis(settings.home_currency, today),
        )

    # Only shared-key calls count against the quota
    if not exempt:
        await increment_usage(identity, today, store)

    return AnalysisOutcome(ok=True, data=result)
