from fastapi import APIRouter, HTTPException, Query

from ..models import ExchangeRateResponse
from ..services.exchange import resolve_rate

router = APIRouter(prefix="/exchange-rate", tags=["Exchange Rates"])


@router.get("", response_model=ExchangeRateResponse)
async def get_exchange_rate(
    currency: str = Query(..., description="Currency code to convert from (e.g., JPY)"),
) -> ExchangeRateResponse:
    """
    Get today's rate from a currency to the home currency.

    Checks today's cache first, then asks the AI model. A failed lookup
    still answers with rate 1 and source "failed" or "error".
    """
    if not currency.strip().isalpha():
        raise HTTPException(status_code=422, detail="Currency must be a currency code such as JPY")

    return await resolve_rate(currency)
