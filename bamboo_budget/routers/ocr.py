from typing import Optional

from fastapi import APIRouter, Depends, File, Header, UploadFile

from ..deps import get_identity, to_http_error
from ..errors import BambooError
from ..models import AnalysisOutcome, Identity, OCRParseRequest, UsageResponse
from ..services.ocr import analyze_receipt, remaining_calls
from ..services.preferences import load_app_state

router = APIRouter(prefix="/ocr", tags=["OCR"])


async def resolve_user_api_key(
    identity: Optional[Identity],
    x_api_key: Optional[str],
) -> Optional[str]:
    """The caller's own AI key: from the request header, else from preferences."""
    if x_api_key:
        return x_api_key
    if identity is None:
        return None
    state = await load_app_state(identity.owner_id)
    return state.user_api_key


@router.post("/analyze", response_model=AnalysisOutcome)
async def analyze_receipt_base64(
    request: OCRParseRequest,
    identity: Optional[Identity] = Depends(get_identity),
    x_api_key: Optional[str] = Header(None),
) -> AnalysisOutcome:
    """
    Analyze a receipt from a base64 string or data URL.

    Always answers with a usable record; `usedFallback` is true when the
    model could not read the receipt.
    """
    try:
        user_api_key = await resolve_user_api_key(identity, x_api_key)
        return await analyze_receipt(
            request.image_base64,
            identity,
            media_type=request.media_type,
            user_api_key=user_api_key,
        )
    except BambooError as e:
        raise to_http_error(e)


@router.post("/analyze/upload", response_model=AnalysisOutcome)
async def analyze_receipt_upload(
    file: UploadFile = File(...),
    identity: Optional[Identity] = Depends(get_identity),
    x_api_key: Optional[str] = Header(None),
) -> AnalysisOutcome:
    """Analyze a receipt from a multipart/form-data file upload."""
    content = await file.read()
    media_type = file.content_type or "image/jpeg"

    try:
        user_api_key = await resolve_user_api_key(identity, x_api_key)
        return await analyze_receipt(
            content,
            identity,
            media_type=media_type,
            user_api_key=user_api_key,
        )
    except BambooError as e:
        raise to_http_error(e)


@router.get("/usage", response_model=UsageResponse)
async def get_usage(
    identity: Optional[Identity] = Depends(get_identity),
    x_api_key: Optional[str] = Header(None),
) -> UsageResponse:
    """Shared-key analyses used and remaining today."""
    try:
        user_api_key = await resolve_user_api_key(identity, x_api_key)
        return await remaining_calls(identity, user_api_key)
    except BambooError as e:
        raise to_http_error(e)
