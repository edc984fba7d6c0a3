from typing import Optional

from fastapi import APIRouter, Depends

from ..deps import get_identity, to_http_error
from ..errors import AuthRequired
from ..models import Identity, Preferences, PreferencesUpdate
from ..services.preferences import load_app_state

router = APIRouter(prefix="/preferences", tags=["Preferences"])


def _require(identity: Optional[Identity]) -> Identity:
    if identity is None:
        raise to_http_error(AuthRequired("Sign in to access preferences"))
    return identity


@router.get("", response_model=Preferences)
async def get_preferences(identity: Optional[Identity] = Depends(get_identity)) -> Preferences:
    """The caller's theme, login preference and whether they stored an AI key."""
    identity = _require(identity)
    state = await load_app_state(identity.owner_id)
    return state.snapshot()


@router.put("", response_model=Preferences)
async def update_preferences(
    request: PreferencesUpdate,
    identity: Optional[Identity] = Depends(get_identity),
) -> Preferences:
    """Update preferences; fields left out of the request are unchanged."""
    identity = _require(identity)
    state = await load_app_state(identity.owner_id)

    if request.theme is not None:
        await state.set_theme(request.theme)
    if request.login_type is not None:
        await state.set_login_preference(request.login_type)
    if request.clear_user_api_key:
        await state.clear_user_api_key()
    elif request.user_api_key is not None:
        await state.set_user_api_key(request.user_api_key)

    return state.snapshot()
