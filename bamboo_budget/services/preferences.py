import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from ..errors import WriteFailed
from ..models import LoginPreference, LoginType, Preferences, ThemeMode
from .store import DocumentStore, get_local_store


logger = logging.getLogger(__name__)

PREFERENCES_COLLECTION = "preferences"
THEMES = ("light", "dark", "system")

Subscriber = Callable[[Preferences], None]


def normalize_theme(value: Optional[str]) -> ThemeMode:
    """Unknown or missing theme values fall back to following the system."""
    return value if value in THEMES else "system"


class AppState:
    """
    Per-identity application preferences.

    Call init() once to load what was persisted; every setter persists the
    new state and then notifies subscribers with a Preferences snapshot.
    """

    def __init__(self, owner_id: str, store: Optional[DocumentStore] = None):
        self.owner_id = owner_id
        self._store = store or get_local_store()
        self._subscribers: list[Subscriber] = []

        self.theme: ThemeMode = "system"
        self.login_preference: Optional[LoginPreference] = None
        self.user_api_key: Optional[str] = None

    async def init(self) -> "AppState":
        doc = await self._store.get(PREFERENCES_COLLECTION, self.owner_id) or {}

        self.theme = normalize_theme(doc.get("theme"))
        login = doc.get("loginPreference")
        self.login_preference = LoginPreference.model_validate(login) if login else None
        self.user_api_key = doc.get("userApiKey") or None
        return self

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback; returns a function that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def snapshot(self) -> Preferences:
        return Preferences(
            theme=self.theme,
            login_preference=self.login_preference,
            has_user_api_key=bool(self.user_api_key),
        )

    async def _persist(self) -> None:
        doc = {
            "theme": self.theme,
            "loginPreference": (
                self.login_preference.model_dump(by_alias=True)
                if self.login_preference else None
            ),
            "userApiKey": self.user_api_key,
        }
        try:
            await self._store.put(
                PREFERENCES_COLLECTION,
                self.owner_id,
                {key: value for key, value in doc.items() if value is not None},
            )
        except WriteFailed as e:
            logger.error(f"Failed to save preferences for {self.owner_id}: {e}")

        snapshot = self.snapshot()
        for callback in list(self._subscribers):
            callback(snapshot)

    async def set_theme(self, theme: Optional[str]) -> None:
        self.theme = normalize_theme(theme)
        await self._persist()

    async def set_login_preference(
        self,
        login_type: LoginType,
        now: Optional[datetime] = None
    ) -> None:
        now = now or datetime.now(timezone.utc)
        self.login_preference = LoginPreference(type=login_type, last_login=now.isoformat())
        await self._persist()

    async def clear_login_preference(self) -> None:
        self.login_preference = None
        await self._persist()

    async def set_user_api_key(self, api_key: str) -> None:
        """Store the caller's own AI key; blank keys are ignored."""
        if not api_key.strip():
            return
        self.user_api_key = api_key.strip()
        await self._persist()

    async def clear_user_api_key(self) -> None:
        self.user_api_key = None
        await self._persist()


async def load_app_state(owner_id: str, store: Optional[DocumentStore] = None) -> AppState:
    """Create and initialise the state for an identity."""
    return await AppState(owner_id, store).init()
