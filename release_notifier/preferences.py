"""
Per-user release notification preferences.

Preferences live in memory and are written to durable storage through a
debounced save: every ``save()`` call cancels the pending timer and schedules
a new one, so a burst of updates results in a single write of the final
state. ``force_save()`` writes immediately (shutdown, tests).
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from .errors import TransientIOError, ValidationError
from .storage import Found, Storage
from .versions import ChangeType

logger = logging.getLogger(__name__)

NOTIFICATION_LEVELS = ("major", "minor", "patch", "none")
DEFAULT_LEVEL = "minor"

# Change types each notification level admits
_LEVEL_ADMITS = {
    "major": {ChangeType.MAJOR},
    "minor": {ChangeType.MAJOR, ChangeType.MINOR},
    "patch": {ChangeType.MAJOR, ChangeType.MINOR, ChangeType.PATCH},
    "none": set(),
}


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class UserPreference:
    user_id: str
    opted_out: bool
    notification_level: str
    last_notified: Optional[str]
    created_at: str
    updated_at: str

    @property
    def has_interacted(self) -> bool:
        """True once the user (or an auto opt-out) changed these preferences."""
        return self.updated_at != self.created_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "optedOut": self.opted_out,
            "notificationLevel": self.notification_level,
            "lastNotified": self.last_notified,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


class PreferenceStore:
    """In-memory preference map with debounced durable writes."""

    def __init__(
        self,
        storage: Storage,
        key: str = "releaseNotificationPreferences.json",
        save_delay: float = 5.0,
        clock: Callable[[], str] = _utc_now,
    ):
        self.storage = storage
        self.key = key
        self.save_delay = save_delay
        self.clock = clock
        self.preferences: Dict[str, Dict[str, Any]] = {}
        self.last_save_error: Optional[Exception] = None
        self._save_handle: Optional[asyncio.TimerHandle] = None
        self._save_task: Optional[asyncio.Task] = None
        # One storage write at a time, so an older snapshot never lands last
        self._write_lock = asyncio.Lock()

    async def load(self) -> None:
        """Populate the in-memory map. Missing storage means a fresh start."""
        try:
            result = await asyncio.to_thread(self.storage.read, self.key)
        except TransientIOError as exc:
            logger.error(f"Error loading preferences: {exc}")
            raise

        if not isinstance(result, Found):
            logger.info("No preferences file found, starting fresh")
            self.preferences = {}
            return
        if not isinstance(result.data, dict):
            raise TransientIOError(f"Preferences in {self.key} are not a JSON object")

        self.preferences = {str(user_id): dict(record) for user_id, record in result.data.items()}
        logger.info(f"Loaded {len(self.preferences)} user preferences")

    # ---- persistence ----

    def save(self) -> None:
        """Schedule a write, replacing any write that is still pending."""
        loop = asyncio.get_running_loop()
        if self._save_handle is not None:
            self._save_handle.cancel()
        self._save_handle = loop.call_later(self.save_delay, self._start_scheduled_save)

    @property
    def has_pending_save(self) -> bool:
        return self._save_handle is not None

    def _start_scheduled_save(self) -> None:
        self._save_handle = None
        self._save_task = asyncio.ensure_future(self._scheduled_save())

    async def _scheduled_save(self) -> None:
        try:
            await self._write()
        except Exception as exc:
            # Memory still holds the latest state; the next save retries it.
            self.last_save_error = exc
            logger.error(f"Debounced preference save failed: {exc}", exc_info=True)

    async def force_save(self) -> None:
        """Cancel any pending timer and write now. Write errors propagate."""
        if self._save_handle is not None:
            self._save_handle.cancel()
            self._save_handle = None
        if self._save_task is not None and not self._save_task.done():
            await asyncio.wait({self._save_task})
        await self._write()

    async def _write(self) -> None:
        async with self._write_lock:
            snapshot = {user_id: dict(record) for user_id, record in self.preferences.items()}
            await asyncio.to_thread(self.storage.write, self.key, snapshot)
        self.last_save_error = None
        logger.debug(f"Saved {len(snapshot)} user preferences")

    # ---- reads ----

    def get_user_preferences(self, user_id: str) -> UserPreference:
        """Stored record merged over defaults. Never mutates the store."""
        stored = self.preferences.get(user_id, {})
        created_at = stored.get("createdAt") or self.clock()
        return UserPreference(
            user_id=user_id,
            opted_out=bool(stored.get("optedOut", False)),
            notification_level=stored.get("notificationLevel") or DEFAULT_LEVEL,
            last_notified=stored.get("lastNotified"),
            created_at=created_at,
            updated_at=stored.get("updatedAt") or created_at,
        )

    def get_users_to_notify(self, change_type: Union[ChangeType, str]) -> List[str]:
        change_type = ChangeType(change_type)
        users = []
        for user_id in self.preferences:
            prefs = self.get_user_preferences(user_id)
            if prefs.opted_out:
                continue
            if change_type in _LEVEL_ADMITS.get(prefs.notification_level, set()):
                users.append(user_id)
        return users

    def get_statistics(self) -> Dict[str, Any]:
        by_level = {level: 0 for level in NOTIFICATION_LEVELS}
        opted_out = 0
        for user_id in self.preferences:
            prefs = self.get_user_preferences(user_id)
            if prefs.opted_out:
                opted_out += 1
            if prefs.notification_level in by_level:
                by_level[prefs.notification_level] += 1
        return {"total": len(self.preferences), "optedOut": opted_out, "byLevel": by_level}

    def has_any_user_been_notified(self) -> bool:
        return any(record.get("lastNotified") for record in self.preferences.values())

    # ---- writes ----

    async def update_user_preferences(self, user_id: str, updates: Dict[str, Any], touch: bool = True) -> UserPreference:
        """Merge ``updates`` (storage field names) onto the user's preferences.

        ``touch=False`` keeps ``updatedAt`` as it was; used for system
        bookkeeping that is not a preference change.
        """
        base = self.get_user_preferences(user_id)
        current = base.to_dict()
        current.update(updates)
        current["createdAt"] = base.created_at
        if touch:
            current["updatedAt"] = self.clock()
        self.preferences[user_id] = current
        self.save()
        return self.get_user_preferences(user_id)

    async def ensure_user(self, user_id: str) -> UserPreference:
        """Register a user with default preferences if not yet known."""
        if user_id not in self.preferences:
            now = self.clock()
            self.preferences[user_id] = {
                "optedOut": False,
                "notificationLevel": DEFAULT_LEVEL,
                "lastNotified": None,
                "createdAt": now,
                "updatedAt": now,
            }
            self.save()
        return self.get_user_preferences(user_id)

    async def set_opt_out(self, user_id: str, opted_out: bool) -> UserPreference:
        return await self.update_user_preferences(user_id, {"optedOut": opted_out})

    async def set_notification_level(self, user_id: str, level: str) -> UserPreference:
        if level not in NOTIFICATION_LEVELS:
            raise ValidationError(f"Invalid notification level: {level}")
        return await self.update_user_preferences(user_id, {"notificationLevel": level})

    async def record_notification(self, user_id: str, version: str) -> UserPreference:
        return await self.update_user_preferences(user_id, {"lastNotified": version}, touch=False)
