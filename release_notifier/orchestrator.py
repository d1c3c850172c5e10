"""
Release notification orchestration.

Ties together the version tracker, the GitHub release client and the
preference store: decides whether a new version needs announcing, works out
which releases a recipient missed, builds one payload per recipient and fans
the delivery out with per-recipient failure isolation.

Concurrent ``check_and_notify()`` calls are not serialized here. Callers that
can race (a webhook and a scheduled trigger) must guard re-entrancy.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .errors import ConfigError, DeliveryError, NotInitializedError
from .observability import Metrics
from .preferences import PreferenceStore, UserPreference
from .releases import ChangeSet, ReleaseRecord, ReleaseSourceClient
from .transport import EmbedField, NotificationPayload, Transport
from .versions import ChangeType, VersionCheck, VersionTracker, compare_versions

logger = logging.getLogger(__name__)

FIRST_RUN_FLOOR = "0.0.0"

_COLORS = {
    ChangeType.MAJOR: 0xFF0000,
    ChangeType.MINOR: 0x00FF00,
    ChangeType.PATCH: 0x0099FF,
}
_DEFAULT_COLOR = 0x808080

_DESCRIPTIONS = {
    ChangeType.MAJOR: "This is a major release with significant changes and new features!",
    ChangeType.MINOR: "This release includes new features and improvements.",
    ChangeType.PATCH: "This release includes bug fixes and minor improvements.",
}
_DEFAULT_DESCRIPTION = "A new version has been released."

# Display order of the change buckets
_CHANGE_FIELDS = (
    ("breaking", "⚠️ Breaking Changes"),
    ("features", "✨ New Features"),
    ("fixes", "🐛 Bug Fixes"),
    ("other", "📝 Other Changes"),
)


def _as_change_type(value: Any) -> Optional[ChangeType]:
    try:
        return ChangeType(value)
    except ValueError:
        return None


def color_for_change_type(change_type: Any) -> int:
    return _COLORS.get(_as_change_type(change_type), _DEFAULT_COLOR)


def change_type_description(change_type: Any) -> str:
    return _DESCRIPTIONS.get(_as_change_type(change_type), _DEFAULT_DESCRIPTION)


def format_change_list(items: List[str], limit: int = 1024, max_items: int = 5, bullet: str = "• ") -> str:
    """Render bullet items greedily within ``limit`` characters.

    As many items as fit (up to ``max_items``) are kept; the rest are
    summarized as "…and K more". The summary line is always budgeted for.
    """
    lines: List[str] = []
    used = 0
    for index, item in enumerate(items):
        if len(lines) >= max_items:
            break
        line = f"{bullet}{item}"
        remaining = len(items) - index - 1
        reserve = len(f"\n…and {remaining} more") if remaining else 0
        needed = used + (1 if lines else 0) + len(line)
        if needed + reserve > limit:
            if not lines:
                # Nothing fits yet: keep a clipped first item rather than none.
                room = limit - reserve - 1
                if room > len(bullet):
                    lines.append(line[:room] + "…")
            break
        lines.append(line)
        used = needed

    hidden = len(items) - len(lines)
    text = "\n".join(lines)
    if hidden:
        text = f"{text}\n…and {hidden} more" if text else f"…and {hidden} more"
    return text


def multi_release_description(change_type: Any, releases: List[ReleaseRecord]) -> str:
    text = f"You've missed {len(releases)} releases"
    dates = [r.published_at for r in releases if r.published_at is not None]
    if len(dates) >= 2:
        span = (max(dates) - min(dates)).total_seconds()
        days = max(1, math.ceil(span / 86400))
        text += f" over the past {days} day{'s' if days != 1 else ''}"
    return f"{text}. {change_type_description(change_type)}"


@dataclass
class NotifyResult:
    notified: bool
    reason: Optional[str] = None
    version: Optional[str] = None
    change_type: Optional[ChangeType] = None
    users_notified: int = 0
    users_failed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        if not self.notified:
            return {"notified": False, "reason": self.reason}
        return {
            "notified": True,
            "version": self.version,
            "changeType": self.change_type.value if self.change_type else None,
            "usersNotified": self.users_notified,
            "usersFailed": self.users_failed,
        }


class NotificationOrchestrator:
    """Decides what to announce, to whom, and delivers it."""

    def __init__(
        self,
        version_tracker: VersionTracker,
        release_client: ReleaseSourceClient,
        preferences: PreferenceStore,
        transport: Optional[Transport] = None,
        app_name: str = "Tzurot",
        command_prefix: str = "!tz",
        first_run_limit: int = 5,
        field_value_limit: int = 1024,
        max_items_per_field: int = 5,
        delivery_concurrency: int = 1,
        delivery_delay: float = 1.0,
        metrics: Optional[Metrics] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.version_tracker = version_tracker
        self.release_client = release_client
        self.preferences = preferences
        self.transport = transport
        self.app_name = app_name
        self.command_prefix = command_prefix
        self.first_run_limit = first_run_limit
        self.field_value_limit = field_value_limit
        self.max_items_per_field = max_items_per_field
        self.delivery_concurrency = max(1, delivery_concurrency)
        self.delivery_delay = delivery_delay
        self.metrics = metrics
        self.sleep = sleep
        self.initialized = False

    async def initialize(self, transport: Optional[Transport] = None) -> None:
        """Load preferences and clear a version marker nobody was notified for."""
        if transport is not None:
            self.transport = transport
        if self.transport is None:
            raise ConfigError("A delivery transport is required")

        self.version_tracker.get_current_version()
        await self.preferences.load()

        saved = await self.version_tracker.get_last_notified_version()
        if saved and not self.preferences.has_any_user_been_notified():
            logger.info("Found saved version but no notifications sent, clearing for first-run")
            await self.version_tracker.clear_saved_version()

        self.initialized = True
        logger.info("Release notification orchestrator initialized successfully")

    async def shutdown(self) -> None:
        """Drain the debounced preference write."""
        if not self.initialized:
            return
        await self.preferences.force_save()
        logger.info("Release notification orchestrator shut down")

    def get_statistics(self) -> Dict[str, Any]:
        return self.preferences.get_statistics()

    def _record_cycle(self, outcome: str) -> None:
        if self.metrics:
            self.metrics.inc_cycle(outcome)

    async def check_and_notify(self) -> NotifyResult:
        """Run one notification cycle.

        Network errors while resolving releases propagate before anything is
        persisted. Per-recipient failures are counted, never raised.
        """
        if not self.initialized:
            raise NotInitializedError("NotificationOrchestrator not initialized")

        check = await self.version_tracker.check_for_new_version()
        if not check.has_new_version:
            self._record_cycle("no_new_version")
            return NotifyResult(False, reason="No new version")

        logger.info(
            f"New {check.change_type.value} version detected: "
            f"{check.last_version or 'none'} -> {check.current_version}"
        )

        try:
            releases = await self._resolve_releases(check)
        except Exception:
            self._record_cycle("error")
            raise
        if not releases:
            logger.warning(f"No releases found for {check.current_version}")
            self._record_cycle("no_releases")
            return NotifyResult(False, reason="No releases found")

        recipients = self.preferences.get_users_to_notify(check.change_type)
        if not recipients:
            logger.info(f"No users opted in for {check.change_type.value} notifications")
            await self.version_tracker.save_notified_version(check.current_version)
            self._record_cycle("no_recipients")
            return NotifyResult(False, reason="No users opted in for this change type")

        changes = self.aggregate_release_changes(releases)
        logger.info(f"Notifying {len(recipients)} users about {len(releases)} release(s)")

        semaphore = asyncio.Semaphore(self.delivery_concurrency)
        outcomes = await asyncio.gather(
            *(self._deliver(user_id, check, releases, changes, semaphore) for user_id in recipients)
        )
        delivered = sum(1 for outcome in outcomes if outcome == "delivered")
        failed = len(outcomes) - delivered

        await self.version_tracker.save_notified_version(check.current_version)
        logger.info(f"Release notification complete: {delivered} sent, {failed} failed")
        self._record_cycle("notified")
        return NotifyResult(
            True,
            version=check.current_version,
            change_type=check.change_type,
            users_notified=delivered,
            users_failed=failed,
        )

    async def _resolve_releases(self, check: VersionCheck) -> List[ReleaseRecord]:
        current = check.current_version
        if check.last_version is not None:
            return await self.release_client.get_releases_between(check.last_version, current)

        releases = await self.release_client.get_releases_between(FIRST_RUN_FLOOR, current)
        releases = [r for r in releases if compare_versions(r.tag, current) <= 0]
        releases = releases[: self.first_run_limit]
        logger.info(f"First run - including {len(releases)} recent releases")
        return releases

    async def _deliver(
        self,
        user_id: str,
        check: VersionCheck,
        releases: List[ReleaseRecord],
        changes: ChangeSet,
        semaphore: asyncio.Semaphore,
    ) -> str:
        async with semaphore:
            try:
                prefs = self.preferences.get_user_preferences(user_id)
                payload = self.build_payload(check, releases, prefs, changes)
                await self.transport.send(user_id, payload)
                await self.preferences.record_notification(user_id, check.current_version)
                outcome = "delivered"
            except DeliveryError as exc:
                if exc.permanent:
                    logger.info(f"User {user_id} has DMs disabled, marking as opted out")
                    await self.preferences.set_opt_out(user_id, True)
                    outcome = "opted_out"
                else:
                    logger.warning(f"Failed to notify user {user_id}: {exc}")
                    outcome = "failed"
            except Exception as exc:
                logger.warning(f"Failed to notify user {user_id}: {exc}")
                outcome = "failed"

            if self.metrics:
                self.metrics.inc_delivery(outcome)
            if self.delivery_delay > 0:
                await self.sleep(self.delivery_delay)
            return outcome

    # ---- payload composition ----

    def aggregate_release_changes(self, releases: List[ReleaseRecord]) -> ChangeSet:
        """Concatenate the change sets of ``releases`` in the given order.

        With more than one release each entry is prefixed by its tag.
        """
        aggregated = ChangeSet()
        multiple = len(releases) > 1
        for release in releases:
            changes = self.release_client.parse_release_changes(release)
            aggregated.extend(changes, prefix=release.tag if multiple else None)
        return aggregated

    def footer_for(self, prefs: UserPreference) -> str:
        if prefs.has_interacted:
            return f"You can change your notification preferences with {self.command_prefix} notifications"
        if prefs.last_notified is None:
            return (
                f"📌 First time receiving this? You're automatically opted in. "
                f"Use {self.command_prefix} notifications off to opt out."
            )
        return (
            f"✅ You're receiving these because you haven't opted out. "
            f"Use {self.command_prefix} notifications off to stop."
        )

    def build_payload(
        self,
        check: VersionCheck,
        releases: List[ReleaseRecord],
        prefs: UserPreference,
        changes: Optional[ChangeSet] = None,
    ) -> NotificationPayload:
        if changes is None:
            changes = self.aggregate_release_changes(releases)
        newest = releases[0] if releases else None
        multiple = len(releases) > 1

        if multiple:
            title = f"🚀 {self.app_name} Multiple Releases ({len(releases)} versions)"
            description = multi_release_description(check.change_type, releases)
        else:
            title = f"🚀 {self.app_name} v{check.current_version} Released"
            description = change_type_description(check.change_type)

        fields: List[EmbedField] = []
        if check.last_version:
            fields.append(EmbedField("Version Update", f"{check.last_version} → {check.current_version}", inline=True))

        if multiple:
            versions = [f"[{r.tag}]({r.html_url})" if r.html_url else r.tag for r in releases]
            fields.append(EmbedField(
                "📋 Included Versions",
                format_change_list(versions, self.field_value_limit, len(versions)),
            ))

        for bucket, name in _CHANGE_FIELDS:
            items = changes.bucket(bucket)
            if items:
                fields.append(EmbedField(
                    name,
                    format_change_list(items, self.field_value_limit, self.max_items_per_field),
                ))

        if newest is not None and newest.html_url:
            fields.append(EmbedField("🔗 Release Notes", f"[View on GitHub]({newest.html_url})"))

        published = newest.published_at if newest is not None else None
        timestamp = (published or datetime.now(timezone.utc)).isoformat()
        return NotificationPayload(
            title=title,
            description=description,
            fields=fields,
            footer=self.footer_for(prefs),
            timestamp=timestamp,
            color=color_for_change_type(check.change_type),
            url=newest.html_url if newest is not None else None,
        )
