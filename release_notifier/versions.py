"""
Version tracking for release notifications.

Reads the running version, keeps the durable "last notified version" marker
and classifies version transitions as major/minor/patch. Comparison is
deliberately lenient: missing or non-numeric components count as zero.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Tuple

from .errors import ConfigError
from .storage import Found, Storage

logger = logging.getLogger(__name__)

_LEADING_DIGITS = re.compile(r"^\d+")


class ChangeType(str, Enum):
    """Severity of a version transition, ordered patch < minor < major."""

    PATCH = "patch"
    MINOR = "minor"
    MAJOR = "major"

    @property
    def rank(self) -> int:
        return _CHANGE_RANK[self]


_CHANGE_RANK = {ChangeType.PATCH: 0, ChangeType.MINOR: 1, ChangeType.MAJOR: 2}


def parse_version(version: Optional[str]) -> Tuple[int, int, int]:
    """Split a version string into a (major, minor, patch) triple.

    A leading "v" is ignored. Each component contributes its leading digits;
    anything missing or non-numeric becomes 0. Never raises.
    """
    text = (version or "").strip()
    if text[:1] in ("v", "V"):
        text = text[1:]
    parts = text.split(".")
    numbers = []
    for i in range(3):
        part = parts[i].strip() if i < len(parts) else ""
        match = _LEADING_DIGITS.match(part)
        numbers.append(int(match.group(0)) if match else 0)
    return numbers[0], numbers[1], numbers[2]


def compare_versions(a: Optional[str], b: Optional[str]) -> int:
    """Return -1, 0 or 1 comparing the parsed triples of ``a`` and ``b``."""
    left, right = parse_version(a), parse_version(b)
    if left > right:
        return 1
    if left < right:
        return -1
    return 0


def classify_change(current: str, previous: str) -> Optional[ChangeType]:
    """Highest-order component that increased, or None if not newer."""
    cur, prev = parse_version(current), parse_version(previous)
    if cur <= prev:
        return None
    if cur[0] != prev[0]:
        return ChangeType.MAJOR
    if cur[1] != prev[1]:
        return ChangeType.MINOR
    return ChangeType.PATCH


@dataclass
class VersionCheck:
    has_new_version: bool
    current_version: str
    last_version: Optional[str]
    change_type: Optional[ChangeType]


class VersionTracker:
    """Reads the current version and persists the version marker."""

    def __init__(
        self,
        storage: Storage,
        marker_key: str = "lastNotifiedVersion.json",
        version_file: Optional[str] = None,
        current_version: Optional[str] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.storage = storage
        self.marker_key = marker_key
        self.version_file = version_file
        self.current_version = current_version
        self.clock = clock

    def get_current_version(self) -> str:
        """Read the authoritative version string.

        Raises:
            ConfigError: if no version is configured or the file is unreadable
        """
        if self.current_version:
            return self.current_version
        if not self.version_file:
            raise ConfigError("No current version source configured")

        path = Path(self.version_file)
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Cannot read version file {path}: {exc}") from exc

        if path.suffix == ".json":
            try:
                version = json.loads(raw).get("version")
            except (json.JSONDecodeError, AttributeError) as exc:
                raise ConfigError(f"Invalid JSON in version file {path}") from exc
        else:
            version = raw.strip()

        if not isinstance(version, str) or not version.strip():
            raise ConfigError(f"No version found in {path}")
        return version.strip()

    async def get_last_notified_version(self) -> Optional[str]:
        result = await asyncio.to_thread(self.storage.read, self.marker_key)
        if isinstance(result, Found) and isinstance(result.data, dict):
            return result.data.get("version")
        return None

    async def save_notified_version(self, version: str) -> None:
        marker = {"version": version, "notifiedAt": self.clock().isoformat()}
        await asyncio.to_thread(self.storage.write, self.marker_key, marker)
        logger.info(f"Saved notified version {version}")

    async def clear_saved_version(self) -> None:
        await asyncio.to_thread(self.storage.delete, self.marker_key)
        logger.info("Cleared saved version marker")

    async def check_for_new_version(self) -> VersionCheck:
        """Compare the running version against the saved marker.

        Nothing is persisted here; the orchestrator saves the marker once it
        has decided who receives the notification.
        """
        current = self.get_current_version()
        last = await self.get_last_notified_version()

        if last is None:
            _, minor, patch = parse_version(current)
            change_type = ChangeType.MAJOR if minor == 0 and patch == 0 else ChangeType.MINOR
            logger.info(f"No saved version found, first run at {current} ({change_type.value})")
            return VersionCheck(True, current, None, change_type)

        change_type = classify_change(current, last)
        return VersionCheck(change_type is not None, current, last, change_type)
