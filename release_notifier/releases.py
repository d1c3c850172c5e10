"""
GitHub Releases client for release notifications.

This module provides:
- ReleaseRecord: a release as returned by the GitHub Releases API
- ReleaseSourceClient: TTL-cached lookups by tag and range scans between tags
- parse_release_changes: heading-driven changelog bucketing
"""

import asyncio
import logging
import re
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp
from pydantic import BaseModel, ConfigDict, Field

from .errors import TransientIOError
from .observability import Metrics
from .versions import compare_versions

logger = logging.getLogger(__name__)

_HEADING_BUCKETS = (
    ("breaking", re.compile(r"breaking", re.IGNORECASE)),
    ("features", re.compile(r"features?|added", re.IGNORECASE)),
    ("fixes", re.compile(r"bug\s*fixes|fixe[sd]", re.IGNORECASE)),
    ("other", re.compile(r"changed|other|misc|chores?|removed", re.IGNORECASE)),
)
_BULLET_PREFIXES = ("- ", "* ")


class ReleaseRecord(BaseModel):
    """A published release. Field aliases follow the GitHub API payload."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    tag: str = Field(alias="tag_name")
    name: Optional[str] = None
    body: Optional[str] = None
    published_at: Optional[datetime] = None
    html_url: Optional[str] = None
    draft: bool = False
    prerelease: bool = False


@dataclass
class ChangeSet:
    features: List[str] = field(default_factory=list)
    fixes: List[str] = field(default_factory=list)
    breaking: List[str] = field(default_factory=list)
    other: List[str] = field(default_factory=list)

    def bucket(self, name: str) -> List[str]:
        return getattr(self, name)

    def extend(self, changes: "ChangeSet", prefix: Optional[str] = None) -> None:
        for name in ("features", "fixes", "breaking", "other"):
            items = changes.bucket(name)
            if prefix:
                items = [f"[{prefix}] {item}" for item in items]
            self.bucket(name).extend(items)

    def is_empty(self) -> bool:
        return not (self.features or self.fixes or self.breaking or self.other)


def _heading_bucket(heading: str) -> Optional[str]:
    for bucket, pattern in _HEADING_BUCKETS:
        if pattern.search(heading):
            return bucket
    return None


def parse_release_changes(release: ReleaseRecord) -> ChangeSet:
    """Sort the bullet lines of a changelog body into buckets.

    Markdown headings switch the active bucket; bullets before any heading
    land in ``other``. Headings that match no bucket keep the current one.
    """
    changes = ChangeSet()
    current = "other"
    for raw_line in (release.body or "").splitlines():
        line = raw_line.strip()
        if line.startswith("#"):
            bucket = _heading_bucket(line.lstrip("#").strip())
            if bucket:
                current = bucket
            continue
        if line.startswith(_BULLET_PREFIXES):
            item = line[2:].strip()
            if item:
                changes.bucket(current).append(item)
    return changes


def normalize_tag(version: str) -> str:
    version = version.strip()
    if version[:1] in ("v", "V"):
        version = version[1:]
    return f"v{version}"


class ReleaseSourceClient:
    """Reads releases of one GitHub repository."""

    def __init__(
        self,
        owner: str,
        repo: str,
        token: Optional[str] = None,
        api_url: str = "https://api.github.com",
        cache_ttl: float = 3600,
        page_size: int = 100,
        timeout: float = 30,
        session: Optional[aiohttp.ClientSession] = None,
        metrics: Optional[Metrics] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.owner = owner
        self.repo = repo
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.cache_ttl = cache_ttl
        self.page_size = page_size
        self.timeout = timeout
        self.session = session
        self.metrics = metrics
        self.clock = clock
        self._cache: Dict[str, Tuple[float, ReleaseRecord]] = {}

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": f"{self.repo}-release-notifier",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    @asynccontextmanager
    async def _client_session(self):
        if self.session is not None:
            yield self.session
            return
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
            yield session

    async def _get_json(self, path: str, params: Optional[Dict[str, str]] = None) -> Tuple[int, Any]:
        """GET a repository API path. Returns (status, parsed body or None)."""
        url = f"{self.api_url}/repos/{self.owner}/{self.repo}{path}"
        try:
            async with self._client_session() as session:
                async with session.get(url, headers=self._headers(), params=params) as response:
                    if response.status != 200:
                        text = await response.text()
                        logger.debug(f"GitHub API {url} returned {response.status}: {text[:200]}")
                        return response.status, None
                    return response.status, await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            self._record("error")
            raise TransientIOError(f"GitHub API request failed for {url}: {exc}") from exc

    def _record(self, result: str) -> None:
        if self.metrics:
            self.metrics.inc_release_fetch(result)

    def _cache_get(self, tag: str) -> Optional[ReleaseRecord]:
        entry = self._cache.get(tag)
        if entry is None:
            return None
        expires_at, release = entry
        if self.clock() >= expires_at:
            del self._cache[tag]
            return None
        return release

    def _cache_put(self, release: ReleaseRecord) -> None:
        self._cache[normalize_tag(release.tag)] = (self.clock() + self.cache_ttl, release)

    async def get_release_by_tag(self, version: str) -> Optional[ReleaseRecord]:
        """Fetch one release; None when GitHub has no release for the tag."""
        tag = normalize_tag(version)
        cached = self._cache_get(tag)
        if cached is not None:
            self._record("cache_hit")
            return cached

        status, data = await self._get_json(f"/releases/tags/{tag}")
        if status == 404:
            logger.info(f"No GitHub release found for tag {tag}")
            self._record("not_found")
            return None
        if status != 200:
            self._record("error")
            raise TransientIOError(f"GitHub API returned {status} for release {tag}")

        release = ReleaseRecord.model_validate(data)
        self._cache_put(release)
        self._record("fetched")
        return release

    async def get_releases_between(self, from_version: str, to_version: str) -> List[ReleaseRecord]:
        """Releases newer than ``from_version`` up to and including ``to_version``.

        Returned newest first. Drafts and prereleases are skipped. When
        ``to_version`` is not in the latest page, falls back to a direct
        lookup and returns at most that single release.
        """
        status, data = await self._get_json("/releases", {"per_page": str(self.page_size)})
        if status != 200 or not isinstance(data, list):
            self._record("error")
            raise TransientIOError(f"GitHub API returned {status} listing releases")
        self._record("fetched")

        published = []
        for item in data:
            release = ReleaseRecord.model_validate(item)
            if release.draft or release.prerelease:
                continue
            published.append(release)

        collected: List[ReleaseRecord] = []
        collecting = False
        for release in published:
            if compare_versions(release.tag, from_version) == 0:
                break
            if not collecting and compare_versions(release.tag, to_version) == 0:
                collecting = True
            if collecting:
                collected.append(release)
                self._cache_put(release)

        if not collecting:
            logger.info(f"Release {to_version} not in latest {self.page_size} releases, fetching directly")
            release = await self.get_release_by_tag(to_version)
            return [release] if release else []

        logger.info(f"Found {len(collected)} releases between {from_version} and {to_version}")
        return collected

    def parse_release_changes(self, release: ReleaseRecord) -> ChangeSet:
        return parse_release_changes(release)

    def clear_cache(self) -> None:
        self._cache.clear()
