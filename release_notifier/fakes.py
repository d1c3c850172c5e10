"""Test doubles shared by the test modules."""

from typing import Any, Dict, List, Optional, Tuple

from release_notifier.errors import DeliveryError
from release_notifier.releases import ReleaseSourceClient
from release_notifier.storage import FileStorage


def release_json(tag: str, body: str = "", published_at: Optional[str] = None,
                 draft: bool = False, prerelease: bool = False) -> Dict[str, Any]:
    """GitHub API shaped release object."""
    return {
        "tag_name": tag,
        "name": f"Version {tag.lstrip('v')}",
        "body": body,
        "published_at": published_at or "2024-01-01T00:00:00Z",
        "html_url": f"https://github.com/owner/repo/releases/tag/{tag}",
        "draft": draft,
        "prerelease": prerelease,
    }


class StubReleaseClient(ReleaseSourceClient):
    """Release client answering from canned (status, body) responses."""

    def __init__(self, releases: Optional[List[Dict[str, Any]]] = None, **kwargs):
        super().__init__("owner", "repo", **kwargs)
        self.releases = list(releases or [])
        self.tag_responses: Dict[str, Tuple[int, Any]] = {}
        self.list_status = 200
        self.calls: List[str] = []

    async def _get_json(self, path, params=None):
        self.calls.append(path)
        if path == "/releases":
            return self.list_status, (self.releases if self.list_status == 200 else None)
        tag = path.rsplit("/", 1)[-1]
        if tag in self.tag_responses:
            return self.tag_responses[tag]
        for release in self.releases:
            if release["tag_name"] == tag:
                return 200, release
        return 404, None


class CountingStorage(FileStorage):
    def __init__(self, base_dir):
        super().__init__(base_dir)
        self.writes: List[Tuple[str, Any]] = []

    def write(self, key, data):
        self.writes.append((key, data))
        super().write(key, data)


class FakeTransport:
    """Records deliveries; ``failures`` maps user id to the exception to raise."""

    def __init__(self, failures: Optional[Dict[str, Exception]] = None):
        self.failures = failures or {}
        self.sent: List[Tuple[str, Any]] = []

    async def send(self, recipient_id, payload):
        error = self.failures.get(recipient_id)
        if error is not None:
            raise error
        self.sent.append((recipient_id, payload))


def cannot_message(user_id: str) -> DeliveryError:
    return DeliveryError("Cannot send messages to this user", user_id, permanent=True)


async def no_sleep(_seconds):
    return None
