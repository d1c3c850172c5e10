"""
Trigger filter for GitHub release webhooks.

Signature verification happens before this point, in the host's HTTP layer.
This module only decides whether a verified event should start a cycle.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

TRIGGER_ACTIONS = ("published", "released")


@dataclass(frozen=True)
class TriggerDecision:
    trigger: bool
    reason: str
    tag: Optional[str] = None


def release_event_should_trigger(event: Optional[str], payload: Dict[str, Any]) -> TriggerDecision:
    if event != "release":
        return TriggerDecision(False, f"Event type not handled: {event}")

    action = payload.get("action")
    release = payload.get("release") or {}
    tag = release.get("tag_name")
    if action not in TRIGGER_ACTIONS:
        return TriggerDecision(False, f"Release action not handled: {action}", tag)
    if release.get("draft") or release.get("prerelease"):
        return TriggerDecision(False, "Draft or prerelease ignored", tag)
    return TriggerDecision(True, "Release published", tag)
