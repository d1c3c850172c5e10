"""
Release notification service.

This package tells subscribed users about newly published releases:
- Version tracking with a durable "last notified" marker
- Release/changelog retrieval from the GitHub Releases API
- Per-user notification preferences with debounced persistence
- Fan-out delivery with per-recipient failure isolation and auto opt-out
"""

__version__ = "0.1.0"

from .context import NotifierContext, build_context
from .orchestrator import NotificationOrchestrator

__all__ = [
    "NotifierContext",
    "NotificationOrchestrator",
    "build_context",
]
