"""
Application context for the release notifier.

Built once at startup and passed to whatever triggers notification cycles
(webhook handler, scheduler, CLI). Nothing in the package keeps global state.
"""

from dataclasses import dataclass
from typing import Optional

from .config import NotifierSettings
from .observability import Metrics
from .orchestrator import NotificationOrchestrator
from .preferences import PreferenceStore
from .releases import ReleaseSourceClient
from .storage import Storage, build_storage
from .transport import Transport
from .versions import VersionTracker


@dataclass
class NotifierContext:
    settings: NotifierSettings
    storage: Storage
    metrics: Metrics
    version_tracker: VersionTracker
    release_client: ReleaseSourceClient
    preferences: PreferenceStore
    orchestrator: NotificationOrchestrator


def build_context(
    settings: Optional[NotifierSettings] = None,
    transport: Optional[Transport] = None,
    storage: Optional[Storage] = None,
) -> NotifierContext:
    settings = settings or NotifierSettings()
    storage = storage or build_storage(settings)
    metrics = Metrics(pushgateway=settings.metrics_pushgateway_url, job=settings.metrics_job_name)

    version_tracker = VersionTracker(
        storage,
        marker_key=settings.version_marker_key,
        version_file=settings.version_file,
        current_version=settings.app_version,
    )
    release_client = ReleaseSourceClient(
        settings.github_owner,
        settings.github_repo,
        token=settings.github_token,
        api_url=settings.github_api_url,
        cache_ttl=settings.release_cache_ttl_seconds,
        page_size=settings.releases_page_size,
        timeout=settings.http_timeout_seconds,
        metrics=metrics,
    )
    preferences = PreferenceStore(
        storage,
        key=settings.preferences_key,
        save_delay=settings.preferences_save_delay_seconds,
    )
    orchestrator = NotificationOrchestrator(
        version_tracker,
        release_client,
        preferences,
        transport=transport,
        app_name=settings.app_name,
        command_prefix=settings.command_prefix,
        first_run_limit=settings.first_run_release_limit,
        field_value_limit=settings.field_value_limit,
        max_items_per_field=settings.max_items_per_field,
        delivery_concurrency=settings.delivery_concurrency,
        delivery_delay=settings.delivery_delay_seconds,
        metrics=metrics,
    )
    return NotifierContext(
        settings=settings,
        storage=storage,
        metrics=metrics,
        version_tracker=version_tracker,
        release_client=release_client,
        preferences=preferences,
        orchestrator=orchestrator,
    )
