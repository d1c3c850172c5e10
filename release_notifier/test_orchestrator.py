import asyncio
from datetime import datetime, timezone

import pytest

from release_notifier.errors import ConfigError, DeliveryError, NotInitializedError, TransientIOError
from release_notifier.fakes import FakeTransport, StubReleaseClient, cannot_message, no_sleep, release_json
from release_notifier.observability import Metrics
from release_notifier.orchestrator import (
    NotificationOrchestrator,
    color_for_change_type,
    change_type_description,
    format_change_list,
)
from release_notifier.preferences import PreferenceStore, UserPreference
from release_notifier.releases import ReleaseRecord
from release_notifier.versions import ChangeType, VersionCheck, VersionTracker

PREFS_KEY = "releaseNotificationPreferences.json"
MARKER_KEY = "lastNotifiedVersion.json"


def make_orchestrator(storage, version, releases=(), transport=None, **kwargs):
    return NotificationOrchestrator(
        VersionTracker(storage, current_version=version),
        StubReleaseClient(list(releases)),
        PreferenceStore(storage, save_delay=0.01),
        transport=transport if transport is not None else FakeTransport(),
        delivery_delay=0,
        sleep=no_sleep,
        **kwargs,
    )


def seed_user(storage, user_id, **fields):
    stored = storage.read(PREFS_KEY)
    data = dict(getattr(stored, "data", {}) or {})
    record = {"optedOut": False, "notificationLevel": "minor", "lastNotified": None,
              "createdAt": "2024-01-01T00:00:00+00:00", "updatedAt": "2024-01-01T00:00:00+00:00"}
    record.update(fields)
    data[user_id] = record
    storage.write(PREFS_KEY, data)


def seed_marker(storage, version):
    storage.write(MARKER_KEY, {"version": version, "notifiedAt": "2024-01-01T00:00:00+00:00"})


def run_cycle(orchestrator):
    async def run():
        await orchestrator.initialize()
        try:
            return await orchestrator.check_and_notify()
        finally:
            await orchestrator.shutdown()

    return asyncio.run(run())


def test_check_before_initialize_raises(storage):
    orchestrator = make_orchestrator(storage, "1.0.0")
    with pytest.raises(NotInitializedError):
        asyncio.run(orchestrator.check_and_notify())


def test_initialize_requires_transport(storage):
    orchestrator = make_orchestrator(storage, "1.0.0")
    orchestrator.transport = None
    with pytest.raises(ConfigError):
        asyncio.run(orchestrator.initialize())


def test_initialize_clears_marker_nobody_was_notified_for(storage):
    seed_marker(storage, "1.0.0")
    seed_user(storage, "u1")
    orchestrator = make_orchestrator(storage, "1.0.0")
    asyncio.run(orchestrator.initialize())
    assert asyncio.run(orchestrator.version_tracker.get_last_notified_version()) is None


def test_initialize_keeps_marker_once_someone_was_notified(storage):
    seed_marker(storage, "1.0.0")
    seed_user(storage, "u1", lastNotified="1.0.0")
    orchestrator = make_orchestrator(storage, "1.0.0")
    asyncio.run(orchestrator.initialize())
    assert asyncio.run(orchestrator.version_tracker.get_last_notified_version()) == "1.0.0"


def test_no_new_version(storage):
    seed_marker(storage, "1.2.0")
    seed_user(storage, "u1", lastNotified="1.2.0")
    transport = FakeTransport()
    result = run_cycle(make_orchestrator(storage, "1.2.0", [release_json("v1.2.0")], transport))
    assert result.to_dict() == {"notified": False, "reason": "No new version"}
    assert transport.sent == []


def test_no_releases_persists_nothing(storage):
    seed_marker(storage, "1.0.0")
    seed_user(storage, "u1", lastNotified="1.0.0")
    result = run_cycle(make_orchestrator(storage, "1.1.0", []))
    assert result.reason == "No releases found"
    assert storage.read(MARKER_KEY).data["version"] == "1.0.0"


def test_release_fetch_failure_propagates_without_persisting(storage):
    seed_marker(storage, "1.0.0")
    seed_user(storage, "u1", lastNotified="1.0.0")
    orchestrator = make_orchestrator(storage, "1.1.0", [release_json("v1.1.0")])
    orchestrator.release_client.list_status = 503
    with pytest.raises(TransientIOError):
        run_cycle(orchestrator)
    assert storage.read(MARKER_KEY).data["version"] == "1.0.0"


def test_no_recipients_still_saves_marker(storage):
    seed_marker(storage, "1.0.0")
    seed_user(storage, "u1", notificationLevel="major", lastNotified="1.0.0")
    transport = FakeTransport()
    result = run_cycle(make_orchestrator(storage, "1.1.0", [release_json("v1.1.0")], transport))
    assert result.reason == "No users opted in for this change type"
    assert transport.sent == []
    assert storage.read(MARKER_KEY).data["version"] == "1.1.0"


def test_fresh_install_notifies_once(storage):
    transport = FakeTransport()
    orchestrator = make_orchestrator(
        storage, "1.0.0", [release_json("v1.0.0", body="## Features\n- Initial release")], transport,
    )

    async def run():
        await orchestrator.initialize()
        await orchestrator.preferences.ensure_user("u1")
        first = await orchestrator.check_and_notify()
        second = await orchestrator.check_and_notify()
        await orchestrator.shutdown()
        return first, second

    first, second = asyncio.run(run())
    assert first.to_dict() == {
        "notified": True, "version": "1.0.0", "changeType": "major", "usersNotified": 1, "usersFailed": 0,
    }
    assert second.reason == "No new version"
    assert [user for user, _ in transport.sent] == ["u1"]
    assert storage.read(MARKER_KEY).data["version"] == "1.0.0"
    assert storage.read(PREFS_KEY).data["u1"]["lastNotified"] == "1.0.0"


def test_unreachable_user_is_opted_out_and_others_still_notified(storage):
    seed_marker(storage, "1.0.0")
    seed_user(storage, "A", lastNotified="1.0.0")
    seed_user(storage, "B", lastNotified="1.0.0")
    transport = FakeTransport({"A": cannot_message("A")})
    metrics = Metrics()
    orchestrator = make_orchestrator(storage, "1.1.0", [release_json("v1.1.0")], transport, metrics=metrics)

    result = run_cycle(orchestrator)
    assert result.users_notified == 1
    assert result.users_failed == 1
    prefs = orchestrator.preferences
    assert prefs.get_user_preferences("A").opted_out is True
    assert prefs.get_user_preferences("A").last_notified == "1.0.0"
    assert prefs.get_user_preferences("B").last_notified == "1.1.0"
    assert prefs.get_users_to_notify(ChangeType.MINOR) == ["B"]

    sample = metrics.registry.get_sample_value
    assert sample("release_notifier_deliveries_total", {"outcome": "delivered"}) == 1
    assert sample("release_notifier_deliveries_total", {"outcome": "opted_out"}) == 1
    assert sample("release_notifier_cycles_total", {"outcome": "notified"}) == 1


def test_transient_delivery_failure_leaves_preferences_alone(storage):
    seed_marker(storage, "1.0.0")
    seed_user(storage, "A", lastNotified="1.0.0")
    transport = FakeTransport({"A": DeliveryError("gateway timeout", "A")})
    orchestrator = make_orchestrator(storage, "1.1.0", [release_json("v1.1.0")], transport)

    result = run_cycle(orchestrator)
    assert result.notified is True
    assert (result.users_notified, result.users_failed) == (0, 1)
    prefs = orchestrator.preferences.get_user_preferences("A")
    assert prefs.opted_out is False
    assert prefs.last_notified == "1.0.0"
    assert not prefs.has_interacted


def test_bounded_concurrent_delivery(storage):
    seed_marker(storage, "1.0.0")
    for n in range(6):
        seed_user(storage, f"u{n}", lastNotified="1.0.0")
    transport = FakeTransport()
    orchestrator = make_orchestrator(
        storage, "1.1.0", [release_json("v1.1.0")], transport, delivery_concurrency=3,
    )
    result = run_cycle(orchestrator)
    assert result.users_notified == 6
    assert sorted(user for user, _ in transport.sent) == [f"u{n}" for n in range(6)]


def test_patch_release_reaches_only_patch_subscribers(storage):
    seed_marker(storage, "1.0.0")
    seed_user(storage, "minor-user", lastNotified="1.0.0")
    seed_user(storage, "patch-user", notificationLevel="patch", lastNotified="1.0.0")
    transport = FakeTransport()
    result = run_cycle(make_orchestrator(storage, "1.0.1", [release_json("v1.0.1")], transport))
    assert result.change_type == ChangeType.PATCH
    assert [user for user, _ in transport.sent] == ["patch-user"]


def test_first_run_caps_release_history(storage):
    tags = ["v1.1.0"] + [f"v0.{n}.0" for n in range(9, 2, -1)]
    tags.insert(1, "v1.0.0")
    transport = FakeTransport()
    orchestrator = make_orchestrator(storage, "1.0.0", [release_json(t) for t in tags], transport)

    async def run():
        await orchestrator.initialize()
        await orchestrator.preferences.ensure_user("u1")
        result = await orchestrator.check_and_notify()
        await orchestrator.shutdown()
        return result

    result = asyncio.run(run())
    assert result.notified is True
    payload = transport.sent[0][1]
    assert payload.title == "🚀 Tzurot Multiple Releases (5 versions)"
    included = next(f for f in payload.fields if f.name == "📋 Included Versions")
    assert "v1.1.0" not in included.value
    assert included.value.count("• ") == 5
    assert "[v0.6.0]" in included.value


def test_preference_read_error_only_fails_that_recipient(storage, monkeypatch):
    seed_marker(storage, "1.0.0")
    seed_user(storage, "A", lastNotified="1.0.0")
    seed_user(storage, "B", lastNotified="1.0.0")
    stored_a = storage.read(PREFS_KEY).data["A"]
    transport = FakeTransport()
    orchestrator = make_orchestrator(storage, "1.1.0", [release_json("v1.1.0")], transport)
    prefs = orchestrator.preferences
    real_get = prefs.get_user_preferences

    def flaky_get(user_id):
        if user_id == "A":
            raise TransientIOError("preference record unreadable")
        return real_get(user_id)

    monkeypatch.setattr(prefs, "get_users_to_notify", lambda change_type: ["A", "B"])
    monkeypatch.setattr(prefs, "get_user_preferences", flaky_get)

    result = run_cycle(orchestrator)
    assert (result.users_notified, result.users_failed) == (1, 1)
    assert [user for user, _ in transport.sent] == ["B"]
    stored = storage.read(PREFS_KEY).data
    assert stored["A"] == stored_a
    assert stored["B"]["lastNotified"] == "1.1.0"
    assert storage.read(MARKER_KEY).data["version"] == "1.1.0"


def test_aggregate_prefixes_only_for_multiple_releases(storage):
    orchestrator = make_orchestrator(storage, "2.0.0")
    v2 = ReleaseRecord(tag="v2", body="### Features\n- B")
    v1 = ReleaseRecord(tag="v1", body="### Features\n- A")
    assert orchestrator.aggregate_release_changes([v2, v1]).features == ["[v2] B", "[v1] A"]
    assert orchestrator.aggregate_release_changes([v1]).features == ["A"]


def make_prefs(last_notified=None, updated_at="2024-01-01T00:00:00+00:00"):
    return UserPreference("u", False, "minor", last_notified, "2024-01-01T00:00:00+00:00", updated_at)


def test_footer_variants(storage):
    orchestrator = make_orchestrator(storage, "1.0.0")
    assert orchestrator.footer_for(make_prefs()).startswith("📌 First time receiving this?")
    assert "!tz notifications off" in orchestrator.footer_for(make_prefs())
    assert orchestrator.footer_for(make_prefs("1.0.0")).startswith("✅ You're receiving these")
    interacted = make_prefs("1.0.0", updated_at="2024-02-01T00:00:00+00:00")
    assert orchestrator.footer_for(interacted) == "You can change your notification preferences with !tz notifications"


def test_single_release_payload(storage):
    orchestrator = make_orchestrator(storage, "1.1.0")
    release = ReleaseRecord.model_validate(release_json(
        "v1.1.0",
        body="## Features\n" + "\n".join(f"- feature {n}" for n in range(10)) + "\n## Bug Fixes\n- crash",
        published_at="2024-03-01T12:00:00Z",
    ))
    check = VersionCheck(True, "1.1.0", "1.0.0", ChangeType.MINOR)
    payload = orchestrator.build_payload(check, [release], make_prefs("1.0.0"))

    assert payload.title == "🚀 Tzurot v1.1.0 Released"
    assert payload.description == change_type_description("minor")
    assert payload.color == 0x00FF00
    assert payload.timestamp == datetime(2024, 3, 1, 12, tzinfo=timezone.utc).isoformat()
    fields = {f.name: f for f in payload.fields}
    assert fields["Version Update"].value == "1.0.0 → 1.1.0"
    assert fields["Version Update"].inline is True
    assert fields["✨ New Features"].value.endswith("…and 5 more")
    assert fields["🐛 Bug Fixes"].value == "• crash"
    assert "📋 Included Versions" not in fields
    assert fields["🔗 Release Notes"].value == f"[View on GitHub]({release.html_url})"
    assert [f.name for f in payload.fields].index("✨ New Features") < [f.name for f in payload.fields].index("🐛 Bug Fixes")


def test_multi_release_payload(storage):
    orchestrator = make_orchestrator(storage, "1.2.0")
    releases = [
        ReleaseRecord.model_validate(release_json("v1.2.0", body="- two", published_at="2024-01-10T00:00:00Z")),
        ReleaseRecord.model_validate(release_json("v1.1.0", body="- one", published_at="2024-01-01T00:00:00Z")),
    ]
    check = VersionCheck(True, "1.2.0", "1.0.0", ChangeType.MINOR)
    payload = orchestrator.build_payload(check, releases, make_prefs("1.0.0"))

    assert payload.title == "🚀 Tzurot Multiple Releases (2 versions)"
    assert payload.description.startswith("You've missed 2 releases over the past 9 days.")
    fields = {f.name: f.value for f in payload.fields}
    assert fields["📝 Other Changes"] == "• [v1.2.0] two\n• [v1.1.0] one"
    assert payload.url == releases[0].html_url


def test_format_change_list_respects_budget():
    items = ["x" * 300 for _ in range(5)]
    text = format_change_list(items, limit=1024, max_items=5)
    assert len(text) <= 1024
    assert text.endswith("…and 2 more")
    assert text.count("• ") == 3

    assert format_change_list(["a", "b"], limit=1024, max_items=5) == "• a\n• b"
    assert format_change_list([], limit=1024) == ""

    clipped = format_change_list(["y" * 2000], limit=100, max_items=5)
    assert 0 < len(clipped) <= 100


@pytest.mark.parametrize("change_type,color", [
    ("major", 0xFF0000), ("minor", 0x00FF00), ("patch", 0x0099FF), ("unknown", 0x808080), (None, 0x808080),
])
def test_colors(change_type, color):
    assert color_for_change_type(change_type) == color


def test_descriptions():
    assert change_type_description("major") == "This is a major release with significant changes and new features!"
    assert change_type_description("patch") == "This release includes bug fixes and minor improvements."
    assert change_type_description("unknown") == "A new version has been released."


def test_statistics_delegate_to_preferences(storage):
    seed_user(storage, "u1", optedOut=True)
    orchestrator = make_orchestrator(storage, "1.0.0")
    asyncio.run(orchestrator.initialize())
    stats = orchestrator.get_statistics()
    assert stats["total"] == 1
    assert stats["optedOut"] == 1
