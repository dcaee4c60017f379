import json
from datetime import datetime, timedelta, timezone

import pytest

from services.local_quota import (
    ACTION_LOGIN,
    ACTION_PASSWORD_RESET,
    ACTION_SIGNUP,
    USAGE_KEY,
    AuthAttemptThrottle,
    Expired,
    JsonFileQuotaStore,
    LocalQuotaCache,
    MemoryQuotaStore,
    WithinWindow,
)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    # 13:00 in Los Angeles.
    return Clock(datetime(2026, 3, 10, 20, 0, tzinfo=timezone.utc))


@pytest.fixture
def cache(clock):
    return LocalQuotaCache(MemoryQuotaStore(), daily_limit=3, clock=clock)


def test_fresh_cache_allows_three_uses(cache):
    status = cache.check()
    assert status.can_proceed is True
    assert status.remaining == 3
    assert status.total == 3
    assert status.is_at_limit is False
    assert status.resets_at == datetime(2026, 3, 11, 7, 0, tzinfo=timezone.utc)


def test_record_use_stops_at_the_limit(cache):
    for _ in range(5):
        status = cache.record_use()
    assert status.remaining == 0
    assert status.is_at_limit is True
    assert status.can_proceed is False
    assert json.loads(cache.store.get(USAGE_KEY))["used"] == 3


def test_counter_resets_when_reference_date_changes(cache, clock):
    for _ in range(3):
        cache.record_use()
    # 23:59 local is still the same day.
    clock.now = datetime(2026, 3, 11, 6, 59, tzinfo=timezone.utc)
    assert cache.check().remaining == 0

    clock.advance(minutes=2)
    assert cache.check().remaining == 3


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        json.dumps([1, 2, 3]),
        json.dumps({"date": "2026-03-10"}),
        json.dumps({"date": "2026-03-10", "used": -1}),
        json.dumps({"date": "2026-03-10", "used": 9}),
        json.dumps({"date": "2026-03-10", "used": "2"}),
    ],
)
def test_corrupt_or_out_of_range_records_read_as_fresh(cache, raw):
    cache.store.set(USAGE_KEY, raw)
    assert cache.check().remaining == 3


def test_server_values_overwrite_local_state(cache):
    cache.record_use()
    status = cache.sync_from_server(used_today=3, daily_limit=3, server_date="2026-03-10")
    assert status.remaining == 0

    status = cache.sync_from_server(used_today=0)
    assert status.remaining == 3


def test_reset_clears_usage(cache):
    cache.record_use()
    cache.record_use()
    assert cache.reset().remaining == 3


def test_json_file_store_persists_between_instances(tmp_path, clock):
    path = tmp_path / "quota.json"
    first = LocalQuotaCache(JsonFileQuotaStore(path), daily_limit=3, clock=clock)
    first.record_use()

    second = LocalQuotaCache(JsonFileQuotaStore(path), daily_limit=3, clock=clock)
    assert second.check().remaining == 2
    assert USAGE_KEY in list(JsonFileQuotaStore(path).keys())


def test_json_file_store_tolerates_a_damaged_file(tmp_path):
    path = tmp_path / "quota.json"
    path.write_text("{broken", encoding="utf-8")
    store = JsonFileQuotaStore(path)

    assert store.get("anything") is None
    store.set("key", "value")
    assert store.get("key") == "value"
    store.delete("key")
    assert store.get("key") is None


@pytest.fixture
def throttle(clock):
    return AuthAttemptThrottle(MemoryQuotaStore(), clock=clock)


def test_login_locks_after_five_failures(throttle, clock):
    for _ in range(4):
        throttle.record_attempt("ana@example.com", ACTION_LOGIN, failed=True)
    assert throttle.can_attempt("ana@example.com", ACTION_LOGIN) is True
    assert throttle.remaining_attempts("ana@example.com", ACTION_LOGIN) == 1

    throttle.record_attempt("ana@example.com", ACTION_LOGIN, failed=True)

    assert throttle.is_blocked("ana@example.com", ACTION_LOGIN) is True
    assert throttle.can_attempt("ana@example.com", ACTION_LOGIN) is False
    assert throttle.seconds_until_unblocked("ana@example.com", ACTION_LOGIN) == 15 * 60
    assert throttle.remaining_attempts("ana@example.com", ACTION_LOGIN) == 0


def test_lockout_expires_after_fifteen_minutes_but_window_still_counts(throttle, clock):
    for _ in range(5):
        throttle.record_attempt("ana@example.com", ACTION_LOGIN, failed=True)

    clock.advance(minutes=15, seconds=1)

    assert throttle.is_blocked("ana@example.com", ACTION_LOGIN) is False
    assert throttle.seconds_until_unblocked("ana@example.com", ACTION_LOGIN) == 0
    assert throttle.can_attempt("ana@example.com", ACTION_LOGIN) is False


def test_window_expires_after_an_hour(throttle, clock):
    for _ in range(5):
        throttle.record_attempt("ana@example.com", ACTION_LOGIN, failed=True)

    clock.advance(minutes=61)

    assert isinstance(throttle.window_state("ana@example.com", ACTION_LOGIN), Expired)
    assert throttle.can_attempt("ana@example.com", ACTION_LOGIN) is True
    assert throttle.remaining_attempts("ana@example.com", ACTION_LOGIN) == 5


def test_lockout_outlives_the_window_it_started_in(throttle, clock):
    throttle.record_attempt("ana@example.com", ACTION_SIGNUP, failed=True)
    clock.advance(minutes=55)
    throttle.record_attempt("ana@example.com", ACTION_SIGNUP, failed=True)
    throttle.record_attempt("ana@example.com", ACTION_SIGNUP, failed=True)

    clock.advance(minutes=10)

    state = throttle.window_state("ana@example.com", ACTION_SIGNUP)
    assert isinstance(state, WithinWindow)
    assert throttle.is_blocked("ana@example.com", ACTION_SIGNUP) is True


def test_success_clears_attempts(throttle):
    for _ in range(2):
        throttle.record_attempt("ana@example.com", ACTION_PASSWORD_RESET, failed=True)
    throttle.record_attempt("ana@example.com", ACTION_PASSWORD_RESET, failed=False)

    assert isinstance(throttle.window_state("ana@example.com", ACTION_PASSWORD_RESET), Expired)
    assert throttle.remaining_attempts("ana@example.com", ACTION_PASSWORD_RESET) == 3


def test_ceilings_per_action(throttle):
    assert throttle.ceiling(ACTION_LOGIN) == 5
    assert throttle.ceiling(ACTION_SIGNUP) == 3
    assert throttle.ceiling(ACTION_PASSWORD_RESET) == 3
    assert throttle.ceiling("magic_link") == 5


def test_actions_and_identifiers_are_tracked_separately(throttle):
    for _ in range(3):
        throttle.record_attempt("ana@example.com", ACTION_SIGNUP, failed=True)

    assert throttle.can_attempt("ana@example.com", ACTION_SIGNUP) is False
    assert throttle.can_attempt("ana@example.com", ACTION_LOGIN) is True
    assert throttle.can_attempt("ben@example.com", ACTION_SIGNUP) is True


def test_naive_timestamps_in_stored_attempts_are_read_as_utc(throttle, clock):
    key = "wedai_auth_login_attempt_ana@example.com"
    throttle.store.set(key, json.dumps({"attempts": 2, "window_start": "2026-03-10T19:30:00", "blocked_until": None}))

    state = throttle.window_state("ana@example.com", ACTION_LOGIN)
    assert isinstance(state, WithinWindow)
    assert state.attempts == 2
    assert throttle.remaining_attempts("ana@example.com", ACTION_LOGIN) == 3

    throttle.store.set(key, json.dumps({"attempts": 4, "window_start": "2026-03-10T18:00:00", "blocked_until": None}))
    assert isinstance(throttle.window_state("ana@example.com", ACTION_LOGIN), Expired)
