"""
tests/test_lockout.py -- Unit tests for LoginAttemptStore and the derived lockout decision.

Covers:
  - Locked iff failures in the trailing window >= max
  - Successful attempts never count toward lockout
  - Lockout self-heals as the window rolls past old failures (no unlock action)
  - Email matching is case-insensitive
  - record() swallows storage errors
  - Admin listing filters and the stats summary
"""

from __future__ import annotations

import pytest

from auth.lockout import LoginAttemptStore
from auth.models import OriginMeta


def _fail(attempts: LoginAttemptStore, email: str, times: int) -> None:
    for _ in range(times):
        attempts.record(email, False, OriginMeta("10.0.0.1", "pytest"), fail_reason="Invalid password")


class TestCheckLockout:
    def test_no_attempts_is_unlocked(self, attempts):
        status = attempts.check_lockout("a@example.com", max_attempts=5, window_minutes=15)
        assert status.is_locked is False
        assert status.failed_attempts == 0
        assert status.max_attempts == 5

    def test_below_max_is_unlocked(self, attempts):
        _fail(attempts, "a@example.com", 4)
        status = attempts.check_lockout("a@example.com", max_attempts=5, window_minutes=15)
        assert status.is_locked is False
        assert status.failed_attempts == 4

    def test_reaching_max_locks(self, attempts):
        _fail(attempts, "a@example.com", 5)
        status = attempts.check_lockout("a@example.com", max_attempts=5, window_minutes=15)
        assert status.is_locked is True
        assert status.failed_attempts == 5

    def test_successes_do_not_count(self, attempts):
        _fail(attempts, "a@example.com", 4)
        for _ in range(3):
            attempts.record("a@example.com", True)
        assert attempts.check_lockout("a@example.com", 5, 15).failed_attempts == 4

    def test_other_emails_do_not_count(self, attempts):
        _fail(attempts, "b@example.com", 10)
        assert attempts.check_lockout("a@example.com", 5, 15).is_locked is False

    def test_email_is_case_insensitive(self, attempts):
        _fail(attempts, "A@Example.com", 5)
        assert attempts.check_lockout("a@example.COM", 5, 15).is_locked is True

    def test_self_heals_when_window_rolls(self, attempts, clock):
        _fail(attempts, "a@example.com", 5)
        clock.advance(minutes=14)
        assert attempts.check_lockout("a@example.com", 5, 15).is_locked is True
        clock.advance(minutes=2)
        status = attempts.check_lockout("a@example.com", 5, 15)
        assert status.is_locked is False
        assert status.failed_attempts == 0

    def test_partial_heal_counts_only_recent_failures(self, attempts, clock):
        _fail(attempts, "a@example.com", 3)
        clock.advance(minutes=10)
        _fail(attempts, "a@example.com", 2)
        clock.advance(minutes=6)
        # The first three are now outside the 15-minute window.
        assert attempts.check_lockout("a@example.com", 5, 15).failed_attempts == 2


class TestRecord:
    def test_fail_reason_cleared_on_success(self, attempts):
        attempts.record("a@example.com", True, fail_reason="should be dropped")
        rows, total = attempts.list_attempts()
        assert total == 1
        assert rows[0].success is True
        assert rows[0].fail_reason is None

    def test_origin_is_stored(self, attempts):
        attempts.record("a@example.com", False, OriginMeta("192.0.2.7", "Firefox"), fail_reason="Invalid password")
        row = attempts.list_attempts()[0][0]
        assert row.ip_address == "192.0.2.7"
        assert row.user_agent == "Firefox"
        assert row.fail_reason == "Invalid password"

    def test_storage_error_is_swallowed(self, attempts, monkeypatch, caplog):
        class BrokenEngine:
            def connect(self):
                raise RuntimeError("disk full")

        monkeypatch.setattr(attempts, "engine", BrokenEngine())
        attempts.record("a@example.com", False, fail_reason="Invalid password")
        assert "Failed to record login attempt" in caplog.text


class TestAdminQueries:
    def test_list_newest_first_with_pagination(self, attempts, clock):
        for i in range(5):
            attempts.record(f"user{i}@example.com", False, fail_reason="Invalid password")
            clock.advance(seconds=1)
        rows, total = attempts.list_attempts(page=1, limit=2)
        assert total == 5
        assert [r.email for r in rows] == ["user4@example.com", "user3@example.com"]
        rows, _ = attempts.list_attempts(page=3, limit=2)
        assert [r.email for r in rows] == ["user0@example.com"]

    def test_filter_by_email_substring_and_success(self, attempts):
        attempts.record("alice@contractor.com", False, fail_reason="Invalid password")
        attempts.record("bob@contractor.com", True)
        attempts.record("carol@example.com", False, fail_reason="Invalid password")
        rows, total = attempts.list_attempts(email="@Contractor.com")
        assert total == 2
        rows, total = attempts.list_attempts(email="contractor", success=False)
        assert total == 1
        assert rows[0].email == "alice@contractor.com"

    def test_email_filter_escapes_wildcards(self, attempts):
        attempts.record("a_b@example.com", False, fail_reason="x")
        attempts.record("axb@example.com", False, fail_reason="x")
        _, total = attempts.list_attempts(email="a_b")
        assert total == 1

    def test_stats(self, attempts, clock):
        _fail(attempts, "a@example.com", 3)
        _fail(attempts, "b@example.com", 1)
        attempts.record("a@example.com", True)
        stats = attempts.stats(hours=24)
        assert stats["total"] == 5
        assert stats["successful"] == 1
        assert stats["failed"] == 4
        assert stats["top_failed_emails"][0] == {"email": "a@example.com", "count": 3}

    @pytest.mark.parametrize("hours,expected", [(1, 0), (48, 2)])
    def test_stats_window(self, attempts, clock, hours, expected):
        _fail(attempts, "a@example.com", 2)
        clock.advance(hours=2)
        assert attempts.stats(hours=hours)["total"] == expected
