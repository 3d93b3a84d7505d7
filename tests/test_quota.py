"""
Unit tests for quota enforcement.

Tests window boundaries, the binding window, zero-cap short circuit,
warnings and idempotent usage recording.
"""

import os
import sqlite3
import tempfile
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from ai_request_router.core.cache import TTLCache
from ai_request_router.core.quota import (
    DEFAULT_QUOTAS,
    QuotaCaps,
    QuotaEnforcer,
    window_start,
)
from ai_request_router.core.tiers import Tier
from ai_request_router.storage.db import get_connection
from ai_request_router.storage.models import TaskType, WindowKind
from ai_request_router.storage.repository import UsageRepository, initialize_schema

# Wednesday
NOW = datetime(2024, 3, 6, 15, 30, tzinfo=timezone.utc)


class TestWindowStart:
    def test_daily_default_midnight(self):
        assert window_start(WindowKind.DAILY, NOW) == datetime(2024, 3, 6, tzinfo=timezone.utc)

    def test_daily_custom_reset_hour(self):
        early = datetime(2024, 3, 6, 3, 0, tzinfo=timezone.utc)
        assert window_start(WindowKind.DAILY, early, daily_reset_hour=6) == \
            datetime(2024, 3, 5, 6, 0, tzinfo=timezone.utc)
        assert window_start(WindowKind.DAILY, NOW, daily_reset_hour=6) == \
            datetime(2024, 3, 6, 6, 0, tzinfo=timezone.utc)

    def test_weekly_starts_monday(self):
        assert window_start(WindowKind.WEEKLY, NOW) == datetime(2024, 3, 4, tzinfo=timezone.utc)

    def test_weekly_custom_start_day(self):
        assert window_start(WindowKind.WEEKLY, NOW, week_start_day=6) == \
            datetime(2024, 3, 3, tzinfo=timezone.utc)

    def test_monthly_starts_on_first(self):
        assert window_start(WindowKind.MONTHLY, NOW) == datetime(2024, 3, 1, tzinfo=timezone.utc)


class TestQuotaCaps:
    def test_default_table(self):
        caps = DEFAULT_QUOTAS[Tier.STARTER][TaskType.IMAGE]
        assert (caps.daily, caps.weekly, caps.monthly) == (25, 120, 400)
        assert DEFAULT_QUOTAS[Tier.FREE][TaskType.VIDEO].zero_window == WindowKind.DAILY

    def test_negative_cap_rejected(self):
        with pytest.raises(ValueError):
            QuotaCaps(daily=-1, weekly=1, monthly=1)


class QuotaTestCase:
    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.repo = UsageRepository(self.db_path)

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _enforcer(self, **kwargs) -> QuotaEnforcer:
        kwargs.setdefault("clock", lambda: NOW)
        return QuotaEnforcer(self.repo, **kwargs)

    def _set_count(self, feature: str, kind: WindowKind, count: int, owner: str = "alice"):
        start = window_start(kind, NOW)
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT OR REPLACE INTO usage_counter "
                "(owner, feature, window_kind, window_start, count) VALUES (?, ?, ?, ?, ?)",
                (owner, feature, kind.value, start.isoformat(), count),
            )
        finally:
            conn.close()


class TestCheckAccess(QuotaTestCase):
    """Test admission decisions."""

    def test_fresh_owner_allowed(self):
        decision = self._enforcer().check_access("alice", Tier.FREE, TaskType.CHAT)
        assert decision.allowed
        assert decision.remaining == 15
        assert decision.binding_window == WindowKind.DAILY
        assert decision.warning is None

    def test_monthly_cap_denies_despite_daily_headroom(self):
        self._set_count("chat", WindowKind.DAILY, 10)
        self._set_count("chat", WindowKind.MONTHLY, 240)

        decision = self._enforcer().check_access("alice", Tier.FREE, TaskType.CHAT)
        assert not decision.allowed
        assert decision.exhausted
        assert not decision.upgrade_required
        assert decision.binding_window == WindowKind.MONTHLY
        assert "Monthly limit reached" in decision.reason

    def test_binding_window_is_smallest_headroom(self):
        self._set_count("image", WindowKind.DAILY, 5)
        self._set_count("image", WindowKind.WEEKLY, 110)
        self._set_count("image", WindowKind.MONTHLY, 110)

        decision = self._enforcer().check_access("alice", Tier.STARTER, TaskType.IMAGE)
        assert decision.allowed
        assert decision.binding_window == WindowKind.WEEKLY
        assert decision.remaining == 10

    def test_ties_go_to_longer_window(self):
        quotas = {Tier.FREE: {TaskType.CHAT: QuotaCaps(daily=10, weekly=10, monthly=10)}}
        decision = self._enforcer(quotas=quotas).check_access("alice", Tier.FREE, TaskType.CHAT)
        assert decision.binding_window == WindowKind.MONTHLY

    def test_daily_exhaustion(self):
        self._set_count("chat", WindowKind.DAILY, 15)
        decision = self._enforcer().check_access("alice", "free", TaskType.CHAT)
        assert not decision.allowed
        assert decision.binding_window == WindowKind.DAILY
        assert "Try again tomorrow" in decision.reason

    def test_old_window_counts_are_ignored(self):
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT INTO usage_counter VALUES (?, ?, ?, ?, ?)",
                ("alice", "chat", "daily", "2024-03-05T00:00:00+00:00", 15),
            )
        finally:
            conn.close()
        assert self._enforcer().check_access("alice", Tier.FREE, TaskType.CHAT).allowed

    def test_warning_at_threshold(self):
        quotas = {Tier.PRO: {TaskType.CHAT: QuotaCaps(daily=100, weekly=1000, monthly=1000)}}
        enforcer = self._enforcer(quotas=quotas)

        self._set_count("chat", WindowKind.DAILY, 94)
        assert enforcer.check_access("alice", Tier.PRO, TaskType.CHAT).warning is None

        self._set_count("chat", WindowKind.DAILY, 95)
        decision = enforcer.check_access("alice", Tier.PRO, TaskType.CHAT)
        assert decision.allowed
        assert "Only 5 chat" in decision.warning

    def test_store_failure_fails_closed(self):
        repo = Mock()
        repo.get_counter.side_effect = sqlite3.OperationalError("disk I/O error")
        enforcer = QuotaEnforcer(repo, clock=lambda: NOW)

        decision = enforcer.check_access("alice", Tier.PRO, TaskType.CHAT)
        assert not decision.allowed
        assert not decision.exhausted
        assert "Unable to verify access" in decision.reason

    def test_invalid_settings_rejected(self):
        with pytest.raises(ValueError):
            self._enforcer(warning_fraction=1.5)
        with pytest.raises(ValueError):
            self._enforcer(daily_reset_hour=24)


class TestZeroCap:
    """A zero cap never reads usage."""

    def test_free_video_requires_upgrade(self):
        repo = Mock()
        enforcer = QuotaEnforcer(repo, clock=lambda: NOW)

        decision = enforcer.check_access("alice", Tier.FREE, TaskType.VIDEO)

        assert not decision.allowed
        assert decision.upgrade_required
        assert not decision.exhausted
        assert decision.remaining == 0
        assert "paid plan" in decision.reason
        repo.get_counter.assert_not_called()

    def test_zero_in_any_window_short_circuits(self):
        repo = Mock()
        quotas = {Tier.PRO: {TaskType.MUSIC: QuotaCaps(daily=5, weekly=5, monthly=0)}}
        decision = QuotaEnforcer(repo, quotas=quotas, clock=lambda: NOW).check_access(
            "alice", Tier.PRO, TaskType.MUSIC
        )
        assert decision.upgrade_required
        assert decision.binding_window == WindowKind.MONTHLY
        repo.get_counter.assert_not_called()


class TestRecordUsage(QuotaTestCase):
    def test_increments_every_window_once(self):
        enforcer = self._enforcer()
        assert enforcer.record_usage("alice", TaskType.IMAGE, "task-1")
        assert not enforcer.record_usage("alice", TaskType.IMAGE, "task-1")

        for kind in WindowKind:
            counter = self.repo.get_counter("alice", "image", kind, window_start(kind, NOW))
            assert counter.count == 1

    def test_concurrent_recording_counts_every_task(self):
        enforcer = self._enforcer()
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(
                lambda i: enforcer.record_usage("alice", TaskType.IMAGE, f"task-{i}"),
                range(16),
            ))

        for kind in WindowKind:
            counter = self.repo.get_counter("alice", "image", kind, window_start(kind, NOW))
            assert counter.count == 16

    def test_concurrent_replay_counts_once(self):
        enforcer = self._enforcer()
        with ThreadPoolExecutor(max_workers=8) as pool:
            recorded = list(pool.map(
                lambda _: enforcer.record_usage("alice", TaskType.IMAGE, "task-1"),
                range(8),
            ))

        assert recorded.count(True) == 1
        for kind in WindowKind:
            counter = self.repo.get_counter("alice", "image", kind, window_start(kind, NOW))
            assert counter.count == 1

    def test_cached_reads_invalidated_on_write(self):
        enforcer = self._enforcer(cache=TTLCache(ttl_seconds=60))
        assert enforcer.check_access("alice", Tier.FREE, TaskType.IMAGE).remaining == 2

        enforcer.record_usage("alice", TaskType.IMAGE, "task-1")
        assert enforcer.check_access("alice", Tier.FREE, TaskType.IMAGE).remaining == 1

        enforcer.record_usage("alice", TaskType.IMAGE, "task-2")
        decision = enforcer.check_access("alice", Tier.FREE, TaskType.IMAGE)
        assert not decision.allowed

    def test_usage_summary_covers_every_feature(self):
        summary = self._enforcer().usage_summary("alice", Tier.STARTER)
        assert [d.feature for d in summary] == list(TaskType)
        music = next(d for d in summary if d.feature == TaskType.MUSIC)
        assert music.upgrade_required
