"""Tests for worker heartbeat files."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from team_bridge.heartbeat import HeartbeatRegistry, heartbeat_age_ms, parse_timestamp

from .helpers import make_heartbeat

TEAM = "alpha"


@pytest.fixture
def registry(tmp_path: Path) -> HeartbeatRegistry:
	return HeartbeatRegistry(tmp_path / "state")


def _iso(delta: timedelta) -> str:
	return (datetime.now(timezone.utc) + delta).isoformat()


class TestReadWrite:
	def test_round_trip(self, registry):
		heartbeat = make_heartbeat(TEAM, "worker-1", status="executing", current_task_id="7", consecutive_errors=1)
		registry.write_heartbeat(heartbeat)
		assert registry.read_heartbeat(TEAM, "worker-1") == heartbeat

	def test_path_layout(self, registry, tmp_path):
		registry.write_heartbeat(make_heartbeat(TEAM, "worker-1"))
		assert (tmp_path / "state" / "team-bridge" / TEAM / "worker-1.heartbeat.json").exists()

	def test_missing_and_corrupt(self, registry):
		assert registry.read_heartbeat(TEAM, "worker-1") is None
		path = registry.heartbeat_path(TEAM, "worker-1")
		path.parent.mkdir(parents=True)
		path.write_text("{not json")
		assert registry.read_heartbeat(TEAM, "worker-1") is None


class TestIsWorkerAlive:
	def test_fresh_heartbeat_is_alive(self, registry):
		registry.write_heartbeat(make_heartbeat(TEAM, "worker-1"))
		assert registry.is_worker_alive(TEAM, "worker-1", 30_000) is True

	def test_zero_threshold_is_always_dead(self, registry):
		registry.write_heartbeat(make_heartbeat(TEAM, "worker-1"))
		assert registry.is_worker_alive(TEAM, "worker-1", 0) is False

	def test_stale_heartbeat_is_dead(self, registry):
		registry.write_heartbeat(make_heartbeat(TEAM, "worker-1", last_poll_at=_iso(timedelta(minutes=-5))))
		assert registry.is_worker_alive(TEAM, "worker-1", 30_000) is False

	def test_empty_poll_time_is_dead(self, registry):
		registry.write_heartbeat(make_heartbeat(TEAM, "worker-1", last_poll_at=""))
		assert registry.is_worker_alive(TEAM, "worker-1", 30_000) is False

	def test_unparsable_poll_time_is_dead(self, registry):
		registry.write_heartbeat(make_heartbeat(TEAM, "worker-1", last_poll_at="yesterday-ish"))
		assert registry.is_worker_alive(TEAM, "worker-1", 30_000) is False

	def test_future_poll_time_is_alive(self, registry):
		registry.write_heartbeat(make_heartbeat(TEAM, "worker-1", last_poll_at=_iso(timedelta(seconds=10))))
		assert registry.is_worker_alive(TEAM, "worker-1", 30_000) is True

	def test_missing_heartbeat_is_dead(self, registry):
		assert registry.is_worker_alive(TEAM, "worker-1", 30_000) is False


class TestListAndCleanup:
	def test_list_omits_corrupt(self, registry):
		registry.write_heartbeat(make_heartbeat(TEAM, "worker-1"))
		registry.write_heartbeat(make_heartbeat(TEAM, "worker-2"))
		(registry.team_dir(TEAM) / "worker-3.heartbeat.json").write_text("garbage")
		names = [h.worker_name for h in registry.list_heartbeats(TEAM)]
		assert names == ["worker-1", "worker-2"]

	def test_list_missing_team(self, registry):
		assert registry.list_heartbeats(TEAM) == []

	def test_delete_is_idempotent(self, registry):
		registry.write_heartbeat(make_heartbeat(TEAM, "worker-1"))
		registry.delete_heartbeat(TEAM, "worker-1")
		registry.delete_heartbeat(TEAM, "worker-1")
		assert registry.read_heartbeat(TEAM, "worker-1") is None

	def test_cleanup_removes_whole_directory(self, registry):
		registry.write_heartbeat(make_heartbeat(TEAM, "worker-1"))
		(registry.team_dir(TEAM) / "unrelated.txt").write_text("also goes")
		registry.cleanup_team_heartbeats(TEAM)
		assert not registry.team_dir(TEAM).exists()

	def test_cleanup_leaves_other_teams(self, registry):
		registry.write_heartbeat(make_heartbeat(TEAM, "worker-1"))
		registry.write_heartbeat(make_heartbeat("beta", "worker-1"))
		registry.cleanup_team_heartbeats(TEAM)
		assert registry.read_heartbeat("beta", "worker-1") is not None


class TestTimestamps:
	def test_naive_timestamp_is_utc(self):
		parsed = parse_timestamp("2026-01-01T00:00:00")
		assert parsed.tzinfo is not None
		assert parsed.utcoffset() == timedelta(0)

	def test_z_suffix(self):
		assert parse_timestamp("2026-01-01T00:00:00Z") == datetime(2026, 1, 1, tzinfo=timezone.utc)

	def test_age(self):
		heartbeat = make_heartbeat(last_poll_at="2026-01-01T00:00:00+00:00")
		now = datetime(2026, 1, 1, 0, 0, 5, tzinfo=timezone.utc)
		assert heartbeat_age_ms(heartbeat, now=now) == 5000

	def test_age_unknown(self):
		assert heartbeat_age_ms(make_heartbeat(last_poll_at="")) is None
