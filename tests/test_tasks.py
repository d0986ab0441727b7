"""Tests for the file-backed task queue."""

import json
import os
import time
from pathlib import Path

import pytest

from team_bridge.errors import InvalidTaskIdError, TaskExistsError, TaskNotFoundError
from team_bridge.models import Task
from team_bridge.tasks import TaskStore, sanitize_task_id

TEAM = "alpha"


@pytest.fixture
def store(tmp_path: Path) -> TaskStore:
	return TaskStore(tmp_path / "tasks")


def _write(store: TaskStore, task_id: str, **fields) -> Path:
	path = store.task_path(TEAM, task_id)
	path.parent.mkdir(parents=True, exist_ok=True)
	path.write_text(json.dumps({"id": task_id, "subject": f"Task {task_id}", **fields}))
	return path


class TestReadTask:
	def test_missing_returns_none(self, store):
		assert store.read_task(TEAM, "1") is None

	def test_empty_file_returns_none(self, store):
		path = store.task_path(TEAM, "1")
		path.parent.mkdir(parents=True)
		path.write_text("")
		assert store.read_task(TEAM, "1") is None

	def test_corrupt_file_returns_none(self, store):
		path = store.task_path(TEAM, "1")
		path.parent.mkdir(parents=True)
		path.write_text("{not json")
		assert store.read_task(TEAM, "1") is None

	def test_non_object_round_trips(self, store):
		path = store.task_path(TEAM, "1")
		path.parent.mkdir(parents=True)
		path.write_text("[1, 2, 3]")
		assert store.read_task(TEAM, "1") == [1, 2, 3]

	def test_unsafe_task_id_rejected(self, store):
		with pytest.raises(InvalidTaskIdError):
			store.read_task(TEAM, "../escape")
		with pytest.raises(ValueError):
			sanitize_task_id("a/b")


class TestCreateAndUpdate:
	def test_create_writes_camel_case(self, store):
		data = store.create_task(TEAM, Task(id="1", subject="Add tests", blocked_by=["0"]))
		assert data["blockedBy"] == ["0"]
		assert data["status"] == "pending"
		on_disk = json.loads(store.task_path(TEAM, "1").read_text())
		assert on_disk == data

	def test_create_twice_raises(self, store):
		store.create_task(TEAM, Task(id="1"))
		with pytest.raises(TaskExistsError):
			store.create_task(TEAM, Task(id="1"))

	def test_update_merges_and_skips_none(self, store):
		_write(store, "1", status="pending", owner="", custom="kept")
		merged = store.update_task(TEAM, "1", {"status": "in_progress", "owner": None})
		assert merged["status"] == "in_progress"
		assert merged["owner"] == ""
		assert merged["custom"] == "kept"
		assert store.read_task(TEAM, "1") == merged

	def test_update_missing_raises(self, store):
		with pytest.raises(TaskNotFoundError):
			store.update_task(TEAM, "404", {"status": "completed"})
		assert store.read_task(TEAM, "404") is None

	def test_update_non_object_raises(self, store):
		path = store.task_path(TEAM, "1")
		path.parent.mkdir(parents=True)
		path.write_text("[]")
		with pytest.raises(TaskNotFoundError):
			store.update_task(TEAM, "1", {"status": "completed"})

	def test_update_leaves_no_temp_files(self, store):
		_write(store, "1", status="pending")
		store.update_task(TEAM, "1", {"status": "completed"})
		assert [p.name for p in store.team_dir(TEAM).iterdir()] == ["1.json"]


class TestListTaskIds:
	def test_missing_dir_is_empty(self, store):
		assert store.list_task_ids(TEAM) == []

	def test_numeric_ids_sort_by_value(self, store):
		for task_id in ("10", "2", "1"):
			_write(store, task_id)
		assert store.list_task_ids(TEAM) == ["1", "2", "10"]

	def test_mixed_ids(self, store):
		for task_id in ("b", "10", "a", "2"):
			_write(store, task_id)
		assert store.list_task_ids(TEAM) == ["2", "10", "a", "b"]

	@pytest.mark.parametrize("created", [
		("2", "10", "1a"),
		("1a", "10", "2"),
		("10", "1a", "2"),
	])
	def test_mixed_order_is_independent_of_creation_order(self, store, created):
		for task_id in created:
			_write(store, task_id)
		assert store.list_task_ids(TEAM) == ["2", "10", "1a"]

	def test_excludes_temp_and_sidecar_files(self, store):
		_write(store, "1")
		team_dir = store.team_dir(TEAM)
		(team_dir / "1.json.tmp.123.456").write_text("{}")
		(team_dir / "2.tmp.123.json").write_text("{}")
		(team_dir / "1.failure.json").write_text("{}")
		(team_dir / "1.lock").write_text("{}")
		(team_dir / "notes.txt").write_text("")
		assert store.list_task_ids(TEAM) == ["1"]


class TestBlockers:
	def test_empty_list_is_resolved(self, store):
		assert store.are_blockers_resolved(TEAM, []) is True
		assert store.are_blockers_resolved(TEAM, None) is True

	def test_missing_blocker_blocks(self, store):
		assert store.are_blockers_resolved(TEAM, ["nope"]) is False

	def test_incomplete_blocker_blocks(self, store):
		_write(store, "1", status="completed")
		_write(store, "2", status="in_progress")
		assert store.are_blockers_resolved(TEAM, ["1", "2"]) is False
		assert store.are_blockers_resolved(TEAM, ["1"]) is True

	def test_failed_blocker_blocks(self, store):
		_write(store, "1", status="failed")
		assert store.are_blockers_resolved(TEAM, ["1"]) is False


class TestFindNextTask:
	def test_no_team_dir(self, store):
		assert store.find_next_task(TEAM, "worker-1") is None

	def test_skips_non_pending(self, store):
		_write(store, "1", status="in_progress")
		_write(store, "2", status="completed")
		_write(store, "3", status="failed")
		_write(store, "4", status="pending")
		task = store.find_next_task(TEAM, "worker-1")
		assert task["id"] == "4"

	def test_nothing_eligible(self, store):
		_write(store, "1", status="completed")
		assert store.find_next_task(TEAM, "worker-1") is None

	def test_skips_blocked(self, store):
		_write(store, "1", status="pending", blockedBy=["3"])
		_write(store, "2", status="pending", blockedBy=["missing"])
		_write(store, "3", status="pending")
		assert store.find_next_task(TEAM, "worker-1")["id"] == "3"

	def test_unblocked_after_completion(self, store):
		_write(store, "1", status="completed")
		_write(store, "2", status="pending", blockedBy=["1"])
		assert store.find_next_task(TEAM, "worker-1")["id"] == "2"

	def test_skips_corrupt_and_non_object(self, store):
		path = store.task_path(TEAM, "1")
		path.parent.mkdir(parents=True)
		path.write_text("{broken")
		store.task_path(TEAM, "2").write_text("[]")
		_write(store, "3", status="pending")
		assert store.find_next_task(TEAM, "worker-1")["id"] == "3"

	def test_records_no_ownership(self, store):
		path = _write(store, "1", status="pending")
		before = path.read_text()
		store.find_next_task(TEAM, "worker-1")
		assert path.read_text() == before

	def test_never_returns_claimed_statuses(self, store):
		for i, status in enumerate(["in_progress", "completed", "failed"] * 3):
			_write(store, str(i), status=status)
		assert store.find_next_task(TEAM, "worker-1") is None


class TestFailureSidecar:
	def test_increments_retry_count(self, store):
		first = store.write_task_failure(TEAM, "1", "boom")
		second = store.write_task_failure(TEAM, "1", "bang")
		assert first.retry_count == 1
		assert second.retry_count == 2
		read = store.read_task_failure(TEAM, "1")
		assert read.last_error == "bang"
		assert read.retry_count == 2
		assert read.last_failed_at

	def test_corrupt_sidecar_restarts_at_one(self, store):
		path = store.failure_path(TEAM, "1")
		path.parent.mkdir(parents=True)
		path.write_text("garbage")
		assert store.read_task_failure(TEAM, "1") is None
		assert store.write_task_failure(TEAM, "1", "boom").retry_count == 1

	def test_absent_sidecar(self, store):
		assert store.read_task_failure(TEAM, "1") is None
		assert store.is_task_retry_exhausted(TEAM, "1") is False

	def test_retry_exhaustion(self, store):
		for _ in range(3):
			store.write_task_failure(TEAM, "1", "boom")
		assert store.is_task_retry_exhausted(TEAM, "1", max_retries=3) is True
		assert store.is_task_retry_exhausted(TEAM, "1", max_retries=4) is False

	def test_sidecar_on_disk_keys(self, store):
		store.write_task_failure(TEAM, "1", "boom")
		data = json.loads(store.failure_path(TEAM, "1").read_text())
		assert set(data) == {"taskId", "lastError", "retryCount", "lastFailedAt"}


class TestClaimLock:
	def test_lock_is_exclusive(self, store):
		first = store.acquire_task_lock(TEAM, "1", "worker-1")
		assert first is not None
		assert store.acquire_task_lock(TEAM, "1", "worker-2") is None
		store.release_task_lock(first)
		second = store.acquire_task_lock(TEAM, "1", "worker-2")
		assert second is not None
		store.release_task_lock(second)

	def test_stale_lock_is_reaped(self, store):
		path = store.lock_path(TEAM, "1")
		path.parent.mkdir(parents=True)
		path.write_text(json.dumps({"pid": 0, "workerName": "ghost"}))
		old = time.time() - 120
		os.utime(path, (old, old))
		handle = store.acquire_task_lock(TEAM, "1", "worker-1")
		assert handle is not None
		store.release_task_lock(handle)

	def test_fresh_lock_of_dead_pid_is_kept(self, store):
		path = store.lock_path(TEAM, "1")
		path.parent.mkdir(parents=True)
		path.write_text(json.dumps({"pid": 0}))
		assert store.acquire_task_lock(TEAM, "1", "worker-1") is None

	def test_claim_task(self, store):
		_write(store, "1", status="pending")
		claimed = store.claim_task(TEAM, "1", "worker-1")
		assert claimed["status"] == "in_progress"
		assert claimed["owner"] == "worker-1"
		assert claimed["claimedBy"] == "worker-1"
		assert not store.lock_path(TEAM, "1").exists()

	def test_second_claim_fails(self, store):
		_write(store, "1", status="pending")
		assert store.claim_task(TEAM, "1", "worker-1") is not None
		assert store.claim_task(TEAM, "1", "worker-2") is None

	def test_claim_while_locked_fails(self, store):
		_write(store, "1", status="pending")
		with store.task_lock(TEAM, "1", "worker-1") as handle:
			assert handle is not None
			assert store.claim_task(TEAM, "1", "worker-2") is None
		assert store.read_task(TEAM, "1")["status"] == "pending"

	def test_claim_next_skips_locked_task(self, store):
		_write(store, "1", status="pending")
		_write(store, "2", status="pending")
		with store.task_lock(TEAM, "1", "worker-1"):
			claimed = store.claim_next_task(TEAM, "worker-2")
		assert claimed["id"] == "2"
		assert claimed["owner"] == "worker-2"
		assert store.read_task(TEAM, "1")["status"] == "pending"

	def test_claim_next_nothing_claimable(self, store):
		_write(store, "1", status="completed")
		_write(store, "2", status="pending", blockedBy=["3"])
		assert store.claim_next_task(TEAM, "worker-1") is None
