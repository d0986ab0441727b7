"""
Task Store - shared, file-per-task queue for a team.

Features:
- One JSON file per task at <tasks_root>/<team>/<id>.json
- Read-modify-write updates with whole-file atomic rewrites
- Dependency resolution through blockedBy
- Failure sidecars (<id>.failure.json) with retry counting
- Optional exclusive claim locks (<id>.lock)

Claiming is optimistic: find_next_task only reads, and the caller claims
with update_task. Two workers can observe and claim the same task. Callers
that need exclusion use claim_task, which takes an O_EXCL lock file.
"""

import json
import logging
import os
import re
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Optional

from .errors import InvalidTaskIdError, TaskExistsError, TaskNotFoundError
from .fsutil import (
	atomic_write_json,
	ensure_dir,
	read_json,
	remove_quietly,
	utc_now_iso,
	validate_resolved_path,
)
from .models import Task, TaskFailure, TaskStatus
from .sessions import sanitize_name

logger = logging.getLogger(__name__)

TASK_SUFFIX = ".json"
DEFAULT_MAX_TASK_RETRIES = 5
DEFAULT_STALE_LOCK_MS = 30_000

_TASK_ID = re.compile(r"^[A-Za-z0-9._-]+$")
_NUMERIC_ID = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)$")


def sanitize_task_id(task_id: str) -> str:
	"""Reject task ids that could escape the team directory."""
	if not _TASK_ID.match(task_id):
		raise InvalidTaskIdError(f'Invalid task ID: "{task_id}" contains unsafe characters')
	return task_id


def _task_id_sort_key(task_id: str) -> tuple[int, float, str]:
	"""Numeric ids first, by value; every other id after them, by string."""
	if _NUMERIC_ID.match(task_id):
		return (0, float(task_id), task_id)
	return (1, 0.0, task_id)


def _is_task_file(filename: str) -> bool:
	return (
		filename.endswith(TASK_SUFFIX)
		and ".tmp." not in filename
		and ".failure." not in filename
	)


def is_pid_alive(pid: int) -> bool:
	"""Check whether a process exists. EPERM still means alive."""
	if pid <= 0:
		return False
	try:
		os.kill(pid, 0)
	except PermissionError:
		return True
	except OSError:
		return False
	return True


@dataclass
class LockHandle:
	"""An acquired task lock; pass to release_task_lock."""
	fd: int
	path: Path


class TaskStore:
	"""
	File-backed task queue shared by every worker of a team.

	Usage:
		store = TaskStore(config.tasks_root)
		store.create_task("alpha", Task(id="1", subject="Add tests"))
		task = store.find_next_task("alpha", "worker-1")
		if task:
			store.update_task("alpha", task["id"], {"status": "in_progress", "owner": "worker-1"})
	"""

	def __init__(self, tasks_root: Path | str):
		self.tasks_root = Path(tasks_root)

	# -- paths ---------------------------------------------------------------

	def team_dir(self, team_name: str) -> Path:
		path = self.tasks_root / sanitize_name(team_name)
		validate_resolved_path(path, self.tasks_root)
		return path

	def task_path(self, team_name: str, task_id: str) -> Path:
		return self.team_dir(team_name) / f"{sanitize_task_id(task_id)}{TASK_SUFFIX}"

	def failure_path(self, team_name: str, task_id: str) -> Path:
		return self.team_dir(team_name) / f"{sanitize_task_id(task_id)}.failure.json"

	def lock_path(self, team_name: str, task_id: str) -> Path:
		return self.team_dir(team_name) / f"{sanitize_task_id(task_id)}.lock"

	# -- tasks ---------------------------------------------------------------

	def read_task(self, team_name: str, task_id: str) -> Any | None:
		"""
		Read a task file as raw JSON.

		Returns None for a missing, empty or malformed file. The content is
		not validated, so any JSON value comes back as stored.
		"""
		return read_json(self.task_path(team_name, task_id))

	def create_task(self, team_name: str, task: Task) -> dict[str, Any]:
		"""
		Write a new task file.

		Raises:
			TaskExistsError: If a task with this id already exists
		"""
		path = self.task_path(team_name, task.id)
		ensure_dir(path.parent)
		data = task.to_json_dict()
		try:
			fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
		except FileExistsError as e:
			raise TaskExistsError(task.id) from e
		with os.fdopen(fd, "w", encoding="utf-8") as f:
			f.write(json.dumps(data, indent=2, ensure_ascii=False) + "\n")
		logger.info(f"Created task {team_name}/{task.id}: {task.subject}")
		return data

	def update_task(self, team_name: str, task_id: str, updates: dict[str, Any]) -> dict[str, Any]:
		"""
		Merge updates into an existing task and rewrite it whole.

		Keys whose value is None are skipped rather than cleared. Unknown
		fields already in the file are preserved.

		Returns:
			The merged task

		Raises:
			TaskNotFoundError: If the file is missing, malformed, or not an object
		"""
		path = self.task_path(team_name, task_id)
		task = read_json(path)
		if not isinstance(task, dict):
			raise TaskNotFoundError(task_id)

		for key, value in updates.items():
			if value is None:
				continue
			task[key] = value.value if isinstance(value, TaskStatus) else value

		atomic_write_json(path, task)
		return task

	def list_task_ids(self, team_name: str) -> list[str]:
		"""All task ids of a team: numeric ids first by value, then the rest by string."""
		team_dir = self.team_dir(team_name)
		try:
			names = os.listdir(team_dir)
		except OSError:
			return []
		ids = [name[: -len(TASK_SUFFIX)] for name in names if _is_task_file(name)]
		return sorted(ids, key=_task_id_sort_key)

	def list_tasks(self, team_name: str) -> list[dict[str, Any]]:
		"""All readable task objects of a team in id order."""
		tasks = []
		for task_id in self.list_task_ids(team_name):
			task = self.read_task(team_name, task_id)
			if isinstance(task, dict):
				tasks.append(task)
		return tasks

	def are_blockers_resolved(self, team_name: str, blocker_ids: Optional[list[str]]) -> bool:
		"""True iff every blocker exists and is completed. Missing blockers block."""
		for blocker_id in blocker_ids or []:
			blocker = self.read_task(team_name, blocker_id)
			if not isinstance(blocker, dict) or blocker.get("status") != TaskStatus.COMPLETED.value:
				return False
		return True

	def iter_eligible_tasks(self, team_name: str) -> Iterator[dict[str, Any]]:
		"""Pending tasks whose blockers are all completed, in id order."""
		if not self.team_dir(team_name).is_dir():
			return

		for task_id in self.list_task_ids(team_name):
			task = self.read_task(team_name, task_id)
			if not isinstance(task, dict):
				continue
			if task.get("status") != TaskStatus.PENDING.value:
				continue
			if not self.are_blockers_resolved(team_name, task.get("blockedBy")):
				continue
			task.setdefault("id", task_id)
			yield task

	def find_next_task(self, team_name: str, worker_name: str) -> dict[str, Any] | None:
		"""
		First pending task (in id order) whose blockers are all completed.

		This is a read only: it records no ownership. The caller claims the
		task afterwards with update_task or claim_task.
		"""
		for task in self.iter_eligible_tasks(team_name):
			logger.debug(f"Next task for {worker_name} in {team_name}: {task['id']}")
			return task
		return None

	def claim_next_task(self, team_name: str, worker_name: str) -> dict[str, Any] | None:
		"""
		Claim the first eligible task whose lock this worker can take.

		Tasks locked by another worker are skipped, not waited on.
		"""
		for task in self.iter_eligible_tasks(team_name):
			task_id = str(task["id"])
			claimed = self.claim_task(team_name, task_id, worker_name)
			if claimed is not None:
				claimed.setdefault("id", task_id)
				return claimed
			logger.debug(f"Task {team_name}/{task_id} claimed elsewhere, trying the next one")
		return None

	# -- failure sidecars ----------------------------------------------------

	def write_task_failure(self, team_name: str, task_id: str, error: str) -> TaskFailure:
		"""Record a failed attempt, incrementing the retry count."""
		existing = self.read_task_failure(team_name, task_id)
		failure = TaskFailure(
			task_id=task_id,
			last_error=error,
			retry_count=existing.retry_count + 1 if existing else 1,
			last_failed_at=utc_now_iso(),
		)
		atomic_write_json(self.failure_path(team_name, task_id), failure.to_json_dict())
		return failure

	def read_task_failure(self, team_name: str, task_id: str) -> TaskFailure | None:
		"""Failure sidecar of a task, or None when absent or corrupt."""
		data = read_json(self.failure_path(team_name, task_id))
		if not isinstance(data, dict):
			return None
		try:
			return TaskFailure.model_validate(data)
		except ValueError:
			logger.debug(f"Ignoring malformed failure sidecar for {team_name}/{task_id}")
			return None

	def is_task_retry_exhausted(
		self,
		team_name: str,
		task_id: str,
		max_retries: int = DEFAULT_MAX_TASK_RETRIES,
	) -> bool:
		"""Check if a task has used up its retries."""
		failure = self.read_task_failure(team_name, task_id)
		if not failure:
			return False
		return failure.retry_count >= max_retries

	# -- exclusive claiming --------------------------------------------------

	def acquire_task_lock(
		self,
		team_name: str,
		task_id: str,
		worker_name: str = "",
		stale_lock_ms: int = DEFAULT_STALE_LOCK_MS,
	) -> LockHandle | None:
		"""
		Create <id>.lock with O_CREAT|O_EXCL so only one opener succeeds.

		A lock older than stale_lock_ms whose owning pid is dead is reaped
		once and the create retried.

		Returns:
			A LockHandle, or None if another live worker holds the lock
		"""
		path = self.lock_path(team_name, task_id)
		ensure_dir(path.parent)

		for attempt in range(2):
			try:
				fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
			except FileExistsError:
				if attempt == 0 and self._is_lock_stale(path, stale_lock_ms):
					remove_quietly(path)
					continue
				return None
			payload = {"pid": os.getpid(), "workerName": worker_name, "timestamp": int(time.time() * 1000)}
			os.write(fd, json.dumps(payload).encode("utf-8"))
			return LockHandle(fd=fd, path=path)
		return None

	def release_task_lock(self, handle: LockHandle) -> None:
		"""Close and remove a lock file."""
		try:
			os.close(handle.fd)
		except OSError:
			pass
		remove_quietly(handle.path)

	@contextmanager
	def task_lock(self, team_name: str, task_id: str, worker_name: str = "") -> Iterator[LockHandle | None]:
		"""Hold a task lock for the duration of a with-block. Yields None if not acquired."""
		handle = self.acquire_task_lock(team_name, task_id, worker_name)
		try:
			yield handle
		finally:
			if handle:
				self.release_task_lock(handle)

	def claim_task(self, team_name: str, task_id: str, worker_name: str) -> dict[str, Any] | None:
		"""
		Exclusively claim a pending task under its lock.

		Re-reads the task under the lock and marks it in_progress with this
		worker as owner.

		Returns:
			The claimed task, or None if locked elsewhere or no longer claimable
		"""
		with self.task_lock(team_name, task_id, worker_name) as handle:
			if handle is None:
				return None
			task = self.read_task(team_name, task_id)
			if not isinstance(task, dict) or task.get("status") != TaskStatus.PENDING.value:
				return None
			if not self.are_blockers_resolved(team_name, task.get("blockedBy")):
				return None
			return self.update_task(team_name, task_id, {
				"status": TaskStatus.IN_PROGRESS.value,
				"owner": worker_name,
				"claimedBy": worker_name,
				"claimedAt": int(time.time() * 1000),
				"claimPid": os.getpid(),
			})

	def _is_lock_stale(self, path: Path, stale_lock_ms: int) -> bool:
		"""A lock is stale when old enough and its owner pid is gone."""
		try:
			age_ms = (time.time() - path.stat().st_mtime) * 1000
		except OSError:
			return False
		if age_ms < stale_lock_ms:
			return False
		payload = read_json(path)
		if isinstance(payload, dict):
			pid = payload.get("pid")
			if isinstance(pid, int) and is_pid_alive(pid):
				return False
		return True
