"""
Heartbeat registry - per-worker liveness files.

Each worker rewrites <state_dir>/team-bridge/<team>/<worker>.heartbeat.json
on every poll. Readers treat a missing or corrupt file as "no heartbeat"
and an unknown poll time as dead.
"""

import logging
import math
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .fsutil import atomic_write_json, read_json, remove_quietly, validate_resolved_path
from .models import Heartbeat
from .sessions import sanitize_name

logger = logging.getLogger(__name__)

HEARTBEAT_SUFFIX = ".heartbeat.json"


def parse_timestamp(value: object) -> Optional[datetime]:
	"""Parse an ISO-8601 timestamp; naive values are taken as UTC."""
	if not isinstance(value, str) or not value.strip():
		return None
	try:
		parsed = datetime.fromisoformat(value.strip())
	except ValueError:
		return None
	if parsed.tzinfo is None:
		parsed = parsed.replace(tzinfo=timezone.utc)
	return parsed


def heartbeat_age_ms(heartbeat: Heartbeat, now: Optional[datetime] = None) -> Optional[float]:
	"""Milliseconds since the heartbeat's last poll, or None if the poll time is unknown."""
	polled_at = parse_timestamp(heartbeat.last_poll_at)
	if polled_at is None:
		return None
	now = now or datetime.now(timezone.utc)
	age = (now - polled_at).total_seconds() * 1000
	return age if math.isfinite(age) else None


class HeartbeatRegistry:
	"""
	Reads and writes worker heartbeats for all teams under one state directory.

	Usage:
		registry = HeartbeatRegistry(config.state_dir)
		registry.write_heartbeat(heartbeat)
		registry.is_worker_alive("alpha", "worker-1", max_age_ms=30_000)
	"""

	def __init__(self, state_dir: Path | str):
		self.state_dir = Path(state_dir)
		self.root = self.state_dir / "team-bridge"

	def team_dir(self, team_name: str) -> Path:
		path = self.root / sanitize_name(team_name)
		validate_resolved_path(path, self.root)
		return path

	def heartbeat_path(self, team_name: str, worker_name: str) -> Path:
		return self.team_dir(team_name) / f"{sanitize_name(worker_name)}{HEARTBEAT_SUFFIX}"

	def write_heartbeat(self, heartbeat: Heartbeat) -> None:
		"""Overwrite a worker's heartbeat file with the full record."""
		path = self.heartbeat_path(heartbeat.team_name, heartbeat.worker_name)
		atomic_write_json(path, heartbeat.to_json_dict())

	def read_heartbeat(self, team_name: str, worker_name: str) -> Heartbeat | None:
		"""A worker's heartbeat, or None if missing or corrupt."""
		return self._load(self.heartbeat_path(team_name, worker_name))

	def is_worker_alive(self, team_name: str, worker_name: str, max_age_ms: float) -> bool:
		"""
		True iff the last poll is strictly younger than max_age_ms.

		A zero or negative threshold is never met. An empty or unparsable
		poll time counts as dead. A poll time in the future has a negative
		age and counts as alive, tolerating small clock skew between hosts.
		"""
		if max_age_ms <= 0:
			return False
		heartbeat = self.read_heartbeat(team_name, worker_name)
		if heartbeat is None:
			return False
		age = heartbeat_age_ms(heartbeat)
		return age is not None and age < max_age_ms

	def list_heartbeats(self, team_name: str) -> list[Heartbeat]:
		"""Every readable heartbeat of a team; corrupt files are left out."""
		team_dir = self.team_dir(team_name)
		if not team_dir.is_dir():
			return []
		heartbeats = []
		for path in sorted(team_dir.glob(f"*{HEARTBEAT_SUFFIX}")):
			heartbeat = self._load(path)
			if heartbeat is not None:
				heartbeats.append(heartbeat)
		return heartbeats

	def delete_heartbeat(self, team_name: str, worker_name: str) -> None:
		"""Remove a worker's heartbeat. Absent files are fine."""
		remove_quietly(self.heartbeat_path(team_name, worker_name))

	def cleanup_team_heartbeats(self, team_name: str) -> None:
		"""Remove the team's whole heartbeat directory, whatever files it holds."""
		team_dir = self.team_dir(team_name)
		if team_dir.exists():
			shutil.rmtree(team_dir, ignore_errors=True)
			logger.info(f"Removed heartbeat directory {team_dir}")

	def _load(self, path: Path) -> Heartbeat | None:
		data = read_json(path)
		if not isinstance(data, dict):
			return None
		try:
			return Heartbeat.model_validate(data)
		except ValueError:
			logger.debug(f"Ignoring malformed heartbeat {path}")
			return None
