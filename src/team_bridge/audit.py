"""
Audit Log - structured, append-only record of what each worker did.

One JSONL file per team at <log_dir>/team-bridge-<team>.jsonl. Workers
append events; the lead reads them back for health counts and activity
timelines. Malformed lines are skipped on read.
"""

import json
import logging
from pathlib import Path
from typing import Any, Optional

from .fsutil import append_line, atomic_write_text, validate_resolved_path
from .heartbeat import parse_timestamp
from .models import AuditEvent, AuditEventType
from .sessions import sanitize_name

logger = logging.getLogger(__name__)

# Rotate once the log grows past this size (5 MB)
DEFAULT_MAX_AUDIT_LOG_BYTES = 5 * 1024 * 1024


class AuditLog:
	"""
	Per-team audit logs under a log directory.

	Usage:
		audit = AuditLog(config.log_dir)
		audit.log_event(AuditEvent(event_type="task_claimed", team_name="alpha", worker_name="w1", task_id="3"))
		completed = audit.read_events("alpha", event_type="task_completed")
	"""

	def __init__(self, log_dir: Path | str):
		self.log_dir = Path(log_dir)

	def log_path(self, team_name: str) -> Path:
		path = self.log_dir / f"team-bridge-{sanitize_name(team_name)}.jsonl"
		validate_resolved_path(path, self.log_dir)
		return path

	def log_event(self, event: AuditEvent) -> None:
		"""Append one event to its team's log."""
		append_line(self.log_path(event.team_name), json.dumps(event.to_json_dict(), ensure_ascii=False))

	def record(
		self,
		event_type: AuditEventType,
		team_name: str,
		worker_name: str,
		task_id: Optional[str] = None,
		details: Optional[dict[str, Any]] = None,
	) -> None:
		"""Build and append an event stamped with the current time."""
		self.log_event(AuditEvent(
			event_type=event_type,
			team_name=team_name,
			worker_name=worker_name,
			task_id=task_id,
			details=details,
		))

	def read_events(
		self,
		team_name: str,
		event_type: Optional[str] = None,
		worker_name: Optional[str] = None,
		since: Optional[str] = None,
	) -> list[AuditEvent]:
		"""
		Events of a team, oldest first, optionally filtered.

		Args:
			team_name: Team whose log to read
			event_type: Only events of this type
			worker_name: Only events of this worker
			since: Only events at or after this ISO timestamp
		"""
		try:
			raw = self.log_path(team_name).read_text(encoding="utf-8")
		except FileNotFoundError:
			return []
		except OSError as e:
			logger.warning(f"Could not read audit log for {team_name}: {e}")
			return []

		since_at = parse_timestamp(since) if since else None
		events = []
		for line in raw.splitlines():
			if not line.strip():
				continue
			try:
				event = AuditEvent.model_validate(json.loads(line))
			except ValueError:
				continue
			if event_type and event.event_type != event_type:
				continue
			if worker_name and event.worker_name != worker_name:
				continue
			if since_at:
				at = parse_timestamp(event.timestamp)
				if at is None or at < since_at:
					continue
			events.append(event)
		return events

	def rotate_if_needed(self, team_name: str, max_size_bytes: int = DEFAULT_MAX_AUDIT_LOG_BYTES) -> bool:
		"""
		Keep the newest half of the lines once the log exceeds max_size_bytes.

		Returns:
			True if the log was rotated
		"""
		path = self.log_path(team_name)
		try:
			if path.stat().st_size <= max_size_bytes:
				return False
			lines = [line for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]
		except FileNotFoundError:
			return False

		kept = lines[len(lines) - len(lines) // 2:]
		atomic_write_text(path, "".join(f"{line}\n" for line in kept))
		logger.info(f"Rotated audit log for {team_name}: kept {len(kept)} of {len(lines)} events")
		return True
