"""Human-readable activity timeline built from audit events."""

import json
from dataclasses import asdict, dataclass
from typing import Optional

from .audit import AuditLog
from .models import AuditEvent, AuditEventType

E = AuditEventType

CATEGORIES: dict[str, str] = {
	E.BRIDGE_START.value: "lifecycle",
	E.BRIDGE_SHUTDOWN.value: "lifecycle",
	E.TASK_CLAIMED.value: "task",
	E.TASK_STARTED.value: "task",
	E.TASK_COMPLETED.value: "task",
	E.TASK_FAILED.value: "error",
	E.TASK_PERMANENTLY_FAILED.value: "error",
	E.WORKER_QUARANTINED.value: "error",
	E.WORKER_IDLE.value: "lifecycle",
	E.INBOX_ROTATED.value: "lifecycle",
	E.OUTBOX_ROTATED.value: "lifecycle",
	E.CLI_SPAWNED.value: "task",
	E.CLI_TIMEOUT.value: "error",
	E.CLI_ERROR.value: "error",
	E.SHUTDOWN_RECEIVED.value: "lifecycle",
	E.SHUTDOWN_ACK.value: "lifecycle",
}

_ACTIONS: dict[str, str] = {
	E.BRIDGE_START.value: "Started bridge",
	E.BRIDGE_SHUTDOWN.value: "Shut down bridge",
	E.TASK_CLAIMED.value: "Claimed task {task}",
	E.TASK_STARTED.value: "Started working on task {task}",
	E.TASK_COMPLETED.value: "Completed task {task}",
	E.TASK_FAILED.value: "Task {task} failed",
	E.TASK_PERMANENTLY_FAILED.value: "Task {task} permanently failed",
	E.WORKER_QUARANTINED.value: "Self-quarantined due to errors",
	E.WORKER_IDLE.value: "Standing by (idle)",
	E.INBOX_ROTATED.value: "Rotated inbox log",
	E.OUTBOX_ROTATED.value: "Rotated outbox log",
	E.CLI_SPAWNED.value: "Spawned CLI process",
	E.CLI_TIMEOUT.value: "CLI process timed out",
	E.CLI_ERROR.value: "CLI process error",
	E.SHUTDOWN_RECEIVED.value: "Received shutdown signal",
	E.SHUTDOWN_ACK.value: "Acknowledged shutdown",
}


@dataclass
class ActivityEntry:
	"""One audit event described for people."""
	timestamp: str
	actor: str
	action: str
	category: str
	target: Optional[str] = None
	details: Optional[str] = None

	def to_dict(self) -> dict:
		return asdict(self)


def describe_event(event: AuditEvent) -> str:
	template = _ACTIONS.get(event.event_type)
	if template is None:
		return str(event.event_type)
	return template.format(task=event.task_id or "(unknown)")


def get_activity_log(
	audit: AuditLog,
	team_name: str,
	since: Optional[str] = None,
	limit: int = 0,
	category: Optional[str] = None,
	actor: Optional[str] = None,
) -> list[ActivityEntry]:
	"""
	Activity entries of a team, oldest first.

	Args:
		audit: Audit log store to read from
		team_name: Team to report on
		since: Only events at or after this ISO timestamp
		limit: Keep only the newest N entries (0 keeps all)
		category: Only entries of this category (task, lifecycle, error)
		actor: Only entries of this worker
	"""
	entries = [
		ActivityEntry(
			timestamp=event.timestamp,
			actor=event.worker_name,
			action=describe_event(event),
			category=CATEGORIES.get(event.event_type, "lifecycle"),
			target=event.task_id,
			details=json.dumps(event.details) if event.details else None,
		)
		for event in audit.read_events(team_name, worker_name=actor, since=since)
	]
	if category:
		entries = [e for e in entries if e.category == category]
	if limit > 0:
		entries = entries[-limit:]
	return entries


def format_activity_timeline(entries: list[ActivityEntry]) -> str:
	"""One line per entry: '[YYYY-MM-DD HH:MM] actor: action [target]'."""
	if not entries:
		return "(no activity recorded)"
	lines = []
	for entry in entries:
		when = entry.timestamp[:16].replace("T", " ")
		target = f" [{entry.target}]" if entry.target else ""
		lines.append(f"[{when}] {entry.actor}: {entry.action}{target}")
	return "\n".join(lines)
