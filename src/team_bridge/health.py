"""
Worker health reporting.

Combines heartbeat freshness with session liveness to tell a lead which
workers are healthy, hung, dead or quarantined. When an audit log is given,
reports also carry per-worker task totals and uptime since the last start.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Optional

from .audit import AuditLog
from .heartbeat import HeartbeatRegistry, heartbeat_age_ms, parse_timestamp
from .models import AuditEventType, HeartbeatStatus
from .registration import TeamRegistry
from .sessions import SessionSupervisor

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_MAX_AGE_MS = 30_000


@dataclass
class WorkerHealthReport:
	"""Point-in-time health of one worker."""
	worker_name: str
	is_alive: bool
	session_alive: bool
	heartbeat_age_ms: Optional[float]
	status: str
	consecutive_errors: int
	current_task_id: Optional[str]
	total_tasks_completed: int = 0
	total_tasks_failed: int = 0
	uptime_ms: Optional[float] = None

	def to_dict(self) -> dict:
		"""Convert to dictionary for JSON serialization."""
		return asdict(self)


def _session_alive(supervisor: SessionSupervisor, team_name: str, worker_name: str) -> bool:
	try:
		return supervisor.is_session_alive(team_name, worker_name)
	except ValueError:
		return False


def _audit_totals(audit: AuditLog, team_name: str, worker_name: str) -> tuple[int, int, Optional[float]]:
	"""(completed, permanently failed, ms since the last bridge start) from the audit log."""
	completed = failed = 0
	last_start = None
	for event in audit.read_events(team_name, worker_name=worker_name):
		if event.event_type == AuditEventType.TASK_COMPLETED.value:
			completed += 1
		elif event.event_type == AuditEventType.TASK_PERMANENTLY_FAILED.value:
			failed += 1
		elif event.event_type == AuditEventType.BRIDGE_START.value:
			last_start = event.timestamp

	uptime_ms = None
	started_at = parse_timestamp(last_start)
	if started_at is not None:
		uptime_ms = (datetime.now(timezone.utc) - started_at).total_seconds() * 1000
	return completed, failed, uptime_ms


def build_health_report(
	team_name: str,
	worker_name: str,
	heartbeats: HeartbeatRegistry,
	supervisor: SessionSupervisor,
	heartbeat_max_age_ms: int = DEFAULT_HEARTBEAT_MAX_AGE_MS,
	audit: Optional[AuditLog] = None,
) -> WorkerHealthReport:
	"""Health report for a single worker."""
	heartbeat = heartbeats.read_heartbeat(team_name, worker_name)
	alive = heartbeats.is_worker_alive(team_name, worker_name, heartbeat_max_age_ms)
	session_alive = _session_alive(supervisor, team_name, worker_name)

	status = heartbeat.status if heartbeat else "unknown"
	if not alive and not session_alive:
		status = "dead"

	completed, failed, uptime_ms = _audit_totals(audit, team_name, worker_name) if audit else (0, 0, None)

	return WorkerHealthReport(
		worker_name=worker_name,
		is_alive=alive,
		session_alive=session_alive,
		heartbeat_age_ms=heartbeat_age_ms(heartbeat) if heartbeat else None,
		status=status,
		consecutive_errors=heartbeat.consecutive_errors if heartbeat else 0,
		current_task_id=heartbeat.current_task_id if heartbeat else None,
		total_tasks_completed=completed,
		total_tasks_failed=failed,
		uptime_ms=uptime_ms,
	)


def get_worker_health_reports(
	team_name: str,
	registry: TeamRegistry,
	heartbeats: HeartbeatRegistry,
	supervisor: SessionSupervisor,
	heartbeat_max_age_ms: int = DEFAULT_HEARTBEAT_MAX_AGE_MS,
	audit: Optional[AuditLog] = None,
) -> list[WorkerHealthReport]:
	"""Health reports for every registered MCP worker of a team."""
	return [
		build_health_report(team_name, worker.name, heartbeats, supervisor, heartbeat_max_age_ms, audit)
		for worker in registry.list_mcp_workers(team_name)
	]


def check_worker_health(
	team_name: str,
	worker_name: str,
	heartbeats: HeartbeatRegistry,
	supervisor: SessionSupervisor,
	heartbeat_max_age_ms: int = DEFAULT_HEARTBEAT_MAX_AGE_MS,
) -> Optional[str]:
	"""
	Reason a worker needs intervention, or None if it looks healthy.
	"""
	report = build_health_report(team_name, worker_name, heartbeats, supervisor, heartbeat_max_age_ms)

	if not report.is_alive and not report.session_alive:
		age = f"{round(report.heartbeat_age_ms / 1000)}s" if report.heartbeat_age_ms is not None else "unknown"
		return f"Worker is dead: heartbeat stale for {age}, session not found"

	if not report.is_alive:
		return "Heartbeat stale but session exists, worker may be hung"

	if report.status == HeartbeatStatus.QUARANTINED.value:
		return f"Worker self-quarantined after {report.consecutive_errors} consecutive errors"

	if report.consecutive_errors >= 2:
		return f"Worker has {report.consecutive_errors} consecutive errors, at risk of quarantine"

	return None
