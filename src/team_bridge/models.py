"""
Team Models - Pydantic schemas for every file the coordination core writes.

Python fields are snake_case; the JSON on disk uses camelCase keys so the
files stay compatible with the lead process and other tools that read them.
Unknown keys are preserved on round-trip.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .fsutil import utc_now_iso


class TaskStatus(str, Enum):
	"""Lifecycle of a task file."""
	PENDING = "pending"
	IN_PROGRESS = "in_progress"
	COMPLETED = "completed"
	FAILED = "failed"


class HeartbeatStatus(str, Enum):
	"""Well-known heartbeat states. Other strings are accepted on read."""
	POLLING = "polling"
	EXECUTING = "executing"
	QUARANTINED = "quarantined"
	SHUTDOWN = "shutdown"


class Provider(str, Enum):
	"""Backend CLI a worker drives."""
	CODEX = "codex"
	GEMINI = "gemini"


class ProbeOutcome(str, Enum):
	"""Result of probing whether the shared team config tolerates our members."""
	PASS = "pass"
	FAIL = "fail"
	PARTIAL = "partial"


class AuditEventType(str, Enum):
	"""Structured events a worker records in its team's audit log."""
	BRIDGE_START = "bridge_start"
	BRIDGE_SHUTDOWN = "bridge_shutdown"
	TASK_CLAIMED = "task_claimed"
	TASK_STARTED = "task_started"
	TASK_COMPLETED = "task_completed"
	TASK_FAILED = "task_failed"
	TASK_PERMANENTLY_FAILED = "task_permanently_failed"
	WORKER_QUARANTINED = "worker_quarantined"
	WORKER_IDLE = "worker_idle"
	INBOX_ROTATED = "inbox_rotated"
	OUTBOX_ROTATED = "outbox_rotated"
	CLI_SPAWNED = "cli_spawned"
	CLI_TIMEOUT = "cli_timeout"
	CLI_ERROR = "cli_error"
	SHUTDOWN_RECEIVED = "shutdown_received"
	SHUTDOWN_ACK = "shutdown_ack"


class TeamRecord(BaseModel):
	"""Base for camelCase-on-disk records."""
	model_config = ConfigDict(
		alias_generator=to_camel,
		populate_by_name=True,
		extra="allow",
		use_enum_values=True,
	)

	def to_json_dict(self) -> dict[str, Any]:
		"""Dump with on-disk key names, omitting unset optionals."""
		return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class Task(TeamRecord):
	"""A unit of work in a team's shared queue."""
	id: str
	subject: str = ""
	description: str = ""
	status: TaskStatus = TaskStatus.PENDING
	owner: str = ""
	blocks: list[str] = Field(default_factory=list)
	blocked_by: list[str] = Field(default_factory=list)
	metadata: Optional[dict[str, Any]] = None


class TaskFailure(TeamRecord):
	"""Retry bookkeeping stored beside a task file."""
	task_id: str
	last_error: str
	retry_count: int = 1
	last_failed_at: str = Field(default_factory=utc_now_iso)


class Heartbeat(TeamRecord):
	"""Liveness record rewritten by a worker on every poll."""
	worker_name: str
	team_name: str
	provider: str
	pid: int
	last_poll_at: str
	consecutive_errors: int = 0
	status: str = HeartbeatStatus.POLLING.value
	current_task_id: Optional[str] = None


class ShutdownSignal(TeamRecord):
	"""Request for a worker to stop. Also used for drain requests."""
	request_id: str
	reason: str
	timestamp: str = Field(default_factory=utc_now_iso)


class McpWorker(TeamRecord):
	"""A worker registered through this core, normalized for listing."""
	name: str
	agent_id: str = ""
	agent_type: str = ""
	backend_type: str = "tmux"
	provider: str = ""
	model: str = ""
	session_id: str = ""
	cwd: str = ""
	joined_at: Optional[int] = None


class ProbeResult(TeamRecord):
	"""Cached outcome of the shared-config compatibility probe."""
	probe_result: ProbeOutcome
	probed_at: str = Field(default_factory=utc_now_iso)
	version: str = ""


class AuditEvent(TeamRecord):
	"""One line of a team's audit log."""
	event_type: AuditEventType
	team_name: str
	worker_name: str
	timestamp: str = Field(default_factory=utc_now_iso)
	task_id: Optional[str] = None
	details: Optional[dict[str, Any]] = None
