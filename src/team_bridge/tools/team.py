"""Team lead tools - create tasks, message workers, spawn and stop them, read their activity."""

import json
import logging
import uuid
from pathlib import Path
from typing import Optional

from mcp.server.fastmcp import FastMCP

from ..activity import get_activity_log
from ..audit import AuditLog
from ..bridge import BridgeConfig
from ..config import Config
from ..errors import SessionError, TeamBridgeError
from ..fsutil import atomic_write_json, remove_quietly
from ..health import get_worker_health_reports
from ..heartbeat import HeartbeatRegistry
from ..mailbox import Mailbox
from ..models import Task
from ..registration import TeamRegistry
from ..sessions import SessionSupervisor, sanitize_name
from ..tasks import TaskStore

logger = logging.getLogger(__name__)


def bridge_config_path(config: Config, team_name: str, worker_name: str) -> Path:
	"""Where a spawned worker's bridge config is written."""
	return config.teams_root / sanitize_name(team_name) / "workers" / f"{sanitize_name(worker_name)}.json"


def register_team_tools(mcp: FastMCP, config: Config) -> None:
	"""Register team coordination tools."""
	tasks = TaskStore(config.tasks_root)
	mailbox = Mailbox(config.teams_root)
	heartbeats = HeartbeatRegistry(config.state_dir)
	registry = TeamRegistry(config.teams_root, config.state_dir)
	audit = AuditLog(config.log_dir)
	supervisor = SessionSupervisor()

	@mcp.tool()
	async def team_create_task(
		team_name: str,
		task_id: str,
		subject: str,
		description: str = "",
		blocked_by: Optional[list[str]] = None,
	) -> str:
		"""
		Add a pending task to a team's queue.

		Args:
			team_name: Team to add the task to
			task_id: Unique id; numeric ids are worked in numeric order
			subject: One-line summary
			description: Full instructions for the worker
			blocked_by: Task ids that must be completed first
		"""
		try:
			task = Task(id=task_id, subject=subject, description=description, blocked_by=blocked_by or [])
			data = tasks.create_task(team_name, task)
		except (TeamBridgeError, ValueError) as e:
			return json.dumps({"success": False, "error": str(e)})
		return json.dumps({"success": True, "task": data})

	@mcp.tool()
	async def team_list_tasks(team_name: str, status: str = "") -> str:
		"""
		List a team's tasks in id order.

		Args:
			team_name: Team whose queue to read
			status: Optional filter (pending, in_progress, completed, failed)
		"""
		try:
			items = tasks.list_tasks(team_name)
		except ValueError as e:
			return json.dumps({"success": False, "error": str(e)})
		if status:
			items = [t for t in items if t.get("status") == status]
		return json.dumps({"success": True, "count": len(items), "tasks": items})

	@mcp.tool()
	async def team_send_message(team_name: str, worker_name: str, content: str) -> str:
		"""
		Send a message to a worker's inbox. It is included in the worker's next prompt.

		Args:
			team_name: Team of the worker
			worker_name: Recipient worker
			content: Message text
		"""
		try:
			mailbox.append_inbox(team_name, worker_name, {"type": "message", "content": content})
		except (OSError, ValueError) as e:
			return json.dumps({"success": False, "error": str(e)})
		return json.dumps({"success": True})

	@mcp.tool()
	async def team_read_outbox(team_name: str, worker_name: str, limit: int = 50) -> str:
		"""
		Read a worker's most recent outbox entries (task results, errors, idle notices).

		Args:
			team_name: Team of the worker
			worker_name: Worker whose outbox to read
			limit: Maximum number of newest entries to return
		"""
		try:
			entries = mailbox.read_outbox(team_name, worker_name)
		except ValueError as e:
			return json.dumps({"success": False, "error": str(e)})
		if limit > 0:
			entries = entries[-limit:]
		return json.dumps({"success": True, "count": len(entries), "entries": entries})

	@mcp.tool()
	async def team_request_shutdown(
		team_name: str,
		worker_name: str,
		reason: str = "Requested by team lead",
		drain: bool = False,
	) -> str:
		"""
		Ask a worker to stop.

		Args:
			team_name: Team of the worker
			worker_name: Worker to stop
			reason: Recorded in the signal and the worker log
			drain: Let the worker finish its current tick instead of stopping at once
		"""
		request_id = uuid.uuid4().hex[:12]
		try:
			if drain:
				mailbox.write_drain_signal(team_name, worker_name, request_id, reason)
			else:
				mailbox.write_shutdown_signal(team_name, worker_name, request_id, reason)
		except (OSError, ValueError) as e:
			return json.dumps({"success": False, "error": str(e)})
		return json.dumps({"success": True, "request_id": request_id, "drain": drain})

	@mcp.tool()
	async def team_worker_health(team_name: str) -> str:
		"""
		Health of every registered worker: heartbeat age, session liveness, error count.

		Args:
			team_name: Team to inspect
		"""
		try:
			reports = get_worker_health_reports(
				team_name, registry, heartbeats, supervisor, config.heartbeat_max_age_ms, audit,
			)
		except ValueError as e:
			return json.dumps({"success": False, "error": str(e)})
		return json.dumps({"success": True, "workers": [r.to_dict() for r in reports]})

	@mcp.tool()
	async def team_activity_log(
		team_name: str,
		worker_name: str = "",
		category: str = "",
		since: str = "",
		limit: int = 50,
	) -> str:
		"""
		Human-readable activity of a team's workers, built from their audit log.

		Args:
			team_name: Team to report on
			worker_name: Only this worker's activity
			category: Only "task", "lifecycle" or "error" entries
			since: Only entries at or after this ISO timestamp
			limit: Maximum number of newest entries to return (0 for all)
		"""
		try:
			entries = get_activity_log(
				audit,
				team_name,
				since=since or None,
				limit=limit,
				category=category or None,
				actor=worker_name or None,
			)
		except ValueError as e:
			return json.dumps({"success": False, "error": str(e)})
		return json.dumps({"success": True, "count": len(entries), "entries": [e.to_dict() for e in entries]})

	@mcp.tool()
	async def team_spawn_worker(
		team_name: str,
		worker_name: str,
		provider: str,
		model: str = "",
		working_directory: str = "",
	) -> str:
		"""
		Start a Codex or Gemini worker in its own tmux session and register it with the team.

		Args:
			team_name: Team to join
			worker_name: Name of the new worker
			provider: "codex" or "gemini"
			model: Model override for the CLI
			working_directory: Directory the worker edits (default: server working directory)
		"""
		cwd = working_directory or str(config.working_directory)
		try:
			bridge_config = BridgeConfig(
				team_name=sanitize_name(team_name),
				worker_name=sanitize_name(worker_name),
				provider=provider,
				model=model or None,
				working_directory=cwd,
				poll_interval_ms=config.poll_interval_ms,
				outbox_max_lines=config.outbox_max_lines,
			)
		except ValueError as e:
			return json.dumps({"success": False, "error": str(e)})

		path = bridge_config_path(config, team_name, worker_name)
		try:
			atomic_write_json(path, bridge_config.model_dump(by_alias=True, exclude_none=True))
			name = supervisor.create_session(team_name, worker_name, working_directory=cwd, config_path=path)
		except (OSError, SessionError) as e:
			remove_quietly(path)
			return json.dumps({"success": False, "error": str(e)})

		worker = registry.register_mcp_worker(
			bridge_config.team_name, bridge_config.worker_name, provider, model, name, cwd,
		)
		logger.info(f"Spawned {worker.agent_id} in session {name}")
		return json.dumps({
			"success": True,
			"session": name,
			"config_path": str(path),
			"worker": worker.to_json_dict(),
		})
