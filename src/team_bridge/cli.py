"""CLI for team-bridge: serve, bridge, status, tasks, activity, shutdown, cleanup and doctor commands."""

import argparse
import json
import platform
import shutil
import sys
import uuid
from pathlib import Path

from importlib.metadata import version as pkg_version

from .config import load_config


def cmd_serve(args: argparse.Namespace) -> None:
	"""Run the MCP server (stdio transport)."""
	from .logging_config import setup_logging
	setup_logging(log_dir=load_config().log_dir)

	from .server import mcp
	mcp.run()


def cmd_bridge(args: argparse.Namespace) -> None:
	"""Run one worker's polling loop until it is told to stop."""
	from .bridge import BridgeConfigError, run_bridge, validate_config_path

	config = load_config()
	config_path = Path(args.config).expanduser()
	trusted = validate_config_path(config_path, Path.home()) or config_path.resolve().is_relative_to(
		config.claude_dir.resolve()
	)
	if not trusted:
		print(f"Error: config path must be under ~/.claude/ or ~/.omc/: {config_path}", file=sys.stderr)
		sys.exit(1)

	try:
		run_bridge(config_path)
	except BridgeConfigError as e:
		print(f"Error: {e}", file=sys.stderr)
		sys.exit(1)


def cmd_status(args: argparse.Namespace) -> None:
	"""Show worker health and the task queue of a team."""
	from .audit import AuditLog
	from .health import get_worker_health_reports
	from .heartbeat import HeartbeatRegistry
	from .registration import TeamRegistry
	from .sessions import SessionSupervisor
	from .tasks import TaskStore
	from .visualizer import render_task_table, render_worker_health

	config = load_config()
	reports = get_worker_health_reports(
		args.team,
		TeamRegistry(config.teams_root, config.state_dir),
		HeartbeatRegistry(config.state_dir),
		SessionSupervisor(),
		config.heartbeat_max_age_ms,
		AuditLog(config.log_dir),
	)
	render_worker_health(args.team, reports)
	render_task_table(args.team, TaskStore(config.tasks_root).list_tasks(args.team))


def cmd_tasks(args: argparse.Namespace) -> None:
	"""List a team's tasks."""
	from .tasks import TaskStore
	from .visualizer import render_task_table

	config = load_config()
	tasks = TaskStore(config.tasks_root).list_tasks(args.team)
	if args.status:
		tasks = [t for t in tasks if t.get("status") == args.status]

	if args.json:
		print(json.dumps(tasks, indent=2))
	else:
		render_task_table(args.team, tasks)


def cmd_activity(args: argparse.Namespace) -> None:
	"""Print a team's activity timeline from the audit log."""
	from .activity import format_activity_timeline, get_activity_log
	from .audit import AuditLog

	config = load_config()
	entries = get_activity_log(
		AuditLog(config.log_dir),
		args.team,
		since=args.since,
		limit=args.limit,
		category=args.category,
		actor=args.worker,
	)
	if args.json:
		print(json.dumps([e.to_dict() for e in entries], indent=2))
	else:
		print(format_activity_timeline(entries))


def cmd_shutdown(args: argparse.Namespace) -> None:
	"""Write a shutdown (or drain) signal for a worker."""
	from .mailbox import Mailbox

	mailbox = Mailbox(load_config().teams_root)
	request_id = uuid.uuid4().hex[:12]
	if args.drain:
		mailbox.write_drain_signal(args.team, args.worker, request_id, args.reason)
		print(f"Drain requested for {args.worker}@{args.team} ({request_id})")
	else:
		mailbox.write_shutdown_signal(args.team, args.worker, request_id, args.reason)
		print(f"Shutdown requested for {args.worker}@{args.team} ({request_id})")


def cmd_cleanup(args: argparse.Namespace) -> None:
	"""Remove everything a worker left behind: session, mailbox files, heartbeat, registration."""
	from .heartbeat import HeartbeatRegistry
	from .mailbox import Mailbox
	from .registration import TeamRegistry
	from .sessions import SessionSupervisor

	config = load_config()
	SessionSupervisor().kill_session(args.team, args.worker)
	Mailbox(config.teams_root).cleanup_worker_files(args.team, args.worker)
	HeartbeatRegistry(config.state_dir).delete_heartbeat(args.team, args.worker)
	TeamRegistry(config.teams_root, config.state_dir).unregister_mcp_worker(args.team, args.worker)
	print(f"Cleaned up {args.worker}@{args.team}")


def _check_config_toml(config_dir: Path) -> tuple[str, str | None]:
	"""Validate config.toml. Returns (status, issue_or_none)."""
	import tomllib

	toml_path = config_dir / "config.toml"
	if not toml_path.exists():
		return "not found (optional)", None
	try:
		with open(toml_path, "rb") as f:
			tomllib.load(f)
		return "valid", None
	except tomllib.TOMLDecodeError as e:
		msg = f"config.toml parse error: {e}"
		return f"INVALID ({e})", msg


def _check_executables() -> list[tuple[str, str | None]]:
	"""Locate the external programs workers need. Returns (name, path_or_none) pairs."""
	return [(name, shutil.which(name)) for name in ("tmux", "codex", "gemini")]


def _check_server_startup() -> tuple[str, str | None]:
	"""Try importing and counting registered tools. Returns (status, issue_or_none)."""
	try:
		from .server import mcp as server_instance
		# FastMCP stores tools internally - count them
		tools = server_instance._tool_manager._tools
		count = len(tools)
		return f"OK ({count} tools registered)", None
	except Exception as e:
		return f"FAILED ({e})", f"Server startup failed: {e}"


def cmd_doctor(args: argparse.Namespace) -> None:
	"""Health check - verify installation and configuration."""
	print("team-bridge doctor")
	print(f"{'=' * 40}")

	config = load_config()
	issues: list[str] = []

	py_ver = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"
	print(f"  Python:       {py_ver}")
	print(f"  Platform:     {platform.system()} {platform.machine()}")
	print()

	print("  Core deps:")
	for dep in ["mcp", "platformdirs", "pydantic", "rich"]:
		try:
			dep_ver = pkg_version(dep)
			print(f"    {dep:22s} {dep_ver}")
		except Exception:
			print(f"    {dep:22s} NOT INSTALLED")
			issues.append(f"{dep} package not installed")
	print()

	print("  Executables:")
	for name, path in _check_executables():
		print(f"    {name:22s} {path or 'NOT FOUND'}")
		if name == "tmux" and not path:
			issues.append("tmux not found on PATH (required to spawn workers)")
	print()

	print("  Paths:")
	print(f"    tasks:               {config.tasks_root}")
	print(f"    teams:               {config.teams_root}")
	print(f"    state:               {config.state_dir}")
	toml_status, toml_issue = _check_config_toml(config.config_dir)
	print(f"    config.toml:         {toml_status}")
	if toml_issue:
		issues.append(toml_issue)
	print()

	print("  Server:")
	server_status, server_issue = _check_server_startup()
	print(f"    {server_status}")
	if server_issue:
		issues.append(server_issue)
	print()

	if issues:
		print(f"  {len(issues)} issue(s) found:")
		for issue in issues:
			print(f"    - {issue}")
		sys.exit(1)
	else:
		print("  All checks passed.")


def main(argv: list[str] | None = None) -> None:
	"""CLI entry point."""
	parser = argparse.ArgumentParser(
		prog="team-bridge",
		description="File-based team coordination for Codex and Gemini CLI workers",
	)
	subparsers = parser.add_subparsers(dest="command")

	# serve
	serve_parser = subparsers.add_parser("serve", help="Run MCP server (stdio)")
	serve_parser.set_defaults(func=cmd_serve)

	# bridge
	bridge_parser = subparsers.add_parser("bridge", help="Run a worker polling loop")
	bridge_parser.add_argument("--config", required=True, help="Path to the worker's bridge config JSON")
	bridge_parser.set_defaults(func=cmd_bridge)

	# status
	status_parser = subparsers.add_parser("status", help="Worker health and task queue")
	status_parser.add_argument("team", help="Team name")
	status_parser.set_defaults(func=cmd_status)

	# tasks
	tasks_parser = subparsers.add_parser("tasks", help="List a team's tasks")
	tasks_parser.add_argument("team", help="Team name")
	tasks_parser.add_argument(
		"--status",
		choices=["pending", "in_progress", "completed", "failed"],
		default=None,
		help="Only show tasks with this status",
	)
	tasks_parser.add_argument("--json", action="store_true", help="Print raw JSON")
	tasks_parser.set_defaults(func=cmd_tasks)

	# activity
	activity_parser = subparsers.add_parser("activity", help="Worker activity timeline from the audit log")
	activity_parser.add_argument("team", help="Team name")
	activity_parser.add_argument("--worker", default=None, help="Only this worker's activity")
	activity_parser.add_argument(
		"--category",
		choices=["task", "lifecycle", "error"],
		default=None,
		help="Only entries of this category",
	)
	activity_parser.add_argument("--since", default=None, help="Only entries at or after this ISO timestamp")
	activity_parser.add_argument("--limit", type=int, default=50, help="Newest N entries (0 for all)")
	activity_parser.add_argument("--json", action="store_true", help="Print raw JSON")
	activity_parser.set_defaults(func=cmd_activity)

	# shutdown
	shutdown_parser = subparsers.add_parser("shutdown", help="Ask a worker to stop")
	shutdown_parser.add_argument("team", help="Team name")
	shutdown_parser.add_argument("worker", help="Worker name")
	shutdown_parser.add_argument("--reason", default="Requested from CLI", help="Reason recorded in the signal")
	shutdown_parser.add_argument("--drain", action="store_true", help="Finish the current tick before stopping")
	shutdown_parser.set_defaults(func=cmd_shutdown)

	# cleanup
	cleanup_parser = subparsers.add_parser("cleanup", help="Remove a worker's session and files")
	cleanup_parser.add_argument("team", help="Team name")
	cleanup_parser.add_argument("worker", help="Worker name")
	cleanup_parser.set_defaults(func=cmd_cleanup)

	# doctor
	doctor_parser = subparsers.add_parser("doctor", help="Health check")
	doctor_parser.set_defaults(func=cmd_doctor)

	args = parser.parse_args(argv)

	if not args.command:
		parser.print_help()
		sys.exit(1)

	try:
		args.func(args)
	except ValueError as e:
		# Invalid team, worker or task names
		print(f"Error: {e}", file=sys.stderr)
		sys.exit(1)


if __name__ == "__main__":
	main()
