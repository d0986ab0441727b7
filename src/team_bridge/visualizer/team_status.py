"""Rich views for a team's task queue and worker health."""

from typing import Any, Optional

from rich.console import Console
from rich.table import Table

from ..health import WorkerHealthReport
from .utils import format_age, task_status_style, truncate, worker_status_style


def render_task_table(team_name: str, tasks: list[dict[str, Any]], console: Optional[Console] = None) -> None:
	"""Render a team's tasks as a table in queue order."""
	console = console or Console()

	if not tasks:
		console.print(f"[dim]No tasks for team {team_name}.[/dim]")
		return

	table = Table(title=f"Tasks: {team_name}", show_lines=False)
	table.add_column("ID", style="bold")
	table.add_column("Status")
	table.add_column("Owner")
	table.add_column("Blocked by", style="dim")
	table.add_column("Subject")

	for task in tasks:
		status = str(task.get("status", ""))
		style = task_status_style(status)
		blocked_by = task.get("blockedBy") or []
		table.add_row(
			str(task.get("id", "")),
			f"[{style}]{status}[/{style}]",
			str(task.get("owner") or "-"),
			", ".join(str(b) for b in blocked_by) if isinstance(blocked_by, list) else "",
			truncate(str(task.get("subject", ""))),
		)

	counts: dict[str, int] = {}
	for task in tasks:
		status = str(task.get("status", "unknown"))
		counts[status] = counts.get(status, 0) + 1

	console.print(table)
	console.print("  ".join(f"{status}: {count}" for status, count in sorted(counts.items())))


def render_worker_health(team_name: str, reports: list[WorkerHealthReport], console: Optional[Console] = None) -> None:
	"""Render one row per registered worker with heartbeat and session state."""
	console = console or Console()

	if not reports:
		console.print(f"[dim]No workers registered for team {team_name}.[/dim]")
		return

	table = Table(title=f"Workers: {team_name}")
	table.add_column("Worker", style="bold")
	table.add_column("Status")
	table.add_column("Heartbeat", justify="right")
	table.add_column("Session")
	table.add_column("Errors", justify="right")
	table.add_column("Done", justify="right")
	table.add_column("Failed", justify="right")
	table.add_column("Task")

	for report in reports:
		style = worker_status_style(report.status)
		errors_style = "red" if report.consecutive_errors else "dim"
		table.add_row(
			report.worker_name,
			f"[{style}]{report.status}[/{style}]",
			format_age(report.heartbeat_age_ms),
			"[green]alive[/green]" if report.session_alive else "[red]gone[/red]",
			f"[{errors_style}]{report.consecutive_errors}[/{errors_style}]",
			str(report.total_tasks_completed),
			f"[red]{report.total_tasks_failed}[/red]" if report.total_tasks_failed else "0",
			report.current_task_id or "-",
		)

	console.print(table)
