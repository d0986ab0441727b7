"""Shared utilities for visualizer views."""

from typing import Optional

TASK_STATUS_STYLES = {
	"pending": "dim",
	"in_progress": "yellow",
	"completed": "green",
	"failed": "red",
}

WORKER_STATUS_STYLES = {
	"polling": "green",
	"executing": "cyan",
	"quarantined": "red",
	"shutdown": "dim",
	"dead": "bold red",
}


def format_age(age_ms: Optional[float]) -> str:
	"""Format a heartbeat age for display. e.g. '450ms', '12s', '3m 5s'."""
	if age_ms is None:
		return "never"
	if age_ms < 0:
		return "just now"
	if age_ms < 1000:
		return f"{age_ms:.0f}ms"
	seconds = age_ms / 1000
	if seconds < 60:
		return f"{seconds:.0f}s"
	minutes = int(seconds // 60)
	return f"{minutes}m {seconds % 60:.0f}s"


def truncate(text: str, max_len: int = 60) -> str:
	"""Shorten text for table display."""
	if not text:
		return ""
	text = " ".join(text.split())
	if len(text) <= max_len:
		return text
	return text[:max_len - 3] + "..."


def task_status_style(status: str) -> str:
	"""Return a Rich style string for a task status."""
	return TASK_STATUS_STYLES.get(status, "white")


def worker_status_style(status: str) -> str:
	"""Return a Rich style string for a worker status."""
	return WORKER_STATUS_STYLES.get(status, "white")
