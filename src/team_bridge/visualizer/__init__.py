"""Visualizer package - Rich terminal views for team status."""

from .team_status import render_task_table, render_worker_health

__all__ = [
	"render_task_table",
	"render_worker_health",
]
