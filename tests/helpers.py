"""Shared test fixtures and helpers for team-bridge tests."""

from pathlib import Path
from typing import Any, Callable, Optional

from team_bridge.config import Config
from team_bridge.fsutil import utc_now_iso
from team_bridge.models import Heartbeat


def capture_tools(config: Any, register_fn: Callable) -> dict:
	"""Register tools on a mock MCP and return the captured tool functions.

	Args:
		config: Config object to pass to the registration function
		register_fn: The registration function (e.g., register_team_tools)

	Returns:
		Dict mapping tool name to the tool function
	"""
	captured = {}

	class MockMCP:
		def tool(self):
			def decorator(fn):
				captured[fn.__name__] = fn
				return fn
			return decorator

	register_fn(MockMCP(), config)
	return captured


def make_config(tmp_path: Path) -> Config:
	"""Config whose every root lives under tmp_path."""
	working_directory = tmp_path / "project"
	working_directory.mkdir(parents=True, exist_ok=True)
	return Config(
		config_dir=tmp_path / "config",
		claude_dir=tmp_path / ".claude",
		working_directory=working_directory,
	)


def make_heartbeat(
	team_name: str = "alpha",
	worker_name: str = "worker-1",
	last_poll_at: Optional[str] = None,
	**kwargs: Any,
) -> Heartbeat:
	"""Heartbeat polled now unless last_poll_at is given."""
	return Heartbeat(
		worker_name=worker_name,
		team_name=team_name,
		provider=kwargs.pop("provider", "codex"),
		pid=kwargs.pop("pid", 4242),
		last_poll_at=utc_now_iso() if last_poll_at is None else last_poll_at,
		**kwargs,
	)
