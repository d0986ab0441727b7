"""
Worker session supervision via tmux.

Every worker runs inside its own detached tmux session named
``omc-team-<team>-<worker>``. Names are interpolated into tmux command
lines, so they pass through sanitize_name first: it is the only guard
against command injection and rejects unusable input outright.
"""

import logging
import re
import shlex
import subprocess
import sys
from pathlib import Path
from typing import Optional, Sequence

from .errors import InvalidNameError, SessionError

logger = logging.getLogger(__name__)

SESSION_PREFIX = "omc-team"
MAX_NAME_LENGTH = 50
MIN_NAME_LENGTH = 2

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9-]")


def sanitize_name(name: str) -> str:
	"""
	Reduce a team or worker name to ASCII letters, digits and hyphens.

	Case and order are preserved. The result is truncated to 50 characters
	before it is checked, so the length checks see the truncated value.

	Raises:
		InvalidNameError: If nothing valid remains, or only one character does
	"""
	sanitized = _UNSAFE_CHARS.sub("", name)[:MAX_NAME_LENGTH]
	if not sanitized:
		raise InvalidNameError(
			f'Invalid name: "{name}" contains no valid characters (alphanumeric or hyphen)'
		)
	if len(sanitized) < MIN_NAME_LENGTH:
		raise InvalidNameError(
			f'Invalid name: "{name}" too short after sanitization (minimum {MIN_NAME_LENGTH} characters)'
		)
	return sanitized


def session_name(team_name: str, worker_name: str) -> str:
	"""tmux session name for a worker; each part is sanitized on its own."""
	return f"{SESSION_PREFIX}-{sanitize_name(team_name)}-{sanitize_name(worker_name)}"


def default_bridge_command(config_path: Optional[Path]) -> list[str]:
	"""Command that runs the worker polling loop for a bridge config file."""
	command = [sys.executable, "-m", "team_bridge.cli", "bridge"]
	if config_path is not None:
		command += ["--config", str(config_path)]
	return command


class SessionSupervisor:
	"""
	Starts and stops the tmux sessions that host worker processes.

	Usage:
		supervisor = SessionSupervisor()
		supervisor.create_session("alpha", "worker-1", working_directory=repo, config_path=cfg)
		supervisor.is_session_alive("alpha", "worker-1")
		supervisor.kill_session("alpha", "worker-1")
	"""

	def __init__(
		self,
		bridge_command: Optional[Sequence[str]] = None,
		tmux_bin: str = "tmux",
		timeout: float = 5.0,
	):
		"""
		Args:
			bridge_command: argv to run inside new sessions; defaults to the bridge CLI
			tmux_bin: tmux executable
			timeout: Seconds to wait for each tmux call
		"""
		self.bridge_command = list(bridge_command) if bridge_command else None
		self.tmux_bin = tmux_bin
		self.timeout = timeout

	def _tmux(self, args: list[str]) -> subprocess.CompletedProcess:
		return subprocess.run(
			[self.tmux_bin, *args],
			capture_output=True,
			text=True,
			timeout=self.timeout,
			check=False,
		)

	def create_session(
		self,
		team_name: str,
		worker_name: str,
		working_directory: Optional[Path | str] = None,
		config_path: Optional[Path | str] = None,
	) -> str:
		"""
		Start a detached session running the worker's bridge process.

		Returns:
			The session name

		Raises:
			InvalidNameError: If either name is unusable
			SessionError: If tmux is missing or refuses to create the session
		"""
		name = session_name(team_name, worker_name)
		command = self.bridge_command or default_bridge_command(
			Path(config_path) if config_path is not None else None
		)

		args = ["new-session", "-d", "-s", name]
		if working_directory is not None:
			args += ["-c", str(working_directory)]
		args.append(shlex.join(command))

		try:
			result = self._tmux(args)
		except FileNotFoundError as e:
			raise SessionError(f"tmux not available: {e}") from e
		except subprocess.TimeoutExpired as e:
			raise SessionError(f"tmux new-session timed out after {self.timeout}s") from e

		if result.returncode != 0:
			raise SessionError(f"Failed to create session {name}: {result.stderr.strip()}")

		logger.info(f"Started session {name}")
		return name

	def kill_session(self, team_name: str, worker_name: str) -> None:
		"""Terminate a worker's session. Missing sessions and tmux errors are ignored."""
		name = session_name(team_name, worker_name)
		try:
			result = self._tmux(["kill-session", "-t", name])
		except (OSError, subprocess.SubprocessError) as e:
			logger.debug(f"kill-session {name} failed: {e}")
			return
		if result.returncode == 0:
			logger.info(f"Killed session {name}")

	def is_session_alive(self, team_name: str, worker_name: str) -> bool:
		"""Check whether a worker's session exists."""
		name = session_name(team_name, worker_name)
		try:
			result = self._tmux(["has-session", "-t", name])
		except (OSError, subprocess.SubprocessError):
			return False
		return result.returncode == 0

	def list_active_sessions(self, team_name: str) -> list[str]:
		"""Worker-name parts of the live sessions belonging to a team."""
		prefix = f"{SESSION_PREFIX}-{sanitize_name(team_name)}-"
		try:
			result = self._tmux(["list-sessions", "-F", "#{session_name}"])
		except (OSError, subprocess.SubprocessError):
			return []
		if result.returncode != 0:
			return []
		return [
			line[len(prefix):]
			for line in result.stdout.splitlines()
			if line.startswith(prefix) and len(line) > len(prefix)
		]
