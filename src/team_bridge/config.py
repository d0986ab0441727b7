"""Configuration and path resolution using platformdirs for cross-platform paths."""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

import platformdirs

APP_NAME = "team-bridge"
APP_AUTHOR = "team-bridge"


@dataclass
class Config:
	"""
	Central configuration and the filesystem roots every store is built on.

	The shared roots (tasks, teams) live under the host's home directory so
	that every worker on the machine sees the same queue. Runtime state
	(heartbeats, shadow registry, probe cache) lives under the project's
	working directory.
	"""

	config_dir: Path = field(default_factory=lambda: Path(platformdirs.user_config_dir(APP_NAME)))
	claude_dir: Path = field(default_factory=lambda: Path.home() / ".claude")
	working_directory: Path = field(default_factory=Path.cwd)

	# Derived paths
	tasks_root: Path = field(init=False)
	teams_root: Path = field(init=False)
	state_dir: Path = field(init=False)
	log_dir: Path = field(init=False)

	# User-configurable
	heartbeat_max_age_ms: int = 30_000
	poll_interval_ms: int = 3_000
	outbox_max_lines: int = 500

	def __post_init__(self) -> None:
		self.tasks_root = self.claude_dir / "tasks"
		self.teams_root = self.claude_dir / "teams"
		self.state_dir = self.working_directory / ".omc" / "state"
		self.log_dir = self.working_directory / ".omc" / "logs"

	def ensure_dirs(self) -> None:
		"""Create all required directories."""
		self.config_dir.mkdir(parents=True, exist_ok=True)
		self.tasks_root.mkdir(parents=True, exist_ok=True)
		self.teams_root.mkdir(parents=True, exist_ok=True)
		self.state_dir.mkdir(parents=True, exist_ok=True)
		self.log_dir.mkdir(parents=True, exist_ok=True)


def _apply_env_overrides(config: Config) -> Config:
	"""Apply TEAM_BRIDGE_* environment variable overrides."""
	env_map = {
		"TEAM_BRIDGE_CONFIG_DIR": "config_dir",
		"TEAM_BRIDGE_CLAUDE_DIR": "claude_dir",
		"TEAM_BRIDGE_WORKING_DIR": "working_directory",
	}
	for env_key, attr in env_map.items():
		val = os.getenv(env_key)
		if val:
			setattr(config, attr, Path(val))
	# Recompute derived paths after overrides
	config.__post_init__()
	return config


def _apply_toml(config: Config) -> Config:
	"""Apply config.toml overrides if file exists."""
	toml_path = config.config_dir / "config.toml"
	if not toml_path.exists():
		return config

	with open(toml_path, "rb") as f:
		data = tomllib.load(f)

	path_fields = {"config_dir", "claude_dir", "working_directory"}
	for key, val in data.items():
		if hasattr(config, key):
			if key in path_fields:
				setattr(config, key, Path(os.path.expanduser(val)))
			else:
				setattr(config, key, val)

	# Recompute derived paths after toml overrides
	config.__post_init__()
	return config


def load_config(working_directory: Path | str | None = None) -> Config:
	"""Load config with precedence: env vars > config.toml > defaults.

	An explicit working_directory wins over all three.
	"""
	config = Config()
	# config.toml is looked up in the overridden config dir, if any
	config_dir = os.getenv("TEAM_BRIDGE_CONFIG_DIR")
	if config_dir:
		config.config_dir = Path(config_dir)
	config = _apply_toml(config)
	config = _apply_env_overrides(config)
	if working_directory is not None:
		config.working_directory = Path(working_directory)
		config.__post_init__()
	return config
