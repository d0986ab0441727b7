"""
Team registration for MCP workers.

Two stores describe a team's workers:
- the shared team config (<teams_root>/<team>/config.json), edited by the
  host and by people, holding a ``members`` list
- the private shadow registry (<state_dir>/team-mcp-workers.json) holding
  the runtime metadata of workers registered here

Workers always go into the shadow registry. They are also added to the
shared config when a cached probe says the config tolerates our entries.
Either store may be missing or corrupt; that reads as empty.
"""

import logging
import time
from pathlib import Path
from typing import Any, Literal

from .fsutil import atomic_write_json, read_json, validate_resolved_path
from .models import McpWorker, ProbeOutcome, ProbeResult
from .sessions import sanitize_name

logger = logging.getLogger(__name__)

MCP_BACKEND_TYPE = "tmux"
SHADOW_REGISTRY_FILE = "team-mcp-workers.json"
PROBE_RESULT_FILE = "config-probe-result.json"

RegistrationStrategy = Literal["config", "shadow"]


def is_mcp_worker(member: dict[str, Any]) -> bool:
	"""A config member is ours iff its backendType is exactly "tmux"."""
	return member.get("backendType") == MCP_BACKEND_TYPE


def agent_type_for(provider: str) -> str:
	"""Canonical agent-type label of a provider, e.g. "mcp-codex"."""
	return f"mcp-{provider}"


class TeamRegistry:
	"""
	Reconciles the shared team config with the private shadow registry.

	Usage:
		registry = TeamRegistry(config.teams_root, config.state_dir)
		registry.register_mcp_worker("alpha", "worker-1", "codex", "gpt-5", "omc-team-alpha-worker-1", "/repo")
		workers = registry.list_mcp_workers("alpha")
	"""

	def __init__(self, teams_root: Path | str, state_dir: Path | str):
		self.teams_root = Path(teams_root)
		self.state_dir = Path(state_dir)

	# -- paths ---------------------------------------------------------------

	def config_path(self, team_name: str) -> Path:
		path = self.teams_root / sanitize_name(team_name) / "config.json"
		validate_resolved_path(path, self.teams_root)
		return path

	@property
	def shadow_registry_path(self) -> Path:
		return self.state_dir / SHADOW_REGISTRY_FILE

	@property
	def probe_result_path(self) -> Path:
		return self.state_dir / PROBE_RESULT_FILE

	# -- probe cache ---------------------------------------------------------

	def read_probe_result(self) -> ProbeResult | None:
		"""Cached probe result, or None if never probed or unreadable."""
		data = read_json(self.probe_result_path)
		if not isinstance(data, dict):
			return None
		try:
			return ProbeResult.model_validate(data)
		except ValueError:
			logger.debug("Ignoring malformed probe result")
			return None

	def write_probe_result(self, result: ProbeResult) -> None:
		"""Persist a probe outcome."""
		atomic_write_json(self.probe_result_path, result.to_json_dict())

	def get_registration_strategy(self) -> RegistrationStrategy:
		"""'config' only after a passing probe; 'shadow' otherwise."""
		probe = self.read_probe_result()
		if probe and probe.probe_result == ProbeOutcome.PASS.value:
			return "config"
		return "shadow"

	# -- registration --------------------------------------------------------

	def register_mcp_worker(
		self,
		team_name: str,
		worker_name: str,
		provider: str,
		model: str,
		session_id: str,
		cwd: str,
	) -> McpWorker:
		"""
		Register a worker, replacing any earlier entry with the same name.

		Returns:
			The stored entry
		"""
		member = McpWorker(
			name=worker_name,
			agent_id=f"{worker_name}@{team_name}",
			agent_type=agent_type_for(provider),
			backend_type=MCP_BACKEND_TYPE,
			provider=provider,
			model=model,
			session_id=session_id,
			cwd=cwd,
			joined_at=int(time.time() * 1000),
		)

		if self.get_registration_strategy() == "config":
			self._register_in_config(team_name, member)
		self._register_in_shadow(team_name, member)

		logger.info(f"Registered MCP worker {member.agent_id} ({member.agent_type})")
		return member

	def _register_in_config(self, team_name: str, member: McpWorker) -> None:
		path = self.config_path(team_name)
		config = read_json(path)
		if not isinstance(config, dict):
			logger.debug(f"No usable team config at {path}, shadow registry only")
			return

		members = [m for m in self._members(config) if m.get("name") != member.name]
		entry = member.to_json_dict()
		entry.setdefault("subscriptions", [])
		members.append(entry)
		config["members"] = members
		try:
			atomic_write_json(path, config)
		except OSError as e:
			logger.warning(f"Could not update team config {path}: {e}")

	def _register_in_shadow(self, team_name: str, member: McpWorker) -> None:
		registry = self._read_shadow()
		workers = [w for w in registry["workers"] if w.get("name") != member.name]
		workers.append(member.to_json_dict())
		atomic_write_json(self.shadow_registry_path, {"teamName": team_name, "workers": workers})

	def unregister_mcp_worker(self, team_name: str, worker_name: str) -> None:
		"""Remove a worker from both stores. Missing or corrupt stores are skipped."""
		path = self.config_path(team_name)
		config = read_json(path)
		if isinstance(config, dict):
			config["members"] = [m for m in self._members(config) if m.get("name") != worker_name]
			try:
				atomic_write_json(path, config)
			except OSError as e:
				logger.warning(f"Could not update team config {path}: {e}")

		if read_json(self.shadow_registry_path) is not None:
			registry = self._read_shadow()
			registry["workers"] = [w for w in registry["workers"] if w.get("name") != worker_name]
			try:
				atomic_write_json(self.shadow_registry_path, registry)
			except OSError as e:
				logger.warning(f"Could not update shadow registry: {e}")

		logger.info(f"Unregistered MCP worker {worker_name}@{team_name}")

	def list_mcp_workers(self, team_name: str) -> list[McpWorker]:
		"""
		Workers from both stores, one entry per name.

		Config members count only when they are MCP workers; shadow entries
		override config members of the same name.
		"""
		workers: dict[str, McpWorker] = {}

		config = read_json(self.config_path(team_name))
		if isinstance(config, dict):
			for member in self._members(config):
				if is_mcp_worker(member):
					worker = self._normalize(team_name, member)
					if worker:
						workers[worker.name] = worker

		for entry in self._read_shadow()["workers"]:
			worker = self._normalize(team_name, entry)
			if worker:
				workers[worker.name] = worker

		return list(workers.values())

	# -- helpers -------------------------------------------------------------

	@staticmethod
	def _members(config: dict[str, Any]) -> list[dict[str, Any]]:
		members = config.get("members")
		if not isinstance(members, list):
			return []
		return [m for m in members if isinstance(m, dict)]

	def _read_shadow(self) -> dict[str, Any]:
		registry = read_json(self.shadow_registry_path)
		if not isinstance(registry, dict):
			registry = {}
		workers = registry.get("workers")
		registry["workers"] = [w for w in workers if isinstance(w, dict)] if isinstance(workers, list) else []
		return registry

	@staticmethod
	def _normalize(team_name: str, entry: dict[str, Any]) -> McpWorker | None:
		name = entry.get("name")
		if not isinstance(name, str) or not name:
			return None
		try:
			worker = McpWorker.model_validate(entry)
		except ValueError:
			logger.debug(f"Skipping malformed worker entry {name!r}")
			return None
		if not worker.agent_id:
			worker.agent_id = f"{name}@{team_name}"
		return worker
