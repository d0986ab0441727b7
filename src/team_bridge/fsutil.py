"""
Filesystem helpers shared by every store.

Provides:
- Atomic JSON writes (temp file + rename) so readers see whole files only
- Fail-soft JSON reads that report corrupt or missing files as absent
- Append-only line writes for JSONL logs
- Path validation to prevent directory traversal
"""

import json
import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .errors import PathTraversalError

logger = logging.getLogger(__name__)

DIR_MODE = 0o700
FILE_MODE = 0o600


def utc_now_iso() -> str:
	"""Current UTC time as an ISO-8601 string."""
	return datetime.now(timezone.utc).isoformat()


def ensure_dir(path: Path, mode: int = DIR_MODE) -> None:
	"""Create a directory (and parents) if it does not exist."""
	path.mkdir(parents=True, exist_ok=True, mode=mode)


def temp_path_for(path: Path) -> Path:
	"""Sibling temp path unique to this process and instant."""
	return path.with_name(f"{path.name}.tmp.{os.getpid()}.{time.time_ns()}")


def atomic_write_text(path: Path, text: str, mode: int = FILE_MODE) -> None:
	"""Write text to a temp file next to path, then rename over it."""
	ensure_dir(path.parent)
	tmp = temp_path_for(path)
	fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
	try:
		with os.fdopen(fd, "w", encoding="utf-8") as f:
			f.write(text)
		os.replace(tmp, path)
	except BaseException:
		remove_quietly(tmp)
		raise


def atomic_write_json(path: Path, data: Any, mode: int = FILE_MODE) -> None:
	"""Serialize data as indented JSON and write it atomically."""
	atomic_write_text(path, json.dumps(data, indent=2, ensure_ascii=False) + "\n", mode)


def append_line(path: Path, line: str, mode: int = FILE_MODE) -> None:
	"""Append one line to path, creating the file and its directory as needed."""
	ensure_dir(path.parent)
	fd = os.open(path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, mode)
	with os.fdopen(fd, "ab") as f:
		f.write((line.rstrip("\n") + "\n").encode("utf-8"))


def read_json(path: Path) -> Any | None:
	"""
	Read and parse a JSON file.

	Returns None when the file is missing, empty, unreadable, or not valid
	JSON. Never raises for those cases.
	"""
	try:
		raw = path.read_text(encoding="utf-8")
	except FileNotFoundError:
		return None
	except (OSError, UnicodeDecodeError) as e:
		logger.debug(f"Unreadable JSON file {path}: {e}")
		return None
	if not raw.strip():
		return None
	try:
		return json.loads(raw)
	except json.JSONDecodeError as e:
		logger.debug(f"Corrupt JSON file {path}: {e}")
		return None


def remove_quietly(path: Path) -> bool:
	"""Delete a file, ignoring absence and permission errors. Returns True if removed."""
	try:
		path.unlink()
		return True
	except FileNotFoundError:
		return False
	except OSError as e:
		logger.warning(f"Could not remove {path}: {e}")
		return False


def safe_resolve(path: Path) -> Path:
	"""Resolve symlinks where possible, falling back to the resolved parent."""
	try:
		return path.resolve(strict=True)
	except (OSError, RuntimeError):
		try:
			return path.parent.resolve(strict=True) / path.name
		except (OSError, RuntimeError):
			return path.resolve()


def validate_resolved_path(path: Path, base: Path) -> Path:
	"""
	Ensure path stays inside base after resolving symlinks and '..'.

	Raises:
		PathTraversalError: If the resolved path escapes base
	"""
	resolved = safe_resolve(path)
	resolved_base = safe_resolve(base)
	if not resolved.is_relative_to(resolved_base):
		raise PathTraversalError(f'Path traversal detected: "{path}" escapes base "{base}"')
	return resolved
