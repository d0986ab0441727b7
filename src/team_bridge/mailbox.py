"""
Mailbox - per-worker JSONL message logs between the team lead and a worker.

Layout under <teams_root>/<team>/:
- inbox/<worker>.jsonl   lead -> worker, append-only
- inbox/<worker>.offset  byte cursor of the worker's incremental reader
- outbox/<worker>.jsonl  worker -> lead, append-only, rotated by line count
- signals/<worker>.shutdown, signals/<worker>.drain

Each mailbox has a single consumer. The incremental reader only ever
returns a gap-free prefix of new lines: it stops at the first line it
cannot parse and leaves the cursor in front of it.
"""

import json
import logging
from pathlib import Path
from typing import Any

from .fsutil import (
	append_line,
	atomic_write_json,
	atomic_write_text,
	read_json,
	remove_quietly,
	utc_now_iso,
	validate_resolved_path,
)
from .models import ShutdownSignal
from .sessions import sanitize_name

logger = logging.getLogger(__name__)

# Maximum bytes to read from an inbox in a single call (10 MB)
MAX_INBOX_READ_SIZE = 10 * 1024 * 1024

Message = dict[str, Any]


def _parse_line(line: bytes) -> Any:
	"""Decode one JSONL line. Raises ValueError when it is not valid JSON."""
	return json.loads(line.decode("utf-8").rstrip("\r"))


class Mailbox:
	"""
	Inbox, outbox and control signals for every worker of every team.

	Usage:
		mailbox = Mailbox(config.teams_root)
		mailbox.append_inbox("alpha", "worker-1", {"type": "message", "content": "hi"})
		for message in mailbox.read_new_inbox_messages("alpha", "worker-1"):
			...
		mailbox.append_outbox("alpha", "worker-1", {"type": "idle"})
	"""

	def __init__(self, teams_root: Path | str):
		self.teams_root = Path(teams_root)

	# -- paths ---------------------------------------------------------------

	def team_dir(self, team_name: str) -> Path:
		path = self.teams_root / sanitize_name(team_name)
		validate_resolved_path(path, self.teams_root)
		return path

	def inbox_path(self, team_name: str, worker_name: str) -> Path:
		return self.team_dir(team_name) / "inbox" / f"{sanitize_name(worker_name)}.jsonl"

	def cursor_path(self, team_name: str, worker_name: str) -> Path:
		return self.team_dir(team_name) / "inbox" / f"{sanitize_name(worker_name)}.offset"

	def outbox_path(self, team_name: str, worker_name: str) -> Path:
		return self.team_dir(team_name) / "outbox" / f"{sanitize_name(worker_name)}.jsonl"

	def shutdown_signal_path(self, team_name: str, worker_name: str) -> Path:
		return self.team_dir(team_name) / "signals" / f"{sanitize_name(worker_name)}.shutdown"

	def drain_signal_path(self, team_name: str, worker_name: str) -> Path:
		return self.team_dir(team_name) / "signals" / f"{sanitize_name(worker_name)}.drain"

	# -- inbox (lead -> worker) ----------------------------------------------

	def append_inbox(self, team_name: str, worker_name: str, message: Message) -> None:
		"""Append a message to a worker's inbox."""
		message = {"timestamp": utc_now_iso(), **message}
		append_line(self.inbox_path(team_name, worker_name), json.dumps(message, ensure_ascii=False))

	def _read_cursor(self, cursor_file: Path) -> int:
		data = read_json(cursor_file)
		if isinstance(data, dict):
			offset = data.get("bytesRead")
			if isinstance(offset, int) and not isinstance(offset, bool) and offset >= 0:
				return offset
		return 0

	def _write_cursor(self, cursor_file: Path, offset: int) -> None:
		atomic_write_json(cursor_file, {"bytesRead": offset})

	def read_new_inbox_messages(self, team_name: str, worker_name: str) -> list[Message]:
		"""
		Read messages appended since the last call.

		1. Read the byte cursor (0 when absent or unparsable)
		2. Reset to 0 if the file shrank below the cursor
		3. Read from the cursor to EOF, keeping complete lines only
		4. Parse lines in order, stopping at the first malformed one
		5. Move the cursor just past the last consumed line
		"""
		inbox = self.inbox_path(team_name, worker_name)
		cursor_file = self.cursor_path(team_name, worker_name)

		try:
			size = inbox.stat().st_size
		except FileNotFoundError:
			return []

		offset = self._read_cursor(cursor_file)
		if size < offset:
			offset = 0
		if size <= offset:
			return []

		read_size = min(size - offset, MAX_INBOX_READ_SIZE)
		if read_size < size - offset:
			logger.warning(
				f"Inbox for {worker_name} has more than {MAX_INBOX_READ_SIZE} unread bytes, reading in chunks"
			)
		with open(inbox, "rb") as f:
			f.seek(offset)
			data = f.read(read_size)

		# Only complete lines; a partial trailing line waits for the next read
		last_newline = data.rfind(b"\n")
		if last_newline == -1:
			return []

		messages: list[Message] = []
		consumed = 0
		for line in data[: last_newline + 1].split(b"\n")[:-1]:
			line_bytes = len(line) + 1
			if not line.strip():
				consumed += line_bytes
				continue
			try:
				messages.append(_parse_line(line))
			except ValueError:
				logger.warning(
					f"Malformed inbox line for {team_name}/{worker_name} at byte {offset + consumed}, stopping"
				)
				break
			consumed += line_bytes

		if consumed:
			self._write_cursor(cursor_file, offset + consumed)
		return messages

	def read_all_inbox_messages(self, team_name: str, worker_name: str) -> list[Message]:
		"""Every valid message in the inbox, ignoring the cursor and skipping malformed lines."""
		return self._read_all_lines(self.inbox_path(team_name, worker_name))

	def clear_inbox(self, team_name: str, worker_name: str) -> None:
		"""Delete a worker's inbox and cursor. Absent files are fine."""
		remove_quietly(self.inbox_path(team_name, worker_name))
		remove_quietly(self.cursor_path(team_name, worker_name))

	def rotate_inbox_if_needed(self, team_name: str, worker_name: str, max_size_bytes: int) -> bool:
		"""
		Keep the newest half of the inbox lines once it exceeds max_size_bytes.

		The cursor is reset to 0 because byte offsets no longer line up.

		Returns:
			True if the inbox was rotated
		"""
		inbox = self.inbox_path(team_name, worker_name)
		try:
			if inbox.stat().st_size <= max_size_bytes:
				return False
			lines = [line for line in inbox.read_text(encoding="utf-8").split("\n") if line.strip()]
			keep = max(1, len(lines) // 2)
			atomic_write_text(inbox, "".join(f"{line}\n" for line in lines[-keep:]))
			self._write_cursor(self.cursor_path(team_name, worker_name), 0)
		except FileNotFoundError:
			return False
		except (OSError, UnicodeDecodeError) as e:
			logger.warning(f"Inbox rotation failed for {team_name}/{worker_name}: {e}")
			return False
		logger.info(f"Rotated inbox for {team_name}/{worker_name}, kept {keep} lines")
		return True

	# -- outbox (worker -> lead) ---------------------------------------------

	def append_outbox(self, team_name: str, worker_name: str, entry: Message) -> None:
		"""Append an entry to a worker's outbox, creating it if needed."""
		append_line(self.outbox_path(team_name, worker_name), json.dumps(entry, ensure_ascii=False))

	def read_outbox(self, team_name: str, worker_name: str) -> list[Message]:
		"""Every valid outbox entry, oldest first."""
		return self._read_all_lines(self.outbox_path(team_name, worker_name))

	def rotate_outbox_if_needed(self, team_name: str, worker_name: str, max_lines: int) -> bool:
		"""
		Trim the outbox to its newest max_lines // 2 lines once it exceeds max_lines.

		max_lines == 0 empties a non-empty outbox.

		Returns:
			True if the outbox was rotated
		"""
		outbox = self.outbox_path(team_name, worker_name)
		try:
			lines = [line for line in outbox.read_text(encoding="utf-8").split("\n") if line.strip()]
		except FileNotFoundError:
			return False
		except (OSError, UnicodeDecodeError) as e:
			logger.warning(f"Could not read outbox {outbox}: {e}")
			return False

		if len(lines) <= max_lines:
			return False

		keep = max(0, max_lines // 2)
		kept = lines[len(lines) - keep:] if keep else []
		try:
			atomic_write_text(outbox, "".join(f"{line}\n" for line in kept))
		except OSError as e:
			logger.warning(f"Outbox rotation failed for {team_name}/{worker_name}: {e}")
			return False
		logger.info(f"Rotated outbox for {team_name}/{worker_name}: {len(lines)} -> {len(kept)} lines")
		return True

	# -- signals -------------------------------------------------------------

	def write_shutdown_signal(self, team_name: str, worker_name: str, request_id: str, reason: str) -> ShutdownSignal:
		"""Ask a worker to shut down. Overwrites any earlier request."""
		return self._write_signal(self.shutdown_signal_path(team_name, worker_name), request_id, reason)

	def check_shutdown_signal(self, team_name: str, worker_name: str) -> ShutdownSignal | None:
		"""Pending shutdown request, or None when absent or corrupt."""
		return self._read_signal(self.shutdown_signal_path(team_name, worker_name))

	def delete_shutdown_signal(self, team_name: str, worker_name: str) -> None:
		"""Remove a processed shutdown request."""
		remove_quietly(self.shutdown_signal_path(team_name, worker_name))

	def write_drain_signal(self, team_name: str, worker_name: str, request_id: str, reason: str) -> ShutdownSignal:
		"""Ask a worker to stop after its current tick."""
		return self._write_signal(self.drain_signal_path(team_name, worker_name), request_id, reason)

	def check_drain_signal(self, team_name: str, worker_name: str) -> ShutdownSignal | None:
		"""Pending drain request, or None when absent or corrupt."""
		return self._read_signal(self.drain_signal_path(team_name, worker_name))

	def delete_drain_signal(self, team_name: str, worker_name: str) -> None:
		"""Remove a processed drain request."""
		remove_quietly(self.drain_signal_path(team_name, worker_name))

	# -- cleanup -------------------------------------------------------------

	def cleanup_worker_files(self, team_name: str, worker_name: str) -> None:
		"""Remove all inbox, outbox and signal files of a worker."""
		for path in (
			self.inbox_path(team_name, worker_name),
			self.cursor_path(team_name, worker_name),
			self.outbox_path(team_name, worker_name),
			self.shutdown_signal_path(team_name, worker_name),
			self.drain_signal_path(team_name, worker_name),
		):
			remove_quietly(path)

	# -- helpers -------------------------------------------------------------

	def _read_all_lines(self, path: Path) -> list[Message]:
		try:
			data = path.read_bytes()
		except FileNotFoundError:
			return []
		except OSError as e:
			logger.warning(f"Could not read {path}: {e}")
			return []

		messages = []
		for line in data.split(b"\n"):
			if not line.strip():
				continue
			try:
				messages.append(_parse_line(line))
			except ValueError:
				logger.debug(f"Skipping malformed line in {path}")
		return messages

	def _write_signal(self, path: Path, request_id: str, reason: str) -> ShutdownSignal:
		signal = ShutdownSignal(request_id=request_id, reason=reason)
		atomic_write_json(path, signal.to_json_dict())
		return signal

	def _read_signal(self, path: Path) -> ShutdownSignal | None:
		data = read_json(path)
		if not isinstance(data, dict):
			return None
		try:
			return ShutdownSignal.model_validate(data)
		except ValueError:
			logger.debug(f"Ignoring malformed signal file {path}")
			return None
