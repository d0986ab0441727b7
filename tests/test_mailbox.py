"""Tests for inbox, outbox and signal files."""

import json
from pathlib import Path

import pytest

from team_bridge.errors import InvalidNameError
from team_bridge.mailbox import Mailbox

TEAM = "alpha"
WORKER = "worker-1"


@pytest.fixture
def mailbox(tmp_path: Path) -> Mailbox:
	return Mailbox(tmp_path / "teams")


def _write_inbox(mailbox: Mailbox, text: str) -> Path:
	path = mailbox.inbox_path(TEAM, WORKER)
	path.parent.mkdir(parents=True, exist_ok=True)
	with open(path, "a", encoding="utf-8") as f:
		f.write(text)
	return path


def _cursor(mailbox: Mailbox) -> int:
	return json.loads(mailbox.cursor_path(TEAM, WORKER).read_text())["bytesRead"]


class TestReadNewInboxMessages:
	def test_missing_inbox(self, mailbox):
		assert mailbox.read_new_inbox_messages(TEAM, WORKER) == []

	def test_reads_appended_messages_once(self, mailbox):
		mailbox.append_inbox(TEAM, WORKER, {"type": "message", "content": "one"})
		mailbox.append_inbox(TEAM, WORKER, {"type": "message", "content": "two"})

		messages = mailbox.read_new_inbox_messages(TEAM, WORKER)
		assert [m["content"] for m in messages] == ["one", "two"]
		assert all("timestamp" in m for m in messages)
		assert mailbox.read_new_inbox_messages(TEAM, WORKER) == []

		mailbox.append_inbox(TEAM, WORKER, {"type": "message", "content": "three"})
		assert [m["content"] for m in mailbox.read_new_inbox_messages(TEAM, WORKER)] == ["three"]

	def test_stops_at_first_malformed_line(self, mailbox):
		good = '{"type": "message", "content": "a"}\n{"type": "message", "content": "b"}\n'
		path = _write_inbox(mailbox, good + "not json\n" + '{"type": "message", "content": "c"}\n')

		messages = mailbox.read_new_inbox_messages(TEAM, WORKER)
		assert [m["content"] for m in messages] == ["a", "b"]
		assert _cursor(mailbox) == len(good.encode("utf-8"))
		assert _cursor(mailbox) < path.stat().st_size

		assert mailbox.read_new_inbox_messages(TEAM, WORKER) == []

	def test_cursor_counts_bytes(self, mailbox):
		line = json.dumps({"content": "héllo wörld ✓"}, ensure_ascii=False) + "\n"
		_write_inbox(mailbox, line)
		assert mailbox.read_new_inbox_messages(TEAM, WORKER)[0]["content"] == "héllo wörld ✓"
		assert _cursor(mailbox) == len(line.encode("utf-8"))

	def test_partial_trailing_line_waits(self, mailbox):
		_write_inbox(mailbox, '{"content": "a"}\n{"content": "b"')
		assert [m["content"] for m in mailbox.read_new_inbox_messages(TEAM, WORKER)] == ["a"]
		_write_inbox(mailbox, "}\n")
		assert [m["content"] for m in mailbox.read_new_inbox_messages(TEAM, WORKER)] == ["b"]

	def test_blank_lines_are_consumed(self, mailbox):
		text = '{"content": "a"}\n\n\n'
		_write_inbox(mailbox, text)
		assert len(mailbox.read_new_inbox_messages(TEAM, WORKER)) == 1
		assert _cursor(mailbox) == len(text)

	def test_unparsable_cursor_restarts_at_zero(self, mailbox):
		_write_inbox(mailbox, '{"content": "a"}\n')
		cursor = mailbox.cursor_path(TEAM, WORKER)
		cursor.write_text("garbage")
		assert len(mailbox.read_new_inbox_messages(TEAM, WORKER)) == 1

	def test_cursor_past_eof_resets(self, mailbox):
		_write_inbox(mailbox, '{"content": "a"}\n')
		mailbox.cursor_path(TEAM, WORKER).write_text(json.dumps({"bytesRead": 10_000}))
		assert [m["content"] for m in mailbox.read_new_inbox_messages(TEAM, WORKER)] == ["a"]


class TestReadAllAndClear:
	def test_read_all_skips_malformed(self, mailbox):
		_write_inbox(mailbox, '{"content": "a"}\nnot json\n{"content": "c"}\n')
		mailbox.read_new_inbox_messages(TEAM, WORKER)
		messages = mailbox.read_all_inbox_messages(TEAM, WORKER)
		assert [m["content"] for m in messages] == ["a", "c"]

	def test_clear_inbox_deletes_files(self, mailbox):
		mailbox.append_inbox(TEAM, WORKER, {"content": "a"})
		mailbox.read_new_inbox_messages(TEAM, WORKER)
		mailbox.clear_inbox(TEAM, WORKER)
		assert not mailbox.inbox_path(TEAM, WORKER).exists()
		assert not mailbox.cursor_path(TEAM, WORKER).exists()

	def test_clear_absent_inbox_is_noop(self, mailbox):
		mailbox.clear_inbox(TEAM, WORKER)
		mailbox.clear_inbox(TEAM, WORKER)

	def test_rotate_inbox_keeps_newest_half(self, mailbox):
		for i in range(10):
			mailbox.append_inbox(TEAM, WORKER, {"content": str(i)})
		mailbox.read_new_inbox_messages(TEAM, WORKER)

		assert mailbox.rotate_inbox_if_needed(TEAM, WORKER, max_size_bytes=10) is True
		assert [m["content"] for m in mailbox.read_all_inbox_messages(TEAM, WORKER)] == ["5", "6", "7", "8", "9"]
		assert _cursor(mailbox) == 0

	def test_rotate_inbox_under_limit(self, mailbox):
		mailbox.append_inbox(TEAM, WORKER, {"content": "a"})
		assert mailbox.rotate_inbox_if_needed(TEAM, WORKER, max_size_bytes=1_000_000) is False


class TestOutbox:
	def _fill(self, mailbox: Mailbox, count: int) -> None:
		for i in range(count):
			mailbox.append_outbox(TEAM, WORKER, {"type": "idle", "n": i})

	def test_append_creates_file(self, mailbox):
		mailbox.append_outbox(TEAM, WORKER, {"type": "idle"})
		assert mailbox.read_outbox(TEAM, WORKER) == [{"type": "idle"}]

	def test_at_limit_is_noop(self, mailbox):
		self._fill(mailbox, 10)
		assert mailbox.rotate_outbox_if_needed(TEAM, WORKER, 10) is False
		assert len(mailbox.read_outbox(TEAM, WORKER)) == 10

	def test_over_limit_keeps_newest_half(self, mailbox):
		self._fill(mailbox, 11)
		assert mailbox.rotate_outbox_if_needed(TEAM, WORKER, 10) is True
		assert [e["n"] for e in mailbox.read_outbox(TEAM, WORKER)] == [6, 7, 8, 9, 10]

	def test_zero_limit_empties(self, mailbox):
		self._fill(mailbox, 3)
		assert mailbox.rotate_outbox_if_needed(TEAM, WORKER, 0) is True
		assert mailbox.read_outbox(TEAM, WORKER) == []
		assert mailbox.outbox_path(TEAM, WORKER).read_text() == ""

	def test_missing_outbox(self, mailbox):
		assert mailbox.rotate_outbox_if_needed(TEAM, WORKER, 10) is False
		assert mailbox.read_outbox(TEAM, WORKER) == []


class TestSignals:
	def test_shutdown_round_trip(self, mailbox):
		mailbox.write_shutdown_signal(TEAM, WORKER, "req-1", "done for today")
		signal = mailbox.check_shutdown_signal(TEAM, WORKER)
		assert signal.request_id == "req-1"
		assert signal.reason == "done for today"

		data = json.loads(mailbox.shutdown_signal_path(TEAM, WORKER).read_text())
		assert data["requestId"] == "req-1"

	def test_write_overwrites(self, mailbox):
		mailbox.write_shutdown_signal(TEAM, WORKER, "req-1", "first")
		mailbox.write_shutdown_signal(TEAM, WORKER, "req-2", "second")
		assert mailbox.check_shutdown_signal(TEAM, WORKER).request_id == "req-2"

	def test_corrupt_signal_reads_as_none(self, mailbox):
		path = mailbox.shutdown_signal_path(TEAM, WORKER)
		path.parent.mkdir(parents=True)
		path.write_text("{oops")
		assert mailbox.check_shutdown_signal(TEAM, WORKER) is None

	def test_delete_is_idempotent(self, mailbox):
		mailbox.delete_shutdown_signal(TEAM, WORKER)
		mailbox.write_shutdown_signal(TEAM, WORKER, "req-1", "bye")
		mailbox.delete_shutdown_signal(TEAM, WORKER)
		mailbox.delete_shutdown_signal(TEAM, WORKER)
		assert mailbox.check_shutdown_signal(TEAM, WORKER) is None

	def test_drain_signal(self, mailbox):
		assert mailbox.check_drain_signal(TEAM, WORKER) is None
		mailbox.write_drain_signal(TEAM, WORKER, "req-9", "scale down")
		assert mailbox.check_drain_signal(TEAM, WORKER).reason == "scale down"
		mailbox.delete_drain_signal(TEAM, WORKER)
		assert mailbox.check_drain_signal(TEAM, WORKER) is None


class TestCleanup:
	def test_removes_all_worker_files(self, mailbox):
		mailbox.append_inbox(TEAM, WORKER, {"content": "a"})
		mailbox.read_new_inbox_messages(TEAM, WORKER)
		mailbox.append_outbox(TEAM, WORKER, {"type": "idle"})
		mailbox.write_shutdown_signal(TEAM, WORKER, "r", "x")
		mailbox.write_drain_signal(TEAM, WORKER, "r", "x")

		mailbox.cleanup_worker_files(TEAM, WORKER)

		for path in (
			mailbox.inbox_path(TEAM, WORKER),
			mailbox.cursor_path(TEAM, WORKER),
			mailbox.outbox_path(TEAM, WORKER),
			mailbox.shutdown_signal_path(TEAM, WORKER),
			mailbox.drain_signal_path(TEAM, WORKER),
		):
			assert not path.exists()

	def test_tolerates_missing_files(self, mailbox):
		mailbox.append_outbox(TEAM, WORKER, {"type": "idle"})
		mailbox.cleanup_worker_files(TEAM, WORKER)
		mailbox.cleanup_worker_files(TEAM, WORKER)

	def test_worker_names_are_sanitized(self, mailbox):
		assert mailbox.inbox_path(TEAM, "../../etc").name == "etc.jsonl"
		with pytest.raises(InvalidNameError):
			mailbox.inbox_path(TEAM, "!!")
