import asyncio
import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, patch

import aiosqlite

from ccjsonl.context import build_context
from ccjsonl.db.batch_processor import (
    BatchProcessor,
    message_source_key,
    session_name_from_message,
    session_name_from_summary,
)
from ccjsonl.db.sqlite_migrations import run_migrations
from ccjsonl.filesystem import InMemoryFileSystem, LocalFileSystem
from ccjsonl.models import FileChangeEvent
from ccjsonl.parsers.log_parser import line_digest

PATH = "/logs/myproj/abc123.jsonl"


def _user(uuid: str, text: str = "hello", ts: str = "2025-01-01T10:00:00Z", cwd: str = "/work") -> str:
    return json.dumps({
        "type": "user",
        "uuid": uuid,
        "timestamp": ts,
        "sessionId": "abc123",
        "cwd": cwd,
        "message": {"role": "user", "content": text},
    })


def _assistant(uuid: str, text: str = "ok", ts: str = "2025-01-01T10:00:01Z") -> str:
    return json.dumps({
        "type": "assistant",
        "uuid": uuid,
        "timestamp": ts,
        "sessionId": "abc123",
        "cwd": "/work",
        "message": {"role": "assistant", "content": [{"type": "text", "text": text}]},
    })


def _lines(*lines: str) -> str:
    return "".join(f"{line}\n" for line in lines)


class _ProcessorTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.fs = InMemoryFileSystem()
        self.ctx = build_context(self.db, self.fs)
        self.processor = BatchProcessor(self.ctx, max_workers=2)

    async def asyncTearDown(self) -> None:
        await self.processor.drain()
        await self.db.close()

    async def _message_count(self, session_id: str = "abc123") -> int:
        return await self.ctx.messages.count_by_session(session_id)


class BatchProcessorIngestionTests(_ProcessorTestCase):
    def _nine_valid_one_broken(self) -> str:
        lines = []
        for i in range(9):
            ts = f"2025-01-01T10:00:{i:02d}Z"
            lines.append(_user(f"u-{i}", ts=ts) if i % 2 == 0 else _assistant(f"a-{i}", ts=ts))
        lines.insert(4, "{broken")
        return _lines(*lines)

    async def test_partial_failure_isolation(self) -> None:
        self.fs.write(PATH, self._nine_valid_one_broken())
        result = await self.processor.process_file(PATH)

        self.assertEqual(result.status, "processed")
        self.assertEqual(result.messagesInserted, 9)
        self.assertEqual(result.skippedLines, 1)
        self.assertEqual(result.cursor, 10)
        self.assertEqual(await self._message_count(), 9)

        project = await self.ctx.projects.get_by_name("myproj")
        self.assertIsNotNone(project)
        session = await self.ctx.sessions.get("abc123")
        self.assertEqual(session.projectId, project.id)
        self.assertEqual(session.sourceFile, PATH)

    async def test_reprocessing_is_idempotent(self) -> None:
        self.fs.write(PATH, self._nine_valid_one_broken())
        await self.processor.process_file(PATH)

        again = await self.processor.process_file(PATH)
        self.assertEqual(again.status, "up_to_date")

        # Forget the cursor entirely: a full replay must not duplicate anything.
        await self.ctx.tracking.tombstone(PATH)
        replay = await self.processor.process_file(PATH)
        self.assertEqual(replay.status, "processed")
        self.assertEqual(replay.entriesApplied, 9)
        self.assertEqual(replay.messagesInserted, 0)
        self.assertEqual(await self._message_count(), 9)

    async def test_appends_only_apply_new_lines_and_cursor_grows(self) -> None:
        self.fs.write(PATH, _lines(_user("u-1"), _assistant("a-1")))
        first = await self.processor.process_file(PATH)
        self.assertEqual(first.cursor, 2)

        self.fs.append(PATH, _lines(_user("u-2", ts="2025-01-01T10:01:00Z")))
        second = await self.processor.process_file(PATH)
        self.assertEqual(second.entriesApplied, 1)
        self.assertEqual(second.messagesInserted, 1)
        self.assertGreaterEqual(second.cursor, first.cursor)
        self.assertEqual((await self.ctx.tracking.get(PATH)).cursor, 3)
        self.assertEqual(await self._message_count(), 3)

    async def test_partial_trailing_write_is_picked_up_later(self) -> None:
        complete = _user("u-2", ts="2025-01-01T10:01:00Z")
        self.fs.write(PATH, _lines(_user("u-1")) + complete[:20])
        first = await self.processor.process_file(PATH)
        self.assertEqual(first.cursor, 1)
        self.assertEqual(first.skippedLines, 0)

        self.fs.append(PATH, complete[20:] + "\n")
        second = await self.processor.process_file(PATH)
        self.assertEqual(second.cursor, 2)
        self.assertEqual(second.messagesInserted, 1)
        self.assertEqual(await self._message_count(), 2)

    async def test_truncated_file_is_replayed_under_new_identity(self) -> None:
        self.fs.write(PATH, _lines(_user("u-1"), _user("u-2"), _user("u-3")))
        await self.processor.process_file(PATH)
        old_key = (await self.ctx.tracking.get(PATH)).fileKey

        self.fs.write(PATH, _lines(_user("n-1", ts="2025-02-01T00:00:00Z")))
        result = await self.processor.process_file(PATH)

        self.assertEqual(result.status, "processed")
        self.assertEqual(result.cursor, 1)
        record = await self.ctx.tracking.get(PATH)
        self.assertNotEqual(record.fileKey, old_key)
        self.assertEqual(await self._message_count(), 4)

    async def test_replaced_file_with_new_first_line_is_replayed(self) -> None:
        self.fs.write(PATH, _lines(_user("old-1"), _user("old-2")))
        await self.processor.process_file(PATH)
        old_key = (await self.ctx.tracking.get(PATH)).fileKey

        # Same path, more lines than the old cursor, different content.
        first = _user("new-1", ts="2025-02-01T00:00:00Z")
        self.fs.write(PATH, _lines(
            first,
            _user("new-2", ts="2025-02-01T00:00:01Z"),
            _user("new-3", ts="2025-02-01T00:00:02Z"),
        ))
        result = await self.processor.process_file(PATH)

        self.assertEqual(result.status, "processed")
        self.assertEqual(result.entriesApplied, 3)
        self.assertEqual(result.cursor, 3)
        record = await self.ctx.tracking.get(PATH)
        self.assertNotEqual(record.fileKey, old_key)
        self.assertEqual(record.headDigest, line_digest(first))
        self.assertEqual(await self._message_count(), 5)

    async def test_invalid_utf8_line_is_skipped(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "myproj" / "abc123.jsonl"
            path.parent.mkdir()
            path.write_bytes(
                _user("u-1").encode("utf-8") + b"\n"
                + b'{"type": "user", "uuid": "bad", "note": "\xff"}\n'
                + _user("u-2", ts="2025-01-01T10:00:02Z").encode("utf-8") + b"\n"
            )
            processor = BatchProcessor(build_context(self.db, LocalFileSystem()))
            result = await processor.process_file(str(path))

        self.assertEqual(result.status, "processed")
        self.assertEqual(result.messagesInserted, 2)
        self.assertEqual(result.skippedLines, 1)
        self.assertEqual(result.cursor, 3)

    async def test_read_failure_keeps_cursor_and_recovers(self) -> None:
        self.fs.write(PATH, _lines(_user("u-1")))
        await self.processor.process_file(PATH)
        self.fs.append(PATH, _lines(_user("u-2")))
        self.fs.fail_reads(PATH)

        failed = await self.processor.process_file(PATH)
        self.assertEqual(failed.status, "failed")
        self.assertEqual((await self.ctx.tracking.get(PATH)).cursor, 1)

        self.fs.fail_reads(PATH, enabled=False)
        recovered = await self.processor.process_file(PATH)
        self.assertEqual(recovered.status, "processed")
        self.assertEqual(recovered.cursor, 2)

    async def test_bad_path_and_missing_file(self) -> None:
        bad = await self.processor.process_file("/logs/notes.txt")
        self.assertEqual(bad.status, "failed")

        missing = await self.processor.process_file("/logs/myproj/gone.jsonl")
        self.assertEqual(missing.status, "missing")

    async def test_unlink_tombstones_but_keeps_rows(self) -> None:
        self.fs.write(PATH, _lines(_user("u-1"), _assistant("a-1")))
        await self.processor.process_file(PATH)
        self.fs.remove(PATH)

        result = await self.processor.handle(FileChangeEvent(type="unlink", filePath=PATH))
        self.assertEqual(result.status, "removed")
        self.assertIsNone(await self.ctx.tracking.get(PATH))
        self.assertEqual(await self._message_count(), 2)
        self.assertIsNotNone(await self.ctx.sessions.get("abc123"))

    async def test_recreated_file_starts_from_zero(self) -> None:
        self.fs.write(PATH, _lines(_user("u-1"), _user("u-2")))
        await self.processor.process_file(PATH)
        await self.processor.handle(FileChangeEvent(type="unlink", filePath=PATH))

        self.fs.write(PATH, _lines(_user("r-1", ts="2025-03-01T00:00:00Z")))
        result = await self.processor.process_file(PATH)
        self.assertEqual(result.entriesApplied, 1)
        self.assertEqual(result.cursor, 1)
        self.assertEqual(await self._message_count(), 3)


class BatchProcessorConflictTests(_ProcessorTestCase):
    async def test_lost_compare_and_set_discards_batch(self) -> None:
        self.fs.write(PATH, _lines(_user("u-1"), _user("u-2")))
        await self.processor.process_file(PATH)
        stale = (await self.ctx.tracking.get(PATH)).model_copy(
            update={"cursor": 0, "fileSize": 0, "fileMtime": 0.0}
        )
        self.fs.append(PATH, _lines(_user("u-3")))

        with patch.object(self.ctx.tracking, "get", AsyncMock(return_value=stale)):
            result = await self.processor.process_file(PATH)

        self.assertEqual(result.status, "conflict")
        self.assertEqual((await self.ctx.tracking.get(PATH)).cursor, 2)
        self.assertEqual(await self._message_count(), 3)

        retry = await self.processor.process_file(PATH)
        self.assertEqual(retry.status, "processed")
        self.assertEqual(retry.cursor, 3)
        self.assertEqual(retry.messagesInserted, 0)

    async def test_overlapping_runs_keep_timestamp_order(self) -> None:
        self.fs.write(PATH, _lines(_user("u-1", ts="2025-01-01T10:00:05Z")))
        await self.processor.process_file(PATH)
        self.fs.append(PATH, _lines(_assistant("a-1", ts="2025-01-01T10:00:01Z")))

        parse_file = self.ctx.log_parser.parse_file
        parsed = asyncio.Event()
        release = asyncio.Event()
        calls = 0

        async def held_parse(file_path):
            nonlocal calls
            calls += 1
            result = await parse_file(file_path)
            if calls == 1:
                parsed.set()
                await release.wait()
            return result

        reconciler = BatchProcessor(self.ctx)
        with patch.object(self.ctx.log_parser, "parse_file", new=held_parse):
            # The live run stalls after reading two lines.
            self.processor.submit(FileChangeEvent(type="change", filePath=PATH))
            await asyncio.wait_for(parsed.wait(), timeout=5)

            # A reconciler-driven run reads three lines and commits first.
            self.fs.append(PATH, _lines(_user("u-2", ts="2025-01-01T10:00:03Z")))
            reconciler.submit(FileChangeEvent(type="change", filePath=PATH, source="reconciler"))
            await reconciler.drain()
            self.assertEqual((await self.ctx.tracking.get(PATH)).cursor, 3)

            release.set()
            await self.processor.drain()

        self.assertEqual(self.processor.snapshot()["counters"]["conflicts"], 1)
        self.assertEqual((await self.ctx.tracking.get(PATH)).cursor, 3)
        timestamps = [m.timestamp for m in await self.ctx.messages.list_by_session("abc123")]
        self.assertEqual(len(timestamps), 3)
        self.assertEqual(timestamps, sorted(timestamps))


class BatchProcessorSchedulingTests(_ProcessorTestCase):
    async def test_events_for_one_path_are_coalesced(self) -> None:
        self.fs.write(PATH, _lines(_user("u-1")))
        for _ in range(3):
            self.processor.submit(FileChangeEvent(type="change", filePath=PATH))
        await self.processor.drain()

        counters = self.processor.snapshot()["counters"]
        self.assertEqual(counters["events"], 3)
        self.assertEqual(counters["runs"], 2)
        self.assertEqual(counters["coalesced"], 1)
        self.assertEqual(counters["processed"], 1)
        self.assertEqual(counters["up_to_date"], 1)

    async def test_unlink_queued_behind_a_run_is_applied(self) -> None:
        head = _user("s-1")
        self.fs.write(PATH, _lines(head, _user("old-2"), _user("old-3")))
        await self.processor.process_file(PATH)

        # Recreated with the same first line, so only the unlink retires the old cursor.
        self.processor.submit(FileChangeEvent(type="change", filePath=PATH))
        self.processor.submit(FileChangeEvent(type="unlink", filePath=PATH))
        self.fs.remove(PATH)
        self.fs.write(PATH, _lines(
            head,
            _user("new-2", ts="2025-02-01T00:00:01Z"),
            _user("new-3", ts="2025-02-01T00:00:02Z"),
            _user("new-4", ts="2025-02-01T00:00:03Z"),
        ))
        self.processor.submit(FileChangeEvent(type="add", filePath=PATH))
        await self.processor.drain()

        counters = self.processor.snapshot()["counters"]
        self.assertEqual(counters["runs"], 3)
        self.assertEqual(counters["removed"], 1)
        self.assertEqual(await self._message_count(), 6)
        self.assertEqual((await self.ctx.tracking.get(PATH)).cursor, 4)

    async def test_many_files_processed_under_worker_limit(self) -> None:
        paths = [f"/logs/proj{i}/s{i}.jsonl" for i in range(5)]
        for i, path in enumerate(paths):
            self.fs.write(path, _lines(json.dumps({**json.loads(_user(f"u-{i}")), "sessionId": f"s{i}"})))
            self.processor.submit(FileChangeEvent(type="add", filePath=path))
        self.assertTrue(self.processor.is_busy())
        await self.processor.drain()

        snapshot = self.processor.snapshot()
        self.assertEqual(snapshot["counters"]["processed"], 5)
        self.assertEqual(snapshot["inFlight"], [])
        self.assertEqual(len(snapshot["recent"]), 5)
        self.assertEqual(len(await self.ctx.projects.list_all()), 5)

    async def test_failure_is_recorded_not_raised(self) -> None:
        self.fs.write(PATH, "garbage\n")
        self.processor.submit(FileChangeEvent(type="change", filePath=PATH))
        await self.processor.drain()
        snapshot = self.processor.snapshot()
        self.assertEqual(snapshot["counters"]["failed"], 1)
        self.assertEqual(snapshot["recent"][0]["status"], "failed")


class SessionMetadataTests(_ProcessorTestCase):
    async def test_session_touch_and_fallback_name(self) -> None:
        self.fs.write(PATH, _lines(
            _user("u-0", text="<command-name>/clear</command-name>", ts="2025-01-01T09:00:00Z"),
            _user("u-1", text="Refactor the watcher\nplease", ts="2025-01-01T10:00:00Z", cwd="/a"),
            _assistant("a-1", ts="2025-01-01T10:05:00Z"),
            json.dumps({"type": "result", "subtype": "success", "is_error": False}),
        ))
        await self.processor.process_file(PATH)

        session = await self.ctx.sessions.get("abc123")
        self.assertEqual(session.name, "Refactor the watcher")
        self.assertEqual(session.lastMessageAt, "2025-01-01T10:05:00.000000Z")
        self.assertEqual(session.cwd, "/work")
        self.assertEqual(session.status, "completed")

    async def test_summary_renames_session(self) -> None:
        self.fs.write(PATH, _lines(_user("u-1", text="First question")))
        await self.processor.process_file(PATH)
        self.fs.append(PATH, _lines(json.dumps({
            "type": "summary",
            "summary": "Summary: The watcher debounce fix. Then tests.",
            "leafUuid": "u-1",
        })))
        await self.processor.process_file(PATH)
        self.assertEqual((await self.ctx.sessions.get("abc123")).name, "watcher debounce fix")


class SessionNamingTests(unittest.TestCase):
    def test_summary_names(self) -> None:
        self.assertEqual(session_name_from_summary("Conversation: A new parser! Extra"), "new parser")
        self.assertEqual(session_name_from_summary("..."), "Generated Session")
        long_name = session_name_from_summary("x" * 80)
        self.assertEqual(len(long_name), 50)
        self.assertTrue(long_name.endswith("..."))

    def test_message_names_use_first_line(self) -> None:
        self.assertEqual(session_name_from_message("  Hello there\nsecond"), "Hello there")

    def test_source_key_falls_back_to_checksum(self) -> None:
        self.assertEqual(message_source_key("abc", "{}"), "abc")
        self.assertTrue(message_source_key("", "{}").startswith("sha1:"))


if __name__ == "__main__":
    unittest.main()
