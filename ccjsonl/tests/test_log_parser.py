import json
import unittest

from ccjsonl.date_utils import normalize_timestamp
from ccjsonl.errors import FileReaderError, ParserError
from ccjsonl.filesystem import InMemoryFileSystem
from ccjsonl.models import AssistantLogEntry, SummaryLogEntry, UserLogEntry
from ccjsonl.parsers.log_parser import (
    ClaudeLogParser,
    extract_project_name,
    extract_session_id,
    line_digest,
    parse_json_lines,
)


def _user(uuid: str, text: str = "hello", ts: str = "2025-01-01T10:00:00Z") -> str:
    return json.dumps({
        "type": "user",
        "uuid": uuid,
        "parentUuid": None,
        "timestamp": ts,
        "sessionId": "abc123",
        "cwd": "/work",
        "message": {"role": "user", "content": text},
    })


def _assistant(uuid: str, text: str = "hi", ts: str = "2025-01-01T10:00:01Z") -> str:
    return json.dumps({
        "type": "assistant",
        "uuid": uuid,
        "parentUuid": None,
        "timestamp": ts,
        "sessionId": "abc123",
        "message": {"role": "assistant", "content": [{"type": "text", "text": text}]},
        "requestId": "req-1",
    })


class PathDerivationTests(unittest.TestCase):
    def test_extracts_project_and_session(self) -> None:
        self.assertEqual(extract_project_name("/root/myproj/abc123.jsonl"), "myproj")
        self.assertEqual(extract_session_id("/root/myproj/abc123.jsonl"), "abc123")

    def test_malformed_paths_return_none(self) -> None:
        for path in ("/root/myproj/abc123.txt", "abc123.jsonl", "/abc123.jsonl", "/root/myproj/.jsonl"):
            with self.subTest(path=path):
                self.assertIsNone(extract_project_name(path))
                self.assertIsNone(extract_session_id(path))


class ParseJsonLinesTests(unittest.TestCase):
    def test_nine_valid_lines_and_one_malformed(self) -> None:
        lines = [_user(f"u-{i}") for i in range(5)] + ["{not json"] + [_assistant(f"a-{i}") for i in range(4)]
        result = parse_json_lines("\n".join(lines) + "\n")

        self.assertEqual(len(result.entries), 9)
        self.assertEqual(result.skippedLines, 1)
        self.assertEqual(result.consumedLines, 10)
        self.assertNotIn(5, result.lineIndexes)
        self.assertIsInstance(result.entries[0], UserLogEntry)
        self.assertIsInstance(result.entries[-1], AssistantLogEntry)

    def test_schema_failures_are_skipped(self) -> None:
        content = "\n".join([_user("u-1"), json.dumps({"type": "user", "uuid": "u-2"}), json.dumps({"type": "bogus"})]) + "\n"
        result = parse_json_lines(content)
        self.assertEqual(len(result.entries), 1)
        self.assertEqual(result.skippedLines, 2)
        self.assertEqual(result.consumedLines, 3)

    def test_blank_lines_do_not_count(self) -> None:
        result = parse_json_lines("\n\n" + _user("u-1") + "\n   \n" + _user("u-2") + "\n\n")
        self.assertEqual(result.lineIndexes, [0, 1])
        self.assertEqual(result.consumedLines, 2)

    def test_all_invalid_raises(self) -> None:
        with self.assertRaises(ParserError):
            parse_json_lines("{bad\nstill bad\n")

    def test_empty_content_yields_nothing(self) -> None:
        result = parse_json_lines("")
        self.assertEqual(result.entries, [])
        self.assertEqual(result.consumedLines, 0)

    def test_unterminated_fragment_is_left_pending(self) -> None:
        result = parse_json_lines(_user("u-1") + "\n" + '{"type": "user", "uu')
        self.assertEqual(len(result.entries), 1)
        self.assertEqual(result.consumedLines, 1)
        self.assertEqual(result.skippedLines, 0)
        self.assertTrue(result.pendingTail)

    def test_only_a_partial_write_is_not_an_error(self) -> None:
        result = parse_json_lines('{"type": "assi')
        self.assertEqual(result.entries, [])
        self.assertEqual(result.consumedLines, 0)
        self.assertTrue(result.pendingTail)

    def test_complete_last_line_without_newline_is_consumed(self) -> None:
        result = parse_json_lines(_user("u-1") + "\n" + _user("u-2"))
        self.assertEqual(result.consumedLines, 2)
        self.assertFalse(result.pendingTail)

    def test_undecodable_line_is_skipped(self) -> None:
        # Bytes that are not UTF-8 arrive as lone surrogates.
        content = "\n".join([_user("u-1"), '{"type": "user", "note": "\udcff"}', _user("u-2")]) + "\n"
        result = parse_json_lines(content)
        self.assertEqual(len(result.entries), 2)
        self.assertEqual(result.lineIndexes, [0, 2])
        self.assertEqual(result.skippedLines, 1)
        self.assertEqual(result.consumedLines, 3)

    def test_undecodable_unterminated_tail_is_left_pending(self) -> None:
        result = parse_json_lines(_user("u-1") + "\n" + '{"type": "user", "note": "\udce2\udc82')
        self.assertEqual(result.consumedLines, 1)
        self.assertEqual(result.skippedLines, 0)
        self.assertTrue(result.pendingTail)

    def test_head_digest_fingerprints_first_consumed_line(self) -> None:
        first = _user("u-1")
        result = parse_json_lines("\n" + first + "\n" + _user("u-2") + "\n")
        self.assertEqual(result.headDigest, line_digest(first))
        self.assertNotEqual(result.headDigest, line_digest(_user("u-2")))
        self.assertEqual(parse_json_lines('{"type": "us').headDigest, "")

    def test_summary_entries_and_unknown_fields(self) -> None:
        payload = json.loads(_user("u-1"))
        payload["gitBranch"] = "main"
        content = "\n".join([
            json.dumps({"type": "summary", "summary": "Fixing the parser", "leafUuid": "u-1"}),
            json.dumps(payload),
        ]) + "\n"
        result = parse_json_lines(content)
        self.assertIsInstance(result.entries[0], SummaryLogEntry)
        self.assertEqual(result.entries[1].model_extra.get("gitBranch"), "main")


class _CountingReader:
    def __init__(self, fs: InMemoryFileSystem) -> None:
        self.fs = fs
        self.calls = 0

    async def read_file(self, file_path: str, encoding: str = "utf-8") -> str:
        self.calls += 1
        return await self.fs.read_file(file_path, encoding)

    async def file_exists(self, file_path: str) -> bool:
        return await self.fs.file_exists(file_path)


class ClaudeLogParserTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.fs = InMemoryFileSystem()
        self.reader = _CountingReader(self.fs)
        self.parser = ClaudeLogParser(self.reader)

    async def test_parse_file_derives_identity(self) -> None:
        self.fs.write("/root/myproj/abc123.jsonl", _user("u-1") + "\n" + _assistant("a-1") + "\n")
        parsed = await self.parser.parse_file("/root/myproj/abc123.jsonl")
        self.assertEqual(parsed.projectName, "myproj")
        self.assertEqual(parsed.sessionId, "abc123")
        self.assertEqual(len(parsed.entries), 2)
        self.assertEqual(parsed.rawLines[0], _user("u-1"))

    async def test_bad_path_fails_before_reading(self) -> None:
        with self.assertRaises(ParserError):
            await self.parser.parse_file("/root/myproj/abc123.log")
        self.assertEqual(self.reader.calls, 0)

    async def test_read_failure_wraps_cause(self) -> None:
        self.fs.write("/root/myproj/abc123.jsonl", _user("u-1") + "\n")
        self.fs.fail_reads("/root/myproj/abc123.jsonl")
        with self.assertRaises(ParserError) as ctx:
            await self.parser.parse_file("/root/myproj/abc123.jsonl")
        self.assertIsInstance(ctx.exception.cause, FileReaderError)
        self.assertEqual(ctx.exception.to_dict()["type"], "PARSER_ERROR")

    async def test_file_with_no_valid_lines_fails(self) -> None:
        self.fs.write("/root/myproj/abc123.jsonl", "nope\n")
        with self.assertRaises(ParserError):
            await self.parser.parse_file("/root/myproj/abc123.jsonl")


class TimestampTests(unittest.TestCase):
    def test_normalize_timestamp_is_fixed_width_utc(self) -> None:
        self.assertEqual(normalize_timestamp("2025-01-01T10:00:00Z"), "2025-01-01T10:00:00.000000Z")
        self.assertEqual(normalize_timestamp("2025-01-01T12:00:00+02:00"), "2025-01-01T10:00:00.000000Z")
        self.assertEqual(normalize_timestamp("not a date"), "")
        self.assertEqual(normalize_timestamp(None), "")


if __name__ == "__main__":
    unittest.main()
