import asyncio
import json
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from diffanno.comment_store import JsonCommentStore, MemoryCommentStore
from diffanno.config import ViewerConfig
from diffanno.hunk_index import Hunk
from diffanno.session import AnnotationSession
from diffanno.workspace import ERROR_BINARY, ERROR_TOO_LARGE, ERROR_UNREADABLE, ReviewWorkspace


class DictReader:
    def __init__(self, files: dict[str, str]) -> None:
        self.files = files
        self.reads: list[str] = []

    def read_file(self, path: Path) -> str:
        self.reads.append(Path(path).name)
        try:
            return self.files[Path(path).name]
        except KeyError as error:
            raise RuntimeError(f"File not found: {path}") from error


class GatedReader:
    """Async reader whose reads finish only when the test releases them."""

    def __init__(self, files: dict[str, str]) -> None:
        self.files = files
        self.gates: dict[str, asyncio.Event] = {}

    async def read_file(self, path: Path) -> str:
        name = Path(path).name
        gate = self.gates.setdefault(name, asyncio.Event())
        await gate.wait()
        return self.files[name]


class StaticHunks:
    def __init__(self, hunks: dict[str, list[Hunk]], *, fail: bool = False) -> None:
        self.hunks = hunks
        self.fail = fail
        self.requests: list[str] = []

    def changed_files(self, base_path: Path) -> set[str]:
        return set(self.hunks)

    def get_file_hunks(self, base_path: Path, relative_path: str) -> list[Hunk]:
        self.requests.append(relative_path)
        if self.fail:
            raise RuntimeError("git exploded")
        return self.hunks[relative_path]


class FailingSink:
    def submit(self, file_path, start_line, end_line, line_content, text):
        raise RuntimeError("disk full")

    def comments_for(self, file_path):
        return []


class RaisingHighlighter:
    def highlight(self, raw_text, language):
        raise ValueError("lexer blew up")


class ShortHighlighter:
    def highlight(self, raw_text, language):
        return ["only one"]


ADD_LINE_TWO = [Hunk(id="h", header="@@ -1,1 +1,2 @@", lines=(" one", "+two"))]


def make_workspace(files, hunks=None, **kwargs) -> ReviewWorkspace:
    kwargs.setdefault("comment_sink", MemoryCommentStore())
    return ReviewWorkspace(
        Path("/repo"),
        reader=kwargs.pop("reader", DictReader(files)),
        hunk_provider=kwargs.pop("hunk_provider", StaticHunks(hunks or {})),
        **kwargs,
    )


class TestOpenFile(unittest.TestCase):
    def test_open_changed_file_indexes_hunks(self):
        workspace = make_workspace({"a.txt": "one\ntwo\n"}, {"a.txt": ADD_LINE_TWO})
        outcome = asyncio.run(workspace.open_file("a.txt"))
        self.assertIsNone(outcome.error)
        self.assertIs(workspace.session, outcome.session)
        self.assertEqual(outcome.session.line_status, {2: "add"})

    def test_unchanged_file_skips_hunk_provider(self):
        provider = StaticHunks({"a.txt": ADD_LINE_TWO})
        workspace = make_workspace({"b.txt": "x\n"}, hunk_provider=provider)
        outcome = asyncio.run(workspace.open_file("b.txt"))
        self.assertEqual(outcome.session.line_status, {})
        self.assertEqual(provider.requests, [])

    def test_hunk_failure_still_opens_file(self):
        provider = StaticHunks({"a.txt": ADD_LINE_TWO}, fail=True)
        workspace = make_workspace({"a.txt": "one\ntwo\n"}, hunk_provider=provider)
        with self.assertLogs("diffanno.workspace", level="WARNING"):
            outcome = asyncio.run(workspace.open_file("a.txt"))
        self.assertEqual(outcome.session.line_count, 2)
        self.assertEqual(outcome.session.line_status, {})

    def test_absolute_path_is_made_relative(self):
        workspace = make_workspace({"a.txt": "one\ntwo\n"}, {"a.txt": ADD_LINE_TWO})
        outcome = asyncio.run(workspace.open_file(Path("/repo/a.txt")))
        self.assertEqual(outcome.path, "a.txt")
        self.assertEqual(outcome.session.line_status, {2: "add"})

    def test_exact_limit_is_accepted(self):
        config = ViewerConfig(max_file_bytes=1024 * 1024)
        text = "x" * (1024 * 1024)
        workspace = make_workspace({"big.txt": text}, config=config)
        outcome = asyncio.run(workspace.open_file("big.txt"))
        self.assertIsNotNone(outcome.session)

    def test_one_byte_over_limit_is_rejected_before_indexing(self):
        provider = StaticHunks({"big.txt": ADD_LINE_TWO})
        workspace = make_workspace({"big.txt": "x" * (1024 * 1024 + 1)}, hunk_provider=provider)
        outcome = asyncio.run(workspace.open_file("big.txt"))
        self.assertIsNone(outcome.session)
        self.assertEqual(outcome.error.kind, ERROR_TOO_LARGE)
        self.assertEqual(outcome.error.title, "File too large")
        self.assertEqual(provider.requests, [])
        self.assertIs(workspace.error, outcome.error)

    def test_size_is_measured_in_utf8_bytes(self):
        config = ViewerConfig(max_file_bytes=4)
        workspace = make_workspace({"u.txt": "ééé"}, config=config)
        outcome = asyncio.run(workspace.open_file("u.txt"))
        self.assertEqual(outcome.error.kind, ERROR_TOO_LARGE)

    def test_binary_extension_bypasses_reader(self):
        reader = DictReader({"logo.png": "not really"})
        workspace = make_workspace({}, reader=reader)
        outcome = asyncio.run(workspace.open_file("assets/logo.PNG"))
        self.assertEqual(outcome.error.kind, ERROR_BINARY)
        self.assertEqual(outcome.error.title, "Binary file - cannot display")
        self.assertEqual(reader.reads, [])

    def test_unreadable_file(self):
        workspace = make_workspace({})
        outcome = asyncio.run(workspace.open_file("missing.txt"))
        self.assertEqual(outcome.error.kind, ERROR_UNREADABLE)
        self.assertIn("missing.txt", outcome.error.message)
        self.assertEqual(outcome.error.title, "Failed to load file content")

    def test_raising_highlighter_falls_back_to_plain_text(self):
        workspace = make_workspace({"x.py": "a < b\nprint(a)\n"}, highlighter=RaisingHighlighter())
        with self.assertLogs("diffanno.session", level="WARNING"):
            outcome = asyncio.run(workspace.open_file("x.py"))
        self.assertIsNone(outcome.error)
        self.assertEqual(outcome.session.highlighted_lines, ("a &lt; b", "print(a)"))

    def test_short_highlighter_output_falls_back_to_plain_text(self):
        workspace = make_workspace({"x.py": "one\ntwo\n"}, highlighter=ShortHighlighter())
        with self.assertLogs("diffanno.session", level="WARNING"):
            outcome = asyncio.run(workspace.open_file("x.py"))
        self.assertEqual(outcome.session.highlighted_lines, ("one", "two"))

    def test_session_build_failure_becomes_error_outcome(self):
        workspace = make_workspace({"a.txt": "one\n"})
        with mock.patch.object(AnnotationSession, "create", side_effect=ValueError("bad index")):
            with self.assertLogs("diffanno.workspace", level="ERROR"):
                outcome = asyncio.run(workspace.open_file("a.txt"))
        self.assertIsNone(outcome.session)
        self.assertEqual(outcome.error.kind, ERROR_UNREADABLE)
        self.assertEqual(outcome.error.message, "bad index")
        self.assertIsNone(workspace.session)

    def test_stale_load_is_dropped(self):
        reader = GatedReader({"first.txt": "first\n", "second.txt": "second\n"})
        workspace = make_workspace({}, reader=reader)

        async def _run():
            first = asyncio.create_task(workspace.open_file("first.txt"))
            await asyncio.sleep(0)
            second = asyncio.create_task(workspace.open_file("second.txt"))
            await asyncio.sleep(0)
            reader.gates["second.txt"].set()
            second_outcome = await second
            reader.gates["first.txt"].set()
            first_outcome = await first
            return first_outcome, second_outcome

        first_outcome, second_outcome = asyncio.run(_run())
        self.assertTrue(first_outcome.stale)
        self.assertIsNone(first_outcome.session)
        self.assertFalse(second_outcome.stale)
        self.assertEqual(workspace.session.file_path, "second.txt")
        self.assertEqual(workspace.session.raw_lines, ("second",))

    def test_close_discards_inflight_load(self):
        reader = GatedReader({"a.txt": "a\n"})
        workspace = make_workspace({}, reader=reader)

        async def _run():
            task = asyncio.create_task(workspace.open_file("a.txt"))
            await asyncio.sleep(0)
            workspace.close()
            reader.gates["a.txt"].set()
            return await task

        outcome = asyncio.run(_run())
        self.assertTrue(outcome.stale)
        self.assertIsNone(workspace.session)

    def test_changed_files_error_falls_back_to_empty(self):
        class Broken(StaticHunks):
            def changed_files(self, base_path):
                raise RuntimeError("not a git repository")

        workspace = make_workspace({"a.txt": "a\n"}, hunk_provider=Broken({}))
        with self.assertLogs("diffanno.workspace", level="WARNING"):
            outcome = asyncio.run(workspace.open_file("a.txt"))
        self.assertIsNotNone(outcome.session)


class TestComments(unittest.TestCase):
    def test_submit_and_reopen_round_trip(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            store_path = Path(tmpdir) / "comments.json"
            files = {"a.txt": "one\ntwo\nthree\n"}
            workspace = make_workspace(files, comment_sink=JsonCommentStore(store_path))
            asyncio.run(workspace.open_file("a.txt"))
            workspace.update(lambda session: session.pointer_down(2).pointer_enter(3).pointer_up().begin_comment())

            result = workspace.submit_comment("rename this")
            self.assertIsNone(result.error)
            self.assertEqual((result.comment.start_line, result.comment.end_line), (2, 3))
            self.assertIsNone(workspace.session.pending_comment)
            self.assertEqual(workspace.session.line_view(3).comments, (result.comment,))

            doc = json.loads(store_path.read_text(encoding="utf-8"))
            self.assertEqual(doc["comments"]["a.txt"][0]["lineContent"], ["two", "three"])

            reopened = make_workspace(files, comment_sink=JsonCommentStore(store_path))
            outcome = asyncio.run(reopened.open_file("a.txt"))
            self.assertIsNone(outcome.session.pending_comment)
            self.assertEqual([comment.text for comment in outcome.session.line_view(3).comments], ["rename this"])

    def test_submit_without_pending_is_noop(self):
        workspace = make_workspace({"a.txt": "one\n"})
        asyncio.run(workspace.open_file("a.txt"))
        result = workspace.submit_comment("text")
        self.assertIsNone(result.comment)
        self.assertIsNone(result.error)

    def test_sink_failure_is_reported(self):
        workspace = make_workspace({"a.txt": "one\n"}, comment_sink=FailingSink())
        asyncio.run(workspace.open_file("a.txt"))
        workspace.update(lambda session: session.begin_comment(1))
        with self.assertLogs("diffanno.workspace", level="ERROR"):
            result = workspace.submit_comment("text")
        self.assertEqual(result.error, "disk full")
        self.assertEqual(workspace.session.saved_comments, ())

    def test_delete_comment_goes_through_sink(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            store_path = Path(tmpdir) / "comments.json"
            files = {"a.txt": "one\ntwo\n"}
            workspace = make_workspace(files, comment_sink=JsonCommentStore(store_path))
            asyncio.run(workspace.open_file("a.txt"))
            workspace.update(lambda session: session.begin_comment(2))
            saved = workspace.submit_comment("drop me").comment

            result = workspace.delete_comment(saved.id)
            self.assertIsNone(result.error)
            self.assertEqual(result.comment, saved)
            self.assertEqual(workspace.session.line_view(2).comments, ())

            reopened = make_workspace(files, comment_sink=JsonCommentStore(store_path))
            outcome = asyncio.run(reopened.open_file("a.txt"))
            self.assertEqual(outcome.session.saved_comments, ())

    def test_delete_unknown_comment_is_noop(self):
        workspace = make_workspace({"a.txt": "one\n"})
        asyncio.run(workspace.open_file("a.txt"))
        before = workspace.session
        result = workspace.delete_comment("nope")
        self.assertIsNone(result.comment)
        self.assertIsNone(result.error)
        self.assertIs(workspace.session, before)

    def test_delete_failure_keeps_comment(self):
        sink = MemoryCommentStore()
        workspace = make_workspace({"a.txt": "one\n"}, comment_sink=sink)
        asyncio.run(workspace.open_file("a.txt"))
        workspace.update(lambda session: session.begin_comment(1))
        saved = workspace.submit_comment("keep").comment
        with mock.patch.object(sink, "delete", side_effect=RuntimeError("read-only")):
            with self.assertLogs("diffanno.workspace", level="ERROR"):
                result = workspace.delete_comment(saved.id)
        self.assertEqual(result.error, "read-only")
        self.assertEqual(workspace.session.saved_comments, (saved,))


if __name__ == "__main__":
    unittest.main()
