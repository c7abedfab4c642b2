import subprocess
import sys
import unittest
from pathlib import Path
from unittest import mock

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from diffanno import hunk_source
from diffanno.hunk_index import index_hunks


SAMPLE_DIFF = "\n".join(
    [
        "diff --git a/src/a.py b/src/a.py",
        "index 1111111..2222222 100644",
        "--- a/src/a.py",
        "+++ b/src/a.py",
        "@@ -1,2 +1,3 @@ def demo():",
        " line1",
        "-line2",
        "+line2_changed",
        "+line3",
        "\\ No newline at end of file",
        "diff --git a/src/new.py b/src/new.py",
        "new file mode 100644",
        "--- /dev/null",
        "+++ b/src/new.py",
        "@@ -0,0 +1,2 @@",
        "+alpha",
        "+beta",
    ]
)


def completed(stdout: str, returncode: int = 0, stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=["git"], returncode=returncode, stdout=stdout, stderr=stderr)


class TestParseUnifiedDiff(unittest.TestCase):
    def test_normalize_diff_path(self):
        self.assertEqual(hunk_source.normalize_diff_path("a/src/app.ts"), "src/app.ts")
        self.assertEqual(hunk_source.normalize_diff_path("b/src/app.ts"), "src/app.ts")
        self.assertIsNone(hunk_source.normalize_diff_path("/dev/null"))
        self.assertEqual(hunk_source.normalize_diff_path("src/app.ts"), "src/app.ts")

    def test_parse_files_and_hunks(self):
        files = hunk_source.parse_unified_diff(SAMPLE_DIFF)
        self.assertEqual([entry.path for entry in files], ["src/a.py", "src/new.py"])
        self.assertIsNone(files[1].a_path)

        hunk = files[0].hunks[0]
        self.assertEqual(hunk.header, "@@ -1,2 +1,3 @@ def demo():")
        self.assertEqual(hunk.lines[-1], "\\ No newline at end of file")
        self.assertEqual(len(hunk.id), 64)
        self.assertTrue(hunk.patch.startswith("@@ -1,2 +1,3 @@"))

    def test_hunk_id_is_stable(self):
        first = hunk_source.parse_unified_diff(SAMPLE_DIFF)[0].hunks[0].id
        second = hunk_source.parse_unified_diff(SAMPLE_DIFF)[0].hunks[0].id
        self.assertEqual(first, second)

    def test_parsed_hunks_feed_indexer(self):
        files = hunk_source.parse_unified_diff(SAMPLE_DIFF)
        index = index_hunks(files[0].hunks)
        self.assertEqual(index.line_status, {2: "add", 3: "add"})
        self.assertEqual(index.deletion_markers, frozenset({1}))

        new_file = index_hunks(files[1].hunks)
        self.assertEqual(new_file.line_status, {1: "add", 2: "add"})

    def test_malformed_header_is_kept_for_indexer_to_skip(self):
        diff_text = "\n".join(
            [
                "diff --git a/x.txt b/x.txt",
                "--- a/x.txt",
                "+++ b/x.txt",
                "@@ weird @@",
                "+skipped",
                "@@ -5,0 +6,1 @@",
                "+kept",
            ]
        )
        hunks = hunk_source.parse_unified_diff(diff_text)[0].hunks
        self.assertEqual(len(hunks), 2)
        self.assertEqual(index_hunks(hunks).line_status, {6: "add"})

    def test_bare_empty_line_is_context(self):
        diff_text = "\n".join(
            [
                "diff --git a/x.txt b/x.txt",
                "--- a/x.txt",
                "+++ b/x.txt",
                "@@ -1,2 +1,3 @@",
                "",
                "+added",
                " tail",
            ]
        )
        hunk = hunk_source.parse_unified_diff(diff_text)[0].hunks[0]
        self.assertEqual(hunk.lines, (" ", "+added", " tail"))
        self.assertEqual(index_hunks([hunk]).line_status, {2: "add"})

    def test_body_lines_that_look_like_file_headers_stay_in_hunk(self):
        diff_text = "\n".join(
            [
                "diff --git a/q.sql b/q.sql",
                "--- a/q.sql",
                "+++ b/q.sql",
                "@@ -1,3 +1,3 @@",
                " select 1;",
                "--- old comment",
                "+-- new comment",
                " select 2;",
            ]
        )
        file_entry = hunk_source.parse_unified_diff(diff_text)[0]
        self.assertEqual(file_entry.a_path, "q.sql")
        self.assertEqual(
            file_entry.hunks[0].lines,
            (" select 1;", "--- old comment", "+-- new comment", " select 2;"),
        )
        index = index_hunks(file_entry.hunks)
        self.assertEqual(index.line_status, {2: "add"})
        self.assertEqual(index.deletion_markers, frozenset({1}))

    def test_added_line_starting_with_plus_plus_is_counted(self):
        diff_text = "\n".join(
            [
                "diff --git a/x.c b/x.c",
                "--- a/x.c",
                "+++ b/x.c",
                "@@ -1,1 +1,2 @@",
                " int i = 0;",
                "+++ i;",
                "diff --git a/y.c b/y.c",
                "--- a/y.c",
                "+++ b/y.c",
            ]
        )
        files = hunk_source.parse_unified_diff(diff_text)
        self.assertEqual([entry.path for entry in files], ["x.c", "y.c"])
        self.assertEqual(files[0].hunks[0].lines, (" int i = 0;", "+++ i;"))
        self.assertEqual(index_hunks(files[0].hunks).line_status, {2: "add"})

    def test_headers_after_exhausted_hunk_start_next_file(self):
        diff_text = "\n".join(
            [
                "diff --git a/a.txt b/a.txt",
                "--- a/a.txt",
                "+++ b/a.txt",
                "@@ -1,1 +1,1 @@",
                "-old",
                "+new",
                "\\ No newline at end of file",
                "--- a/b.txt",
                "+++ b/b.txt",
            ]
        )
        file_entry = hunk_source.parse_unified_diff(diff_text)[0]
        self.assertEqual(file_entry.hunks[0].lines, ("-old", "+new", "\\ No newline at end of file"))
        self.assertEqual(file_entry.b_path, "b.txt")


class TestGitHunkProvider(unittest.TestCase):
    def test_changed_files_merges_tracked_and_untracked(self):
        provider = hunk_source.GitHunkProvider("main")
        with mock.patch.object(hunk_source, "run_git", side_effect=["src/a.py\n", "notes.txt\n\n"]) as run_git:
            paths = provider.changed_files(Path("/repo"))
        self.assertEqual(paths, {"src/a.py", "notes.txt"})
        first_args = run_git.call_args_list[0].args[1]
        self.assertIn("main", first_args)

    def test_get_file_hunks_uses_diff_output(self):
        provider = hunk_source.GitHunkProvider()
        with mock.patch.object(hunk_source, "run_git", return_value=SAMPLE_DIFF):
            hunks = provider.get_file_hunks(Path("/repo"), "src/a.py")
        self.assertEqual(len(hunks), 2)

    def test_untracked_file_falls_back_to_no_index_diff(self):
        provider = hunk_source.GitHunkProvider()
        untracked = "\n".join(
            [
                "diff --git a/notes.txt b/notes.txt",
                "--- /dev/null",
                "+++ b/notes.txt",
                "@@ -0,0 +1 @@",
                "+hello",
            ]
        )
        with (
            mock.patch.object(hunk_source, "run_git", return_value=""),
            mock.patch.object(hunk_source.subprocess, "run", return_value=completed(untracked, returncode=1)),
        ):
            hunks = provider.get_file_hunks(Path("/repo"), "notes.txt")
        self.assertEqual(index_hunks(hunks).line_status, {1: "add"})

    def test_untracked_diff_failure_raises(self):
        provider = hunk_source.GitHunkProvider()
        with (
            mock.patch.object(hunk_source, "run_git", return_value=""),
            mock.patch.object(hunk_source.subprocess, "run", return_value=completed("", returncode=128, stderr="fatal")),
        ):
            with self.assertRaises(RuntimeError):
                provider.get_file_hunks(Path("/repo"), "notes.txt")

    def test_run_git_raises_on_failure(self):
        with mock.patch.object(hunk_source.subprocess, "run", return_value=completed("", returncode=1, stderr="bad ref")):
            with self.assertRaisesRegex(RuntimeError, "bad ref"):
                hunk_source.run_git(Path("/repo"), ["diff", "nope"])


if __name__ == "__main__":
    unittest.main()
