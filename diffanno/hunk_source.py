from __future__ import annotations

import hashlib
import json
import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .hunk_index import Hunk, parse_hunk_header

logger = logging.getLogger(__name__)


@dataclass
class FileDiff:
    a_path: str | None
    b_path: str | None
    meta: list[str] = field(default_factory=list)
    hunks: list[Hunk] = field(default_factory=list)

    @property
    def path(self) -> str:
        return self.b_path or self.a_path or "UNKNOWN"


def run_git(repo: Path, args: list[str]) -> str:
    process = subprocess.run(
        ["git", "-C", str(repo), *args],
        capture_output=True,
        text=True,
        encoding="utf-8",
        errors="replace",
        check=False,
    )
    if process.returncode != 0:
        message = process.stderr.strip() or process.stdout.strip()
        raise RuntimeError(f"git {' '.join(args)} failed: {message}")
    return process.stdout


def normalize_diff_path(raw: str) -> str | None:
    value = raw.strip()
    if value == "/dev/null":
        return None
    if value.startswith("a/") or value.startswith("b/"):
        return value[2:]
    return value


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def hunk_id(file_path: str, header: str, lines: list[str] | tuple[str, ...]) -> str:
    payload = canonical_json({"filePath": file_path, "header": header, "lines": list(lines)}).encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def _finish_hunk(file_entry: FileDiff, header: str | None, lines: list[str]) -> None:
    if header is None:
        return
    file_path = file_entry.path
    patch = "\n".join([header, *lines]) + "\n"
    file_entry.hunks.append(
        Hunk(
            id=hunk_id(file_path, header, lines),
            header=header,
            lines=tuple(lines),
            patch=patch,
        )
    )


def _counted_body_line(line: str, remaining: list[int]) -> str | None:
    """Consume one hunk body line against the header's ``[old, new]`` counts.

    While either count is open, ``--- x`` and ``+++ x`` are removed/added lines
    rather than file headers. Returns the line to keep, or ``None`` when the line
    does not belong to the hunk.
    """
    if line.startswith("\\"):
        return line
    old_left, new_left = remaining
    if line.startswith("+") and new_left > 0:
        remaining[1] -= 1
        return line
    if line.startswith("-") and old_left > 0:
        remaining[0] -= 1
        return line
    if (line == "" or line.startswith(" ")) and old_left > 0 and new_left > 0:
        remaining[0] -= 1
        remaining[1] -= 1
        # git emits an empty context line as a bare space; some tools strip it.
        return line or " "
    return None


def _uncounted_body_line(line: str) -> str | None:
    if line.startswith((" ", "\\ ")) or (line.startswith("+") and not line.startswith("+++ ")) or (
        line.startswith("-") and not line.startswith("--- ")
    ):
        return line
    if line == "":
        return " "
    return None


def parse_unified_diff(diff_text: str) -> list[FileDiff]:
    lines = diff_text.splitlines()
    files: list[FileDiff] = []
    current_file: FileDiff | None = None
    hunk_header: str | None = None
    hunk_lines: list[str] = []
    remaining: list[int] | None = None
    index = 0

    while index < len(lines):
        line = lines[index]

        if line.startswith("diff --git "):
            if current_file is not None:
                _finish_hunk(current_file, hunk_header, hunk_lines)
                files.append(current_file)
            parts = line.split()
            current_file = FileDiff(
                a_path=normalize_diff_path(parts[2] if len(parts) > 2 else ""),
                b_path=normalize_diff_path(parts[3] if len(parts) > 3 else ""),
                meta=[line],
            )
            hunk_header = None
            hunk_lines = []
            index += 1
            continue

        if current_file is None:
            index += 1
            continue

        if line.startswith("@@ "):
            _finish_hunk(current_file, hunk_header, hunk_lines)
            parsed = parse_hunk_header(line)
            if parsed is None:
                logger.debug("Unsupported hunk header in %s: %s", current_file.path, line)
                remaining = None
            else:
                remaining = [parsed.old_count, parsed.new_count]
            hunk_header = line
            hunk_lines = []
            index += 1
            continue

        if hunk_header is not None:
            if remaining is not None:
                body_line = _counted_body_line(line, remaining)
            else:
                body_line = _uncounted_body_line(line)
            if body_line is not None:
                hunk_lines.append(body_line)
                index += 1
                continue
            _finish_hunk(current_file, hunk_header, hunk_lines)
            hunk_header = None
            hunk_lines = []
            continue

        if line.startswith("--- "):
            current_file.a_path = normalize_diff_path(line[4:])
        elif line.startswith("+++ "):
            current_file.b_path = normalize_diff_path(line[4:])
        current_file.meta.append(line)
        index += 1

    if current_file is not None:
        _finish_hunk(current_file, hunk_header, hunk_lines)
        files.append(current_file)
    return files


class GitHunkProvider:
    """Hunks for one file of a working tree, diffed against ``diff_ref``."""

    def __init__(self, diff_ref: str = "HEAD") -> None:
        self.diff_ref = diff_ref

    def changed_files(self, base_path: Path) -> set[str]:
        tracked = run_git(base_path, ["diff", "--name-only", "--no-color", self.diff_ref])
        untracked = run_git(base_path, ["ls-files", "--others", "--exclude-standard"])
        paths = {value.strip() for value in tracked.splitlines() if value.strip()}
        paths.update(value.strip() for value in untracked.splitlines() if value.strip())
        return paths

    def get_file_hunks(self, base_path: Path, relative_path: str) -> list[Hunk]:
        diff_text = run_git(
            base_path,
            ["diff", "--no-color", "--no-ext-diff", self.diff_ref, "--", relative_path],
        )
        if not diff_text.strip():
            diff_text = self._untracked_diff(base_path, relative_path)
        hunks: list[Hunk] = []
        for file_entry in parse_unified_diff(diff_text):
            hunks.extend(file_entry.hunks)
        return hunks

    def _untracked_diff(self, base_path: Path, relative_path: str) -> str:
        process = subprocess.run(
            ["git", "-C", str(base_path), "diff", "--no-color", "--no-index", "--", "/dev/null", relative_path],
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            check=False,
        )
        # --no-index exits with 1 when the files differ.
        if process.returncode not in {0, 1}:
            message = process.stderr.strip() or process.stdout.strip()
            raise RuntimeError(f"git diff --no-index failed: {message}")
        return process.stdout
