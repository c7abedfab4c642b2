from __future__ import annotations

import html
import logging
from pathlib import Path, PurePosixPath
from typing import Any, Iterable, Protocol

from pygments.lexers import get_lexer_by_name
from pygments.token import STANDARD_TYPES
from pygments.util import ClassNotFound

from .hunk_index import Hunk

logger = logging.getLogger(__name__)

DEFAULT_BINARY_EXTENSIONS = (
    ".png", ".jpg", ".jpeg", ".gif", ".bmp", ".ico", ".svg",
    ".pdf", ".zip", ".tar", ".gz", ".rar", ".7z",
    ".exe", ".dll", ".so", ".dylib",
    ".mp3", ".mp4", ".avi", ".mov", ".wmv",
    ".woff", ".woff2", ".ttf", ".eot",
)

EXTENSION_TO_LANGUAGE = {
    ".js": "javascript", ".mjs": "javascript",
    ".jsx": "jsx",
    ".ts": "typescript",
    ".tsx": "tsx",
    ".py": "python",
    ".rs": "rust",
    ".go": "go",
    ".json": "json",
    ".yaml": "yaml", ".yml": "yaml",
    ".sh": "bash", ".bash": "bash", ".zsh": "bash",
    ".css": "css",
    ".scss": "scss",
    ".md": "markdown",
    ".sql": "sql",
    ".java": "java",
    ".c": "c", ".h": "c",
    ".cpp": "cpp", ".cc": "cpp", ".hpp": "cpp",
    ".ex": "elixir", ".exs": "elixir",
    ".rb": "ruby",
    ".html": "html", ".htm": "html",
    ".xml": "xml",
    ".toml": "toml",
}


class FileReader(Protocol):
    def read_file(self, path: Path) -> str: ...


class HunkProvider(Protocol):
    def changed_files(self, base_path: Path) -> set[str]: ...

    def get_file_hunks(self, base_path: Path, relative_path: str) -> list[Hunk]: ...


class Highlighter(Protocol):
    def highlight(self, raw_text: str, language: str | None) -> list[str]: ...


class LocalFileReader:
    def read_file(self, path: Path) -> str:
        try:
            return Path(path).read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError as error:
            raise RuntimeError(f"File not found: {path}") from error
        except IsADirectoryError as error:
            raise RuntimeError(f"Not a file: {path}") from error


def is_binary_path(path: str | Path, extensions: Iterable[str] = DEFAULT_BINARY_EXTENSIONS) -> bool:
    lowered = str(path).lower()
    return any(lowered.endswith(ext.lower()) for ext in extensions)


def language_for_path(path: str | Path) -> str | None:
    suffix = PurePosixPath(str(path).replace("\\", "/")).suffix.lower()
    if not suffix:
        return None
    return EXTENSION_TO_LANGUAGE.get(suffix)


def escape_lines(raw_text: str) -> list[str]:
    return [html.escape(line, quote=False) for line in raw_text.split("\n")]


def _css_class(ttype: Any) -> str:
    while ttype not in STANDARD_TYPES:
        ttype = ttype.parent
    return STANDARD_TYPES[ttype]


class PygmentsHighlighter:
    """One HTML string per raw line, using Pygments short token classes (``k``, ``s2``...)."""

    def highlight(self, raw_text: str, language: str | None) -> list[str]:
        if not raw_text or not language:
            return escape_lines(raw_text)
        try:
            lexer = get_lexer_by_name(language, stripnl=False, ensurenl=False)
        except ClassNotFound:
            return escape_lines(raw_text)

        lines: list[list[str]] = [[]]
        try:
            for ttype, value in lexer.get_tokens(raw_text):
                css_class = _css_class(ttype)
                for index, piece in enumerate(value.split("\n")):
                    if index > 0:
                        lines.append([])
                    if not piece:
                        continue
                    escaped = html.escape(piece, quote=False)
                    if css_class:
                        lines[-1].append(f'<span class="{css_class}">{escaped}</span>')
                    else:
                        lines[-1].append(escaped)
        except Exception as error:  # noqa: BLE001
            logger.warning("Highlighting failed for language %s: %s", language, error)
            return escape_lines(raw_text)

        rendered = ["".join(parts) for parts in lines]
        expected = raw_text.count("\n") + 1
        if len(rendered) != expected:
            logger.debug("Highlighter produced %d lines for %d raw lines; using plain text", len(rendered), expected)
            return escape_lines(raw_text)
        return rendered
