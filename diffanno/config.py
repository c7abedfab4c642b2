from __future__ import annotations

import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from .providers import DEFAULT_BINARY_EXTENSIONS

MAX_FILE_BYTES = 1024 * 1024
DEFAULT_DEBOUNCE_MS = 150
MAX_DEBOUNCE_MS = 2000


@dataclass(frozen=True)
class ViewerConfig:
    max_file_bytes: int = MAX_FILE_BYTES
    search_debounce_ms: int = DEFAULT_DEBOUNCE_MS
    mark_modifications: bool = False
    diff_ref: str = "HEAD"
    comments_path: str = ".diffanno/comments.json"
    binary_extensions: tuple[str, ...] = DEFAULT_BINARY_EXTENSIONS

    @property
    def search_debounce_sec(self) -> float:
        return self.search_debounce_ms / 1000.0

    def with_overrides(self, **overrides: Any) -> "ViewerConfig":
        values = {key: value for key, value in overrides.items() if value is not None}
        return validate_config(replace(self, **values))


def _as_int(section: dict[str, Any], key: str, default: int) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise RuntimeError(f"viewer.{key} must be an integer, got {value!r}")
    return value


def validate_config(config: ViewerConfig) -> ViewerConfig:
    if config.max_file_bytes < 1:
        raise RuntimeError("viewer.max_file_bytes must be >= 1")
    if not 0 <= config.search_debounce_ms <= MAX_DEBOUNCE_MS:
        raise RuntimeError(f"viewer.search_debounce_ms must be within 0..{MAX_DEBOUNCE_MS}")
    if not config.diff_ref.strip():
        raise RuntimeError("viewer.diff_ref must not be empty")
    return config


def parse_viewer_config(data: dict[str, Any]) -> ViewerConfig:
    section = data.get("viewer") or {}
    if not isinstance(section, dict):
        raise RuntimeError("[viewer] must be a table")

    mark_modifications = section.get("mark_modifications", False)
    if not isinstance(mark_modifications, bool):
        raise RuntimeError("viewer.mark_modifications must be true or false")

    raw_extensions = section.get("binary_extensions")
    if raw_extensions is None:
        binary_extensions = DEFAULT_BINARY_EXTENSIONS
    elif isinstance(raw_extensions, list):
        binary_extensions = tuple(
            value if value.startswith(".") else f".{value}"
            for value in (str(item).strip().lower() for item in raw_extensions)
            if value
        )
    else:
        raise RuntimeError("viewer.binary_extensions must be an array of strings")

    return validate_config(
        ViewerConfig(
            max_file_bytes=_as_int(section, "max_file_bytes", MAX_FILE_BYTES),
            search_debounce_ms=_as_int(section, "search_debounce_ms", DEFAULT_DEBOUNCE_MS),
            mark_modifications=mark_modifications,
            diff_ref=str(section.get("diff_ref") or "HEAD"),
            comments_path=str(section.get("comments_path") or ".diffanno/comments.json"),
            binary_extensions=binary_extensions,
        )
    )


def load_viewer_config(path: Path) -> ViewerConfig:
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as error:
        raise RuntimeError(f"Config not found: {path}") from error
    except tomllib.TOMLDecodeError as error:
        raise RuntimeError(f"Invalid TOML: {error}") from error
    return parse_viewer_config(data)
