from __future__ import annotations

import datetime as dt
import hashlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)

STORE_FORMAT = "diffanno-comments"
STORE_VERSION = 1


def iso_utc_now() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class ReviewComment:
    id: str
    file_path: str
    start_line: int
    end_line: int
    line_content: tuple[str, ...]
    text: str
    created_at: str = ""

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "startLine": self.start_line,
            "endLine": self.end_line,
            "lineContent": list(self.line_content),
            "text": self.text,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_record(cls, file_path: str, record: dict[str, Any]) -> "ReviewComment | None":
        try:
            start_line = int(record.get("startLine"))
            end_line = int(record.get("endLine"))
        except (TypeError, ValueError):
            return None
        text = str(record.get("text", "")).strip()
        if not text or start_line < 1 or end_line < start_line:
            return None
        raw_content = record.get("lineContent")
        line_content = tuple(str(value) for value in raw_content) if isinstance(raw_content, list) else ()
        return cls(
            id=str(record.get("id", "")),
            file_path=file_path,
            start_line=start_line,
            end_line=end_line,
            line_content=line_content,
            text=text,
            created_at=str(record.get("createdAt", "")),
        )


def build_comment(
    file_path: str,
    start_line: int,
    end_line: int,
    line_content: tuple[str, ...] | list[str],
    text: str,
    *,
    created_at: str | None = None,
) -> ReviewComment:
    stamp = created_at or iso_utc_now()
    payload = json.dumps(
        {
            "filePath": file_path,
            "startLine": start_line,
            "endLine": end_line,
            "text": text,
            "createdAt": stamp,
        },
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return ReviewComment(
        id=hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16],
        file_path=file_path,
        start_line=start_line,
        end_line=end_line,
        line_content=tuple(line_content),
        text=text,
        created_at=stamp,
    )


class CommentSink(Protocol):
    def submit(
        self,
        file_path: str,
        start_line: int,
        end_line: int,
        line_content: tuple[str, ...] | list[str],
        text: str,
    ) -> ReviewComment: ...

    def comments_for(self, file_path: str) -> list[ReviewComment]: ...

    def delete(self, file_path: str, comment_id: str) -> bool: ...


class MemoryCommentStore:
    def __init__(self) -> None:
        self._comments: dict[str, list[ReviewComment]] = {}

    def submit(self, file_path, start_line, end_line, line_content, text) -> ReviewComment:
        comment = build_comment(file_path, start_line, end_line, line_content, text)
        self._comments.setdefault(file_path, []).append(comment)
        return comment

    def comments_for(self, file_path: str) -> list[ReviewComment]:
        return list(self._comments.get(file_path, []))

    def delete(self, file_path: str, comment_id: str) -> bool:
        comments = self._comments.get(file_path, [])
        kept = [comment for comment in comments if comment.id != comment_id]
        if len(kept) == len(comments):
            return False
        self._comments[file_path] = kept
        return True


class JsonCommentStore:
    """Comments kept in one pretty-printed JSON document, keyed by file path."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {"format": STORE_FORMAT, "version": STORE_VERSION, "comments": {}}
        try:
            doc = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as error:
            raise RuntimeError(f"Invalid JSON: {error}") from error
        if not isinstance(doc, dict) or doc.get("format") != STORE_FORMAT:
            raise RuntimeError(f"Unsupported comment store format: {self.path}")
        if doc.get("version") != STORE_VERSION:
            raise RuntimeError(f"Unsupported comment store version: {doc.get('version')}")
        if not isinstance(doc.get("comments"), dict):
            doc["comments"] = {}
        return doc

    def _write(self, doc: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self.path.exists():
            backup = self.path.with_suffix(self.path.suffix + ".bak")
            if not backup.exists():
                backup.write_text(self.path.read_text(encoding="utf-8"), encoding="utf-8")
        self.path.write_text(json.dumps(doc, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")

    def submit(self, file_path, start_line, end_line, line_content, text) -> ReviewComment:
        doc = self._load()
        comment = build_comment(file_path, start_line, end_line, line_content, text)
        doc["comments"].setdefault(file_path, []).append(comment.to_record())
        self._write(doc)
        logger.info("Saved comment %s for %s:L%d-%d", comment.id, file_path, start_line, end_line)
        return comment

    def comments_for(self, file_path: str) -> list[ReviewComment]:
        records = self._load()["comments"].get(file_path, [])
        if not isinstance(records, list):
            return []
        comments: list[ReviewComment] = []
        for record in records:
            if not isinstance(record, dict):
                continue
            comment = ReviewComment.from_record(file_path, record)
            if comment is not None:
                comments.append(comment)
        return comments

    def delete(self, file_path: str, comment_id: str) -> bool:
        doc = self._load()
        records = doc["comments"].get(file_path)
        if not isinstance(records, list):
            return False
        kept = [record for record in records if not (isinstance(record, dict) and record.get("id") == comment_id)]
        if len(kept) == len(records):
            return False
        if kept:
            doc["comments"][file_path] = kept
        else:
            del doc["comments"][file_path]
        self._write(doc)
        logger.info("Deleted comment %s for %s", comment_id, file_path)
        return True
