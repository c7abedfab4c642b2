from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from .comment_store import CommentSink, MemoryCommentStore, ReviewComment
from .config import ViewerConfig
from .hunk_index import Hunk
from .hunk_source import GitHunkProvider
from .providers import FileReader, Highlighter, HunkProvider, LocalFileReader, PygmentsHighlighter, is_binary_path
from .session import AnnotationSession

logger = logging.getLogger(__name__)

ERROR_TOO_LARGE = "too_large"
ERROR_UNREADABLE = "unreadable"
ERROR_BINARY = "binary"

ERROR_TITLES = {
    ERROR_TOO_LARGE: "File too large",
    ERROR_UNREADABLE: "Failed to load file content",
    ERROR_BINARY: "Binary file - cannot display",
}


@dataclass(frozen=True)
class SessionError:
    kind: str
    path: str
    message: str

    @property
    def title(self) -> str:
        return ERROR_TITLES.get(self.kind, "Cannot display file")


@dataclass(frozen=True)
class SessionOutcome:
    path: str
    session: AnnotationSession | None = None
    error: SessionError | None = None
    stale: bool = False


@dataclass(frozen=True)
class SubmitResult:
    comment: ReviewComment | None = None
    error: str | None = None


async def _call(func: Callable[..., Any], *args: Any) -> Any:
    if inspect.iscoroutinefunction(func):
        return await func(*args)
    return await asyncio.to_thread(func, *args)


class ReviewWorkspace:
    """Opens files of one working tree into annotation sessions.

    Only the most recent ``open_file`` call may install its session; results of
    superseded calls are reported as stale and dropped.
    """

    def __init__(
        self,
        base_path: Path,
        *,
        reader: FileReader | None = None,
        hunk_provider: HunkProvider | None = None,
        comment_sink: CommentSink | None = None,
        highlighter: Highlighter | None = None,
        config: ViewerConfig | None = None,
        changed_files: set[str] | None = None,
    ) -> None:
        self.base_path = Path(base_path)
        self.config = config or ViewerConfig()
        self.reader = reader or LocalFileReader()
        self.hunk_provider = hunk_provider or GitHunkProvider(self.config.diff_ref)
        self.comment_sink = comment_sink or MemoryCommentStore()
        self.highlighter = highlighter or PygmentsHighlighter()
        self.session: AnnotationSession | None = None
        self.error: SessionError | None = None
        self.current_path: str | None = None
        self._changed_files = changed_files
        self._generation = 0

    @property
    def generation(self) -> int:
        return self._generation

    def relative_path(self, path: str | Path) -> str:
        candidate = Path(path)
        if candidate.is_absolute():
            try:
                return candidate.relative_to(self.base_path.resolve()).as_posix()
            except ValueError:
                try:
                    return candidate.relative_to(self.base_path).as_posix()
                except ValueError:
                    return candidate.as_posix()
        return candidate.as_posix()

    def absolute_path(self, relative_path: str) -> Path:
        candidate = Path(relative_path)
        return candidate if candidate.is_absolute() else self.base_path / candidate

    async def changed_files(self, *, refresh: bool = False) -> set[str]:
        if self._changed_files is None or refresh:
            try:
                self._changed_files = set(await _call(self.hunk_provider.changed_files, self.base_path))
            except Exception as error:  # noqa: BLE001
                logger.warning("Could not list changed files under %s: %s", self.base_path, error)
                self._changed_files = set()
        return set(self._changed_files)

    def close(self) -> None:
        self._generation += 1
        self.session = None
        self.error = None
        self.current_path = None

    def _fail(self, generation: int, path: str, kind: str, message: str) -> SessionOutcome:
        error = SessionError(kind=kind, path=path, message=message)
        if generation == self._generation:
            self.error = error
        logger.info("%s: %s (%s)", error.title, path, message)
        return SessionOutcome(path=path, error=error)

    async def open_file(self, path: str | Path) -> SessionOutcome:
        self._generation += 1
        generation = self._generation
        relative = self.relative_path(path)
        self.session = None
        self.error = None
        self.current_path = relative

        if is_binary_path(relative, self.config.binary_extensions):
            return self._fail(generation, relative, ERROR_BINARY, "binary files bypass annotation")

        try:
            text = await _call(self.reader.read_file, self.absolute_path(relative))
        except Exception as error:  # noqa: BLE001
            if generation != self._generation:
                return SessionOutcome(path=relative, stale=True)
            return self._fail(generation, relative, ERROR_UNREADABLE, str(error))
        if generation != self._generation:
            logger.debug("Dropping stale load of %s", relative)
            return SessionOutcome(path=relative, stale=True)

        size = len(text.encode("utf-8"))
        if size > self.config.max_file_bytes:
            return self._fail(
                generation,
                relative,
                ERROR_TOO_LARGE,
                f"{size} bytes exceeds the {self.config.max_file_bytes} byte limit",
            )

        hunks: list[Hunk] = []
        if relative in await self.changed_files():
            try:
                hunks = list(await _call(self.hunk_provider.get_file_hunks, self.base_path, relative))
            except Exception as error:  # noqa: BLE001
                logger.warning("Failed to load hunks for %s: %s", relative, error)
        if generation != self._generation:
            logger.debug("Dropping stale load of %s", relative)
            return SessionOutcome(path=relative, stale=True)

        try:
            saved = self.comment_sink.comments_for(relative)
        except Exception as error:  # noqa: BLE001
            logger.warning("Failed to load comments for %s: %s", relative, error)
            saved = []

        try:
            session = AnnotationSession.create(
                relative,
                text,
                hunks,
                highlighter=self.highlighter,
                saved_comments=saved,
                mark_modifications=self.config.mark_modifications,
            )
        except Exception as error:  # noqa: BLE001
            logger.exception("Failed to build session for %s", relative)
            return self._fail(generation, relative, ERROR_UNREADABLE, str(error))
        self.session = session
        logger.debug(
            "Opened %s: %d lines, %d hunks, %d comments",
            relative,
            session.line_count,
            len(hunks),
            len(saved),
        )
        return SessionOutcome(path=relative, session=session)

    def update(self, change: Callable[[AnnotationSession], AnnotationSession]) -> AnnotationSession | None:
        if self.session is not None:
            self.session = change(self.session)
        return self.session

    def submit_comment(self, text: str) -> SubmitResult:
        if self.session is None:
            return SubmitResult()
        session, draft = self.session.submit_comment(text)
        self.session = session
        if draft is None:
            return SubmitResult()
        try:
            comment = self.comment_sink.submit(
                draft.file_path,
                draft.start_line,
                draft.end_line,
                draft.line_content,
                draft.text,
            )
        except Exception as error:  # noqa: BLE001
            logger.error("Failed to save comment for %s: %s", draft.file_path, error)
            return SubmitResult(error=str(error))
        self.session = self.session.add_saved_comment(comment)
        return SubmitResult(comment=comment)

    def delete_comment(self, comment_id: str) -> SubmitResult:
        if self.session is None:
            return SubmitResult()
        target = next((comment for comment in self.session.saved_comments if comment.id == comment_id), None)
        if target is None:
            return SubmitResult()
        try:
            removed = self.comment_sink.delete(target.file_path, comment_id)
        except Exception as error:  # noqa: BLE001
            logger.error("Failed to delete comment %s for %s: %s", comment_id, target.file_path, error)
            return SubmitResult(error=str(error))
        if not removed:
            logger.warning("Comment %s was already gone from the store", comment_id)
        self.session = self.session.remove_saved_comment(comment_id)
        return SubmitResult(comment=target)
