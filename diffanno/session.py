from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Iterable

from .comment_store import ReviewComment
from .hunk_index import Hunk, HunkIndex, index_hunks
from .providers import Highlighter, PygmentsHighlighter, escape_lines, language_for_path
from .selection import (
    IDLE,
    PRIMARY_BUTTON,
    LineSelection,
    PointerDown,
    PointerEnter,
    PointerUp,
    SelectionEvent,
    SelectionState,
    SingleLineComment,
    is_dragging,
    is_line_selected,
    selection_of,
    transition,
)
from .text_search import SearchMatch, find_matches, project_highlights

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingComment:
    start_line: int
    end_line: int
    line_content: tuple[str, ...]

    @property
    def label(self) -> str:
        if self.start_line == self.end_line:
            return f"L{self.start_line}"
        return f"L{self.start_line}-{self.end_line}"


@dataclass(frozen=True)
class CommentDraft:
    file_path: str
    start_line: int
    end_line: int
    line_content: tuple[str, ...]
    text: str


@dataclass(frozen=True)
class LineView:
    line_number: int
    html: str
    status: str | None
    has_deletion_marker: bool
    is_selected: bool
    is_hovered: bool
    match_count: int = 0
    has_current_match: bool = False
    show_comment_button: bool = False
    comments: tuple[ReviewComment, ...] = ()


def split_lines(text: str) -> list[str]:
    lines = text.split("\n")
    if len(lines) > 1 and lines[-1] == "":
        lines.pop()
    return lines


def highlight_lines(highlighter: Highlighter, raw_lines: list[str], language: str | None) -> list[str]:
    """Highlight ``raw_lines``; any highlighter failure degrades to escaped plain text."""
    raw_text = "\n".join(raw_lines)
    try:
        highlighted = list(highlighter.highlight(raw_text, language))
    except Exception as error:  # noqa: BLE001
        logger.warning("Highlighter failed for language %s: %s", language, error)
        return escape_lines(raw_text)
    if len(highlighted) != len(raw_lines):
        logger.warning("Highlighter returned %d lines for %d; using plain text", len(highlighted), len(raw_lines))
        return escape_lines(raw_text)
    return highlighted


def _index_match_lines(matches: Iterable[SearchMatch]) -> dict[int, tuple[int, int]]:
    # 0-based line -> (global index of its first match, match count on the line)
    by_line: dict[int, tuple[int, int]] = {}
    for index, match in enumerate(matches):
        first, count = by_line.get(match.line_number, (index, 0))
        by_line[match.line_number] = (first, count + 1)
    return by_line


@dataclass(frozen=True)
class AnnotationSession:
    """Everything needed to render and interact with one open file.

    Instances are immutable; every interaction returns a new session. A
    different file always gets a freshly created session.
    """

    file_path: str
    file_text: str
    raw_lines: tuple[str, ...]
    highlighted_lines: tuple[str, ...]
    hunk_index: HunkIndex = field(default_factory=HunkIndex)
    selection_state: SelectionState = IDLE
    pending_comment: PendingComment | None = None
    saved_comments: tuple[ReviewComment, ...] = ()
    hovered_line: int | None = None
    search_open: bool = False
    search_query: str = ""
    search_matches: tuple[SearchMatch, ...] = ()
    current_match_index: int = 0
    match_lines: dict[int, tuple[int, int]] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def create(
        cls,
        file_path: str,
        file_text: str,
        hunks: Iterable[Hunk] = (),
        *,
        highlighter: Highlighter | None = None,
        language: str | None = None,
        saved_comments: Iterable[ReviewComment] = (),
        mark_modifications: bool = False,
    ) -> "AnnotationSession":
        text = file_text.replace("\r\n", "\n")
        raw_lines = split_lines(text)
        if language is None:
            language = language_for_path(file_path)
        highlighted = highlight_lines(highlighter or PygmentsHighlighter(), raw_lines, language)
        return cls(
            file_path=file_path,
            file_text=text,
            raw_lines=tuple(raw_lines),
            highlighted_lines=tuple(highlighted),
            hunk_index=index_hunks(hunks, mark_modifications=mark_modifications),
            saved_comments=tuple(saved_comments),
        )

    @property
    def line_count(self) -> int:
        return len(self.raw_lines)

    @property
    def selection(self) -> LineSelection | None:
        return selection_of(self.selection_state)

    @property
    def is_selecting(self) -> bool:
        return is_dragging(self.selection_state)

    @property
    def line_status(self) -> dict[int, str]:
        return self.hunk_index.line_status

    @property
    def deletion_markers(self) -> frozenset[int]:
        return self.hunk_index.deletion_markers

    def _valid_line(self, line_number: int) -> bool:
        return 1 <= line_number <= self.line_count

    def _apply_selection(self, event: SelectionEvent) -> "AnnotationSession":
        state = transition(self.selection_state, event)
        if state == self.selection_state:
            return self
        return replace(self, selection_state=state)

    # Pointer interaction. Lines outside the file come from stale rows and are ignored.

    def pointer_down(self, line_number: int, button: int = PRIMARY_BUTTON) -> "AnnotationSession":
        if button != PRIMARY_BUTTON or not self._valid_line(line_number):
            return self
        session = self._apply_selection(PointerDown(line_number, button))
        if session.pending_comment is not None:
            session = replace(session, pending_comment=None)
        return session

    def pointer_enter(self, line_number: int) -> "AnnotationSession":
        if not self._valid_line(line_number):
            return self
        return self._apply_selection(PointerEnter(line_number))

    def pointer_up(self) -> "AnnotationSession":
        return self._apply_selection(PointerUp())

    def hover(self, line_number: int | None) -> "AnnotationSession":
        if line_number is not None and not self._valid_line(line_number):
            line_number = None
        if line_number == self.hovered_line:
            return self
        return replace(self, hovered_line=line_number)

    # Comments

    def begin_comment(self, line_number: int | None = None) -> "AnnotationSession":
        if line_number is not None:
            if not self._valid_line(line_number):
                return self
            session = self._apply_selection(SingleLineComment(line_number))
        else:
            session = self
        selection = session.selection
        if selection is None:
            return self
        if session.is_selecting:
            session = session._apply_selection(PointerUp())
        pending = PendingComment(
            start_line=selection.start_line,
            end_line=selection.end_line,
            line_content=self.raw_lines[selection.start_line - 1 : selection.end_line],
        )
        return replace(session, pending_comment=pending)

    def submit_comment(self, text: str) -> tuple["AnnotationSession", CommentDraft | None]:
        clean = text.strip()
        if self.pending_comment is None or not clean:
            return self, None
        pending = self.pending_comment
        draft = CommentDraft(
            file_path=self.file_path,
            start_line=pending.start_line,
            end_line=pending.end_line,
            line_content=pending.line_content,
            text=clean,
        )
        return replace(self, pending_comment=None, selection_state=IDLE), draft

    def cancel_comment(self) -> "AnnotationSession":
        if self.pending_comment is None and self.selection is None:
            return self
        return replace(self, pending_comment=None, selection_state=IDLE)

    def add_saved_comment(self, comment: ReviewComment) -> "AnnotationSession":
        return replace(self, saved_comments=(*self.saved_comments, comment))

    def remove_saved_comment(self, comment_id: str) -> "AnnotationSession":
        kept = tuple(comment for comment in self.saved_comments if comment.id != comment_id)
        if len(kept) == len(self.saved_comments):
            return self
        return replace(self, saved_comments=kept)

    def comments_for_line(self, line_number: int) -> tuple[ReviewComment, ...]:
        return tuple(comment for comment in self.saved_comments if comment.end_line == line_number)

    def selected_text(self) -> str:
        selection = self.selection
        if selection is None:
            return ""
        return "\n".join(self.raw_lines[selection.start_line - 1 : selection.end_line])

    # Search

    def open_search(self) -> "AnnotationSession":
        if self.search_open:
            return self
        return replace(self, search_open=True)

    def close_search(self) -> "AnnotationSession":
        return replace(
            self,
            search_open=False,
            search_query="",
            search_matches=(),
            current_match_index=0,
            match_lines={},
        )

    def set_search_query(self, query: str) -> "AnnotationSession":
        if query == self.search_query:
            return self
        matches = tuple(find_matches(self.file_text, query))
        return replace(
            self,
            search_query=query,
            search_matches=matches,
            current_match_index=0,
            match_lines=_index_match_lines(matches),
        )

    def _step_match(self, step: int) -> "AnnotationSession":
        total = len(self.search_matches)
        if total == 0:
            return self
        return replace(self, current_match_index=(self.current_match_index + step) % total)

    def next_match(self) -> "AnnotationSession":
        return self._step_match(1)

    def previous_match(self) -> "AnnotationSession":
        return self._step_match(-1)

    def current_match(self) -> SearchMatch | None:
        if not self.search_matches:
            return None
        return self.search_matches[self.current_match_index]

    def match_position_label(self) -> str:
        total = len(self.search_matches)
        return f"{self.current_match_index + 1 if total else 0}/{total}"

    # Per-line view model

    def line_view(self, line_number: int) -> LineView:
        if not self._valid_line(line_number):
            raise IndexError(f"line {line_number} out of range 1..{self.line_count}")
        index = line_number - 1
        html = self.highlighted_lines[index]
        match_count = 0
        has_current = False
        if self.search_query and index in self.match_lines:
            first, match_count = self.match_lines[index]
            offset = self.current_match_index - first
            has_current = 0 <= offset < match_count
            html = project_highlights(html, self.search_query, offset if has_current else -1).html
        hovered = self.hovered_line == line_number
        return LineView(
            line_number=line_number,
            html=html,
            status=self.hunk_index.status_for(line_number),
            has_deletion_marker=self.hunk_index.has_deletion_marker(line_number),
            is_selected=is_line_selected(self.selection_state, line_number),
            is_hovered=hovered,
            match_count=match_count,
            has_current_match=has_current,
            show_comment_button=hovered and not self.is_selecting,
            comments=self.comments_for_line(line_number),
        )

    def line_views(self, start_line: int, count: int) -> list[LineView]:
        first = max(1, start_line)
        last = min(self.line_count, start_line + count - 1)
        return [self.line_view(line_number) for line_number in range(first, last + 1)]
