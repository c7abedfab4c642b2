from __future__ import annotations

from pathlib import Path
from typing import Callable

from rich.text import Text
from textual import events
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical
from textual.geometry import Size
from textual.message import Message
from textual.screen import ModalScreen
from textual.scroll_view import ScrollView
from textual.strip import Strip
from textual.widgets import Button, Footer, Header, Input, Static

from .debounce import SearchDebouncer
from .selection import PRIMARY_BUTTON
from .session import AnnotationSession, PendingComment
from .viewer_render import line_number_width, render_line
from .workspace import ReviewWorkspace, SessionError


POINTER_DOWN = "down"
POINTER_MOVE = "move"
POINTER_UP = "up"
POINTER_LEAVE = "leave"

# Textual numbers mouse buttons from 1; the session uses 0 for primary.
TEXTUAL_LEFT_BUTTON = 1

# Gutter: status bar, number, deletion marker, comment marker, gap.
GUTTER_EXTRA_CELLS = 4


def format_comment_label(pending: PendingComment) -> str:
    count = pending.end_line - pending.start_line + 1
    noun = "line" if count == 1 else "lines"
    return f"Comment on {pending.label} ({count} {noun})"


class CommentModal(ModalScreen[str | None]):
    CSS = """
    CommentModal {
        align: center middle;
    }
    #dialog {
        width: 70%;
        max-width: 96;
        border: round #8338ec;
        padding: 1 2;
        background: #0b0f19;
        height: auto;
    }
    #quote {
        color: #91a2bb;
        max-height: 8;
    }
    #buttons {
        height: auto;
        layout: horizontal;
        align: right middle;
        padding-top: 1;
    }
    """

    BINDINGS = [Binding("escape", "cancel", "Cancel")]

    def __init__(self, pending: PendingComment) -> None:
        super().__init__()
        self.pending = pending

    def compose(self) -> ComposeResult:
        quote = "\n".join(f"> {line}" for line in self.pending.line_content[:6])
        if len(self.pending.line_content) > 6:
            quote += f"\n> ... ({len(self.pending.line_content) - 6} more)"
        with Vertical(id="dialog"):
            yield Static(Text(format_comment_label(self.pending), style="bold"))
            yield Static(Text(quote), id="quote")
            yield Input(placeholder="Write a review comment...", id="comment_input")
            with Horizontal(id="buttons"):
                yield Button("Cancel", id="cancel")
                yield Button("Save", id="ok", variant="primary")

    def on_mount(self) -> None:
        self.query_one("#comment_input", Input).focus()

    def action_cancel(self) -> None:
        self.dismiss(None)

    def on_input_submitted(self, event: Input.Submitted) -> None:
        self._submit(event.value)

    def on_button_pressed(self, event: Button.Pressed) -> None:
        if event.button.id == "cancel":
            self.dismiss(None)
            return
        self._submit(self.query_one("#comment_input", Input).value)

    def _submit(self, value: str) -> None:
        stripped = value.strip()
        if not stripped:
            self.app.bell()
            return
        self.dismiss(stripped)


class FileLinesView(ScrollView, can_focus=True):
    """Virtualized file body; only rows inside the viewport are rendered."""

    class Pointer(Message):
        def __init__(self, kind: str, line_number: int | None, button: int = PRIMARY_BUTTON) -> None:
            super().__init__()
            self.kind = kind
            self.line_number = line_number
            self.button = button

    def __init__(self, *, id: str | None = None) -> None:
        super().__init__(id=id)
        self.session: AnnotationSession | None = None
        self.placeholder: Text = Text("Loading...", style="dim")
        self._dragging = False

    def show_session(self, session: AnnotationSession | None) -> None:
        previous = self.session
        self.session = session
        if session is None:
            self.virtual_size = Size(0, 1)
        elif previous is None or previous.file_path != session.file_path or previous.line_count != session.line_count:
            longest = max((len(line.expandtabs()) for line in session.raw_lines), default=0)
            width = line_number_width(session) + GUTTER_EXTRA_CELLS + longest
            self.virtual_size = Size(width, session.line_count)
        self.refresh()

    def show_placeholder(self, placeholder: Text) -> None:
        self.placeholder = placeholder
        self.show_session(None)

    def line_at(self, event: events.MouseEvent) -> int | None:
        if self._dragging:
            offset = event.get_content_offset_capture(self)
        else:
            offset = event.get_content_offset(self)
            if offset is None:
                return None
        return self.scroll_offset.y + offset.y + 1

    def render_line(self, y: int) -> Strip:
        scroll_x, scroll_y = self.scroll_offset
        width = self.size.width
        session = self.session
        if session is None:
            if y != 0:
                return Strip.blank(width)
            return Strip(list(self.placeholder.render(self.app.console))).crop(0, width)
        line_number = scroll_y + y + 1
        if line_number > session.line_count:
            return Strip.blank(width)
        text = render_line(session.line_view(line_number), line_number_width(session))
        text.expand_tabs()
        return Strip(list(text.render(self.app.console))).crop(scroll_x, scroll_x + width)

    def on_mouse_down(self, event: events.MouseDown) -> None:
        button = PRIMARY_BUTTON if event.button == TEXTUAL_LEFT_BUTTON else event.button
        if button == PRIMARY_BUTTON:
            self._dragging = True
            self.capture_mouse()
        self.post_message(self.Pointer(POINTER_DOWN, self.line_at(event), button))

    def on_mouse_move(self, event: events.MouseMove) -> None:
        self.post_message(self.Pointer(POINTER_MOVE, self.line_at(event)))

    def on_mouse_up(self, event: events.MouseUp) -> None:
        if self._dragging:
            self._dragging = False
            self.release_mouse()
        self.post_message(self.Pointer(POINTER_UP, self.line_at(event)))

    def on_leave(self, event: events.Leave) -> None:
        self.post_message(self.Pointer(POINTER_LEAVE, None))


class AnnotatedFileApp(App[None]):
    CSS = """
    Screen { layout: vertical; }
    #topbar { height: 3; border: round #3a86ff; padding: 0 1; }
    #lines { height: 1fr; border: round #4cc9f0; }
    #search { height: 3; border: round #2ec4b6; margin: 0 1; display: none; }
    #search.open { display: block; }
    #detail { height: auto; max-height: 8; border: round #8338ec; padding: 0 1; }
    """

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("/", "open_search", "Search"),
        Binding("ctrl+f", "open_search", "Search", show=False),
        Binding("n", "next_match", "Next"),
        Binding("N", "previous_match", "Prev"),
        Binding("c", "comment", "Comment"),
        Binding("d", "delete_comment", "Delete comment"),
        Binding("r", "reload", "Reload"),
        Binding("escape", "escape", "Clear"),
    ]

    def __init__(
        self,
        workspace: ReviewWorkspace,
        file_path: str | Path,
        *,
        initial_query: str | None = None,
        start_line: int | None = None,
    ) -> None:
        super().__init__()
        self.workspace = workspace
        self.file_path = workspace.relative_path(file_path)
        self.initial_query = initial_query
        self.start_line = start_line
        self.debouncer = SearchDebouncer(self._apply_search_query, delay=workspace.config.search_debounce_sec)

    @property
    def session(self) -> AnnotationSession | None:
        return self.workspace.session

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        yield Static("", id="topbar")
        yield FileLinesView(id="lines")
        yield Input(placeholder="Search in file (literal, case-insensitive)...", id="search")
        yield Static("", id="detail")
        yield Footer()

    def on_mount(self) -> None:
        self.title = f"diffanno: {self.file_path}"
        self.query_one("#lines", FileLinesView).focus()
        self._refresh_topbar()
        self.run_worker(self.load_file(self.file_path), exclusive=True, group="load")

    async def load_file(self, path: str) -> None:
        self.debouncer.cancel()
        lines = self.query_one("#lines", FileLinesView)
        lines.show_placeholder(Text(f"Loading {path}...", style="dim"))
        outcome = await self.workspace.open_file(path)
        if outcome.stale:
            return
        self.file_path = outcome.path
        if outcome.error is not None:
            self._show_error(outcome.error)
            return
        lines.show_session(outcome.session)
        if self.initial_query:
            query = self.initial_query
            self.initial_query = None
            self._open_search_input(query)
            self._apply_search_query(query)
        if self.start_line:
            lines.scroll_to(y=max(0, self.start_line - 1), animate=False)
        self._refresh_panels()

    def _show_error(self, error: SessionError) -> None:
        placeholder = Text()
        placeholder.append(error.title, style="bold #c63e51")
        placeholder.append(f"  {error.path}: {error.message}", style="dim")
        self.query_one("#lines", FileLinesView).show_placeholder(placeholder)
        self._refresh_panels()

    def _update(self, change: Callable[[AnnotationSession], AnnotationSession]) -> None:
        before = self.session
        after = self.workspace.update(change)
        if after is before:
            return
        self.query_one("#lines", FileLinesView).show_session(after)
        self._refresh_panels()

    def _refresh_panels(self) -> None:
        self._refresh_topbar()
        self._refresh_detail()

    def _refresh_topbar(self) -> None:
        topbar = self.query_one("#topbar", Static)
        session = self.session
        text = Text(no_wrap=True, overflow="ellipsis")
        text.append(self.file_path or "-", style="bold")
        if session is None:
            error = self.workspace.error
            text.append(f"  {error.title}" if error is not None else "  loading", style="dim")
            topbar.update(text)
            return
        statuses = list(session.line_status.values())
        text.append(f"  lines={session.line_count}", style="dim")
        text.append(f"  +{statuses.count('add')}", style="bold #1f8f49")
        if statuses.count("modify"):
            text.append(f"  ~{statuses.count('modify')}", style="bold #d4a72c")
        text.append(f"  -@{len(session.deletion_markers)}", style="bold #c63e51")
        text.append(f"  comments={len(session.saved_comments)}", style="dim")
        if session.search_query:
            text.append(f"  search {session.search_query!r} {session.match_position_label()}", style="bold #ff9f1c")
        elif self.debouncer.pending:
            text.append("  searching...", style="dim")
        topbar.update(text)

    def _refresh_detail(self) -> None:
        detail = self.query_one("#detail", Static)
        session = self.session
        if session is None:
            detail.update("")
            return
        text = Text()
        selection = session.selection
        if selection is not None:
            verb = "selecting" if session.is_selecting else "selected"
            text.append(f"{verb} L{selection.start_line}-{selection.end_line} ({len(selection)} lines)  c: comment  esc: clear\n", style="bold #3a86ff")
        focus_line = selection.end_line if selection is not None else session.hovered_line
        if focus_line is not None:
            for comment in session.comments_for_line(focus_line):
                text.append(f"L{comment.start_line}-{comment.end_line}: ", style="bold #c8b75b")
                text.append(f"{comment.text}\n")
        if not text.plain:
            text.append("drag line numbers to select, c to comment, d to delete, / to search", style="dim")
        text.rstrip()
        detail.update(text)

    # Pointer

    def on_file_lines_view_pointer(self, message: FileLinesView.Pointer) -> None:
        line = message.line_number
        if message.kind == POINTER_DOWN:
            if line is not None:
                self._update(lambda session: session.pointer_down(line, message.button))
        elif message.kind == POINTER_MOVE:
            if line is None:
                return
            self._update(lambda session: session.pointer_enter(line).hover(line))
        elif message.kind == POINTER_UP:
            self._update(lambda session: session.pointer_up())
        elif message.kind == POINTER_LEAVE:
            self._update(lambda session: session.hover(None))

    # Comments

    def action_comment(self) -> None:
        session = self.session
        if session is None:
            return
        if session.selection is not None:
            self._update(lambda current: current.begin_comment())
        elif session.hovered_line is not None:
            hovered = session.hovered_line
            self._update(lambda current: current.begin_comment(hovered))
        session = self.session
        if session is None or session.pending_comment is None:
            self.notify("Select lines (or hover one) to comment", timeout=1.5)
            return

        def _on_dismiss(result: str | None) -> None:
            if result is None:
                self._update(lambda current: current.cancel_comment())
                return
            outcome = self.workspace.submit_comment(result)
            self.query_one("#lines", FileLinesView).show_session(self.session)
            self._refresh_panels()
            if outcome.error is not None:
                self.notify(f"Comment save failed: {outcome.error}", severity="error", timeout=3.0)
            elif outcome.comment is not None:
                self.notify(f"Comment saved on L{outcome.comment.start_line}-{outcome.comment.end_line}", timeout=1.2)

        self.push_screen(CommentModal(session.pending_comment), callback=_on_dismiss)

    def action_delete_comment(self) -> None:
        session = self.session
        if session is None:
            return
        selection = session.selection
        focus_line = selection.end_line if selection is not None else session.hovered_line
        comments = session.comments_for_line(focus_line) if focus_line is not None else ()
        if not comments:
            self.notify("No comment on the focused line", timeout=1.5)
            return
        outcome = self.workspace.delete_comment(comments[-1].id)
        self.query_one("#lines", FileLinesView).show_session(self.session)
        self._refresh_panels()
        if outcome.error is not None:
            self.notify(f"Comment delete failed: {outcome.error}", severity="error", timeout=3.0)
        elif outcome.comment is not None:
            self.notify(f"Comment deleted from L{outcome.comment.start_line}-{outcome.comment.end_line}", timeout=1.2)

    # Search

    def _open_search_input(self, value: str | None = None) -> Input:
        search = self.query_one("#search", Input)
        search.add_class("open")
        if value is not None:
            search.value = value
        self._update(lambda session: session.open_search())
        return search

    def action_open_search(self) -> None:
        if self.session is None:
            return
        self._open_search_input().focus()

    def on_input_changed(self, event: Input.Changed) -> None:
        if event.input.id != "search":
            return
        self.debouncer.schedule(event.value)
        self._refresh_topbar()

    def on_input_submitted(self, event: Input.Submitted) -> None:
        if event.input.id != "search":
            return
        if self.debouncer.pending:
            self.debouncer.flush()
        else:
            self.action_next_match()

    def _apply_search_query(self, query: str) -> None:
        self._update(lambda session: session.set_search_query(query))
        self._scroll_to_current_match()
        self._refresh_topbar()

    def _scroll_to_current_match(self) -> None:
        session = self.session
        match = session.current_match() if session is not None else None
        if match is None:
            return
        lines = self.query_one("#lines", FileLinesView)
        top = lines.scroll_offset.y
        height = max(1, lines.scrollable_content_region.height)
        if top <= match.line_number < top + height:
            return
        lines.scroll_to(y=max(0, match.line_number - height // 2), animate=False)

    def action_next_match(self) -> None:
        self.debouncer.flush()
        self._update(lambda session: session.next_match())
        self._scroll_to_current_match()

    def action_previous_match(self) -> None:
        self.debouncer.flush()
        self._update(lambda session: session.previous_match())
        self._scroll_to_current_match()

    def _close_search(self) -> None:
        self.debouncer.cancel()
        search = self.query_one("#search", Input)
        search.remove_class("open")
        search.value = ""
        self._update(lambda session: session.close_search())
        self.query_one("#lines", FileLinesView).focus()

    def action_escape(self) -> None:
        session = self.session
        if session is None:
            return
        if session.search_open:
            self._close_search()
            return
        self._update(lambda current: current.cancel_comment())

    def action_reload(self) -> None:
        self.run_worker(self.load_file(self.file_path), exclusive=True, group="load")


def launch_annotated_viewer(
    workspace: ReviewWorkspace,
    file_path: str | Path,
    *,
    initial_query: str | None = None,
    start_line: int | None = None,
) -> int:
    app = AnnotatedFileApp(workspace, file_path, initial_query=initial_query, start_line=start_line)
    app.run()
    return 0
