from __future__ import annotations

import html
import re

from rich.console import Console
from rich.panel import Panel
from rich.style import Style
from rich.table import Table
from rich.text import Text

from .session import AnnotationSession, LineView
from .text_search import CURRENT_MATCH_CLASS, MATCH_CLASS, TagToken, tokenize_markup
from .workspace import SessionError

_CLASS_RE = re.compile(r"""class=["']([^"']*)["']""")
_CLOSE_RE = re.compile(r"^</\s*[A-Za-z]")

MATCH_STYLE = Style.parse("bold #1e1a06 on #ffe7a1")
CURRENT_MATCH_STYLE = Style.parse("bold #200307 on #ff9f1c")
SELECTED_STYLE = Style.parse("on #1a2f54")
HOVER_STYLE = Style.parse("on #1b2333")


def status_style(status: str | None) -> str:
    if status == "add":
        return "bold #1f8f49"
    if status == "modify":
        return "bold #d4a72c"
    if status == "delete":
        return "bold #c63e51"
    return "dim #91a2bb"


def token_style(css_class: str) -> Style:
    if not css_class:
        return Style()
    if css_class in {MATCH_CLASS, CURRENT_MATCH_CLASS}:
        return CURRENT_MATCH_STYLE if css_class == CURRENT_MATCH_CLASS else MATCH_STYLE
    head = css_class[0]
    if css_class in {"nf", "fm"}:
        return Style.parse("#82aaff")
    if css_class in {"nc", "nn"}:
        return Style.parse("bold #ffcb6b")
    if css_class == "nb" or css_class == "bp":
        return Style.parse("#89ddff")
    if css_class == "nd":
        return Style.parse("#c792ea")
    if head == "k" or css_class == "ow":
        return Style.parse("bold #c792ea")
    if head == "s":
        return Style.parse("#c3e88d")
    if head == "c":
        return Style.parse("italic #697098")
    if head == "m":
        return Style.parse("#f78c6c")
    if head == "o":
        return Style.parse("#89ddff")
    if css_class in {"gd"}:
        return Style.parse("#ff5370")
    if css_class in {"gi"}:
        return Style.parse("#c3e88d")
    return Style()


def markup_to_text(markup: str) -> Text:
    """Convert highlighter/search HTML into rich Text without interpreting it as rich markup."""
    rendered = Text(no_wrap=True, overflow="ellipsis")
    stack: list[Style] = []
    for token in tokenize_markup(markup):
        if isinstance(token, TagToken):
            if _CLOSE_RE.match(token.markup):
                if stack:
                    stack.pop()
                continue
            if token.markup.endswith("/>"):
                continue
            match = _CLASS_RE.search(token.markup)
            classes = match.group(1).split() if match else []
            style = Style()
            for css_class in classes:
                style += token_style(css_class)
            stack.append(style)
            continue
        combined = Style()
        for style in stack:
            combined += style
        rendered.append(html.unescape(token.text), style=combined)
    return rendered


def render_gutter(view: LineView, number_width: int) -> Text:
    gutter = Text(no_wrap=True)
    bar = "▌" if view.status else " "
    gutter.append(bar, style=status_style(view.status))
    number_style = "bold #13231a on #aef2be" if view.is_selected else status_style(view.status)
    gutter.append(str(view.line_number).rjust(number_width), style=number_style)
    gutter.append("▾" if view.has_deletion_marker else " ", style="bold #c63e51")
    if view.comments:
        gutter.append("●", style="bold #c8b75b")
    elif view.show_comment_button:
        gutter.append("+", style="bold #3a86ff")
    else:
        gutter.append(" ")
    gutter.append(" ")
    return gutter


def render_line(view: LineView, number_width: int) -> Text:
    line = render_gutter(view, number_width)
    line.append_text(markup_to_text(view.html))
    if view.is_selected:
        line.stylize_before(SELECTED_STYLE)
    elif view.is_hovered:
        line.stylize_before(HOVER_STYLE)
    return line


def line_number_width(session: AnnotationSession) -> int:
    return max(4, len(str(session.line_count)))


def render_file_view(
    console: Console,
    session: AnnotationSession,
    *,
    start_line: int = 1,
    max_lines: int | None = None,
) -> None:
    count = session.line_count if max_lines is None else max_lines
    width = line_number_width(session)
    table = Table.grid(padding=(0, 0))
    table.add_column(no_wrap=True)
    for view in session.line_views(start_line, count):
        table.add_row(render_line(view, width))
        for comment in view.comments:
            label = f"L{comment.start_line}" if comment.start_line == comment.end_line else f"L{comment.start_line}-{comment.end_line}"
            table.add_row(Text(f"{' ' * (width + 4)}COMMENT {label}: {comment.text}", style="bold #1e1a06 on #ffe7a1"))
    added = sum(1 for status in session.line_status.values() if status == "add")
    modified = sum(1 for status in session.line_status.values() if status == "modify")
    subtitle = f"+{added} ~{modified} deletions@{len(session.deletion_markers)}"
    console.print(Panel(table, title=session.file_path, subtitle=subtitle, border_style="blue"))


def render_session_error(console: Console, error: SessionError) -> None:
    body = Table.grid(padding=(0, 2))
    body.add_column(style="bold cyan")
    body.add_column()
    body.add_row("file", error.path)
    body.add_row("reason", error.message)
    console.print(Panel(body, title=error.title, border_style="red"))


def render_search_summary(console: Console, session: AnnotationSession) -> None:
    if not session.search_query:
        return
    table = Table(title=f"Search: {session.search_query!r} ({session.match_position_label()})", header_style="bold magenta")
    table.add_column("line", justify="right", style="cyan")
    table.add_column("col", justify="right")
    table.add_column("text", overflow="ellipsis")
    for match in session.search_matches:
        raw = session.raw_lines[match.line_number] if match.line_number < session.line_count else ""
        snippet = Text(raw)
        snippet.stylize(MATCH_STYLE, match.start_index, match.end_index)
        table.add_row(str(match.line_number + 1), str(match.start_index + 1), snippet)
    console.print(table)


def render_comments(console: Console, session: AnnotationSession) -> None:
    if not session.saved_comments:
        return
    table = Table(title=f"Comments ({len(session.saved_comments)})", header_style="bold magenta")
    table.add_column("lines", style="cyan", no_wrap=True)
    table.add_column("comment")
    table.add_column("created", style="dim", no_wrap=True)
    for comment in session.saved_comments:
        table.add_row(f"{comment.start_line}-{comment.end_line}", comment.text, comment.created_at or "-")
    console.print(table)
