from __future__ import annotations

import html
import re
from dataclasses import dataclass

MATCH_CLASS = "search-match"
CURRENT_MATCH_CLASS = "search-match-current"

_TAG_SPLIT_RE = re.compile(r"(<[^<>]*>)")
_UNIT_RE = re.compile(r"&(?:#[0-9]+|#[xX][0-9a-fA-F]+|[A-Za-z][A-Za-z0-9]*);|.", re.DOTALL)
_MARK_OPEN_RE = re.compile(r"^<mark\b[^>]*>$", re.IGNORECASE)
_MARK_CLOSE_RE = re.compile(r"^</mark\s*>$", re.IGNORECASE)
_OWN_MARK_RE = re.compile(
    r"""^<mark\s+class=["'](?:%s|%s)["']\s*>$""" % (re.escape(CURRENT_MATCH_CLASS), re.escape(MATCH_CLASS)),
    re.IGNORECASE,
)


@dataclass(frozen=True)
class SearchMatch:
    line_number: int
    start_index: int
    end_index: int


@dataclass(frozen=True)
class TextToken:
    text: str


@dataclass(frozen=True)
class TagToken:
    markup: str


MarkupToken = TextToken | TagToken


@dataclass(frozen=True)
class ProjectionResult:
    html: str
    match_count_on_line: int


def escape_pattern(query: str) -> str:
    return re.escape(query)


def _compile_query(query: str) -> re.Pattern[str]:
    return re.compile(escape_pattern(query), re.IGNORECASE)


def find_matches(text: str, query: str) -> list[SearchMatch]:
    """Case-insensitive literal search, one line at a time.

    Line numbers are 0-based indexes into ``text.split("\\n")``; offsets are
    character offsets within that raw line. An empty query matches nothing.
    """
    if not query or not text:
        return []
    pattern = _compile_query(query)
    matches: list[SearchMatch] = []
    for line_number, line in enumerate(str(text).split("\n")):
        for match in pattern.finditer(line):
            if match.end() == match.start():
                continue
            matches.append(SearchMatch(line_number, match.start(), match.end()))
    return matches


def tokenize_markup(markup: str) -> list[MarkupToken]:
    tokens: list[MarkupToken] = []
    for part in _TAG_SPLIT_RE.split(str(markup)):
        if not part:
            continue
        if part.startswith("<") and part.endswith(">"):
            tokens.append(TagToken(part))
        elif tokens and isinstance(tokens[-1], TextToken):
            tokens[-1] = TextToken(tokens[-1].text + part)
        else:
            tokens.append(TextToken(part))
    return tokens


def render_tokens(tokens: list[MarkupToken]) -> str:
    return "".join(token.text if isinstance(token, TextToken) else token.markup for token in tokens)


def strip_search_marks(tokens: list[MarkupToken]) -> list[MarkupToken]:
    """Drop previously injected match wrappers and re-join the text they split."""
    stripped: list[MarkupToken] = []
    open_marks: list[bool] = []
    for token in tokens:
        if isinstance(token, TagToken):
            if _MARK_OPEN_RE.match(token.markup):
                own = bool(_OWN_MARK_RE.match(token.markup))
                open_marks.append(own)
                if own:
                    continue
            elif _MARK_CLOSE_RE.match(token.markup) and open_marks:
                if open_marks.pop():
                    continue
            stripped.append(token)
            continue
        if stripped and isinstance(stripped[-1], TextToken):
            stripped[-1] = TextToken(stripped[-1].text + token.text)
        else:
            stripped.append(token)
    return stripped


def _text_units(text: str) -> list[tuple[str, str]]:
    # (source spelling, visible text); entities stay whole so they are never split.
    units: list[tuple[str, str]] = []
    for match in _UNIT_RE.finditer(text):
        source = match.group(0)
        visible = html.unescape(source) if len(source) > 1 else source
        units.append((source, visible))
    return units


def markup_text(markup: str) -> str:
    parts: list[str] = []
    for token in tokenize_markup(markup):
        if isinstance(token, TextToken):
            parts.append(html.unescape(token.text))
    return "".join(parts)


def project_highlights(line_html: str, query: str, current_match_offset: int) -> ProjectionResult:
    if not query:
        return ProjectionResult(html=line_html, match_count_on_line=0)

    tokens = strip_search_marks(tokenize_markup(line_html))
    token_units: list[list[tuple[str, str]]] = []
    unit_positions: list[tuple[int, int]] = []
    flat_parts: list[str] = []
    for token_index, token in enumerate(tokens):
        units = _text_units(token.text) if isinstance(token, TextToken) else []
        token_units.append(units)
        for unit_index, (_source, visible) in enumerate(units):
            for _char in visible:
                unit_positions.append((token_index, unit_index))
            flat_parts.append(visible)
    flat = "".join(flat_parts)

    unit_match: dict[tuple[int, int], int] = {}
    match_count = 0
    for match in _compile_query(query).finditer(flat):
        if match.end() == match.start():
            continue
        for position in range(match.start(), match.end()):
            unit_match.setdefault(unit_positions[position], match_count)
        match_count += 1

    if match_count == 0:
        return ProjectionResult(html=render_tokens(tokens), match_count_on_line=0)

    out: list[str] = []
    for token_index, token in enumerate(tokens):
        if isinstance(token, TagToken):
            out.append(token.markup)
            continue
        run_match: int | None = None
        run_parts: list[str] = []
        for unit_index, (source, _visible) in enumerate(token_units[token_index]):
            match_id = unit_match.get((token_index, unit_index))
            if match_id != run_match and run_parts:
                out.append(_wrap_run(run_parts, run_match, current_match_offset))
                run_parts = []
            run_match = match_id
            run_parts.append(source)
        if run_parts:
            out.append(_wrap_run(run_parts, run_match, current_match_offset))
    return ProjectionResult(html="".join(out), match_count_on_line=match_count)


def _wrap_run(parts: list[str], match_id: int | None, current_match_offset: int) -> str:
    content = "".join(parts)
    if match_id is None:
        return content
    css_class = CURRENT_MATCH_CLASS if match_id == current_match_offset else MATCH_CLASS
    return f'<mark class="{css_class}">{content}</mark>'
