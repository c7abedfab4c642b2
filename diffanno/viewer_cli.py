from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from rich.console import Console

from .comment_store import JsonCommentStore
from .config import ViewerConfig, load_viewer_config
from .log_setup import LOG_LEVELS, configure_logging
from .session import AnnotationSession
from .viewer_render import render_comments, render_file_view, render_search_summary, render_session_error
from .workspace import ReviewWorkspace, SessionOutcome

DEFAULT_CONFIG_NAME = ".diffanno.toml"


def parse_view_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="View one working-tree file annotated with its diff hunks.")
    parser.add_argument("path", help="File to open (relative to --repo or absolute)")
    parser.add_argument("--repo", default=".", help="Working tree root (default: current directory)")
    parser.add_argument("--search", help="Literal, case-insensitive search query to highlight")
    parser.add_argument(
        "--ui",
        choices=["textual", "plain"],
        default="textual",
        help="Viewer mode (default: textual).",
    )
    parser.add_argument("--config", help=f"TOML config file (default: <repo>/{DEFAULT_CONFIG_NAME} when present)")
    parser.add_argument("--comments", help="Comment store JSON (default: viewer.comments_path under --repo)")
    parser.add_argument("--diff-ref", help="Revision the working tree is diffed against")
    parser.add_argument(
        "--mark-modifications",
        action="store_true",
        default=None,
        help="Classify additions paired with a deletion as modified lines",
    )
    parser.add_argument("--lines", dest="line_range", help="Restrict output to a line range, e.g. 10-40")
    parser.add_argument("--comment", help="Attach a comment to --lines and exit (plain mode)")
    parser.add_argument("--log-level", choices=LOG_LEVELS, default="WARNING", help="Log level (default: WARNING)")
    parser.add_argument("--log-file", help="Write logs to this file instead of stderr")
    parser.add_argument("--json", dest="as_json", action="store_true", help="Output annotations as JSON")
    return parser.parse_args(argv)


def parse_line_range(value: str) -> tuple[int, int]:
    start_text, separator, end_text = value.strip().partition("-")
    try:
        start = int(start_text)
        end = int(end_text) if separator else start
    except ValueError as error:
        raise ValueError(f"Invalid line range: {value!r} (expected A-B)") from error
    if start < 1 or end < start:
        raise ValueError(f"Invalid line range: {value!r} (expected 1 <= A <= B)")
    return start, end


def resolve_config(args: argparse.Namespace, repo: Path) -> ViewerConfig:
    if args.config:
        config = load_viewer_config(Path(args.config))
    elif (repo / DEFAULT_CONFIG_NAME).is_file():
        config = load_viewer_config(repo / DEFAULT_CONFIG_NAME)
    else:
        config = ViewerConfig()
    return config.with_overrides(diff_ref=args.diff_ref, mark_modifications=args.mark_modifications)


def build_workspace(args: argparse.Namespace) -> ReviewWorkspace:
    repo = Path(args.repo).resolve()
    if not repo.is_dir():
        raise RuntimeError(f"Repository directory not found: {repo}")
    config = resolve_config(args, repo)
    comments_path = Path(args.comments) if args.comments else repo / config.comments_path
    return ReviewWorkspace(repo, comment_sink=JsonCommentStore(comments_path), config=config)


def select_range(session: AnnotationSession, start: int, end: int) -> AnnotationSession:
    return session.pointer_down(start).pointer_enter(end).pointer_up()


def session_payload(session: AnnotationSession, *, line_range: tuple[int, int] | None = None) -> dict[str, Any]:
    first, last = line_range or (1, session.line_count)

    def _in_range(line_number: int) -> bool:
        return first <= line_number <= last

    return {
        "file": session.file_path,
        "lineCount": session.line_count,
        "lineStatus": {
            str(line_number): status
            for line_number, status in sorted(session.line_status.items())
            if _in_range(line_number)
        },
        "deletionMarkers": sorted(line for line in session.deletion_markers if _in_range(line)),
        "search": {
            "query": session.search_query,
            "matches": [
                {"line": match.line_number + 1, "start": match.start_index, "end": match.end_index}
                for match in session.search_matches
                if _in_range(match.line_number + 1)
            ],
        },
        "comments": [
            {"filePath": comment.file_path, **comment.to_record()}
            for comment in session.saved_comments
            if _in_range(comment.end_line)
        ],
    }


def error_payload(outcome: SessionOutcome) -> dict[str, Any]:
    error = outcome.error
    return {
        "file": outcome.path,
        "error": {
            "kind": error.kind if error else "unknown",
            "title": error.title if error else "Cannot display file",
            "message": error.message if error else "",
        },
    }


def run_view(argv: list[str]) -> int:
    args = parse_view_args(argv)
    configure_logging(args.log_level, log_file=Path(args.log_file) if args.log_file else None)
    console = Console()

    line_range: tuple[int, int] | None = None
    try:
        if args.line_range:
            line_range = parse_line_range(args.line_range)
        if args.comment is not None and line_range is None:
            raise ValueError("--comment requires --lines")
    except ValueError as error:
        print(f"[error] {error}", file=sys.stderr)
        return 2

    try:
        workspace = build_workspace(args)
    except Exception as error:  # noqa: BLE001
        print(f"[error] {error}", file=sys.stderr)
        return 1

    if args.ui == "textual" and not args.as_json and args.comment is None:
        from .viewer_textual import launch_annotated_viewer

        if args.log_file is None:
            # Keep log records off the terminal the Textual app draws on.
            configure_logging("CRITICAL")
        return launch_annotated_viewer(
            workspace,
            args.path,
            initial_query=args.search,
            start_line=line_range[0] if line_range else None,
        )

    outcome = asyncio.run(workspace.open_file(args.path))
    if outcome.session is None:
        if args.as_json:
            print(json.dumps(error_payload(outcome), ensure_ascii=False, indent=2))
        else:
            render_session_error(console, outcome.error)
        return 1

    session = outcome.session
    if line_range is not None and line_range[0] > session.line_count:
        print(f"[error] Line range {args.line_range} is outside 1-{session.line_count}", file=sys.stderr)
        return 2

    if args.comment is not None:
        start, end = line_range
        workspace.update(lambda current: select_range(current, start, min(end, current.line_count)).begin_comment())
        result = workspace.submit_comment(args.comment)
        if result.error is not None:
            print(f"[error] {result.error}", file=sys.stderr)
            return 1
        if result.comment is None:
            print("[error] Comment text is empty.", file=sys.stderr)
            return 2
        session = workspace.session

    if args.search:
        session = workspace.update(lambda current: current.open_search().set_search_query(args.search))

    if args.as_json:
        print(json.dumps(session_payload(session, line_range=line_range), ensure_ascii=False, indent=2))
        return 0

    start_line, end_line = line_range or (1, session.line_count)
    render_file_view(console, session, start_line=start_line, max_lines=end_line - start_line + 1)
    render_search_summary(console, session)
    render_comments(console, session)
    return 0


def main() -> int:
    return run_view(sys.argv[1:])
