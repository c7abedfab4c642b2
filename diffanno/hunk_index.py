from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable

from rapidfuzz import fuzz

logger = logging.getLogger(__name__)

HUNK_HEADER_RE = re.compile(
    r"^@@ -(?P<old_start>\d+)(?:,(?P<old_count>\d+))? "
    r"\+(?P<new_start>\d+)(?:,(?P<new_count>\d+))? @@(?P<section>.*)$"
)

STATUS_ADD = "add"
STATUS_MODIFY = "modify"
STATUS_DELETE = "delete"
VALID_LINE_STATUSES = {STATUS_ADD, STATUS_MODIFY, STATUS_DELETE}

PAIR_SIMILARITY_FLOOR = 0.20


@dataclass(frozen=True)
class Hunk:
    id: str
    header: str
    lines: tuple[str, ...]
    patch: str = ""


@dataclass(frozen=True)
class HunkRange:
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    section: str = ""


@dataclass(frozen=True)
class HunkIndex:
    line_status: dict[int, str] = field(default_factory=dict)
    deletion_markers: frozenset[int] = frozenset()

    def status_for(self, line_number: int) -> str | None:
        return self.line_status.get(line_number)

    def has_deletion_marker(self, line_number: int) -> bool:
        return line_number in self.deletion_markers


def parse_hunk_header(header: str) -> HunkRange | None:
    match = HUNK_HEADER_RE.match(str(header).rstrip("\r\n"))
    if not match:
        return None
    return HunkRange(
        old_start=int(match.group("old_start")),
        old_count=int(match.group("old_count") or "1"),
        new_start=int(match.group("new_start")),
        new_count=int(match.group("new_count") or "1"),
        section=match.group("section").strip(),
    )


def _is_add(line: str) -> bool:
    return line.startswith("+")


def _is_delete(line: str) -> bool:
    return line.startswith("-")


def _line_similarity(left: str, right: str) -> float:
    if not left and not right:
        return 1.0
    return float(fuzz.ratio(left, right)) / 100.0


def _paired_add_offsets(lines: list[str]) -> set[int]:
    """Return offsets of add lines that pair with a deleted line in the same change run.

    A change run is a maximal block of consecutive add/delete lines. Inside a run,
    candidates are paired greedily by similarity; unrelated lines stay unpaired.
    """
    paired: set[int] = set()
    index = 0
    while index < len(lines):
        if not (_is_add(lines[index]) or _is_delete(lines[index])):
            index += 1
            continue
        block_start = index
        while index < len(lines) and (_is_add(lines[index]) or _is_delete(lines[index])):
            index += 1
        deletes = [(offset, lines[offset][1:]) for offset in range(block_start, index) if _is_delete(lines[offset])]
        adds = [(offset, lines[offset][1:]) for offset in range(block_start, index) if _is_add(lines[offset])]
        if not deletes or not adds:
            continue

        candidates: list[tuple[float, int, int]] = []
        for delete_offset, delete_text in deletes:
            for add_offset, add_text in adds:
                candidates.append((_line_similarity(delete_text, add_text), delete_offset, add_offset))
        candidates.sort(key=lambda item: (-item[0], item[1], item[2]))

        used_deletes: set[int] = set()
        for score, delete_offset, add_offset in candidates:
            if delete_offset in used_deletes or add_offset in paired:
                continue
            if score < PAIR_SIMILARITY_FLOOR:
                continue
            used_deletes.add(delete_offset)
            paired.add(add_offset)
    return paired


def index_hunks(hunks: Iterable[Hunk], *, mark_modifications: bool = False) -> HunkIndex:
    line_status: dict[int, str] = {}
    deletion_markers: set[int] = set()

    for hunk in hunks:
        parsed = parse_hunk_header(hunk.header)
        if parsed is None:
            logger.debug("Skipping hunk %s with malformed header: %r", hunk.id, hunk.header)
            continue

        lines = [str(line) for line in hunk.lines]
        modified_offsets = _paired_add_offsets(lines) if mark_modifications else set()
        cursor = parsed.new_start
        for offset, line in enumerate(lines):
            if _is_add(line):
                line_status[cursor] = STATUS_MODIFY if offset in modified_offsets else STATUS_ADD
                cursor += 1
            elif _is_delete(line):
                # Removed lines have no new-file position; mark the line above the gap.
                if cursor > 1:
                    deletion_markers.add(cursor - 1)
            elif line.startswith(" "):
                cursor += 1

    return HunkIndex(line_status=line_status, deletion_markers=frozenset(deletion_markers))
