from __future__ import annotations

from dataclasses import dataclass

PRIMARY_BUTTON = 0


@dataclass(frozen=True)
class LineSelection:
    start_line: int
    end_line: int

    @classmethod
    def between(cls, first: int, second: int) -> "LineSelection":
        return cls(min(first, second), max(first, second))

    def contains(self, line_number: int) -> bool:
        return self.start_line <= line_number <= self.end_line

    def __len__(self) -> int:
        return self.end_line - self.start_line + 1


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Dragging:
    anchor: int
    selection: LineSelection


@dataclass(frozen=True)
class Frozen:
    selection: LineSelection


SelectionState = Idle | Dragging | Frozen


@dataclass(frozen=True)
class PointerDown:
    line: int
    button: int = PRIMARY_BUTTON


@dataclass(frozen=True)
class PointerEnter:
    line: int


@dataclass(frozen=True)
class PointerUp:
    pass


@dataclass(frozen=True)
class FileChanged:
    pass


@dataclass(frozen=True)
class SingleLineComment:
    line: int


SelectionEvent = PointerDown | PointerEnter | PointerUp | FileChanged | SingleLineComment

IDLE = Idle()


def transition(state: SelectionState, event: SelectionEvent) -> SelectionState:
    if isinstance(event, FileChanged):
        return IDLE
    if isinstance(event, SingleLineComment):
        return Frozen(LineSelection(event.line, event.line))
    if isinstance(event, PointerDown):
        if event.button != PRIMARY_BUTTON:
            return state
        return Dragging(anchor=event.line, selection=LineSelection(event.line, event.line))
    if isinstance(event, PointerEnter):
        if not isinstance(state, Dragging):
            return state
        selection = LineSelection.between(state.anchor, event.line)
        if selection == state.selection:
            return state
        return Dragging(anchor=state.anchor, selection=selection)
    if isinstance(event, PointerUp):
        if not isinstance(state, Dragging):
            return state
        return Frozen(state.selection)
    return state


def selection_of(state: SelectionState) -> LineSelection | None:
    if isinstance(state, (Dragging, Frozen)):
        return state.selection
    return None


def is_dragging(state: SelectionState) -> bool:
    return isinstance(state, Dragging)


def is_line_selected(state: SelectionState, line_number: int) -> bool:
    selection = selection_of(state)
    return selection is not None and selection.contains(line_number)
