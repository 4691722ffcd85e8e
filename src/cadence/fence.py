"""Markdown code-fence tracking for scanning agent output line by line."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass

FENCE_CHARS = "`~"
MIN_FENCE_LENGTH = 3


@dataclass(slots=True, frozen=True)
class Outside:
    pass


@dataclass(slots=True, frozen=True)
class InFence:
    char: str
    length: int


FenceState = Outside | InFence


def _leading_run(text: str, char: str) -> int:
    count = 0
    while count < len(text) and text[count] == char:
        count += 1
    return count


def next_state(state: FenceState, trimmed: str) -> tuple[FenceState, bool]:
    """Advance the fence state by one trimmed line.

    Returns the new state and whether the line belongs to a fence (either a
    delimiter or content inside one) and should be ignored by content scans.
    """
    if len(trimmed) < MIN_FENCE_LENGTH:
        return state, isinstance(state, InFence)

    if isinstance(state, Outside):
        char = trimmed[0]
        if char in FENCE_CHARS:
            length = _leading_run(trimmed, char)
            if length >= MIN_FENCE_LENGTH:
                return InFence(char, length), True
        return state, False

    if trimmed[0] == state.char:
        length = _leading_run(trimmed, state.char)
        if length >= state.length and length == len(trimmed):
            return Outside(), True
    return state, True


class FenceScanner:
    def __init__(self) -> None:
        self.state: FenceState = Outside()

    def skip(self, trimmed: str) -> bool:
        self.state, fenced = next_state(self.state, trimmed)
        return fenced


def lines_outside_fences(text: str) -> Iterator[str]:
    """Yield the stripped lines of ``text`` that are not part of a code fence."""
    scanner = FenceScanner()
    for line in text.split("\n"):
        trimmed = line.strip()
        if scanner.skip(trimmed):
            continue
        yield trimmed


def any_line_outside_fences(text: str, predicate: Callable[[str], bool]) -> bool:
    return any(predicate(line) for line in lines_outside_fences(text))
