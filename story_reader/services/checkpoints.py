"""Checkpoint evaluation.

A checkpoint is fired by reaching a chapter, or for the final chapter by
scrolling past the completion threshold. Every function here is pure and
total: bad input degrades to "no checkpoint", it never raises.
"""

import math
from typing import AbstractSet, Iterable

# Chapter reached -> checkpoint covering the chapters before it.
CHAPTER_CHECKPOINTS: dict[int, str] = {
    3: "chapter_2",
    6: "chapter_5",
    9: "chapter_8",
}
BOOK_COMPLETE_CHAPTER = 12
BOOK_COMPLETE_THRESHOLD = 0.9
BOOK_COMPLETE_CHECKPOINT = "chapter_12_complete"

ALL_CHECKPOINTS = frozenset([*CHAPTER_CHECKPOINTS.values(), BOOK_COMPLETE_CHECKPOINT])


def normalize_fraction(value: float) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(value):
        return 0.0
    return min(max(value, 0.0), 1.0)


def checkpoint_for(chapter_number: int, scroll_fraction: float) -> str | None:
    """Checkpoint reached at this position, ignoring what already fired."""
    checkpoint = CHAPTER_CHECKPOINTS.get(chapter_number)
    if checkpoint:
        return checkpoint
    if chapter_number == BOOK_COMPLETE_CHAPTER and normalize_fraction(scroll_fraction) > BOOK_COMPLETE_THRESHOLD:
        return BOOK_COMPLETE_CHECKPOINT
    return None


def evaluate_checkpoint(chapter_number: int, scroll_fraction: float, fired: AbstractSet[str]) -> str | None:
    checkpoint = checkpoint_for(chapter_number, scroll_fraction)
    if checkpoint is None or checkpoint in fired:
        return None
    return checkpoint


def gate_checkpoint(chapter_number: int, scroll_fraction: float = 0.0) -> str | None:
    """Checkpoint that must be resolved before leaving this chapter forward.

    Same rule as arrival: the final chapter only gates once read past the
    completion threshold.
    """
    return checkpoint_for(chapter_number, scroll_fraction)


class CheckpointRecord:
    """Checkpoints already evaluated in the current session."""

    def __init__(self, fired: Iterable[str] = ()) -> None:
        self._fired: set[str] = set(fired)

    def __contains__(self, checkpoint: object) -> bool:
        return checkpoint in self._fired

    def __len__(self) -> int:
        return len(self._fired)

    @property
    def fired(self) -> frozenset[str]:
        return frozenset(self._fired)

    def evaluate(self, chapter_number: int, scroll_fraction: float) -> str | None:
        """Evaluate and mark in one step so a checkpoint can only fire once."""
        checkpoint = evaluate_checkpoint(chapter_number, scroll_fraction, self._fired)
        if checkpoint is not None:
            self._fired.add(checkpoint)
        return checkpoint

    def mark(self, checkpoint: str) -> None:
        self._fired.add(checkpoint)

    def clear(self) -> None:
        self._fired.clear()
