"""
board_features.py

Raw board measurements used as survival feature sources.

A board is a grid of filled / empty cells with row 0 at the top.  Recorded
sessions store boards as lists of strings ("..##......") or lists of lists
of 0/1; Board.from_rows accepts both.

Sources (all non-negative integers):
  num_holes                 empty cells with a filled cell somewhere above
  sum_of_hole_depth         holes weighted by how many cells sit above them
  max_height                tallest column
  center_column_max_height  tallest of the middle four columns
  total_height              sum of all column heights
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Sequence

from errors import ValidationError

_FILLED_CHARS = frozenset("#X1")
_EMPTY_CHARS = frozenset(". 0")


def _cell_filled(cell: Any, where: str) -> bool:
    if isinstance(cell, str):
        if cell in _FILLED_CHARS:
            return True
        if cell in _EMPTY_CHARS:
            return False
        raise ValidationError(f"{where}: unknown cell {cell!r}")
    return bool(cell)


@dataclass(frozen=True)
class Board:
    cells: tuple[tuple[bool, ...], ...]

    @classmethod
    def from_rows(cls, rows: Sequence[Any]) -> "Board":
        if isinstance(rows, Board):
            return rows
        if not isinstance(rows, (list, tuple)) or not rows:
            raise ValidationError("board: expected a non-empty list of rows")
        grid = []
        width = None
        for r_idx, row in enumerate(rows):
            if not isinstance(row, (list, tuple, str)):
                raise ValidationError(f"board row {r_idx}: expected a string or list of cells, got {row!r}")
            cells = tuple(_cell_filled(c, f"board row {r_idx}") for c in row)
            if width is None:
                width = len(cells)
            elif len(cells) != width:
                raise ValidationError(
                    f"board row {r_idx}: width {len(cells)} differs from row 0 ({width})"
                )
            grid.append(cells)
        if not width:
            raise ValidationError("board: rows are empty")
        return cls(cells=tuple(grid))

    @property
    def height(self) -> int:
        return len(self.cells)

    @property
    def width(self) -> int:
        return len(self.cells[0])

    def column(self, x: int) -> list[bool]:
        """Cells of column *x*, top to bottom."""
        return [row[x] for row in self.cells]

    def column_heights(self) -> list[int]:
        heights = []
        for x in range(self.width):
            col = self.column(x)
            top = next((y for y, filled in enumerate(col) if filled), None)
            heights.append(0 if top is None else self.height - top)
        return heights


def num_holes(board: Board) -> int:
    holes = 0
    for x in range(board.width):
        covered = False
        for filled in board.column(x):
            if filled:
                covered = True
            elif covered:
                holes += 1
    return holes


def sum_of_hole_depth(board: Board) -> int:
    # a hole also deepens every hole below it
    total = 0
    for x in range(board.width):
        depth = 0
        for filled in board.column(x):
            if filled:
                depth += 1
            elif depth > 0:
                total += depth
                depth += 1
    return total


def max_height(board: Board) -> int:
    return max(board.column_heights())


def center_column_max_height(board: Board) -> int:
    heights = board.column_heights()
    if len(heights) <= 4:
        return max(heights)
    start = (len(heights) - 4) // 2
    return max(heights[start:start + 4])


def total_height(board: Board) -> int:
    return sum(board.column_heights())


@dataclass(frozen=True)
class BoardFeatureSource:
    """A named raw measurement.  extract() accepts a Board or raw rows."""

    id: str
    name: str
    measure: Callable[[Board], int]

    def extract(self, board: Any) -> int:
        return self.measure(Board.from_rows(board))


SURVIVAL_FEATURE_SOURCES: tuple[BoardFeatureSource, ...] = (
    BoardFeatureSource("num_holes", "Number of Holes", num_holes),
    BoardFeatureSource("sum_of_hole_depth", "Sum of Hole Depth", sum_of_hole_depth),
    BoardFeatureSource("max_height", "Max Height", max_height),
    BoardFeatureSource("center_column_max_height", "Center Column Max Height", center_column_max_height),
    BoardFeatureSource("total_height", "Total Height", total_height),
)

_SOURCES_BY_ID = {s.id: s for s in SURVIVAL_FEATURE_SOURCES}


def get_source(source_id: str) -> BoardFeatureSource:
    try:
        return _SOURCES_BY_ID[source_id]
    except KeyError:
        known = ", ".join(sorted(_SOURCES_BY_ID))
        raise KeyError(f"unknown feature source {source_id!r} (known: {known})") from None


def all_board_feature_sources() -> tuple[BoardFeatureSource, ...]:
    return SURVIVAL_FEATURE_SOURCES
