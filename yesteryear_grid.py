"""
  ∙  Y E S T E R - Y E A R  ∙  grid & rules

  The live surface of the mood garden: a fixed 2-D grid whose cells are
  either empty or carry a mood label. Labels are interned into small integer
  codes by a shared MoodPalette so a generation is one numpy int16 array.

  Each tick is Conway's survival rule with one of two birth rules:

    classic    B3/S23
    extended   B36/S23

  A newborn cell takes the label of one of its occupied neighbours, picked
  uniformly at random from the previous generation. One designated cell per
  episode may be immortal: it keeps its label no matter what its neighbours
  are doing.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import NamedTuple

import numpy as np
from numpy.typing import NDArray
from scipy.ndimage import convolve

EMPTY = ""
EMPTY_CODE = 0

# ── Convolution kernel (reused every step) ────────────────────────────
NEIGHBOR_KERNEL: NDArray = np.array([[1, 1, 1], [1, 0, 1], [1, 1, 1]], dtype=np.int16)

# Moore neighbourhood offsets, in kernel order
NEIGHBOR_OFFSETS: tuple[tuple[int, int], ...] = tuple(
    (dy, dx) for dy in (-1, 0, 1) for dx in (-1, 0, 1) if (dy, dx) != (0, 0)
)

SURVIVAL_COUNTS: tuple[int, ...] = (2, 3)


class RuleVariant(enum.Enum):
    """Birth rule. Survival is always 2 or 3 neighbours."""

    CLASSIC = "classic"
    EXTENDED = "extended"

    @property
    def birth_counts(self) -> tuple[int, ...]:
        return (3,) if self is RuleVariant.CLASSIC else (3, 6)


class ImmortalCell(NamedTuple):
    """A cell exempt from death for one episode."""
    y: int
    x: int
    label: str


# ═══════════════════════════════════════════════════════════════════════
#  Palette
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class MoodPalette:
    """Interns mood labels to int16 codes. Code 0 is always the empty cell."""

    _labels: list[str] = field(default_factory=lambda: [EMPTY])
    _codes: dict[str, int] = field(default_factory=dict)

    def code(self, label: str) -> int:
        if label == EMPTY:
            return EMPTY_CODE
        found = self._codes.get(label)
        if found is not None:
            return found
        found = len(self._labels)
        if found > np.iinfo(np.int16).max:
            raise ValueError("too many distinct mood labels")
        self._labels.append(label)
        self._codes[label] = found
        return found

    def label(self, code: int) -> str:
        return self._labels[code]

    @property
    def labels(self) -> list[str]:
        """Every interned label, in first-seen order (empty excluded)."""
        return self._labels[1:]

    def __len__(self) -> int:
        return len(self._labels) - 1


# ═══════════════════════════════════════════════════════════════════════
#  Grid
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class MoodGrid:
    """A rows x cols array of mood codes sharing one palette."""

    cells: NDArray[np.int16]
    palette: MoodPalette

    @classmethod
    def empty(cls, rows: int, cols: int, palette: MoodPalette) -> MoodGrid:
        return cls(np.zeros((rows, cols), dtype=np.int16), palette)

    @classmethod
    def from_rows(cls, rows: list[list[str]], palette: MoodPalette) -> MoodGrid:
        """Build a grid from a rectangular list of label-or-empty strings."""
        if not isinstance(rows, list) or not rows:
            raise ValueError("grid must be a non-empty list of rows")
        width = len(rows[0]) if isinstance(rows[0], list) else -1
        if width <= 0:
            raise ValueError("grid rows must be non-empty lists")
        cells = np.zeros((len(rows), width), dtype=np.int16)
        for y, row in enumerate(rows):
            if not isinstance(row, list) or len(row) != width:
                raise ValueError(f"grid row {y} is not {width} cells wide")
            for x, value in enumerate(row):
                if not isinstance(value, str):
                    raise ValueError(f"grid cell ({y}, {x}) is not a string")
                if value:
                    cells[y, x] = palette.code(value)
        return cls(cells, palette)

    @property
    def rows(self) -> int:
        return int(self.cells.shape[0])

    @property
    def cols(self) -> int:
        return int(self.cells.shape[1])

    def in_bounds(self, y: int, x: int) -> bool:
        return 0 <= y < self.rows and 0 <= x < self.cols

    def label_at(self, y: int, x: int) -> str | None:
        code = int(self.cells[y, x])
        return None if code == EMPTY_CODE else self.palette.label(code)

    def population(self) -> int:
        return int(np.count_nonzero(self.cells))

    def is_empty(self) -> bool:
        return not self.cells.any()

    def copy(self) -> MoodGrid:
        return MoodGrid(self.cells.copy(), self.palette)

    def snapshot(self) -> MoodGrid:
        """A read-only copy, safe to hand to the archive and to callbacks."""
        frozen = self.cells.copy()
        frozen.flags.writeable = False
        return MoodGrid(frozen, self.palette)

    def counts(self) -> dict[str, int]:
        """Occupied-cell tally per label."""
        tally = np.bincount(self.cells.ravel(), minlength=len(self.palette) + 1)
        return {
            self.palette.label(code): int(n)
            for code, n in enumerate(tally.tolist())
            if code != EMPTY_CODE and n > 0
        }

    def to_rows(self) -> list[list[str]]:
        lookup = [self.palette.label(c) for c in range(len(self.palette) + 1)]
        return [[lookup[c] for c in row] for row in self.cells.tolist()]


# ═══════════════════════════════════════════════════════════════════════
#  Rule engine
# ═══════════════════════════════════════════════════════════════════════

def neighbor_counts(occupied: NDArray[np.bool_]) -> NDArray[np.int16]:
    """Occupied Moore neighbours per cell. Beyond the edge counts as empty."""
    return convolve(occupied.astype(np.int16), NEIGHBOR_KERNEL, mode="constant", cval=0)


def neighbor_codes(
    cells: NDArray[np.int16], ys: NDArray[np.intp], xs: NDArray[np.intp]
) -> NDArray[np.int16]:
    """(N, 8) codes of the Moore neighbours of each (ys[i], xs[i])."""
    padded = np.pad(cells, 1, mode="constant", constant_values=EMPTY_CODE)
    py, px = ys + 1, xs + 1
    return np.stack([padded[py + dy, px + dx] for dy, dx in NEIGHBOR_OFFSETS], axis=1)


def inherit_labels(
    cells: NDArray[np.int16],
    ys: NDArray[np.intp],
    xs: NDArray[np.intp],
    rng: np.random.Generator,
) -> NDArray[np.int16]:
    """Pick one occupied neighbour's code per cell, uniformly.

    Cells with no occupied neighbour get EMPTY_CODE.
    """
    codes = neighbor_codes(cells, ys, xs)
    occupied = codes != EMPTY_CODE
    n_occupied = occupied.sum(axis=1)
    # k-th occupied neighbour, k uniform in [0, n_occupied)
    picks = np.floor(rng.random(len(ys)) * n_occupied).astype(np.intp)
    rank = np.cumsum(occupied, axis=1) - 1
    chosen = occupied & (rank == picks[:, None])
    out = codes[np.arange(len(ys)), chosen.argmax(axis=1)]
    out[n_occupied == 0] = EMPTY_CODE
    return out


def step(
    grid: MoodGrid,
    rule: RuleVariant = RuleVariant.CLASSIC,
    rng: np.random.Generator | None = None,
    immortal: ImmortalCell | None = None,
) -> MoodGrid:
    """Return the next generation. ``grid`` is not modified."""
    if rng is None:
        rng = np.random.default_rng()

    cells = grid.cells
    occupied = cells != EMPTY_CODE
    n = neighbor_counts(occupied)

    survive = occupied & np.isin(n, SURVIVAL_COUNTS)
    birth = ~occupied & np.isin(n, rule.birth_counts)

    nxt = np.where(survive, cells, EMPTY_CODE).astype(np.int16)
    ys, xs = np.nonzero(birth)
    if len(ys):
        nxt[ys, xs] = inherit_labels(cells, ys, xs, rng)

    if immortal is not None and grid.in_bounds(immortal.y, immortal.x):
        nxt[immortal.y, immortal.x] = grid.palette.code(immortal.label)

    return MoodGrid(nxt, grid.palette)


# ── Seeding ─────────────────────────────────────────────────────────

def seed_cluster(
    grid: MoodGrid,
    label: str,
    radius: int,
    probability: float,
    rng: np.random.Generator,
) -> tuple[MoodGrid, list[tuple[int, int]]]:
    """Overlay a random square cluster of ``label`` around the grid centre.

    Each cell within ``radius`` (Chebyshev) of the centre is set with
    ``probability``. Returns the new grid and the (y, x) cells seeded.
    """
    out = grid.copy()
    code = grid.palette.code(label)
    cy, cx = grid.rows // 2, grid.cols // 2
    side = 2 * radius + 1
    hits = rng.random((side, side)) < probability

    seeded: list[tuple[int, int]] = []
    for dy, dx in zip(*np.nonzero(hits)):
        y, x = cy + int(dy) - radius, cx + int(dx) - radius
        if grid.in_bounds(y, x):
            out.cells[y, x] = code
            seeded.append((y, x))
    return out, seeded
