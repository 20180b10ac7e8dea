"""Shared fixtures: a clock that only moves when told, and event capture."""

from __future__ import annotations

import numpy as np
import pytest

from yesteryear_archive import ArchiveStore, MS_PER_DAY
from yesteryear_grid import MoodGrid, MoodPalette

EPOCH_MS = 1_760_000_000_000


class FakeClock:
    """Drives both the monotonic timeline and the wall clock."""

    def __init__(self) -> None:
        self.t = 0.0

    def monotonic(self) -> float:
        return self.t

    def wall_ms(self) -> int:
        return EPOCH_MS + int(round(self.t * 1000))

    def advance(self, seconds: float) -> None:
        self.t += seconds

    def advance_days(self, days: float) -> None:
        self.t += days * MS_PER_DAY / 1000


class EventRecorder:
    def __init__(self) -> None:
        self.events: list[tuple[str, str, str]] = []

    def log(self, event: str, mood: str = "", population: int = 0,
            layers: int = 0, detail: str = "") -> None:
        self.events.append((event, mood, detail))

    def names(self) -> list[str]:
        return [e[0] for e in self.events]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(1234)


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def store(tmp_path) -> ArchiveStore:
    return ArchiveStore(tmp_path / "data")


@pytest.fixture
def palette() -> MoodPalette:
    return MoodPalette()


def grid_from_art(art: str, palette: MoodPalette) -> MoodGrid:
    """'.' is empty, any other character is a one-letter mood label."""
    rows = [[("" if ch == "." else ch) for ch in line.strip()]
            for line in art.strip().splitlines()]
    return MoodGrid.from_rows(rows, palette)
