"""
  ∙  Y E S T E R - Y E A R  ∙  episodes

  A mood arrives, a little cluster of cells is seeded in the middle of the
  garden, it lives for thirty seconds, and then whatever is left of it is
  fossilized into the ghost archive.

  Everything runs on one cooperative timeline. Three timers feed it:

    evolution tick      every 200 ms, forever
    fossilization       one-shot, 30 s after each seeding
    opacity refresh     hourly, plus on load and on every append

  The Scheduler fires due callbacks one at a time, so the grid, the episode
  and the archive are only ever touched by one callback at a time.
"""

from __future__ import annotations

import enum
import heapq
import itertools
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import IO, Callable, ClassVar

import numpy as np

from yesteryear_archive import ArchiveStore, GhostArchive, ranked_composition, wall_clock_ms
from yesteryear_grid import (
    ImmortalCell,
    MoodGrid,
    MoodPalette,
    RuleVariant,
    seed_cluster,
    step,
)

NOTE_MAX_CHARS = 100


# ═══════════════════════════════════════════════════════════════════════
#  Configuration
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class GardenConfig:
    rows: int = 50
    cols: int = 80
    rule: RuleVariant = RuleVariant.CLASSIC
    seed_radius: int = 2
    seed_probability: float = 0.7
    immortal: bool = False
    episode_seconds: float = 30.0
    tick_seconds: float = 0.2
    refresh_seconds: float = 3600.0

    @classmethod
    def basic(cls) -> GardenConfig:
        return cls()

    @classmethod
    def extended(cls) -> GardenConfig:
        return cls(rule=RuleVariant.EXTENDED, seed_radius=5,
                   seed_probability=0.6, immortal=True)

    def with_overrides(self, **changes: object) -> GardenConfig:
        """Copy with the non-None ``changes`` applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    def validate(self) -> GardenConfig:
        if self.rows <= 0 or self.cols <= 0:
            raise ValueError("grid dimensions must be positive")
        if self.seed_radius < 0:
            raise ValueError("seed radius must not be negative")
        if not 0.0 < self.seed_probability <= 1.0:
            raise ValueError("seed probability must be in (0, 1]")
        if min(self.episode_seconds, self.tick_seconds, self.refresh_seconds) <= 0:
            raise ValueError("timer periods must be positive")
        return self


PRESETS: dict[str, Callable[[], GardenConfig]] = {
    "basic": GardenConfig.basic,
    "extended": GardenConfig.extended,
}


# ═══════════════════════════════════════════════════════════════════════
#  Event log
# ═══════════════════════════════════════════════════════════════════════

class EpisodeLog:
    """Writes lifecycle events to CSV for looking back over a session."""

    HEADER: ClassVar[str] = "time_s,event,mood,population,layers,detail\n"

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh: IO[str] | None = None
        self._t0: float = time.monotonic()

    def open(self) -> None:
        try:
            self._fh = open(self._path, "w", encoding="utf-8")
            self._fh.write(self.HEADER)
            self._fh.flush()
        except OSError:
            self._fh = None

    def log(
        self,
        event: str,
        mood: str = "",
        population: int = 0,
        layers: int = 0,
        detail: str = "",
    ) -> None:
        if self._fh is None:
            return
        t = time.monotonic() - self._t0
        detail = detail.replace(",", ";").replace("\n", " ")
        try:
            self._fh.write(f"{t:.1f},{event},{mood},{population},{layers},{detail}\n")
            self._fh.flush()
        except OSError:
            pass

    def close(self) -> None:
        if self._fh is not None:
            try:
                self._fh.close()
            except OSError:
                pass
            self._fh = None


# ═══════════════════════════════════════════════════════════════════════
#  Scheduler
# ═══════════════════════════════════════════════════════════════════════

@dataclass(order=True)
class TimerHandle:
    deadline: float
    seq: int
    callback: Callable[[], None] = field(compare=False)
    period: float | None = field(default=None, compare=False)
    start: float = field(default=0.0, compare=False)
    beat: int = field(default=0, compare=False)  # periods elapsed since start
    cancelled: bool = field(default=False, compare=False)


class Scheduler:
    """Cooperative one-shot and periodic timers on a single timeline.

    Nothing runs on its own: the host calls ``run_due()`` and every callback
    whose deadline has passed fires, in deadline order, one after another.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self.clock = clock
        self._heap: list[TimerHandle] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self.clock()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        now = self.now()
        handle = TimerHandle(now + delay, next(self._seq), callback, start=now)
        heapq.heappush(self._heap, handle)
        return handle

    def call_every(self, period: float, callback: Callable[[], None]) -> TimerHandle:
        now = self.now()
        handle = TimerHandle(now + period, next(self._seq), callback,
                             period=period, start=now)
        heapq.heappush(self._heap, handle)
        return handle

    def cancel(self, handle: TimerHandle | None) -> None:
        if handle is not None:
            handle.cancelled = True

    def next_deadline(self) -> float | None:
        while self._heap and self._heap[0].cancelled:
            heapq.heappop(self._heap)
        return self._heap[0].deadline if self._heap else None

    def run_due(self, now: float | None = None) -> int:
        """Fire every callback due at ``now``. Returns how many fired.

        A periodic timer more than a whole period behind fires once and
        resumes at its next deadline after ``now``; the missed beats are
        dropped rather than replayed.
        """
        if now is None:
            now = self.now()
        fired = 0
        while self._heap and self._heap[0].deadline <= now:
            handle = heapq.heappop(self._heap)
            if handle.cancelled:
                continue
            if handle.period is not None:
                self._advance(handle, now)
                heapq.heappush(self._heap, handle)
            handle.callback()
            fired += 1
        return fired

    def _advance(self, handle: TimerHandle, now: float) -> None:
        handle.beat += 1
        if handle.start + handle.period * (handle.beat + 1) <= now - handle.period:
            handle.beat = max(handle.beat, int((now - handle.start) // handle.period))
            while handle.start + handle.period * (handle.beat + 1) <= now:
                handle.beat += 1
        handle.deadline = handle.start + handle.period * (handle.beat + 1)
        handle.seq = next(self._seq)


# ═══════════════════════════════════════════════════════════════════════
#  Lifecycle
# ═══════════════════════════════════════════════════════════════════════

class Phase(enum.Enum):
    IDLE = "idle"
    SEEDING = "seeding"
    ACTIVE = "active"


@dataclass
class Episode:
    mood: str
    started_at: float
    immortal: ImmortalCell | None = None
    note: str | None = None


SeededCallback = Callable[[], None]
FossilizedCallback = Callable[[MoodGrid, str], None]


class LifecycleController:
    """Owns the grid, the current episode and its fossilization timer."""

    def __init__(
        self,
        config: GardenConfig,
        palette: MoodPalette,
        archive: GhostArchive,
        scheduler: Scheduler,
        rng: np.random.Generator | None = None,
        on_seeded: SeededCallback | None = None,
        on_fossilized: FossilizedCallback | None = None,
        log: EpisodeLog | None = None,
    ) -> None:
        self.config = config
        self.archive = archive
        self.scheduler = scheduler
        self.rng = rng if rng is not None else np.random.default_rng()
        self.on_seeded = on_seeded
        self.on_fossilized = on_fossilized
        self.log = log

        self.grid: MoodGrid = MoodGrid.empty(config.rows, config.cols, palette)
        self.phase: Phase = Phase.IDLE
        self.episode: Episode | None = None
        self.awaiting_note: bool = False
        self.generation: int = 0
        self._timeout: TimerHandle | None = None

    # ── Commands ────────────────────────────────────────────────────

    def select_mood(self, label: str) -> None:
        """Start a new episode, fossilizing the running one first."""
        if not label:
            raise ValueError("mood label must be non-empty")

        self.scheduler.cancel(self._timeout)
        self._timeout = None
        if self.episode is not None:
            self._fossilize("preempted")

        self.phase = Phase.SEEDING
        self.grid, seeded = seed_cluster(
            self.grid, label, self.config.seed_radius,
            self.config.seed_probability, self.rng,
        )
        immortal = None
        if self.config.immortal:
            if not seeded:
                seeded = [(self.grid.rows // 2, self.grid.cols // 2)]
                self.grid.cells[seeded[0]] = self.grid.palette.code(label)
            y, x = seeded[int(self.rng.integers(len(seeded)))]
            immortal = ImmortalCell(y, x, label)

        self.episode = Episode(mood=label, started_at=self.scheduler.now(),
                               immortal=immortal)
        self._timeout = self.scheduler.call_later(self.config.episode_seconds,
                                                  self._on_timeout)
        self.phase = Phase.ACTIVE
        self.awaiting_note = True
        self._log("seed", label, detail=f"cells={len(seeded)}")
        if self.on_seeded is not None:
            self.on_seeded()

    def submit_note(self, text: str) -> bool:
        """Attach a note to the running episode. False if nothing is running."""
        text = text.strip()[:NOTE_MAX_CHARS]
        if not text:
            self.skip_note()
            return False
        self.awaiting_note = False
        if self.episode is None:
            return False
        self.episode.note = text
        self._log("note", self.episode.mood)
        return True

    def skip_note(self) -> None:
        self.awaiting_note = False

    def tick(self) -> None:
        """Advance the grid one generation."""
        immortal = self.episode.immortal if self.episode is not None else None
        self.grid = step(self.grid, self.config.rule, self.rng, immortal)
        self.generation += 1

    # ── Queries ─────────────────────────────────────────────────────

    def remaining_seconds(self) -> float | None:
        if self.episode is None:
            return None
        elapsed = self.scheduler.now() - self.episode.started_at
        return max(0.0, self.config.episode_seconds - elapsed)

    # ── Fossilization ───────────────────────────────────────────────

    def _on_timeout(self) -> None:
        self._timeout = None
        self._fossilize("timeout")

    def _fossilize(self, reason: str) -> None:
        episode = self.episode
        if episode is None:
            return
        self.episode = None
        self.phase = Phase.IDLE
        self.awaiting_note = False

        snapshot = self.grid.snapshot()
        if self.config.immortal or not snapshot.is_empty():
            self.archive.fossilize(snapshot, episode.mood, episode.note)
            self._log(f"fossilize:{reason}", episode.mood, snapshot.population())
            if self.on_fossilized is not None:
                self.on_fossilized(snapshot, episode.mood)
        else:
            self._log("fossilize:empty", episode.mood)

    def _log(self, event: str, mood: str = "", population: int | None = None,
             detail: str = "") -> None:
        if self.log is None:
            return
        if population is None:
            population = self.grid.population()
        self.log.log(event, mood, population, len(self.archive), detail)


# ═══════════════════════════════════════════════════════════════════════
#  The garden
# ═══════════════════════════════════════════════════════════════════════

class Garden:
    """Grid + episode + archive, and the timers that drive them."""

    def __init__(
        self,
        config: GardenConfig | None = None,
        store: ArchiveStore | None = None,
        rng: np.random.Generator | None = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], int] = wall_clock_ms,
        log: EpisodeLog | None = None,
        on_seeded: SeededCallback | None = None,
        on_fossilized: FossilizedCallback | None = None,
    ) -> None:
        self.config = (config or GardenConfig.basic()).validate()
        self.palette = MoodPalette()
        self.scheduler = Scheduler(clock)
        self.archive = GhostArchive(self.palette, store, wall_clock, log)
        self.controller = LifecycleController(
            self.config, self.palette, self.archive, self.scheduler, rng,
            on_seeded=on_seeded, on_fossilized=on_fossilized, log=log,
        )
        self._evolution: TimerHandle | None = None
        self._refresh: TimerHandle | None = None

    def start(self) -> None:
        """Load the archive and arm the evolution and refresh timers."""
        self.archive.load()
        self._evolution = self.scheduler.call_every(self.config.tick_seconds,
                                                    self.controller.tick)
        self._refresh = self.scheduler.call_every(self.config.refresh_seconds,
                                                  self.archive.refresh_opacities)

    def stop(self) -> None:
        self.scheduler.cancel(self._evolution)
        self.scheduler.cancel(self._refresh)
        self._evolution = self._refresh = None

    def pump(self, now: float | None = None) -> int:
        return self.scheduler.run_due(now)

    # ── Pass-throughs ───────────────────────────────────────────────

    @property
    def grid(self) -> MoodGrid:
        return self.controller.grid

    @property
    def phase(self) -> Phase:
        return self.controller.phase

    def select_mood(self, label: str) -> None:
        self.controller.select_mood(label)

    def submit_note(self, text: str) -> bool:
        return self.controller.submit_note(text)

    def skip_note(self) -> None:
        self.controller.skip_note()

    def composition(self) -> list[tuple[str, float]]:
        return ranked_composition(self.archive.layers, self.controller.grid)
