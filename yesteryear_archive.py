"""
  ∙  Y E S T E R - Y E A R  ∙  ghost archive

  Every finished episode fossilizes into a Ghost Layer: a frozen copy of the
  grid that lingers translucently beneath the live garden and fades as the
  days pass. A parallel Memory is kept for the vault listing.

  Both collections live in a tiny JSON key-value store (one file per key),
  loaded wholesale at startup and rewritten wholesale after every change.
"""

from __future__ import annotations

import json
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Protocol

import numpy as np

from yesteryear_grid import EMPTY_CODE, MoodGrid, MoodPalette

GHOST_LAYERS_KEY = "yester-year-ghost-layers"
MEMORIES_KEY = "yester-year-memories"

MS_PER_DAY = 1000 * 60 * 60 * 24
# 9999-12-31T00:00Z, the last day datetime can show in any local zone
MAX_TIMESTAMP_MS = 253_402_214_400_000

# ── Opacity decay ───────────────────────────────────────────────────
# (max age in days, opacity); the first band not exceeded wins
OPACITY_BANDS: list[tuple[float, float]] = [
    (14.0, 1.0),
    (30.0, 0.8),
    (60.0, 0.6),
    (90.0, 0.4),
]
OPACITY_FLOOR = 0.2


class EventSink(Protocol):
    def log(self, event: str, mood: str = "", population: int = 0,
            layers: int = 0, detail: str = "") -> None: ...


def wall_clock_ms() -> int:
    return int(time.time() * 1000)


def opacity_for_age(age_days: float) -> float:
    """Step-function fade: 1.0 for two weeks down to 0.2 after three months."""
    for bound, opacity in OPACITY_BANDS:
        if age_days <= bound:
            return opacity
    return OPACITY_FLOOR


# ═══════════════════════════════════════════════════════════════════════
#  Records
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class GhostLayer:
    """A fossilized episode. Only ``opacity`` ever changes after creation."""

    id: str
    mood: str
    timestamp: int  # epoch ms
    grid: MoodGrid
    opacity: float = 1.0
    note: str | None = None

    def age_days(self, now_ms: int) -> float:
        return (now_ms - self.timestamp) / MS_PER_DAY

    def to_record(self) -> dict[str, Any]:
        record: dict[str, Any] = {
            "id": self.id,
            "mood": self.mood,
            "timestamp": self.timestamp,
            "grid": self.grid.to_rows(),
            "opacity": self.opacity,
        }
        if self.note is not None:
            record["note"] = self.note
        return record

    @classmethod
    def from_record(cls, record: dict[str, Any], palette: MoodPalette) -> GhostLayer:
        note = record.get("note")
        return cls(
            id=_require(record, "id", str),
            mood=_require(record, "mood", str),
            timestamp=_timestamp(record),
            grid=MoodGrid.from_rows(record["grid"], palette).snapshot(),
            opacity=_opacity(record),
            note=note if isinstance(note, str) else None,
        )


@dataclass
class Memory:
    """The vault's view of an episode, kept in lockstep with its layer."""

    id: str
    mood: str
    timestamp: int
    note: str | None = None
    grid_snapshot: MoodGrid | None = None

    def to_record(self) -> dict[str, Any]:
        record: dict[str, Any] = {
            "id": self.id,
            "mood": self.mood,
            "timestamp": self.timestamp,
        }
        if self.note is not None:
            record["note"] = self.note
        if self.grid_snapshot is not None:
            record["grid_snapshot"] = self.grid_snapshot.to_rows()
        return record

    @classmethod
    def from_record(cls, record: dict[str, Any], palette: MoodPalette) -> Memory:
        # older records used camelCase and carried scene fields we ignore
        rows = record.get("grid_snapshot", record.get("gridSnapshot"))
        note = record.get("note")
        return cls(
            id=_require(record, "id", str),
            mood=_require(record, "mood", str),
            timestamp=_timestamp(record),
            note=note if isinstance(note, str) else None,
            grid_snapshot=MoodGrid.from_rows(rows, palette).snapshot() if rows else None,
        )


def _require(record: dict[str, Any], key: str, kind: type | tuple[type, ...]) -> Any:
    value = record[key]
    if isinstance(value, bool) or not isinstance(value, kind):
        raise ValueError(f"record field {key!r} has unexpected type")
    return value


def _timestamp(record: dict[str, Any]) -> int:
    value = _require(record, "timestamp", (int, float))
    # comparisons also reject nan and infinities
    if not 0 <= value <= MAX_TIMESTAMP_MS:
        raise ValueError(f"record timestamp {value!r} is out of range")
    return int(value)


def _opacity(record: dict[str, Any]) -> float:
    value = _require(record, "opacity", (int, float))
    if not value >= 0:
        raise ValueError(f"record opacity {value!r} is out of range")
    return float(min(value, 1.0))


# ═══════════════════════════════════════════════════════════════════════
#  Key-value store
# ═══════════════════════════════════════════════════════════════════════

class ArchiveStore:
    """A directory of JSON documents, one per key."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def read(self, key: str) -> Any | None:
        """Parsed document, or None if the key was never written.

        Raises ValueError if the document is not valid JSON.
        """
        path = self._path(key)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        return json.loads(text)

    def write(self, key: str, value: Any) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(value), encoding="utf-8")
        os.replace(tmp, path)

    def remove(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


# ═══════════════════════════════════════════════════════════════════════
#  The archive
# ═══════════════════════════════════════════════════════════════════════

class GhostArchive:
    """Append-only sequence of Ghost Layers plus their parallel Memories."""

    def __init__(
        self,
        palette: MoodPalette,
        store: ArchiveStore | None = None,
        clock: Callable[[], int] = wall_clock_ms,
        log: EventSink | None = None,
    ) -> None:
        self.palette = palette
        self.store = store
        self.clock = clock
        self.log = log
        self.layers: list[GhostLayer] = []
        self.memories: list[Memory] = []

    def __len__(self) -> int:
        return len(self.layers)

    def __iter__(self) -> Iterator[GhostLayer]:
        return iter(self.layers)

    # ── Persistence ─────────────────────────────────────────────────

    def load(self) -> None:
        """Replace both collections with the stored ones, then refresh opacity."""
        self.layers = self._load_collection(GHOST_LAYERS_KEY, GhostLayer.from_record)
        self.memories = self._load_collection(MEMORIES_KEY, Memory.from_record)
        self.refresh_opacities()

    def _load_collection(self, key: str, build: Callable[[dict[str, Any], MoodPalette], Any]) -> list:
        if self.store is None:
            return []
        try:
            raw = self.store.read(key)
            if raw is None:
                return []
            if not isinstance(raw, list):
                raise ValueError(f"{key} is not a list")
            return [build(record, self.palette) for record in raw]
        except (ValueError, TypeError, KeyError, AttributeError) as exc:
            self._log("store:malformed", detail=f"{key}: {exc}")
            return []
        except OSError as exc:
            self._log("store:error", detail=f"{key}: {exc}")
            return []

    def save(self) -> None:
        if self.store is None:
            return
        try:
            self.store.write(GHOST_LAYERS_KEY, [layer.to_record() for layer in self.layers])
            self.store.write(MEMORIES_KEY, [memory.to_record() for memory in self.memories])
        except OSError as exc:
            self._log("store:error", detail=str(exc))

    # ── Mutation ────────────────────────────────────────────────────

    def fossilize(self, grid: MoodGrid, mood: str, note: str | None = None) -> GhostLayer:
        """Append a new layer (and its memory) at full opacity."""
        now = self.clock()
        self._refresh(now)
        snapshot = grid if not grid.cells.flags.writeable else grid.snapshot()
        layer_id = self._unique_id(str(now))
        layer = GhostLayer(id=layer_id, mood=mood, timestamp=now, grid=snapshot,
                           opacity=1.0, note=note)
        self.layers.append(layer)
        self.memories.append(Memory(id=layer_id, mood=mood, timestamp=now,
                                    note=note, grid_snapshot=snapshot))
        self.save()
        return layer

    def refresh_opacities(self, now_ms: int | None = None) -> bool:
        """Recompute every layer's opacity from its age. True if any changed."""
        changed = self._refresh(self.clock() if now_ms is None else now_ms)
        if changed:
            self.save()
        return changed

    def _refresh(self, now_ms: int) -> bool:
        changed = False
        for layer in self.layers:
            opacity = opacity_for_age(layer.age_days(now_ms))
            if opacity != layer.opacity:
                layer.opacity = opacity
                changed = True
        return changed

    def clear(self) -> None:
        self.layers = []
        self.memories = []
        if self.store is not None:
            try:
                self.store.remove(GHOST_LAYERS_KEY)
                self.store.remove(MEMORIES_KEY)
            except OSError as exc:
                self._log("store:error", detail=str(exc))
        self._log("archive:clear")

    def _unique_id(self, base: str) -> str:
        taken = {layer.id for layer in self.layers}
        candidate, n = base, 0
        while candidate in taken:
            n += 1
            candidate = f"{base}-{n}"
        return candidate

    def _log(self, event: str, detail: str = "") -> None:
        if self.log is not None:
            self.log.log(event, layers=len(self.layers), detail=detail)


# ═══════════════════════════════════════════════════════════════════════
#  Composition
# ═══════════════════════════════════════════════════════════════════════

def mood_composition(layers: Iterable[GhostLayer], grid: MoodGrid) -> dict[str, float]:
    """Percentage of all occupied cells (archive + live grid) per mood."""
    palette = grid.palette
    tally = np.zeros(len(palette) + 1, dtype=np.int64)
    for cells in [layer.grid.cells for layer in layers] + [grid.cells]:
        tally += np.bincount(cells.ravel(), minlength=len(tally))[: len(tally)]
    tally[EMPTY_CODE] = 0
    total = int(tally.sum())
    if total == 0:
        return {}
    return {
        palette.label(code): 100.0 * int(n) / total
        for code, n in enumerate(tally.tolist())
        if n > 0
    }


def ranked_composition(layers: Iterable[GhostLayer], grid: MoodGrid) -> list[tuple[str, float]]:
    """Composition sorted by descending share; ties keep first-seen order."""
    shares = mood_composition(layers, grid)
    return sorted(shares.items(), key=lambda item: -item[1])
