from __future__ import annotations

import numpy as np
import pytest

from yesteryear_archive import GHOST_LAYERS_KEY, MS_PER_DAY, GhostArchive
from yesteryear_episode import (
    PRESETS,
    EpisodeLog,
    Garden,
    GardenConfig,
    LifecycleController,
    Phase,
    Scheduler,
)
from yesteryear_grid import MoodGrid, MoodPalette, RuleVariant


# ── Scheduler ───────────────────────────────────────────────────────

def test_call_later_fires_once_at_deadline(clock):
    scheduler = Scheduler(clock.monotonic)
    fired: list[float] = []
    scheduler.call_later(1.5, lambda: fired.append(clock.t))
    assert scheduler.run_due(1.4) == 0
    clock.advance(1.5)
    assert scheduler.run_due() == 1
    assert scheduler.run_due(10.0) == 0
    assert fired == [1.5]


def test_cancelled_timer_never_fires(clock):
    scheduler = Scheduler(clock.monotonic)
    fired: list[str] = []
    handle = scheduler.call_later(1.0, lambda: fired.append("x"))
    scheduler.cancel(handle)
    assert scheduler.run_due(5.0) == 0
    assert fired == []
    assert scheduler.next_deadline() is None


def test_periodic_timer_does_not_drift(clock):
    scheduler = Scheduler(clock.monotonic)
    ticks: list[int] = []
    scheduler.call_every(0.2, lambda: ticks.append(1))
    for k in range(1, 6):
        scheduler.run_due(0.2 * k)
    assert len(ticks) == 5
    assert scheduler.next_deadline() == pytest.approx(1.2)


def test_periodic_timer_skips_beats_missed_during_a_stall(clock):
    scheduler = Scheduler(clock.monotonic)
    ticks: list[int] = []
    scheduler.call_every(0.2, lambda: ticks.append(1))
    assert scheduler.run_due(0.2) == 1
    assert scheduler.run_due(200.0) == 1
    assert scheduler.next_deadline() == pytest.approx(200.2)
    assert scheduler.run_due(200.3) == 1
    assert len(ticks) == 3


def test_periodic_timer_catches_up_a_late_beat(clock):
    scheduler = Scheduler(clock.monotonic)
    ticks: list[int] = []
    scheduler.call_every(1.0, lambda: ticks.append(1))
    assert scheduler.run_due(0.99) == 0
    assert scheduler.run_due(2.5) == 2
    assert scheduler.next_deadline() == pytest.approx(3.0)


def test_due_callbacks_fire_in_deadline_order(clock):
    scheduler = Scheduler(clock.monotonic)
    order: list[str] = []
    scheduler.call_later(2.0, lambda: order.append("late"))
    scheduler.call_later(1.0, lambda: order.append("early"))
    scheduler.run_due(3.0)
    assert order == ["early", "late"]


# ── Lifecycle ───────────────────────────────────────────────────────

class Harness:
    """A controller on a bare scheduler: no evolution unless ticked by hand."""

    def __init__(self, clock, config: GardenConfig, recorder=None, seed: int = 3) -> None:
        self.clock = clock
        self.palette = MoodPalette()
        self.scheduler = Scheduler(clock.monotonic)
        self.archive = GhostArchive(self.palette, clock=clock.wall_ms)
        self.seeded = 0
        self.fossils: list[tuple[str, MoodGrid]] = []
        self.controller = LifecycleController(
            config, self.palette, self.archive, self.scheduler,
            np.random.default_rng(seed),
            on_seeded=self._seeded, on_fossilized=self._fossilized, log=recorder,
        )

    def _seeded(self) -> None:
        self.seeded += 1

    def _fossilized(self, grid: MoodGrid, mood: str) -> None:
        self.fossils.append((mood, grid))

    def at(self, t: float) -> None:
        self.clock.t = t
        self.scheduler.run_due(t)


FULL_SEED = GardenConfig(seed_radius=2, seed_probability=1.0)


def test_select_mood_seeds_and_notifies(clock):
    h = Harness(clock, FULL_SEED)
    h.controller.select_mood("joy")
    assert h.controller.phase is Phase.ACTIVE
    assert h.seeded == 1
    assert h.controller.grid.counts() == {"joy": 25}
    assert h.controller.episode.mood == "joy"
    assert h.controller.awaiting_note


def test_empty_mood_is_rejected(clock):
    h = Harness(clock, FULL_SEED)
    with pytest.raises(ValueError):
        h.controller.select_mood("")


def test_episode_fossilizes_after_thirty_seconds(clock):
    h = Harness(clock, FULL_SEED)
    h.controller.select_mood("joy")
    h.at(29.9)
    assert h.fossils == [] and h.controller.phase is Phase.ACTIVE
    assert h.controller.remaining_seconds() == pytest.approx(0.1)
    h.at(30.0)
    assert [mood for mood, _ in h.fossils] == ["joy"]
    assert len(h.archive) == 1
    assert h.controller.phase is Phase.IDLE
    assert h.controller.episode is None
    assert h.controller.remaining_seconds() is None
    h.at(120.0)
    assert len(h.archive) == 1


def test_fossil_is_the_grid_at_expiry(clock):
    h = Harness(clock, FULL_SEED)
    h.controller.select_mood("joy")
    h.controller.tick()
    expected = h.controller.grid.to_rows()
    h.at(30.0)
    assert h.archive.layers[0].grid.to_rows() == expected
    assert h.fossils[0][1].to_rows() == expected


def test_preemption_fossilizes_once_and_restarts_the_timer(clock):
    h = Harness(clock, FULL_SEED)
    h.controller.select_mood("joy")
    h.at(5.0)
    h.controller.select_mood("calm")
    assert [mood for mood, _ in h.fossils] == ["joy"]
    assert h.seeded == 2

    h.at(30.0)  # joy's original deadline
    assert [mood for mood, _ in h.fossils] == ["joy"]
    h.at(34.9)
    assert len(h.fossils) == 1
    h.at(35.0)
    assert [mood for mood, _ in h.fossils] == ["joy", "calm"]
    assert [layer.mood for layer in h.archive] == ["joy", "calm"]


def test_preemption_with_live_cells_adds_exactly_one_layer(clock):
    h = Harness(clock, FULL_SEED)
    for n, mood in enumerate(["a", "b", "c", "d"]):
        h.controller.select_mood(mood)
        assert len(h.archive) == n
    assert [layer.mood for layer in h.archive] == ["a", "b", "c"]


def test_empty_grid_is_not_fossilized(clock, recorder):
    h = Harness(clock, GardenConfig(seed_radius=0, seed_probability=1.0), recorder)
    h.controller.select_mood("joy")
    h.controller.tick()  # a lone cell dies
    assert h.controller.grid.is_empty()
    h.at(30.0)
    assert len(h.archive) == 0
    assert h.fossils == []
    assert h.controller.phase is Phase.IDLE
    assert "fossilize:empty" in recorder.names()


def test_empty_grid_is_not_fossilized_on_preemption(clock):
    h = Harness(clock, GardenConfig(seed_radius=0, seed_probability=1.0))
    h.controller.select_mood("joy")
    h.controller.tick()
    h.controller.select_mood("calm")
    assert len(h.archive) == 0
    assert h.controller.episode.mood == "calm"


def test_immortal_cell_keeps_the_fossil_non_empty(clock):
    config = GardenConfig(seed_radius=0, seed_probability=1.0, immortal=True)
    h = Harness(clock, config)
    h.controller.select_mood("5")
    immortal = h.controller.episode.immortal
    assert (immortal.y, immortal.x, immortal.label) == (25, 40, "5")
    for _ in range(150):
        h.controller.tick()
    h.at(30.0)
    assert len(h.archive) == 1
    assert h.archive.layers[0].grid.label_at(25, 40) == "5"


def test_immortal_cell_is_one_of_the_seeded_cells(clock):
    h = Harness(clock, GardenConfig.extended())
    h.controller.select_mood("calm")
    immortal = h.controller.episode.immortal
    assert h.controller.grid.label_at(immortal.y, immortal.x) == "calm"
    assert abs(immortal.y - 25) <= 5 and abs(immortal.x - 40) <= 5


def test_immortal_mode_seeds_the_centre_when_the_draw_is_empty(clock):
    config = GardenConfig(seed_radius=2, seed_probability=1e-12, immortal=True)
    h = Harness(clock, config)
    h.controller.select_mood("joy")
    assert h.controller.grid.counts() == {"joy": 1}
    assert h.controller.episode.immortal[:2] == (25, 40)


def test_immortal_episode_ends_with_its_episode(clock):
    config = GardenConfig(seed_radius=0, seed_probability=1.0, immortal=True)
    h = Harness(clock, config)
    h.controller.select_mood("5")
    h.at(30.0)
    for _ in range(3):
        h.controller.tick()
    assert h.controller.grid.is_empty()


def test_note_travels_with_the_fossil(clock, recorder):
    h = Harness(clock, FULL_SEED, recorder)
    h.controller.select_mood("joy")
    assert h.controller.submit_note("  sunlight on the kitchen floor  ") is True
    assert not h.controller.awaiting_note
    h.at(30.0)
    assert h.archive.layers[0].note == "sunlight on the kitchen floor"
    assert h.archive.memories[0].note == "sunlight on the kitchen floor"
    assert "note" in recorder.names()


def test_long_notes_are_truncated(clock):
    h = Harness(clock, FULL_SEED)
    h.controller.select_mood("joy")
    h.controller.submit_note("x" * 250)
    assert len(h.controller.episode.note) == 100


def test_blank_note_counts_as_skip(clock):
    h = Harness(clock, FULL_SEED)
    h.controller.select_mood("joy")
    assert h.controller.submit_note("   ") is False
    assert not h.controller.awaiting_note
    h.at(30.0)
    assert h.archive.layers[0].note is None


def test_note_without_an_episode_is_not_attached(clock):
    h = Harness(clock, FULL_SEED)
    assert h.controller.submit_note("hello") is False
    h.controller.skip_note()
    assert h.controller.episode is None


# ── The garden host ─────────────────────────────────────────────────

def _run_until(garden: Garden, clock, t_end: float, step: float = 0.2) -> None:
    while clock.t < t_end:
        clock.t = min(clock.t + step, t_end)
        garden.pump(clock.t)


def test_evolution_runs_whether_or_not_an_episode_is_active(clock):
    garden = Garden(rng=np.random.default_rng(0), clock=clock.monotonic,
                    wall_clock=clock.wall_ms)
    garden.start()
    _run_until(garden, clock, 1.0)
    assert garden.controller.generation == 5
    assert garden.phase is Phase.IDLE


def test_scenario_immortal_seed_on_empty_grid(clock):
    config = GardenConfig(immortal=True)
    garden = Garden(config=config, rng=np.random.default_rng(11),
                    clock=clock.monotonic, wall_clock=clock.wall_ms)
    garden.start()
    garden.select_mood("5")
    immortal = garden.controller.episode.immortal
    _run_until(garden, clock, 30.0)
    assert len(garden.archive) == 1
    layer = garden.archive.layers[0]
    assert layer.mood == "5"
    assert layer.grid.label_at(immortal.y, immortal.x) == "5"
    assert garden.phase is Phase.IDLE


def test_scenario_preempted_episode_fossilizes_once(clock):
    fossils: list[str] = []
    garden = Garden(config=GardenConfig(immortal=True), rng=np.random.default_rng(2),
                    clock=clock.monotonic, wall_clock=clock.wall_ms,
                    on_fossilized=lambda grid, mood: fossils.append(mood))
    garden.start()
    garden.select_mood("joy")
    _run_until(garden, clock, 5.0)
    garden.select_mood("calm")
    assert fossils == ["joy"]
    _run_until(garden, clock, 34.8)
    assert fossils == ["joy"]
    _run_until(garden, clock, 35.0)
    assert fossils == ["joy", "calm"]


def test_start_loads_and_refreshes_hourly(clock, store):
    near_two_weeks = clock.wall_ms() - 14 * MS_PER_DAY + 30 * 60 * 1000
    store.write(GHOST_LAYERS_KEY, [{
        "id": "1", "mood": "j", "timestamp": near_two_weeks, "opacity": 1.0,
        "grid": [["j", ""]],
    }])
    garden = Garden(config=GardenConfig(tick_seconds=60.0), store=store,
                    rng=np.random.default_rng(0),
                    clock=clock.monotonic, wall_clock=clock.wall_ms)
    garden.start()
    assert garden.archive.layers[0].opacity == 1.0
    clock.t = 3600.0
    garden.scheduler.run_due(clock.t)
    assert garden.archive.layers[0].opacity == 0.8
    assert store.read(GHOST_LAYERS_KEY)[0]["opacity"] == 0.8


def test_composition_includes_live_and_fossil_cells(clock):
    garden = Garden(config=GardenConfig(seed_probability=1.0),
                    rng=np.random.default_rng(0),
                    clock=clock.monotonic, wall_clock=clock.wall_ms)
    garden.select_mood("joy")
    garden.select_mood("calm")
    shares = dict(garden.composition())
    assert set(shares) == {"joy", "calm"}
    assert sum(shares.values()) == pytest.approx(100.0)


def test_stop_cancels_the_host_timers(clock):
    garden = Garden(rng=np.random.default_rng(0), clock=clock.monotonic,
                    wall_clock=clock.wall_ms)
    garden.start()
    garden.stop()
    assert garden.pump(10.0) == 0


# ── Configuration & event log ───────────────────────────────────────

def test_presets():
    basic, extended = PRESETS["basic"](), PRESETS["extended"]()
    assert (basic.rule, basic.seed_radius, basic.seed_probability, basic.immortal) == (
        RuleVariant.CLASSIC, 2, 0.7, False)
    assert (extended.rule, extended.seed_radius, extended.seed_probability, extended.immortal) == (
        RuleVariant.EXTENDED, 5, 0.6, True)
    assert (basic.rows, basic.cols, basic.episode_seconds, basic.tick_seconds) == (50, 80, 30.0, 0.2)


def test_overrides_skip_unset_values():
    config = GardenConfig.basic().with_overrides(immortal=True, seed_radius=None)
    assert config.immortal is True
    assert config.seed_radius == 2


@pytest.mark.parametrize(
    "changes",
    [{"rows": 0}, {"seed_radius": -1}, {"seed_probability": 0.0},
     {"seed_probability": 1.5}, {"tick_seconds": 0.0}],
)
def test_invalid_config_is_rejected(changes):
    with pytest.raises(ValueError):
        GardenConfig(**changes).validate()


def test_episode_log_writes_csv(tmp_path, clock):
    path = tmp_path / "events.csv"
    log = EpisodeLog(path)
    log.open()
    garden = Garden(config=FULL_SEED, rng=np.random.default_rng(0),
                    clock=clock.monotonic, wall_clock=clock.wall_ms, log=log)
    garden.select_mood("joy")
    clock.t = 30.0
    garden.pump(30.0)
    log.close()

    lines = path.read_text(encoding="utf-8").splitlines()
    assert lines[0] == "time_s,event,mood,population,layers,detail"
    events = [line.split(",")[1] for line in lines[1:]]
    assert events == ["seed", "fossilize:timeout"]
    assert lines[2].split(",")[2:5] == ["joy", "25", "1"]
