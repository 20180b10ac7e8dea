#!/usr/bin/env python3
"""
  ∙  Y E S T E R - Y E A R  ∙
  A mood diary that grows.

  Pick how your day felt and a small cluster of that mood's colour is seeded
  in the middle of the garden. It lives by Conway's rules for thirty seconds,
  newborn cells borrowing the colour of a neighbour, and then it fossilizes:
  a ghost of it stays behind, translucent beneath the living cells, fading
  over the following weeks and months until only a faint trace is left of
  each day of the year.

  Controls:
    1..9, 0   choose a mood (numbers)    a..o      choose a mood (words)
    s         toggle composition panel   v         toggle memory vault
    X         clear every ghost layer    q         quit
  After choosing a mood, type a note and press Enter (Esc to skip).

  Layers and memories are kept in yesteryear_data/ beside this script, and
  lifecycle events are logged to yesteryear_events.csv.
"""

from __future__ import annotations

import argparse
import curses
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Sequence

import numpy as np
from numpy.typing import NDArray

from yesteryear_archive import ArchiveStore, GhostLayer, Memory
from yesteryear_episode import (
    NOTE_MAX_CHARS,
    PRESETS,
    EpisodeLog,
    Garden,
    GardenConfig,
    Phase,
)
from yesteryear_grid import EMPTY_CODE, MoodGrid, RuleVariant

DATA_DIR = Path(__file__).resolve().parent / "yesteryear_data"
LOG_PATH = Path(__file__).resolve().parent / "yesteryear_events.csv"

# ── Palette ─────────────────────────────────────────────────────────────
# Deep, rich retro colours. Numbers run from cold blue (1) to gold (10).
MOOD_SETS: dict[str, dict[str, str]] = {
    "numbers": {
        "1": "#0047AB", "2": "#4169E1", "3": "#4682B4", "4": "#5F9EA0",
        "5": "#3CB371", "6": "#9932CC", "7": "#D63384", "8": "#DC143C",
        "9": "#FFA500", "10": "#FFD700",
    },
    "words": {
        "effervescent": "#FFD700", "joyful": "#FFA500", "warm": "#DC143C",
        "golden": "#DAA520", "tender": "#D63384", "soft": "#3CB371",
        "dreamy": "#9932CC", "quiet": "#4682B4", "nostalgic": "#CD5C5C",
        "restless": "#5F9EA0", "aching": "#C44569", "heavy": "#696969",
        "melancholic": "#0047AB", "hollow": "#4169E1", "raw": "#8B0000",
    },
}
UNKNOWN_MOOD_COLOR = "#FFFFFF"
BACKGROUND_RGB: tuple[int, int, int] = (0x1A, 0x1A, 0x1A)
GHOST_ALPHA = 0.3  # ghost layers at full opacity are still this translucent

# xterm-256 colour cube levels
CUBE_LEVELS: tuple[int, ...] = (0, 95, 135, 175, 215, 255)

UPPER_HALF = "\u2580"  # ▀  top pixel
LOWER_HALF = "\u2584"  # ▄  bottom pixel
FULL_BLOCK = "\u2588"  # █  both pixels, same ink

FRAME_DELAY = 1.0 / 30.0
FLASH_SECONDS = 3.0


# ═══════════════════════════════════════════════════════════════════════
#  Colour
# ═══════════════════════════════════════════════════════════════════════

def hex_to_rgb(color: str) -> tuple[int, int, int]:
    color = color.lstrip("#")
    return int(color[0:2], 16), int(color[2:4], 16), int(color[4:6], 16)


def blend(rgb: tuple[int, int, int], alpha: float,
          under: tuple[int, int, int] = BACKGROUND_RGB) -> tuple[int, int, int]:
    r, g, b = (round(c * alpha + u * (1.0 - alpha)) for c, u in zip(rgb, under))
    return r, g, b


def rgb_to_xterm(rgb: tuple[int, int, int]) -> int:
    """Nearest xterm-256 colour, from the 6x6x6 cube or the grey ramp."""
    levels = np.array(CUBE_LEVELS)
    idx = [int(np.abs(levels - c).argmin()) for c in rgb]
    cube = tuple(CUBE_LEVELS[i] for i in idx)
    cube_code = 16 + 36 * idx[0] + 6 * idx[1] + idx[2]

    grey_step = min(23, max(0, round((sum(rgb) / 3 - 8) / 10)))
    grey = 8 + 10 * grey_step
    grey_code = 232 + grey_step

    cube_err = sum((a - b) ** 2 for a, b in zip(rgb, cube))
    grey_err = sum((a - grey) ** 2 for a in rgb)
    return grey_code if grey_err < cube_err else cube_code


class ColorMap:
    """Lazily allocated curses colour pairs for half-block rendering."""

    def __init__(self, mood_colors: dict[str, str]) -> None:
        self.mood_colors = mood_colors
        self._inks: dict[tuple[str, float], int] = {}
        self._pairs: dict[tuple[int, int], int] = {}
        self._next_pair = 1
        self._max_pairs = 0

    def setup(self) -> None:
        curses.start_color()
        curses.use_default_colors()
        self._max_pairs = curses.COLOR_PAIRS - 1

    def ink(self, label: str, opacity: float = 1.0) -> int:
        """xterm colour for a live (opacity 1) or ghost cell of ``label``."""
        key = (label, opacity)
        found = self._inks.get(key)
        if found is None:
            rgb = hex_to_rgb(self.mood_colors.get(label, UNKNOWN_MOOD_COLOR))
            if opacity < 1.0:
                rgb = blend(rgb, opacity)
            found = rgb_to_xterm(rgb)
            self._inks[key] = found
        return found

    def pair(self, fg: int, bg: int = -1) -> int:
        key = (fg, bg)
        found = self._pairs.get(key)
        if found is None:
            if self._next_pair > self._max_pairs:
                return 0
            found = self._next_pair
            curses.init_pair(found, fg, bg)
            self._pairs[key] = found
            self._next_pair += 1
        return found


# ═══════════════════════════════════════════════════════════════════════
#  Frame composition
# ═══════════════════════════════════════════════════════════════════════

def compose_frame(
    grid: MoodGrid, layers: Sequence[GhostLayer]
) -> tuple[NDArray[np.int16], NDArray[np.int16], NDArray[np.float32]]:
    """Live codes, and the topmost ghost code + opacity under each cell.

    Layers are painted oldest to newest, so a newer ghost covers an older
    one. Layers with other dimensions are cropped to the grid.
    """
    rows, cols = grid.cells.shape
    ghost = np.zeros((rows, cols), dtype=np.int16)
    opacity = np.zeros((rows, cols), dtype=np.float32)
    for layer in layers:
        cells = layer.grid.cells[:rows, :cols]
        h, w = cells.shape
        hit = cells != EMPTY_CODE
        ghost[:h, :w][hit] = cells[hit]
        opacity[:h, :w][hit] = layer.opacity
    return grid.cells, ghost, opacity


# ═══════════════════════════════════════════════════════════════════════
#  UI state
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class UIState:
    moods: list[str]
    keys: dict[int, str] = field(default_factory=dict)
    pending_mood: str | None = None
    note_buffer: str = ""
    show_composition: bool = False
    show_vault: bool = False
    flash: str = ""
    flash_until: float = 0.0


def mood_keys(set_name: str, moods: list[str]) -> dict[int, str]:
    """Keyboard bindings: digits for the numbers set, letters for words."""
    if set_name == "numbers":
        chars = "1234567890"
    else:
        chars = "abcdefghijklmnopqrstuvwxyz"
    return {ord(ch): mood for ch, mood in zip(chars, moods)}


def vault_lines(memories: Sequence[Memory], width: int) -> list[str]:
    """One line per memory, newest first."""
    if not memories:
        return ["no memories yet. create your first moment."]
    lines: list[str] = []
    for memory in sorted(memories, key=lambda m: m.timestamp, reverse=True):
        when = datetime.fromtimestamp(memory.timestamp / 1000).strftime("%b %d, %Y %I:%M %p")
        line = f"{memory.mood:<12} {when}"
        if memory.note:
            line += f'  "{memory.note}"'
        lines.append(line[:width])
    return lines


# ═══════════════════════════════════════════════════════════════════════
#  Rendering
# ═══════════════════════════════════════════════════════════════════════

def render(stdscr: curses.window, garden: Garden, cmap: ColorMap, ui: UIState) -> None:
    """Half-block rendering: live cells in full colour over fading ghosts."""
    max_y, max_x = stdscr.getmaxyx()
    live, ghost, opacity = compose_frame(garden.grid, garden.archive.layers)
    palette = garden.palette

    draw_rows = min(live.shape[0] // 2, max_y - 1)
    draw_cols = min(live.shape[1], max_x)
    row_end = draw_rows * 2

    # xterm ink for one pixel, None when blank
    def pixel(y: int, x: int) -> int | None:
        code = int(live[y, x])
        if code != EMPTY_CODE:
            return cmap.ink(palette.label(code))
        code = int(ghost[y, x])
        if code != EMPTY_CODE:
            return cmap.ink(palette.label(code), GHOST_ALPHA * float(opacity[y, x]))
        return None

    painted = (live[:row_end, :draw_cols] != EMPTY_CODE) | (ghost[:row_end, :draw_cols] != EMPTY_CODE)
    active = painted[0:row_end:2] | painted[1:row_end:2]
    for ty, x in zip(*np.nonzero(active)):
        ty, x = int(ty), int(x)
        top, bot = pixel(2 * ty, x), pixel(2 * ty + 1, x)
        try:
            if top is not None and bot is not None:
                if top == bot:
                    stdscr.addstr(ty, x, FULL_BLOCK, curses.color_pair(cmap.pair(top)))
                else:
                    stdscr.addstr(ty, x, UPPER_HALF, curses.color_pair(cmap.pair(top, bot)))
            elif top is not None:
                stdscr.addstr(ty, x, UPPER_HALF, curses.color_pair(cmap.pair(top)))
            elif bot is not None:
                stdscr.addstr(ty, x, LOWER_HALF, curses.color_pair(cmap.pair(bot)))
        except curses.error:
            pass

    if ui.show_composition:
        _draw_panel(stdscr, "composition", _composition_lines(garden), max_y, max_x)
    if ui.show_vault:
        _draw_panel(stdscr, "memory vault", vault_lines(garden.archive.memories, 56),
                    max_y, max_x, width=60)

    _draw_status(stdscr, garden, ui, max_y, max_x)


def _composition_lines(garden: Garden) -> list[str]:
    ranked = garden.composition()
    if not ranked:
        return ["nothing has grown yet"]
    return [f"{label:<14}{share:6.1f}%" for label, share in ranked]


def _draw_panel(
    stdscr: curses.window, title: str, body: list[str],
    max_y: int, max_x: int, width: int = 36,
) -> None:
    """Draw a dim text panel in the bottom-right."""
    lines = [f"{'':─<{width - 2}}", f" {title}"] + [f" {line}" for line in body]
    lines = lines[: max(0, max_y - 3)]
    x0 = max_x - width - 2
    y0 = max_y - len(lines) - 2
    if x0 < 0 or y0 < 0:
        return
    for i, line in enumerate(lines):
        padded = f" {line:<{width - 1}}"[:width]
        try:
            stdscr.addstr(y0 + i, x0, padded, curses.A_DIM)
        except curses.error:
            pass


def _draw_status(stdscr: curses.window, garden: Garden, ui: UIState,
                 max_y: int, max_x: int) -> None:
    controller = garden.controller
    if controller.awaiting_note and controller.episode is not None:
        prompt = f"  what felt {controller.episode.mood} today? {ui.note_buffer}_"
        try:
            stdscr.addstr(max_y - 1, 0, prompt[: max_x - 1], curses.A_BOLD)
        except curses.error:
            pass
        return

    if controller.phase is Phase.ACTIVE and controller.episode is not None:
        remaining = controller.remaining_seconds() or 0.0
        left = f"  {controller.episode.mood}  fossilizes in {remaining:4.1f}s"
    elif ui.pending_mood:
        left = f"  seeding {ui.pending_mood}..."
    else:
        left = "  how was your day?"
    if ui.flash and time.monotonic() < ui.flash_until:
        left += f"  [{ui.flash}]"
    left += f"  pop {controller.grid.population():,}  layers {len(garden.archive)}"
    right = "  keys: mood  s v X q  "
    status = left + " " * max(1, max_x - len(left) - len(right) - 1) + right
    try:
        stdscr.addstr(max_y - 1, 0, status[: max_x - 1], curses.A_DIM)
    except curses.error:
        pass


# ═══════════════════════════════════════════════════════════════════════
#  Main loop
# ═══════════════════════════════════════════════════════════════════════

def handle_key(key: int, garden: Garden, ui: UIState) -> bool:
    """Apply one keypress. Returns False when the user asked to quit."""
    controller = garden.controller
    if controller.awaiting_note and controller.episode is not None:
        if key in (curses.KEY_ENTER, 10, 13):
            garden.submit_note(ui.note_buffer)
            ui.note_buffer = ""
        elif key == 27:  # Esc
            garden.skip_note()
            ui.note_buffer = ""
        elif key in (curses.KEY_BACKSPACE, 127, 8):
            ui.note_buffer = ui.note_buffer[:-1]
        elif 32 <= key < 127 and len(ui.note_buffer) < NOTE_MAX_CHARS:
            ui.note_buffer += chr(key)
        return True

    if key in (ord("q"), ord("Q")):
        return False
    if key in ui.keys:
        ui.pending_mood = ui.keys[key]
        ui.note_buffer = ""
        garden.select_mood(ui.keys[key])
    elif key == ord("s"):
        ui.show_composition = not ui.show_composition
    elif key == ord("v"):
        ui.show_vault = not ui.show_vault
    elif key == ord("X"):
        garden.archive.clear()
    return True


def main(stdscr: curses.window, args: argparse.Namespace) -> None:
    curses.curs_set(0)
    stdscr.nodelay(True)
    stdscr.timeout(0)

    moods = list(MOOD_SETS[args.moods])
    ui = UIState(moods=moods, keys=mood_keys(args.moods, moods))
    cmap = ColorMap(MOOD_SETS[args.moods])
    cmap.setup()

    log = EpisodeLog(args.log)
    log.open()

    def on_seeded() -> None:
        ui.pending_mood = None

    def on_fossilized(snapshot: MoodGrid, mood: str) -> None:
        ui.flash = f"{mood} fossilized ({snapshot.population()} cells)"
        ui.flash_until = time.monotonic() + FLASH_SECONDS

    garden = Garden(
        config=build_config(args),
        store=ArchiveStore(args.data_dir),
        rng=np.random.default_rng(args.seed),
        log=log,
        on_seeded=on_seeded,
        on_fossilized=on_fossilized,
    )
    garden.start()

    try:
        while True:
            try:
                key = stdscr.getch()
            except curses.error:
                key = -1
            if key != -1 and not handle_key(key, garden, ui):
                break

            garden.pump()

            stdscr.erase()
            render(stdscr, garden, cmap, ui)
            stdscr.refresh()

            deadline = garden.scheduler.next_deadline()
            delay = FRAME_DELAY
            if deadline is not None:
                delay = min(delay, max(0.0, deadline - garden.scheduler.now()))
            time.sleep(delay)
    finally:
        garden.stop()
        log.close()


def build_config(args: argparse.Namespace) -> GardenConfig:
    """Preset plus any command-line overrides."""
    return PRESETS[args.preset]().with_overrides(
        rule=RuleVariant(args.rule) if args.rule else None,
        immortal=args.immortal,
        seed_radius=args.radius,
        seed_probability=args.probability,
        episode_seconds=args.episode_seconds,
        tick_seconds=args.tick_ms / 1000.0 if args.tick_ms else None,
    ).validate()


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="A mood diary that grows")
    parser.add_argument("--preset", choices=sorted(PRESETS), default="basic",
                        help="Rule and seeding preset (default: basic)")
    parser.add_argument("--rule", choices=[r.value for r in RuleVariant], default=None,
                        help="Birth rule override")
    parser.add_argument("--immortal", action=argparse.BooleanOptionalAction, default=None,
                        help="Keep one seeded cell alive for the whole episode")
    parser.add_argument("--radius", type=int, default=None,
                        help="Seed cluster radius override")
    parser.add_argument("--probability", type=float, default=None,
                        help="Seed cell probability override")
    parser.add_argument("--episode-seconds", type=float, default=None,
                        help="Seconds before an episode fossilizes (default: 30)")
    parser.add_argument("--tick-ms", type=float, default=None,
                        help="Evolution tick in milliseconds (default: 200)")
    parser.add_argument("--moods", choices=sorted(MOOD_SETS), default="numbers",
                        help="Mood vocabulary (default: numbers)")
    parser.add_argument("--seed", type=int, default=None,
                        help="Random seed for reproducible gardens")
    parser.add_argument("--data-dir", type=Path, default=DATA_DIR,
                        help="Where ghost layers and memories are kept")
    parser.add_argument("--log", type=Path, default=LOG_PATH,
                        help="CSV event log path")
    return parser.parse_args(argv)


def run(argv: Sequence[str] | None = None) -> None:
    args = parse_args(argv)
    build_config(args)  # fail on bad options before taking over the terminal
    try:
        curses.wrapper(main, args)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
