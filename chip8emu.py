#!/usr/bin/env python3
"""
CHIP-8 emulator frontend (pygame)

Drives the interpreter in chip8core.py: polls the keyboard, paces cycles,
renders the framebuffer and plays a beep when the sound timer runs out.

Run:
  chip8emu path/to/rom [--scale 15] [--clock 700] [--tone 440] [--trace]

Keyboard mapping (common layout):

  CHIP-8  =>  Keyboard
  1 2 3 C =>  1 2 3 4
  4 5 6 D =>  Q W E R
  7 8 9 E =>  A S D F
  A 0 B F =>  Z X C V

Hotkeys: Esc quits, F9 resets and reloads the ROM, dropping a file on the
window loads it.
"""
from __future__ import annotations
import argparse
import logging
import os
import random
import sys
import time
from typing import List, Optional

os.environ.setdefault("PYGAME_HIDE_SUPPORT_PROMPT", "1")

import numpy as np

try:
    import pygame
except ImportError:
    print("This emulator requires pygame. Install with: pip install pygame", file=sys.stderr)
    raise

from chip8core import (
    Chip8,
    Chip8Error,
    Mode,
    ProgramTooLarge,
    SCREEN_H,
    SCREEN_W,
)

logger = logging.getLogger(__name__)

TIMER_HZ = 60
FOREGROUND = np.array((255, 255, 255), dtype=np.uint8)
BACKGROUND = np.array((0, 0, 0), dtype=np.uint8)

# Keyboard mapping: CHIP-8 key index -> pygame key
KEYMAP = {
    0x0: pygame.K_x,
    0x1: pygame.K_1,
    0x2: pygame.K_2,
    0x3: pygame.K_3,
    0x4: pygame.K_q,
    0x5: pygame.K_w,
    0x6: pygame.K_e,
    0x7: pygame.K_a,
    0x8: pygame.K_s,
    0x9: pygame.K_d,
    0xA: pygame.K_z,
    0xB: pygame.K_c,
    0xC: pygame.K_4,
    0xD: pygame.K_r,
    0xE: pygame.K_f,
    0xF: pygame.K_v,
}
PYGAME_TO_CHIP8 = {pgk: k_idx for k_idx, pgk in KEYMAP.items()}


def read_rom(path: str) -> bytes:
    with open(path, 'rb') as f:
        return f.read()


# ==============================
# Pygame Frontend
# ==============================


class Frontend:
    def __init__(self, chip8: Chip8, rom: bytes, title: str = "CHIPemu",
                 scale: int = 10, tone_hz: int = 440):
        self.chip8 = chip8
        self.rom = rom
        self.title = title
        self.running = True
        self.scale = max(1, int(scale))
        self.surface = pygame.display.set_mode(
            (SCREEN_W * self.scale, SCREEN_H * self.scale))
        pygame.display.set_caption(title)
        self.clock = pygame.time.Clock()

        # Audio setup (simple square tone)
        self.tone_hz = tone_hz
        self.sound = None
        self._init_audio()

    def _init_audio(self):
        try:
            pygame.mixer.pre_init(44100, -16, 1, 256)
            pygame.mixer.init()
        except pygame.error as exc:
            logger.warning("Audio disabled: %s", exc)
            return
        # generate a 100ms square wave buffer
        sr = 44100
        duration = 0.1
        t = np.arange(int(sr * duration))
        wave = ((t * self.tone_hz * 2 / sr) % 2 >= 1).astype('float32') * 2 - 1
        wave = (wave * 32767).astype('int16')
        self.sound = pygame.mixer.Sound(wave)
        self.sound.set_volume(0.2)

    def reset(self):
        """Restart the current ROM from a clean machine."""
        self.chip8.initialize()
        self.chip8.load_program(self.rom)
        logger.info("Machine reset")

    def load_rom(self, path: str):
        try:
            rom = read_rom(path)
            self.chip8.initialize()
            self.chip8.load_program(rom)
        except (OSError, ProgramTooLarge) as exc:
            logger.error("Cannot load %s: %s", path, exc)
            self.reset()
            return
        self.rom = rom
        self.title = os.path.basename(path)
        pygame.display.set_caption(self.title)

    def handle_events(self):
        for event in pygame.event.get():
            if event.type == pygame.QUIT:
                self.running = False
            elif event.type in (pygame.KEYDOWN, pygame.KEYUP):
                is_down = event.type == pygame.KEYDOWN
                # Escape to quit
                if event.key == pygame.K_ESCAPE:
                    self.running = False
                elif event.key == pygame.K_F9 and is_down:
                    self.reset()
                elif event.key in PYGAME_TO_CHIP8:
                    self.chip8.set_key(PYGAME_TO_CHIP8[event.key], is_down)
            elif event.type == pygame.DROPFILE:
                self.load_rom(event.file)

    def render(self):
        pixels = np.frombuffer(self.chip8.framebuffer(), dtype=np.uint8)
        pixels = pixels.reshape(SCREEN_H, SCREEN_W)
        # surfarray is indexed [x, y]
        rgb = np.where(pixels.T[..., None] != 0, FOREGROUND, BACKGROUND)
        frame = pygame.surfarray.make_surface(rgb.astype(np.uint8))
        pygame.transform.scale(frame, self.surface.get_size(), self.surface)
        pygame.display.flip()

    def tick(self, fps: int):
        self.clock.tick(fps)

    def play_sound_if_needed(self):
        if self.chip8.pending_tone() and self.sound is not None:
            # Fire-and-forget short blip
            self.sound.play()


def run_frame(chip8: Chip8, cycles: int) -> int:
    """Run up to ``cycles`` steps; stop early while FX0A waits for a key."""
    executed = 0
    for _ in range(cycles):
        chip8.step()
        executed += 1
        if chip8.mode is Mode.AWAITING_KEY:
            break
    return executed


# ==============================
# Main loop
# ==============================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chip8emu", description="CHIP-8 emulator")
    parser.add_argument("rom", help="Path to CHIP-8 ROM")
    parser.add_argument("--scale", type=int, default=15,
                        help="Pixel scale factor (default 15)")
    parser.add_argument("--clock", type=int, default=700,
                        help="CPU clock in Hz (default 700)")
    parser.add_argument("--legacy-store", action="store_true",
                        help="Use original FX55/FX65 quirk (I increments)")
    parser.add_argument("--tone", type=int, default=440,
                        help="Beep tone frequency in Hz")
    parser.add_argument("--seed", type=int, default=None,
                        help="Seed for the RND instruction")
    parser.add_argument("--log-level", default="WARNING",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging threshold (default WARNING)")
    parser.add_argument("--trace", action="store_true",
                        help="Log every executed instruction (same as --log-level DEBUG)")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.trace else args.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    chip8 = Chip8(legacy_store=args.legacy_store, rng=random.Random(args.seed))

    # Load ROM
    try:
        rom_data = read_rom(args.rom)
        chip8.load_program(rom_data)
    except (OSError, ProgramTooLarge) as exc:
        logger.error("Cannot load %s: %s", args.rom, exc)
        return 1

    pygame.init()
    pygame.display.set_allow_screensaver(True)
    frontend = Frontend(chip8, rom_data, title=os.path.basename(args.rom),
                        scale=args.scale, tone_hz=args.tone)

    # The core ticks its timers once per step, so clock // 60 steps per
    # frame keeps a 60 Hz frame rate
    cycles_per_frame = max(1, args.clock // TIMER_HZ)
    last_report = time.perf_counter()

    # Main emulation loop
    try:
        while frontend.running:
            frontend.handle_events()

            # Run CPU cycles for this frame
            try:
                run_frame(chip8, cycles_per_frame)
            except Chip8Error as exc:
                logger.error("Machine halted: %s", exc)
                logger.error("State: %r", chip8)
                return 1

            frontend.play_sound_if_needed()

            if chip8.consume_redraw_flag():
                frontend.render()

            now = time.perf_counter()
            if now - last_report >= 2.0:
                pygame.display.set_caption(
                    f"{frontend.title} | FPS: {frontend.clock.get_fps():.1f}")
                last_report = now

            # Cap UI thread to ~60 FPS for smoothness
            frontend.tick(TIMER_HZ)
    finally:
        pygame.quit()
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nExiting.")
