"""
CHIP-8 interpreter core.

Owns all machine state (memory, registers, call stack, timers, framebuffer,
keypad) and runs one fetch/decode/execute cycle per ``step()`` call. Windows,
key polling, sound and pacing belong to the driver (see chip8emu.py).

Memory map:

  0x000-0x04F  built-in 4x5 hex font (16 glyphs x 5 bytes)
  0x050-0x1FF  reserved
  0x200-0xFFF  program

Driver loop:

  vm = Chip8()
  vm.load_program(rom)
  while running:
      vm.step()
      if vm.consume_redraw_flag():
          render(vm.framebuffer())

Notes:
- Skip instructions advance PC by 2 like every other instruction, plus 2 more
  when the condition holds.
- CALL pushes the address of the instruction after it, so RET needs no fixup.
- FX55 / FX65 leave I untouched unless ``legacy_store`` is set.
- Sprites wrap at their origin and clip at the right and bottom edges.
- Timers tick once per step; real-time pacing is the caller's job.
"""
from __future__ import annotations

import enum
import logging
import random
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

# ==============================
# Constants
# ==============================
MEM_SIZE = 4096
ADDR_MASK = MEM_SIZE - 1
START_ADDRESS = 0x200
MAX_PROGRAM_SIZE = MEM_SIZE - START_ADDRESS
FONT_ADDRESS = 0x000
FONT_GLYPH_SIZE = 5
SCREEN_W, SCREEN_H = 64, 32
NUM_REGISTERS = 16
STACK_DEPTH = 16
NUM_KEYS = 16

# Classic CHIP-8 4x5 font (each char 5 bytes)
FONTSET = [
    0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
    0x20, 0x60, 0x20, 0x20, 0x70,  # 1
    0xF0, 0x10, 0xF0, 0x80, 0xF0,  # 2
    0xF0, 0x10, 0xF0, 0x10, 0xF0,  # 3
    0x90, 0x90, 0xF0, 0x10, 0x10,  # 4
    0xF0, 0x80, 0xF0, 0x10, 0xF0,  # 5
    0xF0, 0x80, 0xF0, 0x90, 0xF0,  # 6
    0xF0, 0x10, 0x20, 0x40, 0x40,  # 7
    0xF0, 0x90, 0xF0, 0x90, 0xF0,  # 8
    0xF0, 0x90, 0xF0, 0x10, 0xF0,  # 9
    0xF0, 0x90, 0xF0, 0x90, 0x90,  # A
    0xE0, 0x90, 0xE0, 0x90, 0xE0,  # B
    0xF0, 0x80, 0x80, 0x80, 0xF0,  # C
    0xE0, 0x90, 0x90, 0x90, 0xE0,  # D
    0xF0, 0x80, 0xF0, 0x80, 0xF0,  # E
    0xF0, 0x80, 0xF0, 0x80, 0x80   # F
]


# ==============================
# Errors
# ==============================
class Chip8Error(Exception):
    """Base class for interpreter faults."""


class ProgramTooLarge(Chip8Error, ValueError):
    def __init__(self, size: int):
        super().__init__(
            f"Program is {size} bytes, at most {MAX_PROGRAM_SIZE} fit "
            f"above 0x{START_ADDRESS:03X}")
        self.size = size


class StackOverflow(Chip8Error, RuntimeError):
    def __init__(self, address: int):
        super().__init__(
            f"Stack overflow on CALL at PC {address:03X} "
            f"(depth {STACK_DEPTH})")
        self.address = address


class StackUnderflow(Chip8Error, RuntimeError):
    def __init__(self, address: int):
        super().__init__(f"Stack underflow on RET at PC {address:03X}")
        self.address = address


class MachineHalted(Chip8Error, RuntimeError):
    """step() was called after a fatal fault; initialize() clears it."""


@dataclass(frozen=True)
class UnknownOpcode:
    """Non-fatal diagnostic returned by ``Chip8.step``."""
    opcode: int
    address: int

    def __str__(self):
        return f"Unknown opcode: {self.opcode:04X} at PC {self.address:03X}"


class Mode(enum.Enum):
    RUNNING = "running"
    AWAITING_KEY = "awaiting_key"   # FX0A is polling the keypad
    HALTED = "halted"               # stack fault, see Chip8Error


# ==============================
# Disassembler
# ==============================
_ALU_MNEMONICS = {
    0x0: "LD", 0x1: "OR", 0x2: "AND", 0x3: "XOR",
    0x4: "ADD", 0x5: "SUB", 0x6: "SHR", 0x7: "SUBN", 0xE: "SHL",
}

_MISC_FORMATS = {
    0x07: "LD V{x}, DT",
    0x0A: "LD V{x}, K",
    0x15: "LD DT, V{x}",
    0x18: "LD ST, V{x}",
    0x1E: "ADD I, V{x}",
    0x29: "LD F, V{x}",
    0x33: "LD B, V{x}",
    0x55: "LD [I], V{x}",
    0x65: "LD V{x}, [I]",
}


def disassemble(opcode: int) -> str:
    """Return the mnemonic for ``opcode``, or ``DW 0xNNNN`` for data words."""
    family = opcode >> 12
    x = f"{(opcode >> 8) & 0xF:X}"
    y = f"{(opcode >> 4) & 0xF:X}"
    n = opcode & 0xF
    nn = opcode & 0xFF
    nnn = opcode & 0xFFF

    if opcode == 0x00E0:
        return "CLS"
    if opcode == 0x00EE:
        return "RET"
    if family == 0x1:
        return f"JP 0x{nnn:03X}"
    if family == 0x2:
        return f"CALL 0x{nnn:03X}"
    if family == 0x3:
        return f"SE V{x}, 0x{nn:02X}"
    if family == 0x4:
        return f"SNE V{x}, 0x{nn:02X}"
    if family == 0x5 and n == 0:
        return f"SE V{x}, V{y}"
    if family == 0x6:
        return f"LD V{x}, 0x{nn:02X}"
    if family == 0x7:
        return f"ADD V{x}, 0x{nn:02X}"
    if family == 0x8 and n in _ALU_MNEMONICS:
        if n in (0x6, 0xE):
            return f"{_ALU_MNEMONICS[n]} V{x}"
        return f"{_ALU_MNEMONICS[n]} V{x}, V{y}"
    if family == 0x9 and n == 0:
        return f"SNE V{x}, V{y}"
    if family == 0xA:
        return f"LD I, 0x{nnn:03X}"
    if family == 0xB:
        return f"JP V0, 0x{nnn:03X}"
    if family == 0xC:
        return f"RND V{x}, 0x{nn:02X}"
    if family == 0xD:
        return f"DRW V{x}, V{y}, {n}"
    if family == 0xE and nn == 0x9E:
        return f"SKP V{x}"
    if family == 0xE and nn == 0xA1:
        return f"SKNP V{x}"
    if family == 0xF and nn in _MISC_FORMATS:
        return _MISC_FORMATS[nn].format(x=x)
    return f"DW 0x{opcode:04X}"


# ==============================
# Interpreter
# ==============================
@dataclass
class Chip8:
    # if True, FX55/FX65 increment I (original quirk)
    legacy_store: bool = False
    rng: random.Random = field(default_factory=random.Random, repr=False)
    memory: bytearray = field(
        default_factory=lambda: bytearray(MEM_SIZE), repr=False)
    V: List[int] = field(default_factory=lambda: [0] * NUM_REGISTERS)
    I: int = 0
    pc: int = START_ADDRESS
    stack: List[int] = field(default_factory=lambda: [0] * STACK_DEPTH)
    sp: int = 0
    delay_timer: int = 0
    sound_timer: int = 0
    display: bytearray = field(
        default_factory=lambda: bytearray(SCREEN_W * SCREEN_H), repr=False)
    keys: List[bool] = field(default_factory=lambda: [False] * NUM_KEYS)
    draw_flag: bool = False
    tone_flag: bool = False
    mode: Mode = Mode.RUNNING
    opcode: int = 0

    def __post_init__(self):
        self._families: Dict[int, Callable[[int], None]] = {
            0x1: self._op_jp,
            0x2: self._op_call,
            0x3: self._op_se_byte,
            0x4: self._op_sne_byte,
            0x6: self._op_ld_byte,
            0x7: self._op_add_byte,
            0xA: self._op_ld_i,
            0xB: self._op_jp_v0,
            0xC: self._op_rnd,
            0xD: self._op_drw,
        }
        # family -> (selector mask, selector -> handler)
        self._selectors: Dict[int, Tuple[int, Dict[int, Callable[[int], None]]]] = {
            0x0: (0xFFFF, {
                0x00E0: self._op_cls,
                0x00EE: self._op_ret,
            }),
            0x5: (0x000F, {0x0: self._op_se_reg}),
            0x8: (0x000F, {
                0x0: self._op_ld_reg,
                0x1: self._op_or,
                0x2: self._op_and,
                0x3: self._op_xor,
                0x4: self._op_add_reg,
                0x5: self._op_sub,
                0x6: self._op_shr,
                0x7: self._op_subn,
                0xE: self._op_shl,
            }),
            0x9: (0x000F, {0x0: self._op_sne_reg}),
            0xE: (0x00FF, {
                0x9E: self._op_skp,
                0xA1: self._op_sknp,
            }),
            0xF: (0x00FF, {
                0x07: self._op_ld_vx_dt,
                0x0A: self._op_ld_vx_key,
                0x15: self._op_ld_dt_vx,
                0x18: self._op_ld_st_vx,
                0x1E: self._op_add_i,
                0x29: self._op_ld_font,
                0x33: self._op_bcd,
                0x55: self._op_store,
                0x65: self._op_load,
            }),
        }
        self.initialize()

    # =============== Public API ===============
    def initialize(self):
        self.memory = bytearray(MEM_SIZE)
        self.memory[FONT_ADDRESS:FONT_ADDRESS + len(FONTSET)] = bytes(FONTSET)
        self.V = [0] * NUM_REGISTERS
        self.I = 0
        self.pc = START_ADDRESS
        self.stack = [0] * STACK_DEPTH
        self.sp = 0
        self.delay_timer = 0
        self.sound_timer = 0
        self.display = bytearray(SCREEN_W * SCREEN_H)
        self.keys = [False] * NUM_KEYS
        self.draw_flag = True
        self.tone_flag = False
        self.mode = Mode.RUNNING
        self.opcode = 0

    def load_program(self, data: bytes):
        if len(data) > MAX_PROGRAM_SIZE:
            raise ProgramTooLarge(len(data))
        self.memory[START_ADDRESS:] = bytes(data).ljust(MAX_PROGRAM_SIZE, b"\x00")
        logger.info("Loaded %d byte program at 0x%03X", len(data), START_ADDRESS)

    def step(self) -> Optional[UnknownOpcode]:
        """Run one cycle; return a diagnostic if the opcode was not recognised.

        Raises StackOverflow / StackUnderflow on a fatal stack fault (the
        machine is then HALTED) and MachineHalted if called after one.
        """
        if self.mode is Mode.HALTED:
            raise MachineHalted("Machine is halted, call initialize() to restart")

        address = self.pc
        self.opcode = self.fetch_opcode()
        handler = self.decode(self.opcode)
        self.pc = (self.pc + 2) & ADDR_MASK

        if handler is None:
            fault = UnknownOpcode(self.opcode, address)
            logger.warning("%s", fault)
            self._tick_timers()
            return fault

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("%03X  %04X  %s", address, self.opcode,
                         disassemble(self.opcode))
        handler(self.opcode)

        # FX0A found no key: the instruction re-runs next step, nothing ticks
        if self.mode is Mode.AWAITING_KEY:
            return None
        self._tick_timers()
        return None

    def framebuffer(self) -> memoryview:
        return memoryview(self.display).toreadonly()

    def consume_redraw_flag(self) -> bool:
        flag, self.draw_flag = self.draw_flag, False
        return flag

    def set_key(self, index: int, pressed: bool):
        if not 0 <= index < NUM_KEYS:
            raise ValueError(f"Key index must be in [0, {NUM_KEYS}), got {index}")
        self.keys[index] = bool(pressed)

    def pending_tone(self) -> bool:
        flag, self.tone_flag = self.tone_flag, False
        return flag

    # =============== Core fetch/decode/execute cycle ===============
    def fetch_opcode(self) -> int:
        hi = self.memory[self.pc & ADDR_MASK]
        lo = self.memory[(self.pc + 1) & ADDR_MASK]
        return (hi << 8) | lo

    def decode(self, opcode: int) -> Optional[Callable[[int], None]]:
        family = opcode >> 12
        if family in self._selectors:
            mask, table = self._selectors[family]
            return table.get(opcode & mask)
        return self._families.get(family)

    def _tick_timers(self):
        if self.delay_timer > 0:
            self.delay_timer -= 1
        if self.sound_timer > 0:
            if self.sound_timer == 1:
                self.tone_flag = True
                logger.info("Beep")
            self.sound_timer -= 1

    # =============== Flow control ===============
    def _op_cls(self, opcode):  # 00E0
        self.display[:] = bytes(SCREEN_W * SCREEN_H)
        self.draw_flag = True

    def _op_ret(self, opcode):  # 00EE
        if self.sp == 0:
            self.mode = Mode.HALTED
            raise StackUnderflow((self.pc - 2) & ADDR_MASK)
        self.sp -= 1
        self.pc = self.stack[self.sp]

    def _op_jp(self, opcode):  # 1NNN
        self.pc = opcode & 0x0FFF

    def _op_call(self, opcode):  # 2NNN
        if self.sp >= STACK_DEPTH:
            self.mode = Mode.HALTED
            raise StackOverflow((self.pc - 2) & ADDR_MASK)
        self.stack[self.sp] = self.pc
        self.sp += 1
        self.pc = opcode & 0x0FFF

    def _op_jp_v0(self, opcode):  # BNNN
        self.pc = ((opcode & 0x0FFF) + self.V[0]) & ADDR_MASK

    # =============== Skips ===============
    def _skip_if(self, condition: bool):
        if condition:
            self.pc = (self.pc + 2) & ADDR_MASK

    def _op_se_byte(self, opcode):  # 3XNN
        self._skip_if(self.V[(opcode >> 8) & 0xF] == opcode & 0xFF)

    def _op_sne_byte(self, opcode):  # 4XNN
        self._skip_if(self.V[(opcode >> 8) & 0xF] != opcode & 0xFF)

    def _op_se_reg(self, opcode):  # 5XY0
        self._skip_if(self.V[(opcode >> 8) & 0xF] == self.V[(opcode >> 4) & 0xF])

    def _op_sne_reg(self, opcode):  # 9XY0
        self._skip_if(self.V[(opcode >> 8) & 0xF] != self.V[(opcode >> 4) & 0xF])

    def _op_skp(self, opcode):  # EX9E
        self._skip_if(self._is_key_down(self.V[(opcode >> 8) & 0xF]))

    def _op_sknp(self, opcode):  # EXA1
        self._skip_if(not self._is_key_down(self.V[(opcode >> 8) & 0xF]))

    # =============== Registers and arithmetic ===============
    def _op_ld_byte(self, opcode):  # 6XNN
        self.V[(opcode >> 8) & 0xF] = opcode & 0xFF

    def _op_add_byte(self, opcode):  # 7XNN, no carry flag
        x = (opcode >> 8) & 0xF
        self.V[x] = (self.V[x] + (opcode & 0xFF)) & 0xFF

    def _op_ld_reg(self, opcode):  # 8XY0
        self.V[(opcode >> 8) & 0xF] = self.V[(opcode >> 4) & 0xF]

    def _op_or(self, opcode):  # 8XY1
        self.V[(opcode >> 8) & 0xF] |= self.V[(opcode >> 4) & 0xF]

    def _op_and(self, opcode):  # 8XY2
        self.V[(opcode >> 8) & 0xF] &= self.V[(opcode >> 4) & 0xF]

    def _op_xor(self, opcode):  # 8XY3
        self.V[(opcode >> 8) & 0xF] ^= self.V[(opcode >> 4) & 0xF]

    def _op_add_reg(self, opcode):  # 8XY4
        x, y = (opcode >> 8) & 0xF, (opcode >> 4) & 0xF
        total = self.V[x] + self.V[y]
        self.V[0xF] = 1 if total > 0xFF else 0
        self.V[x] = total & 0xFF

    def _op_sub(self, opcode):  # 8XY5, Vx = Vx - Vy
        x, y = (opcode >> 8) & 0xF, (opcode >> 4) & 0xF
        vx, vy = self.V[x], self.V[y]
        self.V[0xF] = 1 if vx >= vy else 0
        self.V[x] = (vx - vy) & 0xFF

    def _op_shr(self, opcode):  # 8XY6
        x = (opcode >> 8) & 0xF
        vx = self.V[x]
        self.V[0xF] = vx & 0x1
        self.V[x] = vx >> 1

    def _op_subn(self, opcode):  # 8XY7, Vx = Vy - Vx
        x, y = (opcode >> 8) & 0xF, (opcode >> 4) & 0xF
        vx, vy = self.V[x], self.V[y]
        self.V[0xF] = 1 if vy >= vx else 0
        self.V[x] = (vy - vx) & 0xFF

    def _op_shl(self, opcode):  # 8XYE
        x = (opcode >> 8) & 0xF
        vx = self.V[x]
        self.V[0xF] = (vx >> 7) & 0x1
        self.V[x] = (vx << 1) & 0xFF

    def _op_rnd(self, opcode):  # CXNN
        self.V[(opcode >> 8) & 0xF] = self.rng.randrange(256) & (opcode & 0xFF)

    # =============== Index register and memory ===============
    def _op_ld_i(self, opcode):  # ANNN
        self.I = opcode & 0x0FFF

    def _op_add_i(self, opcode):  # FX1E, VF untouched
        self.I = (self.I + self.V[(opcode >> 8) & 0xF]) & 0xFFFF

    def _op_ld_font(self, opcode):  # FX29
        digit = self.V[(opcode >> 8) & 0xF] & 0xF
        self.I = FONT_ADDRESS + digit * FONT_GLYPH_SIZE

    def _op_bcd(self, opcode):  # FX33
        val = self.V[(opcode >> 8) & 0xF]
        self.memory[self.I & ADDR_MASK] = val // 100
        self.memory[(self.I + 1) & ADDR_MASK] = (val // 10) % 10
        self.memory[(self.I + 2) & ADDR_MASK] = val % 10

    def _op_store(self, opcode):  # FX55
        x = (opcode >> 8) & 0xF
        for i in range(x + 1):
            self.memory[(self.I + i) & ADDR_MASK] = self.V[i]
        if self.legacy_store:
            self.I = (self.I + x + 1) & 0xFFFF

    def _op_load(self, opcode):  # FX65
        x = (opcode >> 8) & 0xF
        for i in range(x + 1):
            self.V[i] = self.memory[(self.I + i) & ADDR_MASK]
        if self.legacy_store:
            self.I = (self.I + x + 1) & 0xFFFF

    # =============== Timers and keypad ===============
    def _op_ld_vx_dt(self, opcode):  # FX07
        self.V[(opcode >> 8) & 0xF] = self.delay_timer

    def _op_ld_dt_vx(self, opcode):  # FX15
        self.delay_timer = self.V[(opcode >> 8) & 0xF]

    def _op_ld_st_vx(self, opcode):  # FX18
        self.sound_timer = self.V[(opcode >> 8) & 0xF]

    def _op_ld_vx_key(self, opcode):  # FX0A
        key = self._first_pressed_key()
        if key is None:
            self.pc = (self.pc - 2) & ADDR_MASK
            self.mode = Mode.AWAITING_KEY
            return
        self.V[(opcode >> 8) & 0xF] = key
        self.mode = Mode.RUNNING

    # =============== Display ===============
    def _op_drw(self, opcode):  # DXYN
        self._draw_sprite(self.V[(opcode >> 8) & 0xF],
                          self.V[(opcode >> 4) & 0xF],
                          opcode & 0xF)

    # =============== Helpers ===============
    def _is_key_down(self, chip8_key: int) -> bool:
        if 0 <= chip8_key < NUM_KEYS:
            return self.keys[chip8_key]
        return False

    def _first_pressed_key(self) -> Optional[int]:
        for i in range(NUM_KEYS):
            if self.keys[i]:
                return i
        return None

    def _draw_sprite(self, x_pos: int, y_pos: int, height: int):
        self.V[0xF] = 0
        x_pos %= SCREEN_W
        y_pos %= SCREEN_H
        for row in range(height):
            py = y_pos + row
            if py >= SCREEN_H:
                break
            sprite = self.memory[(self.I + row) & ADDR_MASK]
            for col in range(8):
                px = x_pos + col
                if px >= SCREEN_W:
                    break
                if (sprite >> (7 - col)) & 1:
                    idx = py * SCREEN_W + px
                    if self.display[idx] == 1:
                        self.V[0xF] = 1
                    self.display[idx] ^= 1
        self.draw_flag = True
