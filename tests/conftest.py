"""Shared pytest fixtures for the CHIP-8 interpreter tests."""

from __future__ import annotations

import random
from typing import Callable, Sequence

import pytest

from chip8core import Chip8


def words(*opcodes: int) -> bytes:
    """Encode 16-bit opcodes big-endian, the way they sit in a ROM."""
    out = bytearray()
    for op in opcodes:
        out += op.to_bytes(2, "big")
    return bytes(out)


@pytest.fixture
def vm() -> Chip8:
    return Chip8(rng=random.Random(1234))


@pytest.fixture
def run(vm: Chip8) -> Callable[..., Chip8]:
    """Reset, load opcodes at 0x200 and execute ``steps`` cycles (default: one per opcode)."""

    def _run(opcodes: Sequence[int], steps: int | None = None) -> Chip8:
        vm.initialize()
        vm.load_program(words(*opcodes))
        for _ in range(len(opcodes) if steps is None else steps):
            vm.step()
        return vm

    return _run
