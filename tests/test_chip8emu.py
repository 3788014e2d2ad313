from chip8core import Chip8, Mode
from chip8emu import KEYMAP, PYGAME_TO_CHIP8, build_parser, run_frame
from conftest import words


def test_parser_defaults() -> None:
    args = build_parser().parse_args(["game.ch8"])
    assert args.rom == "game.ch8"
    assert args.scale == 15
    assert args.clock == 700
    assert args.tone == 440
    assert args.legacy_store is False
    assert args.seed is None
    assert args.log_level == "WARNING"
    assert args.trace is False


def test_parser_options() -> None:
    args = build_parser().parse_args(
        ["pong.ch8", "--scale", "8", "--clock", "1200", "--legacy-store",
         "--seed", "3", "--trace"])
    assert args.scale == 8
    assert args.clock == 1200
    assert args.legacy_store is True
    assert args.seed == 3
    assert args.trace is True


def test_keymap_covers_all_keys_once() -> None:
    assert sorted(KEYMAP) == list(range(16))
    assert len(PYGAME_TO_CHIP8) == 16
    assert all(KEYMAP[PYGAME_TO_CHIP8[k]] == k for k in PYGAME_TO_CHIP8)


def test_run_frame_runs_requested_cycles() -> None:
    vm = Chip8()
    vm.load_program(words(0x1200))
    assert run_frame(vm, 10) == 10
    assert vm.pc == 0x200


def test_run_frame_stops_while_waiting_for_key() -> None:
    vm = Chip8()
    vm.load_program(words(0x6001, 0xF10A))
    assert run_frame(vm, 10) == 2
    assert vm.mode is Mode.AWAITING_KEY

    vm.set_key(4, True)
    assert run_frame(vm, 1) == 1
    assert vm.V[1] == 4
    assert vm.mode is Mode.RUNNING
