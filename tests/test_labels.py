import pytest

from bpfasm import builders as b
from bpfasm.assemble import assemble
from bpfasm.errors import (
    DuplicateLabel,
    InvalidInstruction,
    JumpOffsetOutOfRange,
    StructuralError,
    UnresolvedLabel,
    UnresolvedSymbol,
)
from bpfasm.labels import collect_labels, resolve_labels
from bpfasm.pseudo import SymbolicJump, flatten


def test_forward_jump_offset():
    prog = assemble([
        b.jeq('r1', 0, 'L'),
        b.mov('r2', 1),
        b.exit_insn(),
        b.label('L'),
        b.mov('r2', 2),
        b.exit_insn(),
    ])
    insns = prog.instructions()

    assert insns[0].offset == 2
    assert prog.labels == {'L': 3}
    assert prog.instruction_count == 5


def test_backward_jump_offset():
    items, labels = resolve_labels(flatten([
        b.label('top'),
        b.add('r1', 1),
        b.jlt('r1', 10, 'top'),
        b.exit_insn(),
    ]))

    assert labels == {'top': 0}
    assert items[1].offset == -2


def test_jump_to_next_instruction_is_zero():
    items, _ = resolve_labels([b.ja('next'), b.label('next'), b.exit_insn()])
    assert items[0].offset == 0


def test_wide_loads_count_two_slots():
    items, labels = resolve_labels(flatten([
        b.ja('end'),
        b.lddw('r1', 1 << 40),
        b.ld_map('r2', 'events'),
        b.label('end'),
        b.exit_insn(),
    ]))

    assert labels == {'end': 5}
    assert items[0].offset == 4


def test_label_at_end_of_program():
    labels = collect_labels([b.mov('r0', 0), b.exit_insn(), b.label('end')])
    assert labels == {'end': 2}


def test_duplicate_label():
    with pytest.raises(DuplicateLabel) as exc:
        assemble([b.label('a'), b.mov('r0', 0), b.label('a'), b.exit_insn()])

    assert isinstance(exc.value, StructuralError)
    assert exc.value.symbol == 'a'
    assert exc.value.slot == 1


def test_undefined_label():
    with pytest.raises(UnresolvedLabel) as exc:
        assemble([b.mov('r0', 0), b.jeq('r0', 0, 'missing'), b.exit_insn()])

    assert isinstance(exc.value, UnresolvedSymbol)
    assert exc.value.symbol == 'missing'
    assert exc.value.slot == 1
    assert "missing" in str(exc.value)


def test_short_jump_out_of_range_is_not_promoted():
    filler = [b.mov('r0', 0)] * 40000
    with pytest.raises(JumpOffsetOutOfRange) as exc:
        assemble([b.ja('far'), filler, b.label('far'), b.exit_insn()], max_instructions=100000)

    assert exc.value.slot == 0
    assert exc.value.symbol == 'far'


def test_long_jump_reaches_far_targets():
    filler = [b.mov('r0', 0)] * 40000
    prog = assemble([b.ja_long('far'), filler, b.label('far'), b.exit_insn()], max_instructions=100000)
    first = prog.instructions()[0]

    assert first.imm == 40000
    assert first.offset == 0
    assert str(first) == "gotol +40000"


def test_local_call_displacement_in_immediate():
    prog = assemble([
        b.call_local('sub'),
        b.exit_insn(),
        b.label('sub'),
        b.mov('r0', 1),
        b.exit_insn(),
    ])
    call = prog.instructions()[0]

    assert call.src == 1
    assert call.imm == 1
    assert str(call) == "call pc+1"


def test_symbolic_target_on_non_jump_is_rejected():
    with pytest.raises(InvalidInstruction):
        resolve_labels([SymbolicJump(b.mov('r0', 0), 'x'), b.label('x'), b.exit_insn()])
