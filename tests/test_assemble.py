import logging
import struct

import pytest

from bpfasm import builders as b
from bpfasm.assemble import (
    DEFAULT_MAX_INSNS,
    MAX_INSNS_LIMIT,
    AssembledProgram,
    Assembler,
    assemble,
    try_assemble,
)
from bpfasm.errors import InvalidInstruction, SizeLimitExceeded, StructuralError, UnresolvedLabel
from bpfasm.pseudo import Program
from bpfasm.symbols import Environment
from bpfasm.typegraph import IntType, Member, StructType, TypeGraph


def test_wide_immediate_program():
    prog = assemble([b.lddw('r1', 0x1_0000_0002), b.exit_insn()])
    code = prog.code

    assert len(code) == 24
    assert struct.unpack('<i', code[4:8])[0] == 2
    assert struct.unpack('<i', code[12:16])[0] == 1
    assert prog.instruction_count == 3


def test_size_ceiling():
    program = [b.mov('r0', 0)] * 3 + [b.exit_insn()]

    with pytest.raises(SizeLimitExceeded):
        assemble(program, max_instructions=3)
    assert assemble(program, max_instructions=4).instruction_count == 4


def test_size_ceiling_counts_wide_slots():
    with pytest.raises(SizeLimitExceeded):
        assemble([b.lddw('r0', 1), b.exit_insn()], max_instructions=2)


def test_size_ceiling_checked_before_resolution():
    # the undefined label would fail later; the size check wins
    program = [b.ja('nowhere')] + [b.mov('r0', 0)] * 5
    with pytest.raises(SizeLimitExceeded):
        assemble(program, max_instructions=4)


def test_empty_program():
    with pytest.raises(StructuralError):
        assemble([])
    with pytest.raises(StructuralError):
        assemble([b.label('only')])


def test_max_instructions_bounds():
    assert Assembler().max_instructions == DEFAULT_MAX_INSNS
    with pytest.raises(StructuralError):
        Assembler(max_instructions=0)
    with pytest.raises(StructuralError):
        Assembler(max_instructions=MAX_INSNS_LIMIT + 1)


def test_bad_ceiling_is_a_tagged_failure():
    result = try_assemble([b.exit_insn()], max_instructions=0)

    assert not result.ok
    assert result.program is None
    assert isinstance(result.error, StructuralError)


def test_nested_groups_are_flattened():
    prog = assemble([
        [b.mov('r0', 0), (b.add('r0', 1),)],
        (insn for insn in b.return_value(2)),
    ])
    assert [str(insn) for insn in prog.instructions()] == ["mov r0, 0", "add r0, 1", "mov r0, 2", "exit"]


def test_non_instruction_rejected():
    with pytest.raises(InvalidInstruction):
        assemble([b.mov('r0', 0), "exit"])
    with pytest.raises(InvalidInstruction):
        assemble([b.mov('r0', 0), 42])


def test_assembly_is_deterministic():
    types = TypeGraph([IntType('u32', 4), StructType('hdr', 8, [Member('len', 'u32', 4)])])
    program = Program([
        b.ld_map('r1', 'events'),
        b.field_offset('r2', 'hdr', 'len'),
        b.jeq('r2', 0, 'out'),
        b.call('map_lookup_elem'),
        b.label('out'),
        b.return_value(0),
    ], types)
    env = Environment(maps={'events': 5})

    first = assemble(program, env)
    second = assemble(program, env)

    assert first == second
    assert first.code == second.code
    assert first.relocations == second.relocations


def test_program_with_generator_group_assembles_repeatedly():
    program = Program([b.mov('r0', 0), (insn for insn in b.return_value(1))])

    first = assemble(program)
    second = assemble(program)

    assert len(first.code) == 24
    assert first.code == second.code


def test_program_is_hashable():
    types = TypeGraph([IntType('u32', 4), StructType('hdr', 8, [Member('len', 'u32', 4)])])
    program = Program([b.field_offset('r2', 'hdr', 'len'), b.exit_insn()], types)
    same = Program([b.field_offset('r2', 'hdr', 'len'), b.exit_insn()], types)

    assert hash(program) == hash(same)
    assert {program, same} == {program}


def test_try_assemble():
    ok = try_assemble([b.mov('r0', 0), b.exit_insn()])
    assert ok.ok
    assert isinstance(ok.unwrap(), AssembledProgram)

    failed = try_assemble([b.ja('missing'), b.exit_insn()])
    assert not failed.ok
    assert failed.program is None
    assert isinstance(failed.error, UnresolvedLabel)
    with pytest.raises(UnresolvedLabel):
        failed.unwrap()


def test_assembled_program_is_immutable():
    prog = assemble([b.label('start'), b.mov('r0', 0), b.exit_insn()])
    with pytest.raises(AttributeError):
        prog.code = b''
    with pytest.raises(TypeError):
        prog.labels['other'] = 1


def test_check_bounds_sequence():
    prog = assemble([
        b.ldx('w', 'r2', 'r1', 0),
        b.ldx('w', 'r3', 'r1', 4),
        b.check_bounds('r2', 'r3', 14, 'drop', scratch='r4'),
        b.return_value(2),
        b.label('drop'),
        b.return_value(1),
    ])
    insns = prog.instructions()

    assert str(insns[2]) == "mov r4, r2"
    assert str(insns[3]) == "add r4, 14"
    assert str(insns[4]) == "jgt r4, r3, +2"


def test_debug_logging(caplog):
    caplog.set_level(logging.DEBUG, logger='bpfasm')
    assemble([b.mov('r0', 0), b.exit_insn()])

    assert any("Assembled 16 bytes" in record.getMessage() for record in caplog.records)
