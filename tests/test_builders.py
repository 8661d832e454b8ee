import pytest

from bpfasm import builders as b
from bpfasm.errors import InvalidInstruction, InvalidRegister
from bpfasm.instruction import Instruction
from bpfasm.pseudo import FieldAccess, HelperCall, Label, MapRef, Program, SymbolicJump, count_slots, flatten
from bpfasm.relocate import RelocKind


def test_register_or_immediate_operand():
    assert b.add('r1', 'r2').source == 0x08
    assert b.add('r1', 2).source == 0x00
    assert b.sub32('r1', 'fp').src == 10


def test_numeric_targets_build_instructions():
    assert b.ja(3) == Instruction(0x05, offset=3)
    assert b.jne('r1', 'r2', -1).offset == -1
    assert b.call_local(4).imm == 4


def test_symbolic_targets_build_pseudo_instructions():
    jump = b.jsge('r3', 0, 'done')
    assert isinstance(jump, SymbolicJump)
    assert jump.target == 'done'
    assert jump.template.opcode == 0x75

    assert isinstance(b.call('ringbuf_output'), HelperCall)
    assert isinstance(b.ld_map('r1', 'events'), MapRef)
    assert b.label('x') == Label('x')


def test_relocatable_builders():
    access = b.field_offset('r0', 'task_struct', ['se', 'vruntime'], base='r1', size='dw')
    assert isinstance(access, FieldAccess)
    assert access.field_path == 'se.vruntime'
    assert access.base == 1
    assert access.kind == RelocKind.FIELD_BYTE_OFFSET
    assert b.type_id('r1', 'task_struct', target=True).kind == RelocKind.TYPE_ID_TARGET
    assert b.enum_value('r1', 'pid_type', 'PIDTYPE_PID').field_path == 'PIDTYPE_PID'


def test_invalid_builder_arguments():
    with pytest.raises(InvalidInstruction):
        b.ldx('q', 'r0', 'r1')
    with pytest.raises(InvalidInstruction):
        b.alu64('end', 'r0', 1)
    with pytest.raises(InvalidInstruction):
        b.to_be('r0', 8)
    with pytest.raises(InvalidInstruction):
        b.atomic_add('h', 'r1', 'r2')
    with pytest.raises(InvalidInstruction):
        b.jump('ja', 'r1', 0, 1)
    with pytest.raises(InvalidInstruction):
        b.label('')
    with pytest.raises(InvalidRegister):
        b.ld_map('fp', 'events')
    with pytest.raises(InvalidRegister):
        b.field_size('r10', 'task_struct', 'pid')


def test_stack_helpers():
    assert str(b.stack_store(-8, 'r1')) == "stxdw [r10-8], r1"
    assert str(b.stack_load('r2', -4, 'w')) == "ldxw r2, [r10-4]"


def test_slot_counting():
    items = flatten(Program([
        b.label('a'),
        b.lddw('r1', 1),
        b.ld_map('r2', 'm'),
        b.call('ktime_get_ns'),
        b.ja('a'),
        b.exit_insn(),
    ]))
    assert count_slots(items) == 7
