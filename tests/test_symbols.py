import struct

import pytest

from bpfasm import builders as b
from bpfasm.assemble import assemble
from bpfasm.errors import ImmediateOutOfRange, UnboundMapReference, UnknownHelper
from bpfasm.helpers import HELPER_IDS, helper_name, normalize_helper_name
from bpfasm.symbols import Environment


def test_map_reference_binds_to_descriptor():
    prog = assemble([
        b.ld_map('r1', 'counter_map'),
        b.mov('r0', 0),
        b.exit_insn(),
    ], Environment(maps={'counter_map': 7}))
    code = prog.code

    assert code[0] == 0x18
    assert code[1] >> 4 == 1  # map descriptor marker
    assert code[1] & 0xF == 1
    assert struct.unpack('<i', code[4:8])[0] == 7
    assert code[8:16] == bytes(8)
    assert prog.instruction_count == 4


def test_map_value_reference_carries_offset():
    prog = assemble([b.ld_map_value('r2', 'config', 16), b.exit_insn()],
                    Environment(maps={'config': 3}))
    insn = prog.instructions()[0]

    assert insn.src == 2
    assert insn.imm == (16 << 32) | 3
    assert str(insn) == "lddw r2, map_value 3+16"


def test_same_program_binds_against_different_environments():
    program = [b.ld_map('r1', 'events'), b.exit_insn()]
    first = assemble(program, Environment(maps={'events': 4}))
    second = assemble(program, Environment(maps={'events': 9}))

    assert first.instructions()[0].imm == 4
    assert second.instructions()[0].imm == 9


def test_unbound_map_reference():
    with pytest.raises(UnboundMapReference) as exc:
        assemble([b.mov('r0', 0), b.ld_map('r1', 'nope'), b.exit_insn()], Environment(maps={'other': 1}))

    assert exc.value.symbol == 'nope'
    assert exc.value.slot == 1


def test_helper_calls_by_name():
    prog = assemble([b.call('map_lookup_elem'), b.call('bpf_ktime_get_ns'), b.tail_call(), b.exit_insn()])
    insns = prog.instructions()

    assert [insn.imm for insn in insns[:3]] == [1, 5, 12]
    assert all(insn.opcode == 0x85 for insn in insns[:3])


def test_unknown_helper():
    with pytest.raises(UnknownHelper) as exc:
        assemble([b.mov('r0', 0), b.call('make_coffee'), b.exit_insn()])

    assert exc.value.symbol == 'make_coffee'
    assert exc.value.slot == 1


def test_custom_helper_table():
    env = Environment(helpers={'bpf_custom': 1000})
    prog = assemble([b.call('custom'), b.exit_insn()], env)

    assert prog.instructions()[0].imm == 1000
    with pytest.raises(UnknownHelper):
        env.helper_id('map_lookup_elem')


def test_helper_table():
    assert HELPER_IDS['map_lookup_elem'] == 1
    assert HELPER_IDS['trace_printk'] == 6
    assert HELPER_IDS['ringbuf_output'] == 130
    assert 'unspec' not in HELPER_IDS
    assert helper_name(12) == 'tail_call'
    assert normalize_helper_name('BPF-Get-Current-Pid-Tgid') == 'get_current_pid_tgid'


def test_environment_is_read_only():
    maps = {'a': 1}
    env = Environment(maps=maps)
    maps['b'] = 2

    assert 'b' not in env.maps
    with pytest.raises(TypeError):
        env.maps['c'] = 3

    extended = env.with_maps({'c': 3})
    assert extended.map_fd('c') == 3
    assert 'c' not in env.maps


def test_environment_rejects_bad_descriptors():
    with pytest.raises(ImmediateOutOfRange):
        Environment(maps={'a': -1})
    with pytest.raises(ImmediateOutOfRange):
        Environment(maps={'a': 1 << 31})
