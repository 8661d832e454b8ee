import pytest
from zstd import compress

from bpfasm import builders as b
from bpfasm.assemble import assemble
from bpfasm.objfile import HEADER, MAGIC, VERSION, disassemble_program, dump, load
from bpfasm.pseudo import Program
from bpfasm.symbols import Environment
from bpfasm.typegraph import IntType, Member, StructType, TypeGraph


def sample_program():
    types = TypeGraph([
        IntType('u32', 4),
        StructType('iphdr', 20, [Member('tot_len', 'u32', 0), Member('saddr', 'u32', 12)]),
    ])
    return assemble(Program([
        b.ld_map('r1', 'counters'),
        b.field_offset('r2', 'iphdr', 'saddr', base='r6'),
        b.jeq('r2', 0, 'skip'),
        b.call('map_lookup_elem'),
        b.label('skip'),
        b.return_value(0),
    ], types), Environment(maps={'counters': 3}))


def test_dump_load():
    prog = sample_program()
    image = dump(prog)

    assert isinstance(image, bytes)
    assert load(image) == prog


def test_load_rejects_garbage():
    with pytest.raises(ValueError):
        load(b'definitely not an image')


def test_load_rejects_bad_header():
    with pytest.raises(ValueError):
        load(compress(b'\x00' * 4))
    with pytest.raises(ValueError):
        load(compress(HEADER.pack(b'XXXX', VERSION, 0, 0, 0, 0)))
    with pytest.raises(ValueError):
        load(compress(HEADER.pack(MAGIC, VERSION + 1, 0, 0, 0, 0)))
    with pytest.raises(ValueError):
        load(compress(HEADER.pack(MAGIC, VERSION, 2, 8, 0, 0) + bytes(8)))


def test_load_rejects_truncated_sections():
    image = HEADER.pack(MAGIC, VERSION, 1, 8, 1, 0) + b.exit_insn().encode()
    with pytest.raises(ValueError):
        load(compress(image))


def test_disassemble_program():
    text = disassemble_program(sample_program())
    lines = text.splitlines()

    assert lines[0] == "; Instructions: 7"
    assert lines[1] == "; Relocations: 1"
    assert "   0: lddw r1, map_fd 3" in lines
    assert "   2: ldxw r2, [r6+0]    ; field_byte_offset iphdr.saddr [0:1]" in lines
    assert lines.index("skip:") == lines.index("   5: mov r0, 0") - 1
