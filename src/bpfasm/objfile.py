"""
Assembled-program image format.

Image layout (before compression):
  Header (22 bytes):
    MAGIC (4) + VERSION (2) + INSN_COUNT (4) + CODE_BYTES (4)
    + RELOC_COUNT (4) + LABEL_COUNT (4)
  Code section:        CODE_BYTES bytes of encoded instructions
  Relocation table:    RELOC_COUNT records of
                         SLOT (4) + TYPE_ID (4) + KIND (1)
                         + type name + field path + access string
  Label table:         LABEL_COUNT records of name + SLOT (4)

Strings are a 2-byte length followed by UTF-8. All integers are
little-endian. The whole image is zstd-compressed.
"""

import struct
from typing import List, Tuple

from zstd import Error as ZstdError, compress, decompress

from bpfasm.assemble import AssembledProgram
from bpfasm.instruction import INSN_SIZE, Instruction
from bpfasm.relocate import Relocation, RelocKind

MAGIC = b'BPFA'
VERSION = 1
HEADER = struct.Struct('<4sHIIII')
RELOC = struct.Struct('<IIB')
SLOT = struct.Struct('<I')
STRLEN = struct.Struct('<H')

COMPRESSION_LEVEL = 22


def _pack_str(value: str) -> bytes:
    raw = value.encode('utf-8')
    if len(raw) > 0xFFFF:
        raise ValueError(f"String too long for image: {value[:32]}...")
    return STRLEN.pack(len(raw)) + raw


def _unpack_str(data: bytes, offset: int) -> Tuple[str, int]:
    if offset + STRLEN.size > len(data):
        raise ValueError(f"Truncated string at offset {offset}")
    (length,) = STRLEN.unpack_from(data, offset)
    offset += STRLEN.size
    if offset + length > len(data):
        raise ValueError(f"Truncated string at offset {offset}")
    return data[offset:offset + length].decode('utf-8'), offset + length


def dump(program: AssembledProgram) -> bytes:
    """Encode an assembled program to a compressed image."""
    parts = [HEADER.pack(
        MAGIC,
        VERSION,
        program.instruction_count,
        len(program.code),
        len(program.relocations),
        len(program.labels),
    ), program.code]

    for relo in program.relocations:
        parts.append(RELOC.pack(relo.insn_slot, relo.type_id, relo.kind))
        parts.append(_pack_str(relo.type_name))
        parts.append(_pack_str(relo.field_path))
        parts.append(_pack_str(relo.access_string))

    for name, slot in program.labels.items():
        parts.append(_pack_str(name))
        parts.append(SLOT.pack(slot))

    return compress(b''.join(parts), COMPRESSION_LEVEL)


def load(data: bytes) -> AssembledProgram:
    """Decode a compressed image back into an assembled program."""
    try:
        data = decompress(data)
    except ZstdError as e:
        raise ValueError(f"Image is not zstd-compressed: {e}") from e

    if len(data) < HEADER.size:
        raise ValueError("Data too short for image header")

    magic, version, insn_count, code_len, reloc_count, label_count = HEADER.unpack_from(data)
    if magic != MAGIC:
        raise ValueError(f"Invalid magic bytes: {magic}")
    if version > VERSION:
        raise ValueError(f"Unsupported version: {version}")
    if code_len % INSN_SIZE or code_len // INSN_SIZE != insn_count:
        raise ValueError(f"Code length {code_len} does not match {insn_count} instructions")

    offset = HEADER.size
    code = data[offset:offset + code_len]
    if len(code) != code_len:
        raise ValueError("Truncated code section")
    offset += code_len

    relocations: List[Relocation] = []
    for _ in range(reloc_count):
        if offset + RELOC.size > len(data):
            raise ValueError(f"Truncated relocation at offset {offset}")
        slot, type_id, kind = RELOC.unpack_from(data, offset)
        offset += RELOC.size
        type_name, offset = _unpack_str(data, offset)
        field_path, offset = _unpack_str(data, offset)
        access_string, offset = _unpack_str(data, offset)
        relocations.append(Relocation(
            insn_slot=slot,
            type_name=type_name,
            field_path=field_path,
            kind=RelocKind(kind),
            access_string=access_string,
            type_id=type_id,
        ))

    labels = {}
    for _ in range(label_count):
        name, offset = _unpack_str(data, offset)
        if offset + SLOT.size > len(data):
            raise ValueError(f"Truncated label at offset {offset}")
        (labels[name],) = SLOT.unpack_from(data, offset)
        offset += SLOT.size

    return AssembledProgram(
        code=code,
        relocations=tuple(relocations),
        instruction_count=insn_count,
        labels=labels,
    )


def disassemble_program(program: AssembledProgram) -> str:
    """Disassemble an assembled program, annotating labels and relocations."""
    lines = [
        f"; Instructions: {program.instruction_count}",
        f"; Relocations: {len(program.relocations)}",
        "",
    ]

    labels_at = {}
    for name, slot in program.labels.items():
        labels_at.setdefault(slot, []).append(name)
    relos_at = {relo.insn_slot: relo for relo in program.relocations}

    slot = 0
    offset = 0
    code = program.code
    while offset < len(code):
        insn = Instruction.decode(code[offset:offset + 2 * INSN_SIZE])
        for name in labels_at.get(slot, []):
            lines.append(f"{name}:")
        line = f"{slot:4d}: {insn}"
        relo = relos_at.get(slot)
        if relo is not None:
            target = f"{relo.type_name}.{relo.field_path}" if relo.field_path else relo.type_name
            line += f"    ; {relo.kind.name.lower()} {target} [{relo.access_string}]"
        lines.append(line)
        slot += insn.size()
        offset += insn.size() * INSN_SIZE

    for name in labels_at.get(slot, []):
        lines.append(f"{name}:")

    return '\n'.join(lines)
