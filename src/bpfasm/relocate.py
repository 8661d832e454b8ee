"""
Portable field-access relocations.

Programs that read kernel structures cannot know field offsets, sizes or
even existence until they are loaded on a particular kernel. Every
FieldAccess is therefore assembled into a placeholder instruction and a
relocation record naming the type, the member path and what is wanted.
The loader resolves each record against the running kernel's own type
descriptions and patches the placeholder before verification.

Placeholders:
  field offset         mov64 dst, 0   (or ldx dst, [base + 0])
  existence checks     mov64 dst, 1
  everything else      mov64 dst, <value computed from the local graph>

apply_relocations() is the consuming side, patching assembled code against
a target graph.
"""

import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import List, Optional, Sequence, Tuple

from bpfasm.errors import (
    AssemblerError,
    ImmediateOutOfRange,
    StructuralError,
    UnknownReferenceField,
    UnknownReferenceType,
)
from bpfasm.instruction import (
    ALU_OPS,
    BPF_K,
    INSN_SIZE,
    JMP_OPS,
    MODE_MEM,
    S16_MAX,
    S16_MIN,
    S32_MAX,
    S32_MIN,
    SIZE_BYTES,
    SIZES,
    Instruction,
    OpClass,
)
from bpfasm.pseudo import FieldAccess, Item, slot_size
from bpfasm.typegraph import FieldInfo, TypeGraph

logger = logging.getLogger(__name__)

# Helper id the kernel reports for a relocation that could not be resolved
POISON_HELPER_ID = 0xbad2310


class RelocKind(IntEnum):
    FIELD_BYTE_OFFSET = 0
    FIELD_BYTE_SIZE = 1
    FIELD_EXISTS = 2
    FIELD_SIGNED = 3
    FIELD_LSHIFT_U64 = 4
    FIELD_RSHIFT_U64 = 5
    TYPE_ID_LOCAL = 6
    TYPE_ID_TARGET = 7
    TYPE_EXISTS = 8
    TYPE_SIZE = 9
    ENUMVAL_EXISTS = 10
    ENUMVAL_VALUE = 11
    TYPE_MATCHES = 12

    @classmethod
    def parse(cls, value) -> 'RelocKind':
        """Accept a RelocKind, its number, its name or a short alias."""
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            try:
                return cls(value)
            except ValueError:
                raise StructuralError(f"Unknown relocation kind: {value}") from None
        if isinstance(value, str):
            key = value.strip().lower().replace('-', '_')
            kind = KIND_ALIASES.get(key)
            if kind is None and key.upper() in cls.__members__:
                kind = cls[key.upper()]
            if kind is not None:
                return kind
        raise StructuralError(f"Unknown relocation kind: {value!r}")

    @property
    def is_field(self) -> bool:
        return self <= RelocKind.FIELD_RSHIFT_U64

    @property
    def is_enum(self) -> bool:
        return self in (RelocKind.ENUMVAL_EXISTS, RelocKind.ENUMVAL_VALUE)

    @property
    def is_type(self) -> bool:
        return not (self.is_field or self.is_enum)


KIND_ALIASES = {
    'offset': RelocKind.FIELD_BYTE_OFFSET,
    'size': RelocKind.FIELD_BYTE_SIZE,
    'exists': RelocKind.FIELD_EXISTS,
    'signed': RelocKind.FIELD_SIGNED,
    'lshift': RelocKind.FIELD_LSHIFT_U64,
    'rshift': RelocKind.FIELD_RSHIFT_U64,
    'local_type_id': RelocKind.TYPE_ID_LOCAL,
    'target_type_id': RelocKind.TYPE_ID_TARGET,
    'type_exists': RelocKind.TYPE_EXISTS,
    'type_size': RelocKind.TYPE_SIZE,
    'enum_exists': RelocKind.ENUMVAL_EXISTS,
    'enum_value': RelocKind.ENUMVAL_VALUE,
    'type_matches': RelocKind.TYPE_MATCHES,
}


@dataclass(frozen=True)
class Relocation:
    """One patch record for the loader."""
    insn_slot: int
    type_name: str
    field_path: str
    kind: RelocKind
    access_string: str
    type_id: int

    @property
    def insn_off(self) -> int:
        """Byte offset of the patched instruction in the code section."""
        return self.insn_slot * INSN_SIZE


def bitfield_shifts(info: FieldInfo) -> Tuple[int, int]:
    """(lshift, rshift) that extract the field from a 64-bit load of its container."""
    if info.bit_size is None:
        bit_size = info.size * 8
        bit_off = info.offset * 8
        byte_off = info.offset
    else:
        bit_size = info.bit_size
        bit_off = info.offset * 8 + info.bit_offset
        byte_off = (bit_off // 8) // info.size * info.size
    return 64 - (bit_off + bit_size - byte_off * 8), 64 - bit_size


def _mov(dst: int, value: int) -> Instruction:
    if not S32_MIN <= value <= S32_MAX:
        raise ImmediateOutOfRange(f"Placeholder value {value} does not fit in 32 bits")
    return Instruction(OpClass.ALU64 | BPF_K | ALU_OPS['mov'], dst=dst, imm=value)


def _access_name(access: FieldAccess) -> str:
    if access.field_path:
        return f"{access.type_name}.{access.field_path}"
    return access.type_name


def _load_size(access: FieldAccess, info: FieldInfo) -> str:
    if access.load_size is not None:
        if access.load_size not in SIZES:
            raise StructuralError(f"Invalid load size: {access.load_size}", symbol=access.type_name)
        return access.load_size
    for name, nbytes in SIZE_BYTES.items():
        if nbytes == info.size:
            return name
    raise StructuralError(f"Field of {info.size} bytes cannot be loaded directly",
                          symbol=f"{access.type_name}.{access.field_path}")


def placeholder(access: FieldAccess, kind: RelocKind, types: TypeGraph) -> Tuple[Instruction, str]:
    """Build the placeholder instruction and access string for one access."""
    if kind.is_field:
        info = types.field(access.type_name, access.field_path)
        if kind == RelocKind.FIELD_BYTE_OFFSET:
            if access.base is not None:
                size = _load_size(access, info)
                insn = Instruction(OpClass.LDX | SIZES[size] | MODE_MEM, dst=access.dst, src=access.base)
            else:
                insn = _mov(access.dst, 0)
        elif kind == RelocKind.FIELD_BYTE_SIZE:
            insn = _mov(access.dst, info.size)
        elif kind == RelocKind.FIELD_EXISTS:
            insn = _mov(access.dst, 1)
        elif kind == RelocKind.FIELD_SIGNED:
            insn = _mov(access.dst, int(info.signed))
        else:
            lshift, rshift = bitfield_shifts(info)
            insn = _mov(access.dst, lshift if kind == RelocKind.FIELD_LSHIFT_U64 else rshift)
        return insn, info.access_string

    if kind.is_enum:
        if not access.field_path:
            raise UnknownReferenceField("Enum relocation needs an enumerator name", symbol=access.type_name)
        index, value = types.enum_value(access.type_name, access.field_path)
        insn = _mov(access.dst, 1 if kind == RelocKind.ENUMVAL_EXISTS else value)
        return insn, str(index)

    if access.field_path:
        raise StructuralError("Type relocation takes no field path",
                              symbol=f"{access.type_name}.{access.field_path}")
    if kind in (RelocKind.TYPE_ID_LOCAL, RelocKind.TYPE_ID_TARGET):
        insn = _mov(access.dst, types.type_id(access.type_name))
    elif kind == RelocKind.TYPE_SIZE:
        insn = _mov(access.dst, types.size_of(access.type_name))
    else:
        types.get(access.type_name)
        insn = _mov(access.dst, 1)
    return insn, '0'


def generate_relocations(items: Sequence[Item], types: TypeGraph) -> Tuple[List[Item], Tuple[Relocation, ...]]:
    """Replace every FieldAccess with its placeholder; records come out in slot order."""
    resolved: List[Item] = []
    relocations: List[Relocation] = []
    slot = 0
    for item in items:
        if isinstance(item, FieldAccess):
            try:
                kind = RelocKind.parse(item.kind)
                insn, access_string = placeholder(item, kind, types)
            except AssemblerError as e:
                symbol = e.symbol or _access_name(item)
                raise type(e)(e.message, slot=slot, symbol=symbol) from None
            resolved.append(insn)
            relocations.append(Relocation(
                insn_slot=slot,
                type_name=item.type_name,
                field_path=item.field_path,
                kind=kind,
                access_string=access_string,
                type_id=types.type_id(item.type_name),
            ))
        else:
            resolved.append(item)
        slot += slot_size(item)

    logger.debug("Emitted %d relocations", len(relocations))
    return resolved, tuple(relocations)


def resolve_value(relo: Relocation, target: TypeGraph, local: Optional[TypeGraph] = None) -> Optional[int]:
    """Compute the value a relocation should receive on the target; None if unresolvable."""
    kind = relo.kind
    if kind.is_field:
        info = target.find_field(relo.type_name, relo.field_path)
        if kind == RelocKind.FIELD_EXISTS:
            return 1 if info else 0
        if info is None:
            return None
        if kind == RelocKind.FIELD_BYTE_OFFSET:
            return info.offset
        if kind == RelocKind.FIELD_BYTE_SIZE:
            return info.size
        if kind == RelocKind.FIELD_SIGNED:
            return int(info.signed)
        lshift, rshift = bitfield_shifts(info)
        return lshift if kind == RelocKind.FIELD_LSHIFT_U64 else rshift

    if kind.is_enum:
        try:
            _, value = target.enum_value(relo.type_name, relo.field_path)
        except (UnknownReferenceType, UnknownReferenceField):
            value = None
        if kind == RelocKind.ENUMVAL_EXISTS:
            return 0 if value is None else 1
        return value

    present = relo.type_name in target
    if kind == RelocKind.TYPE_ID_LOCAL:
        return relo.type_id
    if kind == RelocKind.TYPE_EXISTS:
        return int(present)
    if not present:
        return None if kind != RelocKind.TYPE_MATCHES else 0
    if kind == RelocKind.TYPE_ID_TARGET:
        return target.type_id(relo.type_name)
    if kind == RelocKind.TYPE_SIZE:
        return target.size_of(relo.type_name)
    if local is not None and relo.type_name in local:
        return int(local.size_of(relo.type_name) == target.size_of(relo.type_name))
    return 1


def patch(insn: Instruction, value: int) -> Instruction:
    """Write a resolved value into the field the placeholder carries it in."""
    if insn.opcode_class in (OpClass.LDX, OpClass.ST, OpClass.STX):
        if not S16_MIN <= value <= S16_MAX:
            raise StructuralError(f"Relocated offset {value} does not fit in 16 bits")
        return insn.replace(offset=value)
    return insn.replace(imm=value)


def poison() -> Instruction:
    return Instruction(OpClass.JMP | BPF_K | JMP_OPS['call'], imm=POISON_HELPER_ID)


def apply_relocations(code: bytes, relocations: Sequence[Relocation], target: TypeGraph,
                      local: Optional[TypeGraph] = None) -> bytes:
    """Patch assembled code against a target graph, in record order."""
    buf = bytearray(code)
    for relo in relocations:
        start = relo.insn_off
        insn = Instruction.decode(bytes(buf[start:start + INSN_SIZE]))
        value = resolve_value(relo, target, local)
        if value is None:
            logger.debug("Poisoning slot %d: %s.%s unresolved", relo.insn_slot, relo.type_name, relo.field_path)
            new = poison()
        else:
            new = patch(insn, value)
        buf[start:start + INSN_SIZE] = new.encode()
    return bytes(buf)
