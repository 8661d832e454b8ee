"""
Instruction builders.

Thin constructors returning Instruction values or pseudo-instructions.

Operands follow one convention everywhere: a string is a register name
('r0'..'r10', 'fp'), an int is an immediate. Jump targets are either a
label name (resolved at assembly) or a numeric slot offset.
"""

from typing import List, Optional, Union

from bpfasm.errors import InvalidInstruction
from bpfasm.instruction import (
    ALU_OPS,
    ATOMIC_FETCH,
    ATOMIC_OPS,
    BPF_K,
    BPF_X,
    END_TO_BE,
    END_TO_LE,
    JMP_OPS,
    LDDW_OPCODE,
    MODE_ABS,
    MODE_ATOMIC,
    MODE_IND,
    MODE_MEM,
    PSEUDO_CALL,
    SIZES,
    Instruction,
    OpClass,
    Register,
    to_s32,
    to_s64,
)
from bpfasm.pseudo import FieldAccess, HelperCall, Label, MapRef, SymbolicJump
from bpfasm.relocate import RelocKind
from bpfasm.typegraph import FieldPath

Operand = Union[int, str]
Target = Union[int, str]


def _size(size: str) -> int:
    code = SIZES.get(size)
    if code is None:
        raise InvalidInstruction(f"Invalid access size: {size!r} (expected b, h, w or dw)")
    return code


# ---------------------------------------------------------------------------
# ALU
# ---------------------------------------------------------------------------

def _alu(cls: int, op: str, dst: Register, operand: Operand) -> Instruction:
    code = ALU_OPS.get(op)
    if code is None or op in ('neg', 'end'):
        raise InvalidInstruction(f"Unknown ALU operation: {op}")
    if isinstance(operand, str):
        return Instruction(cls | BPF_X | code, dst=dst, src=operand)
    return Instruction(cls | BPF_K | code, dst=dst, imm=to_s32(operand))


def alu64(op: str, dst: Register, operand: Operand) -> Instruction:
    """dst = dst <op> operand (64-bit)"""
    return _alu(OpClass.ALU64, op, dst, operand)


def alu32(op: str, dst: Register, operand: Operand) -> Instruction:
    """dst = (u32)(dst <op> operand)"""
    return _alu(OpClass.ALU, op, dst, operand)


def mov(dst, operand):
    return alu64('mov', dst, operand)


def mov32(dst, operand):
    return alu32('mov', dst, operand)


def add(dst, operand):
    return alu64('add', dst, operand)


def add32(dst, operand):
    return alu32('add', dst, operand)


def sub(dst, operand):
    return alu64('sub', dst, operand)


def sub32(dst, operand):
    return alu32('sub', dst, operand)


def mul(dst, operand):
    return alu64('mul', dst, operand)


def div(dst, operand):
    return alu64('div', dst, operand)


def mod(dst, operand):
    return alu64('mod', dst, operand)


def and_(dst, operand):
    return alu64('and', dst, operand)


def or_(dst, operand):
    return alu64('or', dst, operand)


def xor(dst, operand):
    return alu64('xor', dst, operand)


def lsh(dst, operand):
    return alu64('lsh', dst, operand)


def rsh(dst, operand):
    return alu64('rsh', dst, operand)


def arsh(dst, operand):
    return alu64('arsh', dst, operand)


def neg(dst: Register) -> Instruction:
    return Instruction(OpClass.ALU64 | BPF_K | ALU_OPS['neg'], dst=dst)


def neg32(dst: Register) -> Instruction:
    return Instruction(OpClass.ALU | BPF_K | ALU_OPS['neg'], dst=dst)


def _end(order: int, dst: Register, bits: int) -> Instruction:
    if bits not in (16, 32, 64):
        raise InvalidInstruction(f"Byte swap width must be 16, 32 or 64: {bits}")
    return Instruction(OpClass.ALU | order | ALU_OPS['end'], dst=dst, imm=bits)


def to_be(dst: Register, bits: int) -> Instruction:
    """Convert dst between host order and big-endian."""
    return _end(END_TO_BE, dst, bits)


def to_le(dst: Register, bits: int) -> Instruction:
    """Convert dst between host order and little-endian."""
    return _end(END_TO_LE, dst, bits)


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------

def ldx(size: str, dst: Register, src: Register, offset: int = 0) -> Instruction:
    """dst = *(size *)(src + offset)"""
    return Instruction(OpClass.LDX | _size(size) | MODE_MEM, dst=dst, src=src, offset=offset)


def stx(size: str, dst: Register, offset: int, src: Register) -> Instruction:
    """*(size *)(dst + offset) = src"""
    return Instruction(OpClass.STX | _size(size) | MODE_MEM, dst=dst, src=src, offset=offset)


def st(size: str, dst: Register, offset: int, imm: int) -> Instruction:
    """*(size *)(dst + offset) = imm"""
    return Instruction(OpClass.ST | _size(size) | MODE_MEM, dst=dst, offset=offset, imm=to_s32(imm))


def lddw(dst: Register, imm: int) -> Instruction:
    """Load a 64-bit immediate (two slots)."""
    return Instruction(LDDW_OPCODE, dst=dst, imm=to_s64(imm))


def ld_abs(size: str, imm: int) -> Instruction:
    """r0 = packet[imm] (legacy socket-filter access)"""
    return Instruction(OpClass.LD | _size(size) | MODE_ABS, imm=to_s32(imm))


def ld_ind(size: str, src: Register, imm: int) -> Instruction:
    """r0 = packet[src + imm] (legacy socket-filter access)"""
    return Instruction(OpClass.LD | _size(size) | MODE_IND, src=src, imm=to_s32(imm))


def ld_map(dst: Register, handle: str) -> MapRef:
    """dst = map referenced by handle"""
    return MapRef(dst, handle)


def ld_map_value(dst: Register, handle: str, offset: int = 0) -> MapRef:
    """dst = pointer to offset bytes into the (single-element) map's value"""
    return MapRef(dst, handle, value_offset=offset)


def stack_store(offset: int, src: Register, size: str = 'dw') -> Instruction:
    """*(size *)(fp + offset) = src"""
    return stx(size, 'fp', offset, src)


def stack_load(dst: Register, offset: int, size: str = 'dw') -> Instruction:
    """dst = *(size *)(fp + offset)"""
    return ldx(size, dst, 'fp', offset)


# ---------------------------------------------------------------------------
# Atomics
# ---------------------------------------------------------------------------

def atomic(op: str, size: str, dst: Register, src: Register, offset: int = 0,
           fetch: bool = False) -> Instruction:
    """Atomic read-modify-write of *(size *)(dst + offset) with src."""
    if size not in ('w', 'dw'):
        raise InvalidInstruction(f"Atomic operations are 32 or 64 bit only: {size!r}")
    code = ATOMIC_OPS.get(op)
    if code is None:
        raise InvalidInstruction(f"Unknown atomic operation: {op}")
    if fetch:
        code |= ATOMIC_FETCH
    return Instruction(OpClass.STX | SIZES[size] | MODE_ATOMIC, dst=dst, src=src, offset=offset, imm=code)


def atomic_add(size, dst, src, offset=0, fetch=False):
    return atomic('add', size, dst, src, offset, fetch)


def atomic_or(size, dst, src, offset=0, fetch=False):
    return atomic('or', size, dst, src, offset, fetch)


def atomic_and(size, dst, src, offset=0, fetch=False):
    return atomic('and', size, dst, src, offset, fetch)


def atomic_xor(size, dst, src, offset=0, fetch=False):
    return atomic('xor', size, dst, src, offset, fetch)


def atomic_xchg(size, dst, src, offset=0):
    """src = xchg(*(dst + offset), src)"""
    return atomic('xchg', size, dst, src, offset)


def atomic_cmpxchg(size, dst, src, offset=0):
    """r0 = cmpxchg(*(dst + offset), r0, src)"""
    return atomic('cmpxchg', size, dst, src, offset)


# ---------------------------------------------------------------------------
# Control flow
# ---------------------------------------------------------------------------

def _with_target(template: Instruction, target: Target, field: str = 'offset'):
    if isinstance(target, str):
        return SymbolicJump(template, target)
    return template.replace(**{field: target})


def ja(target: Target):
    """goto target"""
    return _with_target(Instruction(OpClass.JMP | BPF_K | JMP_OPS['ja']), target)


def ja_long(target: Target):
    """goto target, with a 32-bit displacement"""
    return _with_target(Instruction(OpClass.JMP32 | BPF_K | JMP_OPS['ja']), target, 'imm')


def jump(op: str, dst: Register, operand: Operand, target: Target, jmp32: bool = False):
    """if dst <op> operand goto target"""
    code = JMP_OPS.get(op)
    if code is None or op in ('ja', 'call', 'exit'):
        raise InvalidInstruction(f"Unknown conditional jump: {op}")
    cls = OpClass.JMP32 if jmp32 else OpClass.JMP
    if isinstance(operand, str):
        template = Instruction(cls | BPF_X | code, dst=dst, src=operand)
    else:
        template = Instruction(cls | BPF_K | code, dst=dst, imm=to_s32(operand))
    return _with_target(template, target)


def _conditional(op: str):
    def build(dst: Register, operand: Operand, target: Target, jmp32: bool = False):
        return jump(op, dst, operand, target, jmp32)
    build.__name__ = op
    build.__doc__ = f"if dst {op[1:]} operand goto target"
    return build


jeq = _conditional('jeq')
jne = _conditional('jne')
jgt = _conditional('jgt')
jge = _conditional('jge')
jlt = _conditional('jlt')
jle = _conditional('jle')
jset = _conditional('jset')
jsgt = _conditional('jsgt')
jsge = _conditional('jsge')
jslt = _conditional('jslt')
jsle = _conditional('jsle')


def call(helper: Union[int, str]):
    """r0 = helper(r1, ..., r5); by numeric id or by name"""
    if isinstance(helper, str):
        return HelperCall(helper)
    return Instruction(OpClass.JMP | BPF_K | JMP_OPS['call'], imm=to_s32(helper))


def call_local(target: Target):
    """Call a subprogram starting at target."""
    template = Instruction(OpClass.JMP | BPF_K | JMP_OPS['call'], src=PSEUDO_CALL)
    return _with_target(template, target, 'imm')


def tail_call() -> HelperCall:
    """tail_call(r1=ctx, r2=prog_array, r3=index)"""
    return HelperCall('tail_call')


def exit_insn() -> Instruction:
    """return r0"""
    return Instruction(OpClass.JMP | BPF_K | JMP_OPS['exit'])


def label(name: str) -> Label:
    return Label(name)


# ---------------------------------------------------------------------------
# Relocatable accesses
# ---------------------------------------------------------------------------

def field_offset(dst: Register, type_name: str, path: FieldPath,
                 base: Optional[Register] = None, size: Optional[str] = None) -> FieldAccess:
    """
    dst = offsetof(type, path), or with base set, dst = *(size *)(base + offsetof(type, path)).
    Without an explicit size the field's own size is used.
    """
    return FieldAccess(dst, type_name, path, RelocKind.FIELD_BYTE_OFFSET, base=base, load_size=size)


def field_size(dst, type_name, path):
    return FieldAccess(dst, type_name, path, RelocKind.FIELD_BYTE_SIZE)


def field_exists(dst, type_name, path):
    return FieldAccess(dst, type_name, path, RelocKind.FIELD_EXISTS)


def field_signed(dst, type_name, path):
    return FieldAccess(dst, type_name, path, RelocKind.FIELD_SIGNED)


def field_lshift(dst, type_name, path):
    return FieldAccess(dst, type_name, path, RelocKind.FIELD_LSHIFT_U64)


def field_rshift(dst, type_name, path):
    return FieldAccess(dst, type_name, path, RelocKind.FIELD_RSHIFT_U64)


def type_exists(dst, type_name):
    return FieldAccess(dst, type_name, '', RelocKind.TYPE_EXISTS)


def type_size(dst, type_name):
    return FieldAccess(dst, type_name, '', RelocKind.TYPE_SIZE)


def type_id(dst, type_name, target: bool = False):
    kind = RelocKind.TYPE_ID_TARGET if target else RelocKind.TYPE_ID_LOCAL
    return FieldAccess(dst, type_name, '', kind)


def type_matches(dst, type_name):
    return FieldAccess(dst, type_name, '', RelocKind.TYPE_MATCHES)


def enum_exists(dst, type_name, value_name):
    return FieldAccess(dst, type_name, value_name, RelocKind.ENUMVAL_EXISTS)


def enum_value(dst, type_name, value_name):
    return FieldAccess(dst, type_name, value_name, RelocKind.ENUMVAL_VALUE)


# ---------------------------------------------------------------------------
# Common sequences
# ---------------------------------------------------------------------------

def check_bounds(data: Register, data_end: Register, length: int, fail: Target,
                 scratch: Register) -> List:
    """Jump to fail unless data + length <= data_end."""
    return [
        mov(scratch, data if isinstance(data, str) else f'r{data}'),
        add(scratch, length),
        jgt(scratch, data_end if isinstance(data_end, str) else f'r{data_end}', fail),
    ]


def return_value(value: int) -> List[Instruction]:
    """r0 = value; exit"""
    return [mov('r0', value), exit_insn()]
