"""
Instruction encoding/decoding for the kernel bytecode VM.

Instruction wire format (8 bytes, little-endian):
  Byte 0:     Opcode
  Byte 1:     dst register (low nibble) | src register (high nibble)
  Bytes 2-3:  Signed 16-bit offset
  Bytes 4-7:  Signed 32-bit immediate

Opcode layout:
  2-0   CLASS      LD, LDX, ST, STX, ALU, JMP, JMP32, ALU64
  ALU/JMP classes:
  3     SOURCE     0=immediate (K), 1=register (X)
  7-4   OP         Operation
  Load/store classes:
  4-3   SIZE       W, H, B, DW
  7-5   MODE       IMM, ABS, IND, MEM, ATOMIC

Wide load (LD | IMM | DW) takes two slots. The first carries the low 32 bits
of the immediate, the second has every field zero except the immediate,
which holds the high 32 bits.
"""

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterable, List, Union

from bpfasm.errors import (
    ImmediateOutOfRange,
    InvalidInstruction,
    InvalidRegister,
    OffsetOutOfRange,
)

INSN_SIZE = 8


class OpClass(IntEnum):
    LD = 0x00
    LDX = 0x01
    ST = 0x02
    STX = 0x03
    ALU = 0x04
    JMP = 0x05
    JMP32 = 0x06
    ALU64 = 0x07


# Source operand
BPF_K = 0x00
BPF_X = 0x08

# ALU operations
ALU_OPS = {
    'add':  0x00,
    'sub':  0x10,
    'mul':  0x20,
    'div':  0x30,
    'or':   0x40,
    'and':  0x50,
    'lsh':  0x60,
    'rsh':  0x70,
    'neg':  0x80,
    'mod':  0x90,
    'xor':  0xa0,
    'mov':  0xb0,
    'arsh': 0xc0,
    'end':  0xd0,
}

ALU_OP_NAMES = {v: k for k, v in ALU_OPS.items()}

# Jump operations
JMP_OPS = {
    'ja':   0x00,
    'jeq':  0x10,
    'jgt':  0x20,
    'jge':  0x30,
    'jset': 0x40,
    'jne':  0x50,
    'jsgt': 0x60,
    'jsge': 0x70,
    'call': 0x80,
    'exit': 0x90,
    'jlt':  0xa0,
    'jle':  0xb0,
    'jslt': 0xc0,
    'jsle': 0xd0,
}

JMP_OP_NAMES = {v: k for k, v in JMP_OPS.items()}

# Load/store sizes
SIZES = {
    'w':  0x00,
    'h':  0x08,
    'b':  0x10,
    'dw': 0x18,
}

SIZE_NAMES = {v: k for k, v in SIZES.items()}
SIZE_BYTES = {'b': 1, 'h': 2, 'w': 4, 'dw': 8}

# Load/store modes
MODE_IMM = 0x00
MODE_ABS = 0x20
MODE_IND = 0x40
MODE_MEM = 0x60
MODE_ATOMIC = 0xc0

# Atomic operations (carried in the immediate)
ATOMIC_OPS = {
    'add':     0x00,
    'or':      0x40,
    'and':     0x50,
    'xor':     0xa0,
    'xchg':    0xe0 | 0x01,
    'cmpxchg': 0xf0 | 0x01,
}
ATOMIC_FETCH = 0x01

# Endianness source bit for the END operation
END_TO_LE = BPF_K
END_TO_BE = BPF_X

# Pseudo source markers
PSEUDO_MAP_FD = 1
PSEUDO_MAP_VALUE = 2
PSEUDO_CALL = 1

LDDW_OPCODE = OpClass.LD | MODE_IMM | SIZES['dw']

# Register names
REGISTERS = {f'r{i}': i for i in range(11)}
REGISTERS['fp'] = 10

REG_NAMES = {i: f'r{i}' for i in range(11)}

FRAME_POINTER = 10

S16_MIN, S16_MAX = -(1 << 15), (1 << 15) - 1
S32_MIN, S32_MAX = -(1 << 31), (1 << 31) - 1
S64_MIN, S64_MAX = -(1 << 63), (1 << 63) - 1

Register = Union[int, str]


def reg_num(reg: Register) -> int:
    """Parse register name or number, return register number."""
    if isinstance(reg, str):
        num = REGISTERS.get(reg.strip().lower())
        if num is None:
            raise InvalidRegister(f"Invalid register: {reg}")
        return num
    if isinstance(reg, bool) or not isinstance(reg, int) or not 0 <= reg <= 10:
        raise InvalidRegister(f"Invalid register: {reg!r}")
    return reg


def to_s32(value: int) -> int:
    """Accept a signed or unsigned 32-bit literal, return it signed."""
    if 0 <= value <= 0xFFFFFFFF:
        return value - (1 << 32) if value > S32_MAX else value
    if S32_MIN <= value < 0:
        return value
    raise ImmediateOutOfRange(f"Immediate does not fit in 32 bits: {value}")


def to_s64(value: int) -> int:
    """Accept a signed or unsigned 64-bit literal, return it signed."""
    if 0 <= value <= 0xFFFFFFFFFFFFFFFF:
        return value - (1 << 64) if value > S64_MAX else value
    if S64_MIN <= value < 0:
        return value
    raise ImmediateOutOfRange(f"Immediate does not fit in 64 bits: {value}")


@dataclass(frozen=True)
class Instruction:
    """A single VM instruction (one slot, or two for a wide load)."""
    opcode: int
    dst: Register = 0
    src: Register = 0
    offset: int = 0
    imm: int = 0

    def __post_init__(self):
        object.__setattr__(self, 'dst', reg_num(self.dst))
        object.__setattr__(self, 'src', reg_num(self.src))
        self.validate()

    def validate(self):
        """Check register, offset and immediate ranges."""
        if not isinstance(self.opcode, int) or not 0 <= self.opcode <= 0xFF:
            raise InvalidInstruction(f"Invalid opcode: {self.opcode!r}")

        if self.opcode_class == OpClass.LD and self.mode == MODE_IMM and self.opcode != LDDW_OPCODE:
            raise InvalidInstruction(f"Immediate load must be double-word: 0x{self.opcode:02x}")

        if self.dst == FRAME_POINTER and self.writes_dst:
            raise InvalidRegister("Frame pointer r10 is read-only")

        if not isinstance(self.offset, int) or not S16_MIN <= self.offset <= S16_MAX:
            raise OffsetOutOfRange(f"Offset does not fit in 16 bits: {self.offset}")

        if self.is_wide:
            low, high = S64_MIN, S64_MAX
        else:
            low, high = S32_MIN, S32_MAX
        if not isinstance(self.imm, int) or not low <= self.imm <= high:
            raise ImmediateOutOfRange(f"Immediate out of range: {self.imm}")

    @property
    def opcode_class(self) -> OpClass:
        return OpClass(self.opcode & 0x07)

    @property
    def operation(self) -> int:
        """Operation bits: OP for ALU/JMP classes, MODE for load/store classes."""
        if self.opcode_class in (OpClass.ALU, OpClass.ALU64, OpClass.JMP, OpClass.JMP32):
            return self.opcode & 0xF0
        return self.opcode & 0xE0

    @property
    def source(self) -> int:
        return self.opcode & 0x08

    @property
    def mode(self) -> int:
        return self.opcode & 0xE0

    @property
    def size_code(self) -> int:
        return self.opcode & 0x18

    @property
    def is_wide(self) -> bool:
        return self.opcode == LDDW_OPCODE

    @property
    def is_atomic(self) -> bool:
        return self.opcode_class == OpClass.STX and self.mode == MODE_ATOMIC

    @property
    def is_call(self) -> bool:
        return self.opcode_class == OpClass.JMP and self.operation == JMP_OPS['call']

    @property
    def is_exit(self) -> bool:
        return self.opcode_class == OpClass.JMP and self.operation == JMP_OPS['exit']

    @property
    def is_jump(self) -> bool:
        """True for branches (not calls or exit)."""
        if self.opcode_class not in (OpClass.JMP, OpClass.JMP32):
            return False
        return self.operation not in (JMP_OPS['call'], JMP_OPS['exit'])

    @property
    def writes_dst(self) -> bool:
        return self.opcode_class in (OpClass.ALU, OpClass.ALU64, OpClass.LD, OpClass.LDX)

    def size(self) -> int:
        """Return encoded size in slots."""
        return 2 if self.is_wide else 1

    def replace(self, **changes) -> 'Instruction':
        """Return a copy with the given fields changed (validated again)."""
        fields = dict(opcode=self.opcode, dst=self.dst, src=self.src, offset=self.offset, imm=self.imm)
        fields.update(changes)
        return Instruction(**fields)

    def encode(self) -> bytes:
        """Encode instruction to 8 bytes (16 for a wide load)."""
        regs = ((self.src & 0xF) << 4) | (self.dst & 0xF)
        if self.is_wide:
            low = self.imm & 0xFFFFFFFF
            high = (self.imm >> 32) & 0xFFFFFFFF
            return (struct.pack('<BBhI', self.opcode, regs, self.offset, low)
                    + struct.pack('<BBhI', 0, 0, 0, high))
        return struct.pack('<BBhi', self.opcode, regs, self.offset, self.imm)

    @classmethod
    def decode(cls, data: bytes) -> 'Instruction':
        """Decode the instruction at the start of data."""
        if len(data) < INSN_SIZE:
            raise InvalidInstruction(f"Need {INSN_SIZE} bytes to decode an instruction, got {len(data)}")

        opcode, regs, offset, imm = struct.unpack('<BBhi', data[:INSN_SIZE])
        dst = regs & 0xF
        src = (regs >> 4) & 0xF

        if opcode == LDDW_OPCODE:
            if len(data) < 2 * INSN_SIZE:
                raise InvalidInstruction("Wide load is missing its second slot")
            op2, regs2, off2, high = struct.unpack('<BBhi', data[INSN_SIZE:2 * INSN_SIZE])
            if op2 or regs2 or off2:
                raise InvalidInstruction("Malformed wide load continuation slot")
            imm = (high << 32) | (imm & 0xFFFFFFFF)

        return cls(opcode=opcode, dst=dst, src=src, offset=offset, imm=imm)

    def __str__(self) -> str:
        """Human-readable representation."""
        cls = self.opcode_class
        dst = REG_NAMES[self.dst]
        src = REG_NAMES[self.src]

        if cls in (OpClass.ALU, OpClass.ALU64):
            suffix = '' if cls == OpClass.ALU64 else '32'
            name = ALU_OP_NAMES.get(self.operation, f"alu_{self.operation:02x}")
            if name == 'neg':
                return f"neg{suffix} {dst}"
            if name == 'end':
                order = 'be' if self.source == END_TO_BE else 'le'
                return f"{order}{self.imm} {dst}"
            operand = src if self.source == BPF_X else str(self.imm)
            return f"{name}{suffix} {dst}, {operand}"

        if cls in (OpClass.JMP, OpClass.JMP32):
            suffix = '' if cls == OpClass.JMP else '32'
            if self.is_exit:
                return "exit"
            if self.is_call:
                if self.src == PSEUDO_CALL:
                    return f"call pc{self.imm:+d}"
                return f"call {self.imm}"
            name = JMP_OP_NAMES.get(self.operation, f"jmp_{self.operation:02x}")
            if name == 'ja':
                if cls == OpClass.JMP32:
                    return f"gotol {self.imm:+d}"
                return f"ja {self.offset:+d}"
            operand = src if self.source == BPF_X else str(self.imm)
            return f"{name}{suffix} {dst}, {operand}, {self.offset:+d}"

        size = SIZE_NAMES[self.size_code]
        if cls == OpClass.LD:
            if self.is_wide:
                if self.src == PSEUDO_MAP_FD:
                    return f"lddw {dst}, map_fd {self.imm}"
                if self.src == PSEUDO_MAP_VALUE:
                    fd, off = self.imm & 0xFFFFFFFF, self.imm >> 32
                    return f"lddw {dst}, map_value {fd}{off:+d}"
                return f"lddw {dst}, {self.imm:#x}"
            if self.mode == MODE_ABS:
                return f"ldabs{size} {self.imm}"
            return f"ldind{size} {src}, {self.imm}"

        if cls == OpClass.LDX:
            return f"ldx{size} {dst}, [{src}{self.offset:+d}]"

        if cls == OpClass.ST:
            return f"st{size} [{dst}{self.offset:+d}], {self.imm}"

        if self.is_atomic:
            op = self.imm & ~ATOMIC_FETCH
            names = {v & ~ATOMIC_FETCH: k for k, v in ATOMIC_OPS.items()}
            name = names.get(op, f"atomic_{op:02x}")
            if self.imm & ATOMIC_FETCH and name not in ('xchg', 'cmpxchg'):
                name = f"fetch_{name}"
            return f"lock {name}{size} [{dst}{self.offset:+d}], {src}"

        return f"stx{size} [{dst}{self.offset:+d}], {src}"


def encode_all(insns: Iterable[Instruction]) -> bytes:
    """Encode a sequence of instructions to bytes."""
    return b''.join(insn.encode() for insn in insns)


def decode_all(data: bytes) -> List[Instruction]:
    """Decode a whole code buffer, honouring two-slot wide loads."""
    if len(data) % INSN_SIZE:
        raise InvalidInstruction(f"Code length {len(data)} is not a multiple of {INSN_SIZE}")

    insns = []
    offset = 0
    while offset < len(data):
        insn = Instruction.decode(data[offset:offset + 2 * INSN_SIZE])
        insns.append(insn)
        offset += insn.size() * INSN_SIZE
    return insns


def disassemble(insns: Iterable[Instruction]) -> str:
    """Disassemble instructions to a slot-numbered listing."""
    lines = []
    slot = 0
    for insn in insns:
        lines.append(f"{slot:4d}: {insn}")
        slot += insn.size()
    return '\n'.join(lines)
