"""
Assembler for the kernel bytecode VM.

Builds symbolic instruction sequences into a verifier-ready code buffer
plus the relocation records a loader needs to patch field accesses for the
running kernel.
"""

from bpfasm.assemble import (
    DEFAULT_MAX_INSNS,
    AssembledProgram,
    Assembler,
    AssemblyResult,
    assemble,
    try_assemble,
)
from bpfasm.errors import (
    AssemblerError,
    DuplicateLabel,
    ImmediateOutOfRange,
    InvalidInstruction,
    InvalidRegister,
    JumpOffsetOutOfRange,
    OffsetOutOfRange,
    SizeLimitExceeded,
    StructuralError,
    UnboundMapReference,
    UnknownHelper,
    UnknownReferenceField,
    UnknownReferenceType,
    UnresolvedLabel,
    UnresolvedSymbol,
)
from bpfasm.instruction import Instruction, OpClass, decode_all, disassemble
from bpfasm.pseudo import FieldAccess, HelperCall, Label, MapRef, Program, SymbolicJump
from bpfasm.relocate import Relocation, RelocKind, apply_relocations
from bpfasm.symbols import Environment
from bpfasm.typegraph import EnumType, IntType, Member, PointerType, StructType, Typedef, TypeGraph

__version__ = '0.1.0'
