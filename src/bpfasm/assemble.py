"""
Program assembler.

Pipeline:
    flatten -> size check -> labels -> maps/helpers -> relocations -> encode

Control flow is resolved first because everything after it reads slot
indices. Map/helper binding and relocation generation do not depend on
each other. The first structural problem aborts assembly; there is no
partial output.

Usage:
    from bpfasm import builders as b
    from bpfasm.assemble import assemble
    from bpfasm.symbols import Environment

    prog = assemble([
        b.ld_map('r1', 'counter_map'),
        b.mov('r0', 0),
        b.exit_insn(),
    ], Environment(maps={'counter_map': 7}))
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import List, Mapping, Optional, Tuple

from bpfasm.errors import AssemblerError, InvalidInstruction, SizeLimitExceeded, StructuralError
from bpfasm.instruction import Instruction, decode_all, encode_all
from bpfasm.labels import resolve_labels
from bpfasm.pseudo import Program, count_slots, flatten
from bpfasm.relocate import Relocation, generate_relocations
from bpfasm.symbols import Environment, resolve_symbols
from bpfasm.typegraph import TypeGraph

logger = logging.getLogger(__name__)

# Instruction limit for unprivileged loaders
DEFAULT_MAX_INSNS = 4096
# Hard ceiling the verifier enforces for privileged loaders
MAX_INSNS_LIMIT = 1_000_000


@dataclass(frozen=True)
class AssembledProgram:
    """Immutable assembly output handed to the loader."""
    code: bytes
    relocations: Tuple[Relocation, ...] = ()
    instruction_count: int = 0
    labels: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, 'relocations', tuple(self.relocations))
        object.__setattr__(self, 'labels', MappingProxyType(dict(self.labels)))

    def __eq__(self, other) -> bool:
        if not isinstance(other, AssembledProgram):
            return NotImplemented
        return (self.code == other.code
                and self.relocations == other.relocations
                and self.instruction_count == other.instruction_count
                and dict(self.labels) == dict(other.labels))

    def __hash__(self):
        return hash((self.code, self.relocations, self.instruction_count))

    def instructions(self) -> List[Instruction]:
        """Decoded view of the code."""
        return decode_all(self.code)


@dataclass(frozen=True)
class AssemblyResult:
    """Tagged outcome of try_assemble(): exactly one of program/error is set."""
    program: Optional[AssembledProgram] = None
    error: Optional[AssemblerError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> AssembledProgram:
        if self.error is not None:
            raise self.error
        return self.program


class Assembler:
    """Assembles symbolic programs against one environment."""

    def __init__(self, environment: Optional[Environment] = None,
                 max_instructions: int = DEFAULT_MAX_INSNS):
        if not isinstance(max_instructions, int) or not 0 < max_instructions <= MAX_INSNS_LIMIT:
            raise StructuralError(
                f"max_instructions must be between 1 and {MAX_INSNS_LIMIT}: {max_instructions!r}")
        self.environment = environment if environment is not None else Environment()
        self.max_instructions = max_instructions

    def check_size(self, count: int):
        if count == 0:
            raise StructuralError("Program is empty")
        if count > self.max_instructions:
            raise SizeLimitExceeded(
                f"Program needs {count} instructions, limit is {self.max_instructions}")

    def assemble(self, program) -> AssembledProgram:
        """Assemble a Program (or a bare, possibly nested, instruction sequence)."""
        types = program.types if isinstance(program, Program) else TypeGraph()

        items = flatten(program)
        count = count_slots(items)
        logger.debug("Flattened %d items into %d slots", len(items), count)
        self.check_size(count)

        items, labels = resolve_labels(items)
        items = resolve_symbols(items, self.environment)
        items, relocations = generate_relocations(items, types)

        for slot, item in _slots(items):
            if not isinstance(item, Instruction):
                raise InvalidInstruction(f"Unresolved pseudo-instruction: {item!r}", slot=slot)

        code = encode_all(items)
        logger.debug("Assembled %d bytes, %d relocations", len(code), len(relocations))
        return AssembledProgram(
            code=code,
            relocations=relocations,
            instruction_count=count,
            labels=labels,
        )


def _slots(items):
    slot = 0
    for item in items:
        yield slot, item
        slot += item.size() if isinstance(item, Instruction) else 1


def assemble(program, environment: Optional[Environment] = None,
             max_instructions: int = DEFAULT_MAX_INSNS) -> AssembledProgram:
    """Assemble program; raises AssemblerError on the first problem."""
    return Assembler(environment, max_instructions).assemble(program)


def try_assemble(program, environment: Optional[Environment] = None,
                 max_instructions: int = DEFAULT_MAX_INSNS) -> AssemblyResult:
    """Like assemble(), but returns a tagged result instead of raising."""
    try:
        return AssemblyResult(program=assemble(program, environment, max_instructions))
    except AssemblerError as e:
        return AssemblyResult(error=e)
