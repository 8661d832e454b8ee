"""
Label and control-flow resolution.

Two passes over a flattened stream:
  1. assign slot indices (wide loads take two, labels none) and record
     label -> slot of the next real instruction
  2. rewrite every SymbolicJump into a real instruction whose displacement
     is target - (slot + 1), counted from the instruction after the jump

Short jumps carry the displacement in the 16-bit offset field. Long jumps
(JMP32 | JA) and local calls carry it in the 32-bit immediate. A short jump
that does not fit is an error; it is never promoted to a long jump.
"""

import logging
from typing import Dict, List, Sequence, Tuple

from bpfasm.errors import DuplicateLabel, InvalidInstruction, JumpOffsetOutOfRange, UnresolvedLabel
from bpfasm.instruction import (
    JMP_OPS,
    PSEUDO_CALL,
    S16_MAX,
    S16_MIN,
    S32_MAX,
    S32_MIN,
    Instruction,
    OpClass,
)
from bpfasm.pseudo import Item, Label, SymbolicJump, slot_size

logger = logging.getLogger(__name__)


def is_long_jump(insn: Instruction) -> bool:
    return insn.opcode_class == OpClass.JMP32 and insn.operation == JMP_OPS['ja']


def is_local_call(insn: Instruction) -> bool:
    return insn.is_call and insn.src == PSEUDO_CALL


def collect_labels(items: Sequence[Item]) -> Dict[str, int]:
    """First pass: map each label name to its slot index."""
    labels: Dict[str, int] = {}
    slot = 0
    for item in items:
        if isinstance(item, Label):
            if item.name in labels:
                raise DuplicateLabel(
                    f"Duplicate label (first defined at slot {labels[item.name]})",
                    slot=slot, symbol=item.name)
            labels[item.name] = slot
        else:
            slot += slot_size(item)
    return labels


def resolve_jump(jump: SymbolicJump, slot: int, labels: Dict[str, int]) -> Instruction:
    """Turn one symbolic jump at `slot` into a real instruction."""
    template = jump.template
    long_form = is_long_jump(template) or is_local_call(template)
    if not (template.is_jump or long_form):
        raise InvalidInstruction(f"Not a jump or local call: {template}", slot=slot, symbol=jump.target)

    target = labels.get(jump.target)
    if target is None:
        raise UnresolvedLabel("Undefined label", slot=slot, symbol=jump.target)

    offset = target - (slot + 1)
    if long_form:
        if not S32_MIN <= offset <= S32_MAX:
            raise JumpOffsetOutOfRange(f"Jump offset {offset} does not fit in 32 bits",
                                       slot=slot, symbol=jump.target)
        return template.replace(imm=offset)

    if not S16_MIN <= offset <= S16_MAX:
        raise JumpOffsetOutOfRange(
            f"Jump offset {offset} does not fit in 16 bits (use a long jump)",
            slot=slot, symbol=jump.target)
    return template.replace(offset=offset)


def resolve_labels(items: Sequence[Item]) -> Tuple[List[Item], Dict[str, int]]:
    """
    Resolve symbolic jumps and drop labels.

    Returns the rewritten stream (other pseudo-instructions are passed
    through untouched, keeping their slots) and the label table.
    """
    labels = collect_labels(items)

    resolved: List[Item] = []
    slot = 0
    for item in items:
        if isinstance(item, Label):
            continue
        if isinstance(item, SymbolicJump):
            resolved.append(resolve_jump(item, slot, labels))
        else:
            resolved.append(item)
        slot += slot_size(item)

    logger.debug("Resolved %d labels over %d slots", len(labels), slot)
    return resolved, labels
