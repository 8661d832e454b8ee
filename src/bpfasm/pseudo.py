"""
Symbolic pseudo-instructions and the program container.

Pseudo-instructions only exist before assembly. Each resolver stage
replaces the variants it owns with real instructions:

  Label         zero-width address marker           (labels.py)
  SymbolicJump  jump/call whose target is a label   (labels.py)
  MapRef        wide load of a map reference        (symbols.py)
  HelperCall    CALL of a named helper              (symbols.py)
  FieldAccess   placeholder + relocation record     (relocate.py)
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple, Union

from bpfasm.errors import InvalidInstruction, InvalidRegister
from bpfasm.instruction import FRAME_POINTER, Instruction, Register, reg_num
from bpfasm.typegraph import FieldPath, TypeGraph


@dataclass(frozen=True)
class Label:
    name: str

    def __post_init__(self):
        if not isinstance(self.name, str) or not self.name:
            raise InvalidInstruction(f"Label name must be a non-empty string: {self.name!r}")


@dataclass(frozen=True)
class SymbolicJump:
    """A jump or local call template; its displacement is filled from `target`."""
    template: Instruction
    target: str


@dataclass(frozen=True)
class MapRef:
    """Load a map reference (or a pointer into its value) into dst."""
    dst: Register
    handle: str
    value_offset: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, 'dst', reg_num(self.dst))
        if self.dst == FRAME_POINTER:
            raise InvalidRegister("Frame pointer r10 is read-only")


@dataclass(frozen=True)
class HelperCall:
    name: str


@dataclass(frozen=True)
class FieldAccess:
    """
    A relocatable field/type/enum access.

    `field_path` is a dotted member path for field kinds, an enumerator name
    for enum kinds, and empty for type kinds. With `base` and `load_size` set,
    a field-offset access loads `dst = *(size *)(base + offset)`.
    """
    dst: Register
    type_name: str
    field_path: FieldPath = ''
    kind: object = 'offset'
    base: Optional[Register] = None
    load_size: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'dst', reg_num(self.dst))
        if self.dst == FRAME_POINTER:
            raise InvalidRegister("Frame pointer r10 is read-only")
        if self.base is not None:
            object.__setattr__(self, 'base', reg_num(self.base))
        if not isinstance(self.field_path, str):
            object.__setattr__(self, 'field_path', '.'.join(self.field_path))


PseudoInstruction = Union[Label, SymbolicJump, MapRef, HelperCall, FieldAccess]
Item = Union[Instruction, PseudoInstruction]

ITEM_TYPES = (Instruction, Label, SymbolicJump, MapRef, HelperCall, FieldAccess)


@dataclass(frozen=True)
class Program:
    """
    An instruction sequence bundled with its local reference-type graph.

    Nested groups are flattened once, here, so one-shot iterators in the
    body are consumed at construction and the program can be assembled
    any number of times.
    """
    body: Tuple = ()
    types: TypeGraph = field(default_factory=TypeGraph)

    def __post_init__(self):
        object.__setattr__(self, 'body', tuple(flatten(self.body)))


def flatten(items) -> List[Item]:
    """Flatten arbitrarily nested instruction groups into one linear list."""
    if isinstance(items, Program):
        items = items.body
    result: List[Item] = []
    stack = [iter([items])]
    while stack:
        try:
            item = next(stack[-1])
        except StopIteration:
            stack.pop()
            continue
        if isinstance(item, ITEM_TYPES):
            result.append(item)
        elif isinstance(item, (list, tuple)) or _is_iterable_group(item):
            stack.append(iter(item))
        else:
            raise InvalidInstruction(f"Not an instruction: {item!r}", slot=None)
    return result


def _is_iterable_group(item) -> bool:
    if isinstance(item, (str, bytes, dict)):
        return False
    try:
        iter(item)
    except TypeError:
        return False
    return True


def slot_size(item: Item) -> int:
    """Number of 8-byte slots an item occupies once assembled."""
    if isinstance(item, Label):
        return 0
    if isinstance(item, Instruction):
        return item.size()
    if isinstance(item, MapRef):
        return 2
    return 1


def count_slots(items: Iterable[Item]) -> int:
    return sum(slot_size(item) for item in items)
