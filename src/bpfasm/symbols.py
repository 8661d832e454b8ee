"""
Map and helper reference binding.

Which maps exist and what their descriptors are is a runtime fact owned by
the map manager; which helper numbers a kernel exposes is fixed by its ABI.
Both arrive here as one read-only Environment, so the same symbolic program
can be assembled against different concrete map instances.
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import List, Mapping, Sequence

from bpfasm.errors import ImmediateOutOfRange, UnboundMapReference, UnknownHelper
from bpfasm.helpers import HELPER_IDS, normalize_helper_name
from bpfasm.instruction import (
    JMP_OPS,
    LDDW_OPCODE,
    PSEUDO_MAP_FD,
    PSEUDO_MAP_VALUE,
    S32_MAX,
    BPF_K,
    Instruction,
    OpClass,
)
from bpfasm.pseudo import HelperCall, Item, MapRef, slot_size

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Environment:
    """Read-only symbol bindings: map handle -> fd, helper name -> id."""
    maps: Mapping[str, int] = field(default_factory=dict)
    helpers: Mapping[str, int] = field(default_factory=lambda: HELPER_IDS)

    def __post_init__(self):
        for handle, fd in self.maps.items():
            if not isinstance(fd, int) or not 0 <= fd <= S32_MAX:
                raise ImmediateOutOfRange(f"Invalid file descriptor {fd!r}", symbol=handle)
        helpers = {normalize_helper_name(name): num for name, num in self.helpers.items()}
        object.__setattr__(self, 'maps', MappingProxyType(dict(self.maps)))
        object.__setattr__(self, 'helpers', MappingProxyType(helpers))

    def map_fd(self, handle: str) -> int:
        fd = self.maps.get(handle)
        if fd is None:
            raise UnboundMapReference("Map handle is not bound in the environment", symbol=handle)
        return fd

    def helper_id(self, name: str) -> int:
        num = self.helpers.get(normalize_helper_name(name))
        if num is None:
            raise UnknownHelper("Unknown helper", symbol=name)
        return num

    def with_maps(self, maps: Mapping[str, int]) -> 'Environment':
        """Return a new environment with extra/overridden map bindings."""
        merged = dict(self.maps)
        merged.update(maps)
        return Environment(maps=merged, helpers=self.helpers)


def bind_map(ref: MapRef, fd: int) -> Instruction:
    if ref.value_offset is None:
        return Instruction(LDDW_OPCODE, dst=ref.dst, src=PSEUDO_MAP_FD, imm=fd)
    if not 0 <= ref.value_offset <= S32_MAX:
        raise ImmediateOutOfRange(f"Map value offset out of range: {ref.value_offset}", symbol=ref.handle)
    return Instruction(LDDW_OPCODE, dst=ref.dst, src=PSEUDO_MAP_VALUE,
                       imm=(ref.value_offset << 32) | fd)


def bind_helper(helper_id: int) -> Instruction:
    return Instruction(OpClass.JMP | BPF_K | JMP_OPS['call'], imm=helper_id)


def resolve_symbols(items: Sequence[Item], env: Environment) -> List[Item]:
    """Replace MapRef/HelperCall with concrete encodings; fail on the first unbound name."""
    resolved: List[Item] = []
    slot = 0
    bound = 0
    for item in items:
        if isinstance(item, MapRef):
            try:
                resolved.append(bind_map(item, env.map_fd(item.handle)))
            except UnboundMapReference as e:
                raise UnboundMapReference(e.message, slot=slot, symbol=item.handle) from None
            bound += 1
        elif isinstance(item, HelperCall):
            try:
                resolved.append(bind_helper(env.helper_id(item.name)))
            except UnknownHelper as e:
                raise UnknownHelper(e.message, slot=slot, symbol=item.name) from None
            bound += 1
        else:
            resolved.append(item)
        slot += slot_size(item)

    logger.debug("Bound %d map/helper references", bound)
    return resolved
