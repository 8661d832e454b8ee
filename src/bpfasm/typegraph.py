"""
Local reference-type graph.

A minimal shadow description of the kernel structures a program touches.
The relocation generator resolves field paths against it, and the loader
matches each declared type by name against the live structure
descriptions of the machine it runs on.

Type ids are assigned in declaration order starting at 1 (0 is void).
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from bpfasm.errors import StructuralError, UnknownReferenceField, UnknownReferenceType

POINTER_SIZE = 8


@dataclass(frozen=True)
class IntType:
    name: str
    size: int
    signed: bool = False


@dataclass(frozen=True)
class PointerType:
    name: str
    target: str


@dataclass(frozen=True)
class Typedef:
    name: str
    target: str


@dataclass(frozen=True)
class Member:
    name: str
    type: str
    offset: int                      # bytes from the start of the parent
    bit_size: Optional[int] = None   # set for bitfields
    bit_offset: int = 0              # bits past `offset`, bitfields only


@dataclass(frozen=True)
class StructType:
    name: str
    size: int
    members: Tuple[Member, ...] = ()
    union: bool = False

    def __post_init__(self):
        object.__setattr__(self, 'members', tuple(self.members))

    def member_index(self, name: str) -> Optional[int]:
        for i, member in enumerate(self.members):
            if member.name == name:
                return i
        return None


@dataclass(frozen=True)
class EnumType:
    name: str
    values: Mapping[str, int] = field(default_factory=dict)
    size: int = 4

    def __post_init__(self):
        object.__setattr__(self, 'values', dict(self.values))

    def __hash__(self):
        return hash((self.name, tuple(self.values.items()), self.size))


TypeDef = Union[IntType, PointerType, Typedef, StructType, EnumType]
FieldPath = Union[str, Sequence[str]]


def split_path(path: FieldPath) -> List[str]:
    """Split 'a.b.c' (or a sequence of names) into member names."""
    if isinstance(path, str):
        return [part for part in path.split('.') if part]
    return list(path)


@dataclass(frozen=True)
class FieldInfo:
    """A field path resolved against a graph."""
    type_name: str
    indices: Tuple[int, ...]
    offset: int
    size: int
    signed: bool
    bit_size: Optional[int] = None
    bit_offset: int = 0

    @property
    def access_string(self) -> str:
        return ':'.join(str(i) for i in (0,) + self.indices)


class TypeGraph:
    """Named types, looked up by name, in declaration order."""

    def __init__(self, types: Iterable[TypeDef] = ()):
        self._types: Dict[str, TypeDef] = {}
        self._ids: Dict[str, int] = {}
        for t in types:
            if t.name in self._types:
                raise StructuralError(f"Type declared twice: {t.name}", symbol=t.name)
            self._types[t.name] = t
            self._ids[t.name] = len(self._ids) + 1

    def __contains__(self, name: str) -> bool:
        return name in self._types

    def __iter__(self):
        return iter(self._types.values())

    def __len__(self) -> int:
        return len(self._types)

    def __eq__(self, other) -> bool:
        return isinstance(other, TypeGraph) and list(self) == list(other)

    def __hash__(self):
        return hash(tuple(self))

    def __repr__(self) -> str:
        return f"TypeGraph({list(self._types)})"

    def get(self, name: str) -> TypeDef:
        t = self._types.get(name)
        if t is None:
            raise UnknownReferenceType(f"Unknown reference type: {name}", symbol=name)
        return t

    def type_id(self, name: str) -> int:
        self.get(name)
        return self._ids[name]

    def resolve(self, name: str) -> TypeDef:
        """Follow typedefs to the underlying type."""
        seen = set()
        t = self.get(name)
        while isinstance(t, Typedef):
            if t.name in seen:
                raise StructuralError(f"Typedef cycle through {t.name}", symbol=t.name)
            seen.add(t.name)
            t = self.get(t.target)
        return t

    def size_of(self, name: str) -> int:
        t = self.resolve(name)
        if isinstance(t, PointerType):
            return POINTER_SIZE
        return t.size

    def is_signed(self, name: str) -> bool:
        t = self.resolve(name)
        if isinstance(t, IntType):
            return t.signed
        if isinstance(t, EnumType):
            return any(v < 0 for v in t.values.values())
        return False

    def field(self, type_name: str, path: FieldPath) -> FieldInfo:
        """Resolve a member path, accumulating byte offsets."""
        names = split_path(path)
        if not names:
            raise UnknownReferenceField(f"Empty field path for {type_name}", symbol=type_name)

        current = type_name
        offset = 0
        indices = []
        member = None
        for i, name in enumerate(names):
            t = self.resolve(current)
            if not isinstance(t, StructType):
                walked = '.'.join(names[:i])
                raise UnknownReferenceField(
                    f"{type_name}.{walked} is not a struct or union", symbol=f"{type_name}.{'.'.join(names)}")
            index = t.member_index(name)
            if index is None:
                raise UnknownReferenceField(
                    f"{t.name} has no member '{name}'", symbol=f"{type_name}.{'.'.join(names)}")
            member = t.members[index]
            indices.append(index)
            offset += member.offset
            current = member.type

        if member.bit_size is not None:
            size = self.size_of(member.type)
        else:
            size = self.size_of(current)
        return FieldInfo(
            type_name=type_name,
            indices=tuple(indices),
            offset=offset,
            size=size,
            signed=self.is_signed(current),
            bit_size=member.bit_size,
            bit_offset=member.bit_offset,
        )

    def enum_value(self, type_name: str, value_name: str) -> Tuple[int, int]:
        """Return (index, value) of an enumerator."""
        t = self.resolve(type_name)
        if not isinstance(t, EnumType):
            raise UnknownReferenceType(f"{type_name} is not an enum", symbol=type_name)
        for index, (name, value) in enumerate(t.values.items()):
            if name == value_name:
                return index, value
        raise UnknownReferenceField(f"{type_name} has no enumerator '{value_name}'",
                                    symbol=f"{type_name}::{value_name}")

    def find_field(self, type_name: str, path: FieldPath) -> Optional[FieldInfo]:
        """Like field(), but None when the type or member is missing."""
        try:
            return self.field(type_name, path)
        except (UnknownReferenceType, UnknownReferenceField):
            return None
