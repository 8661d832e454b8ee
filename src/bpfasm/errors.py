"""
Assembler error taxonomy.

Every error is synchronous and deterministic: assembling the same input
again reproduces it. Errors carry the offending symbol and instruction
slot where one is known.
"""

from typing import Optional


class AssemblerError(Exception):
    """Base error with location information."""
    def __init__(self, message: str, slot: Optional[int] = None, symbol: Optional[str] = None):
        self.message = message
        self.slot = slot
        self.symbol = symbol
        super().__init__(self._format())

    def _format(self) -> str:
        parts = []
        if self.slot is not None:
            parts.append(f"Slot {self.slot}")
        if self.symbol is not None:
            parts.append(f"'{self.symbol}'")
        if parts:
            return f"{' '.join(parts)}: {self.message}"
        return self.message


class StructuralError(AssemblerError):
    """Malformed instruction or program shape."""


class InvalidRegister(StructuralError):
    pass


class OffsetOutOfRange(StructuralError):
    pass


class ImmediateOutOfRange(StructuralError):
    pass


class InvalidInstruction(StructuralError):
    pass


class DuplicateLabel(StructuralError):
    pass


class UnresolvedSymbol(AssemblerError):
    """A label, map handle, helper or reference type that cannot be bound."""


class UnresolvedLabel(UnresolvedSymbol):
    pass


class UnboundMapReference(UnresolvedSymbol):
    pass


class UnknownHelper(UnresolvedSymbol):
    pass


class UnknownReferenceType(UnresolvedSymbol):
    pass


class UnknownReferenceField(UnresolvedSymbol):
    pass


class JumpOffsetOutOfRange(AssemblerError):
    pass


class SizeLimitExceeded(AssemblerError):
    pass
