"""
Positions identify "the same annotation slot" across annotators.

A position is compared by value only. Two annotators' annotations end up in
the same configuration set exactly when their positions are equal.
"""

from dataclasses import dataclass, field
from functools import total_ordering
from typing import Optional

from .errors import DiffConfigurationError

SPAN_KIND = 0
ARC_KIND = 1


def _check_offsets(type_name: str, begin, end, what: str = "span") -> None:
    for value in (begin, end):
        if isinstance(value, bool) or not isinstance(value, int):
            raise DiffConfigurationError(
                f"Type [{type_name}]: {what} offsets must be integers, got ({begin!r}, {end!r})"
            )
    if begin < 0 or end < begin:
        raise DiffConfigurationError(
            f"Type [{type_name}]: invalid {what} offsets ({begin}-{end})"
        )


@total_ordering
class _PositionBase:
    """Ordering shared by all position kinds."""

    def sort_key(self) -> tuple:
        raise NotImplementedError

    def __lt__(self, other):
        if not isinstance(other, _PositionBase):
            return NotImplemented
        return self.sort_key() < other.sort_key()


@dataclass(frozen=True, eq=True)
class SpanPosition(_PositionBase):
    """Position of a span annotation: (type, begin, end)."""
    type: str
    begin: int
    end: int
    text: Optional[str] = field(default=None, compare=False)

    def __post_init__(self):
        _check_offsets(self.type, self.begin, self.end)

    def sort_key(self) -> tuple:
        return (self.type, SPAN_KIND, self.begin, self.end)

    def bounds(self) -> tuple[int, int]:
        return self.begin, self.end

    def to_minimal_string(self) -> str:
        return f"{self.begin}-{self.end} [{self.text or ''}]"

    def __str__(self):
        return f"Span [type={_short_type(self.type)}, span=({self.begin}-{self.end})[{self.text or ''}]]"


@dataclass(frozen=True, eq=True)
class ArcPosition(_PositionBase):
    """Position of a relation: (type, source span, target span)."""
    type: str
    source_begin: int
    source_end: int
    target_begin: int
    target_end: int
    source_text: Optional[str] = field(default=None, compare=False)
    target_text: Optional[str] = field(default=None, compare=False)

    def __post_init__(self):
        _check_offsets(self.type, self.source_begin, self.source_end, "source")
        _check_offsets(self.type, self.target_begin, self.target_end, "target")

    def sort_key(self) -> tuple:
        return (self.type, ARC_KIND, self.source_begin, self.source_end,
                self.target_begin, self.target_end)

    def bounds(self) -> tuple[int, int]:
        """Smallest interval covering both endpoints."""
        return (min(self.source_begin, self.target_begin),
                max(self.source_end, self.target_end))

    def to_minimal_string(self) -> str:
        return (f"({self.source_begin}-{self.source_end})[{self.source_text or ''}]"
                f" -> ({self.target_begin}-{self.target_end})[{self.target_text or ''}]")

    def __str__(self):
        return (f"Arc [type={_short_type(self.type)}, "
                f"source=({self.source_begin}-{self.source_end})[{self.source_text or ''}], "
                f"target=({self.target_begin}-{self.target_end})[{self.target_text or ''}]]")


def _short_type(type_name: str) -> str:
    return type_name.rsplit(".", 1)[-1]
