"""
Pairwise overlap detection between two sorted interval lists.

DoubleIterator walks two lists of intervals (anything with ``begin`` and
``end``), both sorted by (begin, end), and visits every pair that may
overlap. B intervals enter a sliding window once they start at or before
the end of the current A interval and leave it for good once they end
before the current A begins. Pairs outside the window can never overlap,
so ordered input is processed without comparing every A against every B.

Typical use::

    it = DoubleIterator(a, b)
    while it.has_next():
        if overlaps(it.get_a(), it.get_b()):
            hits.append(it.get_a())
            it.ignore_a()
        it.step()
"""

from typing import Generic, Sequence, TypeVar

from .adapters import read_value
from .errors import DiffConfigurationError

A = TypeVar("A")
B = TypeVar("B")


def _bounds(interval) -> tuple[int, int]:
    return read_value(interval, "begin"), read_value(interval, "end")


def overlaps(a, b) -> bool:
    """
    True if two intervals overlap.

    Cases, relative to a::

                 begin                    end
                   |                        |
          1     #######                     |
          2        |                     #######
          3   ####################################
          4        |        #######         |

    Zero-width intervals overlap anything that touches their offset.
    """
    a_begin, a_end = _bounds(a)
    b_begin, b_end = _bounds(b)
    return ((b_begin <= a_begin < b_end)              # case 1, 3
            or (b_begin < a_end <= b_end)             # case 2, 3
            or (a_begin <= b_begin and b_end <= a_end))  # case 4


def _check_sorted(name: str, intervals: Sequence) -> None:
    previous = None
    for interval in intervals:
        begin, end = _bounds(interval)
        if begin is None or end is None or end < begin:
            raise DiffConfigurationError(f"List {name}: invalid interval {interval!r}")
        if previous is not None and (begin, end) < previous:
            raise DiffConfigurationError(f"List {name} is not sorted by (begin, end)")
        previous = (begin, end)


class DoubleIterator(Generic[A, B]):
    """Iterates candidate (a, b) pairs of two interval lists sorted by (begin, end)."""

    def __init__(self, list_a: Sequence[A], list_b: Sequence[B]):
        _check_sorted("A", list_a)
        _check_sorted("B", list_b)
        self._a = list(list_a)
        self._b = list(list_b)
        self._ia = 0
        self._next_b = 0
        self._window: list = []
        self._iw = 0
        self._steps = 0
        if self._a:
            self._enter_a()
            self._settle()

    @property
    def step_count(self) -> int:
        """Number of steps taken so far."""
        return self._steps

    def _enter_a(self) -> None:
        a_begin, a_end = _bounds(self._a[self._ia])
        while self._next_b < len(self._b) and _bounds(self._b[self._next_b])[0] <= a_end:
            self._window.append(self._b[self._next_b])
            self._next_b += 1
        # A is sorted by begin, so a B ending before this A ends before all later ones
        self._window = [b for b in self._window if _bounds(b)[1] >= a_begin]
        self._iw = 0

    def _settle(self) -> None:
        while self._ia < len(self._a) and self._iw >= len(self._window):
            self._ia += 1
            if self._ia < len(self._a):
                self._enter_a()

    def has_next(self) -> bool:
        return self._ia < len(self._a) and self._iw < len(self._window)

    def get_a(self) -> A:
        return self._a[self._ia]

    def get_b(self) -> B:
        return self._window[self._iw]

    def step(self) -> None:
        """Advance to the next candidate pair."""
        self._steps += 1
        self._iw += 1
        self._settle()

    def ignore_a(self) -> None:
        """
        Skip the remaining pairs of the current A. The B window is kept, so
        the next A is still compared against the same B intervals. Call
        step() afterwards.
        """
        self._iw = len(self._window)

    def ignore_b(self) -> None:
        """
        Drop the current B from all further pairs without moving A. Call
        step() afterwards.
        """
        del self._window[self._iw]
        self._iw -= 1


def overlapping(list_a: Sequence[A], list_b: Sequence[B]) -> list[A]:
    """Elements of list_a overlapping at least one element of list_b, each once."""
    result = []
    it = DoubleIterator(list_a, list_b)
    while it.has_next():
        if overlaps(it.get_a(), it.get_b()):
            result.append(it.get_a())
            it.ignore_a()
        it.step()
    return result
