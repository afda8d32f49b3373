"""
Tests for DoubleIterator against a brute-force overlap search.
"""
import random
from dataclasses import dataclass

import pytest

from casdiff.errors import DiffConfigurationError
from casdiff.iterators import DoubleIterator, overlapping, overlaps


@dataclass(frozen=True)
class Interval:
    begin: int
    end: int


def intervals(*pairs):
    return [Interval(b, e) for b, e in pairs]


def brute_force(a, b):
    return {(x, y) for x in a for y in b if overlaps(x, y)}


def swept(a, b):
    found = set()
    it = DoubleIterator(a, b)
    while it.has_next():
        if overlaps(it.get_a(), it.get_b()):
            found.add((it.get_a(), it.get_b()))
        it.step()
    return found


def random_intervals(rng, count, max_begin=100, max_length=50, zero_width=0.1):
    result = []
    for _ in range(count):
        begin = rng.randint(0, max_begin)
        length = 0 if rng.random() < zero_width else rng.randint(1, max_length)
        result.append(Interval(begin, begin + length))
    return sorted(result, key=lambda i: (i.begin, i.end))


LEGACY_CASES = {
    "step2": (intervals((2775, 2820), (2810, 2869)),
              intervals((2351, 2371), (2760, 2839))),
    "step3": (intervals((8274, 8335), (8326, 8407)),
              intervals((8275, 8329), (8768, 8861))),
    "step4": (intervals((63, 152), (135, 135)),
              intervals((64, 135), (200, 204))),
    "step5": (intervals((80, 117), (80, 120)),
              intervals((45, 80), (62, 97))),
    "step6": (intervals((89, 90), (89, 101)),
              intervals((59, 94), (62, 120))),
    "step7": (intervals((69, 96), (69, 104)),
              intervals((20, 69), (88, 121))),
    "step8": (intervals((63, 63), (63, 109)),
              intervals((62, 63), (65, 111))),
    "step9": (intervals((0, 2), (7, 19), (13, 16), (24, 31), (37, 42), (39, 87), (46, 66),
                        (57, 78), (60, 61), (83, 90)),
              intervals((15, 34), (34, 50), (41, 76), (44, 67), (45, 53), (46, 50), (51, 89),
                        (54, 67), (68, 108), (71, 107))),
    "step10": (intervals((1, 16), (8, 52), (13, 60), (17, 65), (26, 61), (31, 46), (42, 60),
                         (48, 92), (80, 88), (91, 120)),
               intervals((24, 33), (25, 71), (27, 63), (29, 63), (30, 64), (34, 82), (39, 84),
                         (41, 87), (58, 66), (74, 100))),
    "step11": (intervals((8, 16), (10, 50), (22, 48), (28, 71), (36, 39), (40, 67), (42, 64),
                         (57, 95), (84, 116), (96, 108)),
               intervals((40, 67), (46, 46), (51, 81), (66, 95), (68, 73), (68, 82), (75, 104),
                         (79, 107), (86, 122), (87, 92))),
}


class TestOverlaps:
    """Tests for the overlap predicate."""

    @pytest.mark.parametrize("a,b,expected", [
        ((10, 20), (5, 12), True),     # b covers the start of a
        ((10, 20), (15, 25), True),    # b covers the end of a
        ((10, 20), (0, 30), True),     # b contains a
        ((10, 20), (12, 15), True),    # a contains b
        ((10, 20), (20, 25), False),   # touching at the end
        ((10, 20), (0, 10), False),    # touching at the start
        ((10, 20), (30, 40), False),
        ((135, 135), (64, 135), True),  # zero-width at the end of b
        ((63, 63), (62, 63), True),
        ((5, 5), (5, 5), True),
        ((10, 20), (15, 15), True),
    ])
    def test_cases(self, a, b, expected):
        assert overlaps(Interval(*a), Interval(*b)) is expected

    def test_mappings(self):
        assert overlaps({"begin": 0, "end": 5}, {"begin": 3, "end": 8})


class TestDoubleIterator:
    """Tests for the sweep over two sorted interval lists."""

    @pytest.mark.parametrize("name", sorted(LEGACY_CASES))
    def test_legacy_cases(self, name):
        a, b = LEGACY_CASES[name]
        assert swept(a, b) == brute_force(a, b)

    @pytest.mark.parametrize("seed", range(20))
    def test_random_sets(self, seed):
        rng = random.Random(seed)
        a = random_intervals(rng, rng.randint(0, 40))
        b = random_intervals(rng, rng.randint(0, 40))
        assert swept(a, b) == brute_force(a, b)

    def test_nested_and_zero_width(self):
        a = intervals((0, 100), (0, 0), (10, 10), (10, 20), (50, 50))
        a.sort(key=lambda i: (i.begin, i.end))
        b = intervals((0, 0), (0, 100), (10, 10), (15, 16), (100, 100))
        assert swept(a, b) == brute_force(a, b)

    def test_long_b_stays_in_window(self):
        """A long B interval must be seen by later A intervals it still overlaps."""
        a = intervals((0, 1), (2, 3), (90, 95))
        b = intervals((0, 100))
        assert swept(a, b) == brute_force(a, b)
        assert len(swept(a, b)) == 3

    def test_disjoint_lists_take_few_steps(self):
        a = intervals(*[(i * 10, i * 10 + 5) for i in range(100)])
        b = intervals(*[(i * 10 + 6, i * 10 + 9) for i in range(100)])
        it = DoubleIterator(a, b)
        while it.has_next():
            it.step()
        assert it.step_count < 300

    def test_empty_lists(self):
        assert not DoubleIterator([], intervals((0, 1))).has_next()
        assert not DoubleIterator(intervals((0, 1)), []).has_next()

    def test_ignore_a(self):
        a = intervals((0, 10), (5, 15))
        b = intervals((0, 3), (2, 8), (6, 12))
        it = DoubleIterator(a, b)
        visited = []
        while it.has_next():
            visited.append((it.get_a(), it.get_b()))
            if it.get_a() == Interval(0, 10):
                it.ignore_a()
            it.step()
        assert visited[0] == (Interval(0, 10), Interval(0, 3))
        assert [pair for pair in visited if pair[0] == Interval(0, 10)] == [visited[0]]
        assert (Interval(5, 15), Interval(6, 12)) in visited

    def test_ignore_b(self):
        a = intervals((0, 10), (5, 15))
        b = intervals((2, 8), (6, 12))
        it = DoubleIterator(a, b)
        visited = []
        while it.has_next():
            visited.append((it.get_a(), it.get_b()))
            if it.get_b() == Interval(2, 8):
                it.ignore_b()
            it.step()
        assert visited.count((Interval(0, 10), Interval(2, 8))) == 1
        assert (Interval(5, 15), Interval(2, 8)) not in visited
        assert (Interval(5, 15), Interval(6, 12)) in visited

    def test_unsorted_input(self):
        with pytest.raises(DiffConfigurationError):
            DoubleIterator(intervals((5, 6), (1, 2)), [])
        with pytest.raises(DiffConfigurationError):
            DoubleIterator([], intervals((1, 3), (1, 2)))

    def test_inverted_interval(self):
        with pytest.raises(DiffConfigurationError):
            DoubleIterator(intervals((5, 1)), [])


class TestOverlapping:
    """Tests for overlapping()."""

    def test_each_a_once_in_order(self):
        a = intervals((0, 10), (5, 6), (20, 30), (40, 50))
        b = intervals((1, 2), (3, 8), (25, 26))
        assert overlapping(a, b) == intervals((0, 10), (5, 6), (20, 30))

    @pytest.mark.parametrize("seed", range(10))
    def test_matches_brute_force(self, seed):
        rng = random.Random(1000 + seed)
        a = random_intervals(rng, 30)
        b = random_intervals(rng, 30)
        expected = [x for x in a if any(overlaps(x, y) for y in b)]
        assert overlapping(a, b) == expected
