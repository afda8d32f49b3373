"""
Multi-annotator position diff.

Aligns the annotations that several annotators made independently on the
same document. For every annotation type, each annotator's annotations are
turned into entries keyed by Position, sorted into document order, and the
per-annotator cursors are merged so that every distinct position yields one
ConfigurationSet. Within a set, entries with identical label feature values
form one Configuration; a set with a single configuration is an agreement,
a set missing some annotator is incomplete.
"""

import heapq
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from itertools import groupby
from typing import Any, Collection, Iterable, Optional, Union

from .adapters import DiffAdapter
from .errors import MissingAdapterError, StackedAnnotationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnnotationEntry:
    """One annotator's annotation occupying a position."""
    annotator: str
    position: Any
    instance: Any = field(compare=False, repr=False)
    label: tuple = ()


class Configuration:
    """
    A single configuration seen at a position: the entries whose label
    feature values are identical.
    """

    def __init__(self, position, label: tuple):
        self.position = position
        self.label = label
        self.entries: dict[str, list[AnnotationEntry]] = {}

    @property
    def annotators(self) -> list[str]:
        return list(self.entries)

    def add(self, entry: AnnotationEntry) -> None:
        self.entries.setdefault(entry.annotator, []).append(entry)

    def get_entry(self, annotator: str) -> Optional[AnnotationEntry]:
        entries = self.entries.get(annotator)
        return entries[0] if entries else None

    def get_instance(self, annotator: str):
        entry = self.get_entry(annotator)
        return entry.instance if entry else None

    def label_dict(self) -> dict:
        return dict(self.label)

    def __repr__(self):
        return f"[{', '.join(self.entries)}] -> {self.label_dict()}"


class ConfigurationSet:
    """All entries, from all annotators, at one position."""

    def __init__(self, position):
        self.position = position
        self.configurations: list[Configuration] = []
        self.entries: dict[str, list[AnnotationEntry]] = {}

    @property
    def annotators(self) -> list[str]:
        """Annotators that contributed at least one entry to this set."""
        return list(self.entries)

    @property
    def type(self) -> str:
        return self.position.type

    def add_entry(self, entry: AnnotationEntry) -> None:
        configuration = None
        for cfg in self.configurations:
            if cfg.label == entry.label:
                configuration = cfg
                break
        if configuration is None:
            configuration = Configuration(self.position, entry.label)
            self.configurations.append(configuration)
        configuration.add(entry)
        self.entries.setdefault(entry.annotator, []).append(entry)

    def get_configurations(self, annotator: str) -> list[Configuration]:
        """Configurations containing an entry of the given annotator."""
        return [cfg for cfg in self.configurations if annotator in cfg.entries]

    @property
    def recorded_configuration_count(self) -> int:
        """Number of entries recorded in this set, counting each annotator separately."""
        return sum(len(entries) for entries in self.entries.values())

    def __repr__(self):
        return f"ConfigurationSet({self.position}, configurations={len(self.configurations)})"


class DiffResult:
    """The full table of configuration sets produced by one diff invocation."""

    def __init__(self, annotators: Iterable[str], config_sets: list[ConfigurationSet],
                 adapters: Mapping[str, DiffAdapter]):
        self.annotators = list(annotators)
        self._data = {cs.position: cs for cs in config_sets}
        self._adapters = dict(adapters)
        self._completeness: dict = {}

    def get_diff_adapter(self, type_name: str) -> Optional[DiffAdapter]:
        return self._adapters.get(type_name)

    @property
    def positions(self) -> list:
        return list(self._data)

    @property
    def configuration_sets(self) -> list[ConfigurationSet]:
        return list(self._data.values())

    def get_configuration_set(self, position) -> Optional[ConfigurationSet]:
        return self._data.get(position)

    def _check_member(self, config_set: ConfigurationSet) -> None:
        if self._data.get(config_set.position) is not config_set:
            raise ValueError("Configuration set does not belong to this diff")

    def is_agreement(self, config_set: ConfigurationSet) -> bool:
        """
        True if all annotators who annotated the position chose the same
        label. Completeness is a separate question, see is_complete().
        """
        self._check_member(config_set)
        return len(config_set.configurations) == 1

    def is_complete(self, config_set: ConfigurationSet) -> bool:
        """True if every expected annotator contributed an entry."""
        self._check_member(config_set)
        complete = self._completeness.get(config_set.position)
        if complete is None:
            complete = all(a in config_set.entries for a in self.annotators)
            self._completeness[config_set.position] = complete
        return complete

    @property
    def differing_configuration_sets(self) -> dict:
        return {p: cs for p, cs in self._data.items() if not self.is_agreement(cs)}

    @property
    def incomplete_configuration_sets(self) -> dict:
        return {p: cs for p, cs in self._data.items() if not self.is_complete(cs)}

    @property
    def complete_agreeing_configuration_sets(self) -> dict:
        return {p: cs for p, cs in self._data.items()
                if self.is_complete(cs) and self.is_agreement(cs)}

    @property
    def complete_differing_configuration_sets(self) -> dict:
        return {p: cs for p, cs in self._data.items()
                if self.is_complete(cs) and not self.is_agreement(cs)}

    def has_differences(self) -> bool:
        return any(not self.is_agreement(cs) for cs in self._data.values())

    def size(self, type_name: Optional[str] = None) -> int:
        if type_name is None:
            return len(self._data)
        return sum(1 for p in self._data if p.type == type_name)

    def __len__(self):
        return len(self._data)

    def dump(self) -> str:
        lines = []
        for position, config_set in self._data.items():
            agree = self.is_agreement(config_set)
            complete = self.is_complete(config_set)
            lines.append(f"=== {position} -> {'AGREE' if agree else 'DISAGREE'} "
                         f"{'COMPLETE' if complete else 'INCOMPLETE'}")
            if not agree or not complete:
                for cfg in config_set.configurations:
                    lines.append(f"    {cfg!r}")
        return "\n".join(lines)


def _entries_for(annotator: str, adapter: DiffAdapter, instances: Iterable,
                 begin: int, end: int) -> list[AnnotationEntry]:
    entries = []
    for instance in instances:
        position = adapter.get_position(instance)
        if begin != -1 and end != -1:
            inst_begin, inst_end = position.bounds()
            if inst_begin < begin or inst_end > end:
                continue
        entries.append(AnnotationEntry(
            annotator=annotator,
            position=position,
            instance=instance,
            label=adapter.get_label(instance),
        ))
    entries.sort(key=lambda e: e.position.sort_key())
    return entries


def _sorted_cursor(entries: list[AnnotationEntry], allow_stacking: bool):
    previous = None
    for entry in entries:
        if not allow_stacking and previous is not None and previous.position == entry.position:
            raise StackedAnnotationError(entry.annotator, entry.position)
        previous = entry
        yield entry


def do_diff(entry_types: Iterable[str], adapters: Iterable[DiffAdapter],
            cas_map: Mapping[str, Optional[Mapping[str, Iterable]]],
            begin: int = -1, end: int = -1,
            allow_stacking: Union[bool, Collection[str]] = False) -> DiffResult:
    """
    Calculate the differences between the annotations of several annotators.

    Args:
        entry_types: annotation types to diff
        adapters: diff adapters, at least one per entry type
        cas_map: annotator -> {type -> annotation instances}. An annotator
            mapped to None has not worked on the document; the annotator
            still counts when deciding completeness.
        begin, end: if both are not -1, only annotations covered by this
            window are considered
        allow_stacking: keep multiple entries of one annotator at one
            position instead of failing. True applies to every type; a
            collection of type names applies to those types only.

    Returns:
        DiffResult with one configuration set per distinct position.
    """
    start_time = time.monotonic()
    entry_types = list(dict.fromkeys(entry_types))
    adapter_map = {adapter.type: adapter for adapter in adapters}

    # Fail before doing any work if a type cannot be handled
    for type_name in entry_types:
        if type_name not in adapter_map:
            raise MissingAdapterError(type_name)

    config_sets: list[ConfigurationSet] = []
    for type_name in entry_types:
        adapter = adapter_map[type_name]
        stacking = (allow_stacking if isinstance(allow_stacking, bool)
                    else type_name in allow_stacking)
        cursors = []
        for annotator, cas in cas_map.items():
            if cas is None:
                logger.debug("Annotator [%s] has no document", annotator)
                continue
            instances = cas.get(type_name) or []
            entries = _entries_for(annotator, adapter, instances, begin, end)
            logger.debug("Annotator [%s] contains [%d] annotations of type [%s]",
                         annotator, len(entries), type_name)
            if entries:
                cursors.append(_sorted_cursor(entries, stacking))

        positions_before = len(config_sets)
        merged = heapq.merge(*cursors, key=lambda e: e.position.sort_key())
        for position, group in groupby(merged, key=lambda e: e.position):
            config_set = ConfigurationSet(position)
            for entry in group:
                config_set.add_entry(entry)
            config_sets.append(config_set)
        logger.debug("Type [%s]: [%d] positions", type_name, len(config_sets) - positions_before)

    logger.debug("Diff completed in %.1f ms", (time.monotonic() - start_time) * 1000)
    return DiffResult(cas_map.keys(), config_sets, adapter_map)
