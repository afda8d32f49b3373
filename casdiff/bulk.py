"""
Bulk creation and deletion of span annotations at search hits.

The operator applies the current feature state (feature name -> value) of
one span layer to every usable hit of a search: it creates annotations
where none exist, updates or stacks onto existing ones depending on the
options, or deletes the annotations found at the hits.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from itertools import count
from typing import Any, Iterable, Optional, Protocol

from .adapters import SpanDiffAdapter
from .errors import AnnotationConflictError
from .position import SpanPosition

logger = logging.getLogger(__name__)

STATE_NEW = "new"
STATE_IN_PROGRESS = "in_progress"
STATE_FINISHED = "finished"
STATE_IGNORE = "ignore"

DOCUMENT_STATES = (STATE_NEW, STATE_IN_PROGRESS, STATE_FINISHED, STATE_IGNORE)
LOCKED_STATES = frozenset({STATE_FINISHED, STATE_IGNORE})


@dataclass(frozen=True)
class SearchHit:
    """A span of a document matched by a search query."""
    document_id: str
    begin: int
    end: int
    text: str = ""
    read_only: bool = False
    selected: bool = True


@dataclass
class BulkOperationResult:
    created: int = 0
    updated: int = 0
    deleted: int = 0
    conflict: int = 0
    skipped_documents: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated or self.deleted)

    def summary(self) -> str:
        if not self.changed and not self.conflict:
            return "No changes"
        parts = []
        if self.created:
            parts.append(f"Created annotations: {self.created}")
        if self.updated:
            parts.append(f"Updated annotations: {self.updated}")
        if self.deleted:
            parts.append(f"Deleted annotations: {self.deleted}")
        if self.conflict:
            parts.append(f"Annotations skipped due to conflicts: {self.conflict}")
        return "; ".join(parts)


class AnnotationStore(Protocol):
    """What the bulk operator needs from an annotation storage backend."""

    def document_state(self, document_id: str, user: str) -> str: ...

    def select_at(self, document_id: str, user: str, type_name: str,
                  begin: int, end: int) -> list: ...

    def add(self, document_id: str, user: str, type_name: str, begin: int, end: int,
            allow_stacking: bool = False) -> Any: ...

    def set_feature_values(self, annotation: Any, values: dict) -> None: ...

    def get_feature_value(self, annotation: Any, feature: str) -> Any: ...

    def delete(self, document_id: str, user: str, type_name: str, annotation: Any) -> None: ...


class MemoryAnnotationStore:
    """
    Annotation documents held in memory, one per (document, user).

    Annotations are plain dicts shaped like the service payload::

        {"id": 1, "begin": 4, "end": 7, "text": "cat", "features": {"value": "NN"}}

    so ``annotations(document_id, user)`` can be handed to do_diff() directly.
    Annotation ids are assigned by the store and are unique within it.
    """

    def __init__(self):
        self._texts: dict[str, str] = {}
        self._documents: dict[tuple[str, str], dict] = {}
        self._ids = count(1)
        self._owners: dict[int, tuple[str, str]] = {}
        self.modified: set[tuple[str, str]] = set()

    def set_text(self, document_id: str, text: str) -> None:
        self._texts[document_id] = text

    def load(self, document_id: str, user: str, annotations: Optional[dict] = None,
             state: str = STATE_NEW) -> None:
        """Put an annotator's document into the store, replacing any previous copy."""
        layers = {}
        for type_name, instances in (annotations or {}).items():
            layers[type_name] = []
            for instance in instances:
                instance = dict(instance)
                instance.setdefault("features", {})
                instance["id"] = next(self._ids)
                self._owners[instance["id"]] = (document_id, user)
                layers[type_name].append(instance)
        self._documents[(document_id, user)] = {"state": state, "annotations": layers}

    def _document(self, document_id: str, user: str) -> dict:
        key = (document_id, user)
        if key not in self._documents:
            self._documents[key] = {"state": STATE_NEW, "annotations": {}}
        return self._documents[key]

    def annotations(self, document_id: str, user: str) -> dict:
        return self._document(document_id, user)["annotations"]

    def document_state(self, document_id: str, user: str) -> str:
        return self._document(document_id, user)["state"]

    def select_at(self, document_id, user, type_name, begin, end) -> list:
        target = SpanPosition(type_name, begin, end)
        return [
            a for a in self.annotations(document_id, user).get(type_name, [])
            if SpanPosition(type_name, a["begin"], a["end"]) == target
        ]

    def add(self, document_id, user, type_name, begin, end, allow_stacking=False) -> dict:
        text = self._texts.get(document_id)
        if text is not None and end > len(text):
            raise AnnotationConflictError(
                f"Span ({begin}-{end}) exceeds document [{document_id}] of length {len(text)}"
            )
        if not allow_stacking and self.select_at(document_id, user, type_name, begin, end):
            raise AnnotationConflictError(
                f"Layer [{type_name}] does not allow stacking at ({begin}-{end})"
            )
        annotation = {
            "id": next(self._ids),
            "begin": begin,
            "end": end,
            "text": text[begin:end] if text is not None else None,
            "features": {},
        }
        self.annotations(document_id, user).setdefault(type_name, []).append(annotation)
        self._owners[annotation["id"]] = (document_id, user)
        self.modified.add((document_id, user))
        return annotation

    def set_feature_values(self, annotation, values) -> None:
        for name, value in values.items():
            # Unset values in the feature state leave the annotation untouched
            if value is not None:
                annotation["features"][name] = value
                self.modified.add(self._owners[annotation["id"]])

    def get_feature_value(self, annotation, feature):
        return annotation["features"].get(feature)

    def delete(self, document_id, user, type_name, annotation) -> None:
        layer = self.annotations(document_id, user).get(type_name, [])
        layer[:] = [a for a in layer if a is not annotation]
        self.modified.add((document_id, user))


class BulkAnnotationOperator:
    """Applies a feature state to the annotations at a set of search hits."""

    def __init__(self, store: AnnotationStore, adapter: SpanDiffAdapter, user: str,
                 feature_state: Optional[dict] = None, allow_stacking: bool = False,
                 override_existing: bool = False, delete_only_matching: bool = True):
        self.store = store
        self.adapter = adapter
        self.user = user
        self.feature_state = dict(feature_state or {})
        self.allow_stacking = allow_stacking
        self.override_existing = override_existing
        self.delete_only_matching = delete_only_matching

    def create_at_hits(self, hits: Iterable[SearchHit]) -> BulkOperationResult:
        return self._apply(hits, self._create_at_hit)

    def delete_at_hits(self, hits: Iterable[SearchHit]) -> BulkOperationResult:
        return self._apply(hits, self._delete_at_hit)

    def _apply(self, hits, operation) -> BulkOperationResult:
        result = BulkOperationResult()
        by_document: dict[str, list[SearchHit]] = defaultdict(list)
        for hit in hits:
            by_document[hit.document_id].append(hit)

        for document_id, document_hits in by_document.items():
            state = self.store.document_state(document_id, self.user)
            if state in LOCKED_STATES:
                logger.warning("Skipping document [%s] of [%s]: state is [%s]",
                               document_id, self.user, state)
                result.skipped_documents.append(document_id)
                continue
            for hit in document_hits:
                if hit.read_only or not hit.selected:
                    continue
                operation(hit, result)

        logger.info("Bulk operation on [%s] for [%s]: %s",
                    self.adapter.type, self.user, result.summary())
        return result

    def _matches_state(self, annotation) -> bool:
        return all(
            self.store.get_feature_value(annotation, name) == value
            for name, value in self.feature_state.items()
        )

    def _create_at_hit(self, hit: SearchHit, result: BulkOperationResult) -> None:
        type_name = self.adapter.type
        existing = self.store.select_at(hit.document_id, self.user, type_name,
                                        hit.begin, hit.end)

        # Something is already there and may be neither changed nor stacked onto
        if existing and not self.override_existing and not self.allow_stacking:
            return

        match = False
        for annotation in existing:
            if self.override_existing:
                self.store.set_feature_values(annotation, self.feature_state)
                result.updated += 1
            elif self._matches_state(annotation):
                match = True

        if not existing or (not match and not self.override_existing):
            try:
                annotation = self.store.add(hit.document_id, self.user, type_name,
                                            hit.begin, hit.end, self.allow_stacking)
            except AnnotationConflictError as e:
                logger.debug("Conflict at %s: %s", hit, e)
                result.conflict += 1
                return
            result.created += 1
            self.store.set_feature_values(annotation, self.feature_state)

    def _delete_at_hit(self, hit: SearchHit, result: BulkOperationResult) -> None:
        type_name = self.adapter.type
        for annotation in list(self.store.select_at(hit.document_id, self.user, type_name,
                                                    hit.begin, hit.end)):
            if not self.delete_only_matching or self._matches_state(annotation):
                self.store.delete(hit.document_id, self.user, type_name, annotation)
                result.deleted += 1
