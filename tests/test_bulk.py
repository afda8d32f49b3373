"""
Tests for bulk annotation at search hits.
"""
import pytest

from casdiff.adapters import SpanDiffAdapter
from casdiff.bulk import (
    STATE_FINISHED,
    STATE_IGNORE,
    STATE_IN_PROGRESS,
    BulkAnnotationOperator,
    BulkOperationResult,
    MemoryAnnotationStore,
    SearchHit,
)
from casdiff.errors import AnnotationConflictError

TEXT = "The cat sat on the mat ."
NER = SpanDiffAdapter.NER


def make_store(annotations=None, state=STATE_IN_PROGRESS):
    store = MemoryAnnotationStore()
    store.set_text("doc1", TEXT)
    store.load("doc1", "alice", annotations, state=state)
    return store


def cat_hit(**kwargs):
    return SearchHit("doc1", 4, 7, "cat", **kwargs)


def ner(begin, end, value=None, **features):
    return {"begin": begin, "end": end, "features": {"value": value, **features}}


class TestMemoryAnnotationStore:
    """Tests for the in-memory store."""

    def test_load_assigns_ids(self):
        store = make_store({"ner": [ner(4, 7, "ANIMAL"), ner(19, 22, "THING")]})
        ids = [a["id"] for a in store.annotations("doc1", "alice")["ner"]]
        assert len(set(ids)) == 2

    def test_load_does_not_mark_modified(self):
        store = make_store({"ner": [ner(4, 7, "ANIMAL")]})
        assert store.modified == set()

    def test_unknown_document_is_new_and_empty(self):
        store = MemoryAnnotationStore()
        assert store.document_state("doc9", "bob") == "new"
        assert store.annotations("doc9", "bob") == {}

    def test_add_sets_text(self):
        store = make_store()
        annotation = store.add("doc1", "alice", "ner", 4, 7)
        assert annotation["text"] == "cat"
        assert ("doc1", "alice") in store.modified

    def test_add_out_of_bounds(self):
        store = make_store()
        with pytest.raises(AnnotationConflictError):
            store.add("doc1", "alice", "ner", 20, 40)

    def test_add_stacking(self):
        store = make_store({"ner": [ner(4, 7, "ANIMAL")]})
        with pytest.raises(AnnotationConflictError):
            store.add("doc1", "alice", "ner", 4, 7)
        store.add("doc1", "alice", "ner", 4, 7, allow_stacking=True)
        assert len(store.select_at("doc1", "alice", "ner", 4, 7)) == 2

    def test_none_values_leave_features_untouched(self):
        store = make_store({"ner": [ner(4, 7, "ANIMAL")]})
        [annotation] = store.select_at("doc1", "alice", "ner", 4, 7)
        store.set_feature_values(annotation, {"value": None})
        assert store.get_feature_value(annotation, "value") == "ANIMAL"
        assert store.modified == set()


class TestCreate:
    """Tests for creating annotations at hits."""

    def test_create_on_empty(self):
        store = make_store()
        operator = BulkAnnotationOperator(store, NER, "alice", {"value": "ANIMAL"})
        result = operator.create_at_hits([cat_hit()])
        assert result.created == 1
        [annotation] = store.select_at("doc1", "alice", "ner", 4, 7)
        assert annotation["features"]["value"] == "ANIMAL"

    def test_existing_left_alone(self):
        """Without override or stacking an existing annotation blocks the hit."""
        store = make_store({"ner": [ner(4, 7, "PET")]})
        operator = BulkAnnotationOperator(store, NER, "alice", {"value": "ANIMAL"})
        result = operator.create_at_hits([cat_hit()])
        assert not result.changed
        assert result.summary() == "No changes"
        [annotation] = store.select_at("doc1", "alice", "ner", 4, 7)
        assert annotation["features"]["value"] == "PET"

    def test_override_existing(self):
        store = make_store({"ner": [ner(4, 7, "PET", identifier="Q1")]})
        operator = BulkAnnotationOperator(store, NER, "alice", {"value": "ANIMAL"},
                                          override_existing=True)
        result = operator.create_at_hits([cat_hit()])
        assert result.updated == 1
        assert result.created == 0
        [annotation] = store.select_at("doc1", "alice", "ner", 4, 7)
        assert annotation["features"] == {"value": "ANIMAL", "identifier": "Q1"}

    def test_stack_when_nothing_matches(self):
        store = make_store({"ner": [ner(4, 7, "PET")]})
        operator = BulkAnnotationOperator(store, NER, "alice", {"value": "ANIMAL"},
                                          allow_stacking=True)
        result = operator.create_at_hits([cat_hit()])
        assert result.created == 1
        values = sorted(a["features"]["value"] for a in store.select_at("doc1", "alice", "ner", 4, 7))
        assert values == ["ANIMAL", "PET"]

    def test_no_stack_when_state_already_present(self):
        store = make_store({"ner": [ner(4, 7, "ANIMAL")]})
        operator = BulkAnnotationOperator(store, NER, "alice", {"value": "ANIMAL"},
                                          allow_stacking=True)
        result = operator.create_at_hits([cat_hit()])
        assert not result.changed
        assert len(store.select_at("doc1", "alice", "ner", 4, 7)) == 1

    def test_conflict_counted(self):
        store = make_store()
        operator = BulkAnnotationOperator(store, NER, "alice", {"value": "X"})
        result = operator.create_at_hits([SearchHit("doc1", 20, 40), cat_hit()])
        assert result.conflict == 1
        assert result.created == 1
        assert "conflicts: 1" in result.summary()

    def test_read_only_and_unselected_hits_skipped(self):
        store = make_store()
        operator = BulkAnnotationOperator(store, NER, "alice", {"value": "ANIMAL"})
        result = operator.create_at_hits([cat_hit(read_only=True),
                                          SearchHit("doc1", 19, 22, "mat", selected=False)])
        assert not result.changed
        assert store.annotations("doc1", "alice") == {}

    @pytest.mark.parametrize("state", [STATE_FINISHED, STATE_IGNORE])
    def test_locked_documents_skipped(self, state):
        store = make_store(state=state)
        operator = BulkAnnotationOperator(store, NER, "alice", {"value": "ANIMAL"})
        result = operator.create_at_hits([cat_hit()])
        assert result.skipped_documents == ["doc1"]
        assert not result.changed
        assert store.modified == set()

    def test_multiple_documents(self):
        store = make_store()
        store.set_text("doc2", "A cat .")
        store.load("doc2", "alice", state=STATE_FINISHED)
        store.set_text("doc3", "cat")
        operator = BulkAnnotationOperator(store, NER, "alice", {"value": "ANIMAL"})
        result = operator.create_at_hits([cat_hit(), SearchHit("doc2", 2, 5, "cat"),
                                          SearchHit("doc3", 0, 3, "cat")])
        assert result.created == 2
        assert result.skipped_documents == ["doc2"]
        assert store.modified == {("doc1", "alice"), ("doc3", "alice")}

    def test_only_own_documents_touched(self):
        store = make_store()
        store.load("doc1", "bob", {"ner": [ner(4, 7, "PET")]})
        operator = BulkAnnotationOperator(store, NER, "alice", {"value": "ANIMAL"})
        operator.create_at_hits([cat_hit()])
        [annotation] = store.select_at("doc1", "bob", "ner", 4, 7)
        assert annotation["features"]["value"] == "PET"


class TestDelete:
    """Tests for deleting annotations at hits."""

    def test_delete_only_matching(self):
        store = make_store({"ner": [ner(4, 7, "ANIMAL"), ner(4, 7, "PET")]})
        operator = BulkAnnotationOperator(store, NER, "alice", {"value": "ANIMAL"})
        result = operator.delete_at_hits([cat_hit()])
        assert result.deleted == 1
        [left] = store.select_at("doc1", "alice", "ner", 4, 7)
        assert left["features"]["value"] == "PET"

    def test_delete_all(self):
        store = make_store({"ner": [ner(4, 7, "ANIMAL"), ner(4, 7, "PET")]})
        operator = BulkAnnotationOperator(store, NER, "alice", {"value": "ANIMAL"},
                                          delete_only_matching=False)
        result = operator.delete_at_hits([cat_hit()])
        assert result.deleted == 2
        assert store.select_at("doc1", "alice", "ner", 4, 7) == []
        assert "Deleted annotations: 2" in result.summary()

    def test_delete_ignores_other_positions(self):
        store = make_store({"ner": [ner(4, 8, "ANIMAL")]})
        operator = BulkAnnotationOperator(store, NER, "alice", {"value": "ANIMAL"})
        result = operator.delete_at_hits([cat_hit()])
        assert result.deleted == 0


class TestBulkOperationResult:
    """Tests for result summaries."""

    def test_summary(self):
        result = BulkOperationResult(created=2, updated=1)
        assert result.changed
        assert result.summary() == "Created annotations: 2; Updated annotations: 1"
