"""
Tests for the API client and command line client, run against the app
through the FastAPI test client.
"""
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import DOCUMENT_TEXT, LAYERS, TOKENS
from curation_client import cli
from curation_client.api_client import AnnotationUpload, CurationApiClient, Relation, Span


@pytest.fixture
def api(fresh_client: TestClient) -> CurationApiClient:
    client = CurationApiClient(client=fresh_client)
    client.put_layers("demo", LAYERS)
    client.put_document("demo", "doc1", DOCUMENT_TEXT)
    return client


def tag(token: str, value: str) -> Span:
    begin, end = TOKENS[token]
    return Span(begin, end, {"value": value})


@pytest.fixture
def annotated_api(api: CurationApiClient) -> CurationApiClient:
    api.put_annotations("demo", "doc1", AnnotationUpload(
        "alice", spans={"pos": [tag("The", "DT"), tag("cat", "NN"), tag("sat", "VBD")]},
    ))
    api.put_annotations("demo", "doc1", AnnotationUpload(
        "bob", spans={"pos": [tag("The", "DT"), tag("cat", "NN"), tag("sat", "VBN")]},
    ))
    return api


class TestAnnotationUpload:
    """Tests for the upload payload."""

    def test_payload(self):
        upload = AnnotationUpload("alice", spans={"pos": [Span(0, 3, {"value": "DT"})]},
                                  relations={"dependency": [Relation((4, 7), (0, 3), {"dependency_type": "DET"})]})
        payload = upload.to_payload()
        assert payload["state"] == "in_progress"
        assert payload["spans"]["pos"] == [{"begin": 0, "end": 3, "text": None, "features": {"value": "DT"}}]
        assert payload["relations"]["dependency"][0]["source"] == {"begin": 4, "end": 7}


class TestCurationApiClient:
    """Tests for CurationApiClient."""

    def test_health(self, fresh_client: TestClient):
        assert CurationApiClient(client=fresh_client).health()["status"] == "ok"

    def test_layers(self, api: CurationApiClient):
        assert len(api.get_layers("demo")["layers"]) == len(LAYERS)
        assert api.get_layers("nope") is None

    def test_annotations(self, annotated_api: CurationApiClient):
        data = annotated_api.get_annotations("demo", "doc1", "alice")
        assert len(data["spans"]["pos"]) == 3
        assert annotated_api.get_annotations("demo", "doc1", "zoe") is None

    def test_relations(self, api: CurationApiClient):
        result = api.put_annotations("demo", "doc1", AnnotationUpload(
            "alice", relations={"dependency": [Relation((4, 7), (0, 3), {"dependency_type": "DET"})]},
        ))
        assert result["relation_count"] == 1

    def test_diff(self, annotated_api: CurationApiClient):
        data = annotated_api.get_diff("demo", "doc1", only_differences=True)
        assert [p["position"] for p in data["positions"]] == ["8-11 [sat]"]
        text = annotated_api.get_diff("demo", "doc1", types=["pos"], as_text=True)
        assert "❌ pos 8-11 [sat] alice=VBD | bob=VBN" in text

    def test_agreement(self, annotated_api: CurationApiClient):
        data = annotated_api.get_agreement("demo", "doc1", "pos", "value")
        assert data["pairs"][0]["agreement"] == pytest.approx(4 / 7)
        csv_text = annotated_api.get_agreement("demo", "doc1", "pos", "value", output_format="csv")
        assert csv_text.splitlines()[1].startswith("alice,bob,0.5714")

    def test_agreement_report(self, annotated_api: CurationApiClient):
        report = annotated_api.get_agreement_report("demo", "doc1", "pos", "value", "alice", "bob")
        assert "# Item count: 3" in report

    def test_search_and_bulk(self, annotated_api: CurationApiClient):
        result = annotated_api.search("demo", "the cat")
        assert result["count"] == 1
        result = annotated_api.bulk("demo", "alice", "ner", feature_state={"value": "ANIMAL"},
                                    query="cat")
        assert result["created"] == 1
        assert annotated_api.close_index("demo") is True
        assert annotated_api.close_index("demo") is False

    def test_errors_raise(self, api: CurationApiClient):
        with pytest.raises(httpx.HTTPStatusError):
            api.get_diff("demo", "doc9")

    def test_injected_client_not_closed(self, fresh_client: TestClient):
        with CurationApiClient(client=fresh_client) as client:
            client.health()
        assert fresh_client.get("/api/health").status_code == 200


class TestCli:
    """Tests for the command line client."""

    def test_parse_feature_state(self):
        assert cli.parse_feature_state(["value=PER", "identifier=a=b"]) == {
            "value": "PER", "identifier": "a=b",
        }

    def test_health(self, api: CurationApiClient, capsys):
        assert cli.main(["health"], client=api) == 0
        assert json.loads(capsys.readouterr().out)["status"] == "ok"

    def test_diff(self, annotated_api: CurationApiClient, capsys):
        assert cli.main(["diff", "demo", "doc1", "--only-differences"], client=annotated_api) == 0
        out = capsys.readouterr().out
        assert "8-11 [sat]" in out
        assert "0-3 [The]" not in out

    def test_agreement(self, annotated_api: CurationApiClient, capsys):
        assert cli.main(["agreement", "demo", "doc1", "pos", "value"], client=annotated_api) == 0
        assert "Pairwise Agreement" in capsys.readouterr().out

    def test_search(self, annotated_api: CurationApiClient, capsys):
        assert cli.main(["search", "demo", "the"], client=annotated_api) == 0
        out = capsys.readouterr().out
        assert out.startswith('🔍 2 hits for "the"')
        assert "doc1 15-18 [the]" in out

    def test_bulk(self, annotated_api: CurationApiClient, capsys):
        code = cli.main(["bulk", "demo", "bob", "ner", "mat", "--set", "value=THING"],
                        client=annotated_api)
        assert code == 0
        assert capsys.readouterr().out.strip() == "✅ Created annotations: 1"

    def test_bulk_locked_document(self, annotated_api: CurationApiClient, capsys):
        annotated_api.put_annotations("demo", "doc1", AnnotationUpload("bob", state="finished"))
        code = cli.main(["bulk", "demo", "bob", "ner", "mat", "--set", "value=THING"],
                        client=annotated_api)
        assert code == 0
        out = capsys.readouterr().out
        assert out.strip() == "⏭️ Skipped documents: doc1"

    def test_http_error(self, api: CurationApiClient, capsys):
        assert cli.main(["diff", "demo", "doc9"], client=api) == 1
        err = capsys.readouterr().err
        assert err.startswith("❌ **Error:** 404: Document not found")

    def test_bad_feature_state(self, api: CurationApiClient):
        with pytest.raises(SystemExit):
            cli.main(["bulk", "demo", "bob", "ner", "mat", "--set", "value"], client=api)
