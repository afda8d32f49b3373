"""
Pytest configuration and fixtures for casdiff tests.
"""
import os
import sys
import tempfile
from pathlib import Path
from typing import Generator

import pytest
from fastapi.testclient import TestClient

# Add app directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

# Set test environment before importing app
os.environ["CASDIFF_LOG_LEVEL"] = "DEBUG"
os.environ["CASDIFF_ALLOW_STACKING_DIFF"] = "0"

DOCUMENT_TEXT = "The cat sat on the mat ."

# Token offsets of DOCUMENT_TEXT
TOKENS = {
    "The": (0, 3),
    "cat": (4, 7),
    "sat": (8, 11),
    "on": (12, 14),
    "the": (15, 18),
    "mat": (19, 22),
    ".": (23, 24),
}

LAYERS = [
    {"name": "pos", "layer_type": "span", "features": ["value"]},
    {"name": "ner", "layer_type": "span", "features": ["value"], "allow_stacking": True},
    {"name": "dependency", "layer_type": "relation", "features": ["dependency_type"],
     "source_feature": "governor", "target_feature": "dependent"},
    {"name": "coref", "layer_type": "chain", "features": ["referenceType"]},
]


def pos_spans(*tagged: tuple[str, str]) -> list[dict]:
    """Span payloads for (token, tag) pairs of DOCUMENT_TEXT."""
    return [
        {"begin": TOKENS[token][0], "end": TOKENS[token][1], "features": {"value": tag}}
        for token, tag in tagged
    ]


@pytest.fixture
def fresh_client() -> Generator[TestClient, None, None]:
    """Create a fresh test client with clean database for each test."""
    import app as app_module
    from casdiff.search import IndexRegistry

    # Create new temp db for this test
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        test_db = Path(f.name)

    app_module.DB_PATH = test_db
    app_module.index_registry = IndexRegistry()
    app_module.init_db()

    with TestClient(app_module.app) as c:
        yield c

    if test_db.exists():
        test_db.unlink()


@pytest.fixture
def project_client(fresh_client: TestClient) -> TestClient:
    """Client with project 'demo' holding layers and document 'doc1'."""
    response = fresh_client.put("/api/projects/demo/layers", json=LAYERS)
    assert response.status_code == 200
    response = fresh_client.put("/api/projects/demo/documents/doc1", json={"text": DOCUMENT_TEXT})
    assert response.status_code == 200
    return fresh_client


@pytest.fixture
def annotated_client(project_client: TestClient) -> TestClient:
    """
    Project 'demo' with three annotators on 'doc1':
    alice and bob tag four tokens and differ on one, carol only tags "The".
    """
    client = project_client
    alice = pos_spans(("The", "DT"), ("cat", "NN"), ("sat", "VBD"), ("on", "IN"))
    bob = pos_spans(("The", "DT"), ("cat", "NN"), ("sat", "VBD"), ("on", "NN"))
    carol = pos_spans(("The", "DT"))
    for annotator, spans in (("alice", alice), ("bob", bob), ("carol", carol)):
        response = client.put(
            f"/api/projects/demo/documents/doc1/annotations/{annotator}",
            json={"state": "in_progress", "spans": {"pos": spans}},
        )
        assert response.status_code == 200
    return client
