"""
API client for the casdiff service.

Wraps all HTTP calls to the FastAPI backend and returns decoded JSON (or
text for CSV and text reports).
"""

import httpx
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class APIConfig:
    """Configuration for the API client."""
    base_url: str = "http://127.0.0.1:8000"
    timeout: float = 30.0


@dataclass
class Span:
    """A span annotation to upload."""
    begin: int
    end: int
    features: dict = field(default_factory=dict)
    text: Optional[str] = None


@dataclass
class Relation:
    """A relation between two spans, given as (begin, end) offsets."""
    source: tuple[int, int]
    target: tuple[int, int]
    features: dict = field(default_factory=dict)


@dataclass
class AnnotationUpload:
    """All annotations of one annotator on one document."""
    annotator: str
    state: str = "in_progress"
    spans: dict[str, list[Span]] = field(default_factory=dict)
    relations: dict[str, list[Relation]] = field(default_factory=dict)

    def to_payload(self) -> dict:
        return {
            "state": self.state,
            "spans": {
                layer: [
                    {"begin": s.begin, "end": s.end, "text": s.text, "features": s.features}
                    for s in spans
                ]
                for layer, spans in self.spans.items()
            },
            "relations": {
                layer: [
                    {
                        "source": {"begin": r.source[0], "end": r.source[1]},
                        "target": {"begin": r.target[0], "end": r.target[1]},
                        "features": r.features,
                    }
                    for r in relations
                ]
                for layer, relations in self.relations.items()
            },
        }


class CurationApiClient:
    """
    Client for the casdiff API.

    Pass ``client`` to reuse an existing httpx.Client (for example a
    FastAPI TestClient); otherwise one is created from the config.
    """

    def __init__(self, config: Optional[APIConfig] = None, client: Optional[httpx.Client] = None):
        self.config = config or APIConfig()
        self._client = client or httpx.Client(
            base_url=self.config.base_url,
            timeout=self.config.timeout,
            follow_redirects=True,
        )
        self._owns_client = client is None

    def health(self) -> dict:
        response = self._client.get("/api/health")
        response.raise_for_status()
        return response.json()

    def put_layers(self, project_id: str, layers: list[dict]) -> dict:
        """Register the layer schema of a project."""
        response = self._client.put(f"/api/projects/{project_id}/layers", json=layers)
        response.raise_for_status()
        return response.json()

    def get_layers(self, project_id: str) -> Optional[dict]:
        response = self._client.get(f"/api/projects/{project_id}/layers")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()

    def put_document(self, project_id: str, document_id: str, text: str) -> dict:
        response = self._client.put(
            f"/api/projects/{project_id}/documents/{document_id}",
            json={"text": text},
        )
        response.raise_for_status()
        return response.json()

    def put_annotations(self, project_id: str, document_id: str, upload: AnnotationUpload) -> dict:
        """Replace an annotator's annotations on a document."""
        return self.put_annotation_payload(project_id, document_id, upload.annotator,
                                           upload.to_payload())

    def put_annotation_payload(self, project_id: str, document_id: str, annotator: str,
                               payload: dict) -> dict:
        """Same as put_annotations, for payloads that are already in wire format."""
        response = self._client.put(
            f"/api/projects/{project_id}/documents/{document_id}/annotations/{annotator}",
            json=payload,
        )
        response.raise_for_status()
        return response.json()

    def get_annotations(self, project_id: str, document_id: str, annotator: str) -> Optional[dict]:
        response = self._client.get(
            f"/api/projects/{project_id}/documents/{document_id}/annotations/{annotator}"
        )
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()

    def get_diff(
        self,
        project_id: str,
        document_id: str,
        types: Optional[list[str]] = None,
        annotators: Optional[list[str]] = None,
        only_differences: bool = False,
        as_text: bool = False,
    ):
        """
        Get the position diff of a document.

        Returns the JSON summary, or the rendered text when as_text is set.
        """
        params = {"only_differences": only_differences, "format": "text" if as_text else "json"}
        if types:
            params["types"] = ",".join(types)
        if annotators:
            params["annotators"] = ",".join(annotators)

        response = self._client.get(
            f"/api/projects/{project_id}/documents/{document_id}/diff", params=params
        )
        response.raise_for_status()
        return response.text if as_text else response.json()

    def get_agreement(
        self,
        project_id: str,
        document_id: str,
        layer: str,
        feature: str,
        measure: Optional[str] = None,
        annotators: Optional[list[str]] = None,
        output_format: str = "json",
    ):
        """
        Get the pairwise agreement table.

        Args:
            output_format: json (decoded dict), csv or text (str)
        """
        params = {"type": layer, "feature": feature, "format": output_format}
        if measure:
            params["measure"] = measure
        if annotators:
            params["annotators"] = ",".join(annotators)

        response = self._client.get(
            f"/api/projects/{project_id}/documents/{document_id}/agreement", params=params
        )
        response.raise_for_status()
        return response.json() if output_format == "json" else response.text

    def get_agreement_report(self, project_id: str, document_id: str, layer: str,
                             feature: str, first: str, second: str) -> str:
        response = self._client.get(
            f"/api/projects/{project_id}/documents/{document_id}/agreement/report",
            params={"type": layer, "feature": feature, "first": first, "second": second},
        )
        response.raise_for_status()
        return response.text

    def search(self, project_id: str, query: str, document_id: Optional[str] = None) -> dict:
        payload = {"query": query}
        if document_id:
            payload["document_id"] = document_id
        response = self._client.post(f"/api/projects/{project_id}/search", json=payload)
        response.raise_for_status()
        return response.json()

    def bulk(
        self,
        project_id: str,
        annotator: str,
        layer: str,
        action: str = "create",
        feature_state: Optional[dict] = None,
        query: Optional[str] = None,
        hits: Optional[list[dict]] = None,
        override_existing: bool = False,
        delete_only_matching: bool = True,
    ) -> dict:
        """Create or delete annotations at search hits."""
        payload = {
            "annotator": annotator,
            "layer": layer,
            "action": action,
            "feature_state": feature_state or {},
            "override_existing": override_existing,
            "delete_only_matching": delete_only_matching,
        }
        if query is not None:
            payload["query"] = query
        if hits is not None:
            payload["hits"] = hits

        response = self._client.post(f"/api/projects/{project_id}/bulk", json=payload)
        response.raise_for_status()
        return response.json()

    def close_index(self, project_id: str) -> bool:
        """Close a project's search index. Returns False if it was not open."""
        response = self._client.delete(f"/api/projects/{project_id}/index")
        if response.status_code == 404:
            return False
        response.raise_for_status()
        return True

    def close(self) -> None:
        """Close the HTTP client."""
        if self._owns_client:
            self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
