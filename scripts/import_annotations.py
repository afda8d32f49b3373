#!/usr/bin/env python3
"""
Import annotation exports into the casdiff service.

Expected export format (one JSON file per project):
    {
        "project": "pos-study",
        "layers": [{"name": "pos", "layer_type": "span", "features": ["value"]}],
        "documents": [
            {
                "id": "doc1",
                "text": "The cat sat .",
                "annotations": {
                    "alice": {"state": "finished", "spans": {"pos": [{"begin": 0, "end": 3, "features": {"value": "DT"}}]}},
                    "bob": {"spans": {"pos": [...]}}
                }
            }
        ]
    }

Usage:
    python scripts/import_annotations.py export.json
    python scripts/import_annotations.py exports/*.json --url http://127.0.0.1:8000
    python scripts/import_annotations.py export.json --project other-name --dry-run
"""

import argparse
import json
import sys
from pathlib import Path

# Allow running from a source checkout
sys.path.insert(0, str(Path(__file__).parent.parent))

import httpx

from curation_client.api_client import APIConfig, CurationApiClient
from curation_client.cli import API_BASE_URL, API_TIMEOUT


def load_export(path: Path) -> dict:
    """Load and minimally validate an export file."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    for key in ("project", "documents"):
        if key not in data:
            raise ValueError(f"{path}: missing '{key}'")
    return data


def import_export(client: CurationApiClient, data: dict, project: str = None,
                  dry_run: bool = False) -> dict:
    """
    Push one export to the service.

    Returns counts of imported documents and annotation documents.
    """
    project_id = project or data["project"]
    counts = {"documents": 0, "annotation_documents": 0}

    if data.get("layers"):
        print(f"  Layers: {', '.join(layer['name'] for layer in data['layers'])}")
        if not dry_run:
            client.put_layers(project_id, data["layers"])

    for document in data["documents"]:
        annotations = document.get("annotations", {})
        print(f"  {document['id']}: {len(document['text'])} chars, "
              f"{len(annotations)} annotators")
        if not dry_run:
            client.put_document(project_id, document["id"], document["text"])
        counts["documents"] += 1

        for annotator, payload in annotations.items():
            if not dry_run:
                client.put_annotation_payload(project_id, document["id"], annotator, {
                    "state": payload.get("state", "in_progress"),
                    "spans": payload.get("spans", {}),
                    "relations": payload.get("relations", {}),
                })
            counts["annotation_documents"] += 1

    return counts


def main():
    parser = argparse.ArgumentParser(description="Import annotation exports")
    parser.add_argument("files", nargs="+", type=Path, help="Export files")
    parser.add_argument("--url", default=API_BASE_URL, help="Service base URL")
    parser.add_argument("--project", default=None, help="Override the project id")
    parser.add_argument("--dry-run", action="store_true", help="Validate without uploading")
    args = parser.parse_args()

    client = CurationApiClient(APIConfig(base_url=args.url, timeout=API_TIMEOUT))
    total_documents = 0
    total_annotations = 0
    try:
        for path in args.files:
            print(f"Importing {path}...")
            data = load_export(path)
            counts = import_export(client, data, args.project, args.dry_run)
            total_documents += counts["documents"]
            total_annotations += counts["annotation_documents"]
    except (ValueError, httpx.HTTPError) as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        client.close()

    print()
    print(f"Done! {total_documents} documents, {total_annotations} annotation documents"
          + (" (dry run)" if args.dry_run else ""))


if __name__ == "__main__":
    main()
