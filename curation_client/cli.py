#!/usr/bin/env python3
"""
Command line client for the casdiff service.

Usage:
    python -m curation_client.cli health
    python -m curation_client.cli diff myproject doc1 --only-differences
    python -m curation_client.cli agreement myproject doc1 pos value --measure fleiss_kappa
    python -m curation_client.cli report myproject doc1 pos value alice bob > study.csv
    python -m curation_client.cli search myproject "the cat"
    python -m curation_client.cli bulk myproject alice ner "New York" --set value=LOC
"""

import argparse
import json
import os
import sys
from typing import Optional

import httpx

from casdiff import formatting as fmt
from casdiff.bulk import BulkOperationResult

from .api_client import APIConfig, CurationApiClient

# Configuration from environment
API_BASE_URL = os.environ.get("CASDIFF_API_URL", "http://127.0.0.1:8000")
API_TIMEOUT = float(os.environ.get("CASDIFF_API_TIMEOUT", "30"))


def parse_feature_state(pairs: list[str]) -> dict:
    """Parse name=value pairs."""
    state = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name:
            raise argparse.ArgumentTypeError(f"Expected name=value, got [{pair}]")
        state[name] = value
    return state


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="casdiff curation client")
    parser.add_argument("--url", default=API_BASE_URL, help="Service base URL")
    parser.add_argument("--timeout", type=float, default=API_TIMEOUT, help="Request timeout (s)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("health", help="Show service health")

    p = sub.add_parser("diff", help="Show the position diff of a document")
    p.add_argument("project")
    p.add_argument("document")
    p.add_argument("--types", nargs="+", help="Layers to diff (default: all)")
    p.add_argument("--annotators", nargs="+", help="Annotators to compare (default: all)")
    p.add_argument("--only-differences", action="store_true", help="Hide agreeing positions")
    p.add_argument("--json", action="store_true", help="Print raw JSON")

    p = sub.add_parser("agreement", help="Show the pairwise agreement table")
    p.add_argument("project")
    p.add_argument("document")
    p.add_argument("layer")
    p.add_argument("feature")
    p.add_argument("--measure", help="cohen_kappa, fleiss_kappa or krippendorff_alpha_nominal")
    p.add_argument("--annotators", nargs="+")
    p.add_argument("--format", choices=["text", "json", "csv"], default="text")

    p = sub.add_parser("report", help="Print the CSV study behind a pair's agreement")
    p.add_argument("project")
    p.add_argument("document")
    p.add_argument("layer")
    p.add_argument("feature")
    p.add_argument("first")
    p.add_argument("second")

    p = sub.add_parser("search", help="Phrase search over a project")
    p.add_argument("project")
    p.add_argument("query")
    p.add_argument("--document")

    p = sub.add_parser("bulk", help="Annotate or delete at every hit of a query")
    p.add_argument("project")
    p.add_argument("annotator")
    p.add_argument("layer")
    p.add_argument("query")
    p.add_argument("--set", dest="features", nargs="*", default=[], metavar="NAME=VALUE",
                   help="Feature values to set (create) or match (delete)")
    p.add_argument("--delete", action="store_true", help="Delete instead of create")
    p.add_argument("--override", action="store_true", help="Overwrite existing annotations")
    p.add_argument("--delete-all", action="store_true",
                   help="Delete regardless of feature values")

    return parser


def run(args, client: CurationApiClient) -> str:
    if args.command == "health":
        return json.dumps(client.health(), indent=2)

    if args.command == "diff":
        if args.json:
            return json.dumps(client.get_diff(
                args.project, args.document, args.types, args.annotators, args.only_differences
            ), indent=2)
        return client.get_diff(args.project, args.document, args.types, args.annotators,
                               args.only_differences, as_text=True)

    if args.command == "agreement":
        result = client.get_agreement(args.project, args.document, args.layer, args.feature,
                                      args.measure, args.annotators, args.format)
        return json.dumps(result, indent=2) if args.format == "json" else result

    if args.command == "report":
        return client.get_agreement_report(args.project, args.document, args.layer,
                                           args.feature, args.first, args.second)

    if args.command == "search":
        result = client.search(args.project, args.query, args.document)
        lines = [f"🔍 {result['count']} hits for \"{result['query']}\""]
        for hit in result["hits"]:
            lines.append(f"   • {hit['document_id']} {hit['begin']}-{hit['end']} [{hit['text']}]")
        return "\n".join(lines)

    if args.command == "bulk":
        result = client.bulk(
            args.project,
            args.annotator,
            args.layer,
            action="delete" if args.delete else "create",
            feature_state=parse_feature_state(args.features),
            query=args.query,
            override_existing=args.override,
            delete_only_matching=not args.delete_all,
        )
        return fmt.format_bulk_result(BulkOperationResult(
            created=result["created"],
            updated=result["updated"],
            deleted=result["deleted"],
            conflict=result["conflict"],
            skipped_documents=result["skipped_documents"],
        ))

    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[list[str]] = None, client: Optional[CurationApiClient] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    owns_client = client is None
    if client is None:
        client = CurationApiClient(APIConfig(base_url=args.url, timeout=args.timeout))
    try:
        print(run(args, client))
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))
    except httpx.HTTPStatusError as e:
        try:
            detail = e.response.json().get("detail", e.response.text)
        except ValueError:
            detail = e.response.text
        print(fmt.format_error(f"{e.response.status_code}: {detail}"), file=sys.stderr)
        return 1
    except httpx.HTTPError as e:
        print(fmt.format_error(str(e)), file=sys.stderr)
        return 1
    finally:
        if owns_client:
            client.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
