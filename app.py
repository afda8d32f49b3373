#!/usr/bin/env python3
"""
casdiff service - compare, measure and bulk-curate the annotations several
annotators made on the same documents.

Features:
- Per-project layer schema (span, relation and chain layers)
- Per-annotator annotation documents with workflow state
- Position diff across annotators (agreement / completeness per position)
- Pairwise inter-annotator agreement (Cohen, Fleiss, Krippendorff alpha)
- CSV and text agreement reports
- Phrase search over project documents
- Bulk creation and deletion of annotations at search hits
- SQLite persistence

Usage:
    uvicorn app:app --reload --port 8000
    # Then open http://localhost:8000/docs

Environment Variables:
    CASDIFF_DB_PATH=casdiff.db  - SQLite database file
    CASDIFF_DEFAULT_MEASURE=cohen_kappa  - Measure used when none is requested
    CASDIFF_LOG_LEVEL=INFO  - Logging level
    CASDIFF_ALLOW_STACKING_DIFF=0  - Keep stacked annotations in diffs instead of rejecting them
"""

import json
import logging
import math
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Response
from pydantic import BaseModel, Field

from casdiff import formatting as fmt
from casdiff.adapters import (
    LAYER_CHAIN,
    LAYER_RELATION,
    LAYER_SPAN,
    FeatureSpec,
    LayerSpec,
    SpanDiffAdapter,
    get_adapters,
)
from casdiff.agreement import (
    ConcreteAgreementMeasure,
    get_agreement,
    get_pairwise_agreement,
)
from casdiff.bulk import (
    DOCUMENT_STATES,
    STATE_IN_PROGRESS,
    STATE_NEW,
    BulkAnnotationOperator,
    MemoryAnnotationStore,
    SearchHit,
)
from casdiff.diff import do_diff
from casdiff.errors import DiffConfigurationError
from casdiff.report import agreement_to_csv, pairwise_to_csv
from casdiff.search import IndexRegistry

# Paths - relative to this file's directory
APP_DIR = Path(__file__).parent.resolve()
DB_PATH = Path(os.environ.get("CASDIFF_DB_PATH", str(APP_DIR / "casdiff.db")))

# Configuration
DEFAULT_MEASURE = os.environ.get("CASDIFF_DEFAULT_MEASURE", "cohen_kappa")
LOG_LEVEL = os.environ.get("CASDIFF_LOG_LEVEL", "INFO").upper()
ALLOW_STACKING_DIFF = os.environ.get("CASDIFF_ALLOW_STACKING_DIFF", "0") == "1"

STATE_PATTERN = "^(" + "|".join(DOCUMENT_STATES) + ")$"

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("casdiff.app")

# Open search indexes, keyed by project id
index_registry = IndexRegistry()


# ============================================================================
# FastAPI App
# ============================================================================

API_DESCRIPTION = """
## Overview

casdiff compares the annotations that several annotators made independently
on the same documents.

## Workflow

1. Register the layer schema of a project (`PUT /api/projects/{project_id}/layers`)
2. Upload document texts
3. Upload each annotator's annotations of a document
4. Inspect the position diff and agreement tables
5. Use phrase search and bulk operations to fix systematic disagreements

## Annotation Format

Span layers:
```json
{"begin": 4, "end": 7, "features": {"value": "NN"}}
```

Relation layers (endpoints are spans of the source layer):
```json
{"source": {"begin": 0, "end": 3}, "target": {"begin": 4, "end": 7}, "features": {"dependency_type": "DET"}}
```

Agreement values that cannot be computed (no items, no variance) are `null`.
"""

TAGS_METADATA = [
    {
        "name": "Projects",
        "description": "Layer schemas and document texts of annotation projects.",
    },
    {
        "name": "Annotation",
        "description": "Per-annotator annotation documents and their workflow state.",
    },
    {
        "name": "Curation",
        "description": "Position diff across annotators.",
    },
    {
        "name": "Agreement",
        "description": "Inter-annotator agreement tables and reports.",
    },
    {
        "name": "Search",
        "description": "Phrase search and bulk annotation at search hits.",
    },
    {
        "name": "System",
        "description": "System information endpoints (health).",
    },
]

app = FastAPI(
    title="casdiff API",
    description=API_DESCRIPTION,
    version="0.3.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=TAGS_METADATA,
    license_info={
        "name": "MIT",
        "url": "https://opensource.org/licenses/MIT",
    },
)


# ============================================================================
# Database
# ============================================================================

@contextmanager
def get_db():
    """Database connection context manager."""
    conn = sqlite3.connect(DB_PATH, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


def init_db():
    """Initialize SQLite database."""
    with get_db() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS projects (
                id TEXT PRIMARY KEY,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS layers (
                project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
                name TEXT NOT NULL,
                layer_type TEXT NOT NULL,
                features TEXT NOT NULL,
                source_feature TEXT,
                target_feature TEXT,
                allow_stacking INTEGER NOT NULL DEFAULT 0,
                position INTEGER NOT NULL,
                PRIMARY KEY (project_id, name)
            );

            CREATE TABLE IF NOT EXISTS documents (
                project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
                document_id TEXT NOT NULL,
                text TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (project_id, document_id)
            );

            CREATE TABLE IF NOT EXISTS annotation_documents (
                project_id TEXT NOT NULL,
                document_id TEXT NOT NULL,
                annotator TEXT NOT NULL,
                state TEXT NOT NULL,
                spans TEXT NOT NULL,
                relations TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (project_id, document_id, annotator),
                FOREIGN KEY (project_id, document_id)
                    REFERENCES documents(project_id, document_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_annotation_documents_doc
                ON annotation_documents(project_id, document_id);
        """)
    logger.info("Database ready at %s", DB_PATH)


def ensure_project(conn, project_id: str):
    conn.execute(
        "INSERT OR IGNORE INTO projects (id, created_at) VALUES (?, ?)",
        (project_id, datetime.now().isoformat()),
    )


def require_project(conn, project_id: str):
    row = conn.execute("SELECT id FROM projects WHERE id = ?", (project_id,)).fetchone()
    if not row:
        raise HTTPException(404, f"Project not found: {project_id}")


def require_document(conn, project_id: str, document_id: str) -> str:
    """Return the document text or raise 404."""
    require_project(conn, project_id)
    row = conn.execute(
        "SELECT text FROM documents WHERE project_id = ? AND document_id = ?",
        (project_id, document_id),
    ).fetchone()
    if not row:
        raise HTTPException(404, f"Document not found: {project_id}/{document_id}")
    return row["text"]


def load_layers(conn, project_id: str) -> list[LayerSpec]:
    rows = conn.execute(
        "SELECT * FROM layers WHERE project_id = ? ORDER BY position",
        (project_id,),
    ).fetchall()
    return [
        LayerSpec(
            name=row["name"],
            layer_type=row["layer_type"],
            features=[FeatureSpec(**f) for f in json.loads(row["features"])],
            source_feature=row["source_feature"],
            target_feature=row["target_feature"],
            allow_stacking=bool(row["allow_stacking"]),
        )
        for row in rows
    ]


def load_annotation_documents(conn, project_id: str, document_id: str) -> dict:
    """annotator -> row dict with decoded spans and relations, by annotator name."""
    rows = conn.execute(
        """SELECT * FROM annotation_documents
           WHERE project_id = ? AND document_id = ?
           ORDER BY annotator""",
        (project_id, document_id),
    ).fetchall()
    return {
        row["annotator"]: {
            "state": row["state"],
            "spans": json.loads(row["spans"]),
            "relations": json.loads(row["relations"]),
            "updated_at": row["updated_at"],
        }
        for row in rows
    }


def save_annotation_document(conn, project_id: str, document_id: str, annotator: str,
                             state: str, spans: dict, relations: dict):
    conn.execute(
        """INSERT OR REPLACE INTO annotation_documents
           (project_id, document_id, annotator, state, spans, relations, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (project_id, document_id, annotator, state, json.dumps(spans),
         json.dumps(relations), datetime.now().isoformat()),
    )


# ============================================================================
# Pydantic Models
# ============================================================================

class LayerModel(BaseModel):
    """Schema of one annotation layer."""
    name: str = Field(..., description="Layer (annotation type) name", example="pos")
    layer_type: str = Field(LAYER_SPAN, pattern=f"^({LAYER_SPAN}|{LAYER_RELATION}|{LAYER_CHAIN})$",
                            description="span, relation or chain")
    features: list[str] = Field(default_factory=list,
                                description="Label features compared between annotators",
                                example=["value"])
    disabled_features: list[str] = Field(default_factory=list,
                                         description="Features kept in the schema but not compared")
    source_feature: Optional[str] = Field(None, description="Relation source feature name", example="source")
    target_feature: Optional[str] = Field(None, description="Relation target feature name", example="target")
    allow_stacking: bool = Field(False, description="Allow several annotations at one position")


class DocumentModel(BaseModel):
    """Document text."""
    text: str = Field(..., description="Plain document text", example="The cat sat on the mat .")


class SpanModel(BaseModel):
    """A span annotation."""
    begin: int = Field(..., ge=0, description="Character begin offset", example=4)
    end: int = Field(..., ge=0, description="Character end offset (exclusive)", example=7)
    text: Optional[str] = Field(None, description="Covered text (filled from the document if omitted)")
    features: dict = Field(default_factory=dict, description="Feature values", example={"value": "NN"})


class EndpointModel(BaseModel):
    """A relation endpoint, identified by its offsets."""
    begin: int = Field(..., ge=0)
    end: int = Field(..., ge=0)
    text: Optional[str] = None


class RelationModel(BaseModel):
    """A relation between two spans."""
    source: EndpointModel = Field(..., description="Source span")
    target: EndpointModel = Field(..., description="Target span")
    features: dict = Field(default_factory=dict, description="Feature values",
                           example={"dependency_type": "DET"})


class AnnotationDocumentModel(BaseModel):
    """All annotations of one annotator on one document."""
    state: str = Field(STATE_IN_PROGRESS, pattern=STATE_PATTERN,
                       description="Workflow state: new, in_progress, finished or ignore")
    spans: dict[str, list[SpanModel]] = Field(default_factory=dict,
                                              description="Span annotations per layer")
    relations: dict[str, list[RelationModel]] = Field(default_factory=dict,
                                                      description="Relations per layer")


class SearchRequest(BaseModel):
    """Phrase search request."""
    query: str = Field(..., min_length=1, description="Phrase to search for", example="the cat")
    document_id: Optional[str] = Field(None, description="Restrict the search to one document")


class HitModel(BaseModel):
    """A search hit."""
    document_id: str
    begin: int = Field(..., ge=0)
    end: int = Field(..., ge=0)
    text: str = ""
    read_only: bool = False
    selected: bool = True


class BulkRequest(BaseModel):
    """Bulk creation or deletion of span annotations at search hits."""
    annotator: str = Field(..., description="Annotator whose documents are changed", example="alice")
    layer: str = Field(..., description="Span layer to annotate", example="ner")
    action: str = Field("create", pattern="^(create|delete)$", description="create or delete")
    feature_state: dict = Field(default_factory=dict,
                                description="Feature values to set or to match",
                                example={"value": "PER"})
    override_existing: bool = Field(False, description="Overwrite features of existing annotations")
    delete_only_matching: bool = Field(True, description="Only delete annotations matching feature_state")
    query: Optional[str] = Field(None, description="Search query used when no hits are given")
    hits: Optional[list[HitModel]] = Field(None, description="Explicit hits to operate on")


class BulkResponse(BaseModel):
    """Outcome of a bulk operation."""
    created: int
    updated: int
    deleted: int
    conflict: int
    skipped_documents: list[str]
    message: str


# ============================================================================
# Helpers
# ============================================================================

def nan_to_none(value: float) -> Optional[float]:
    """JSON has no NaN; undefined agreement values become null."""
    if value is None or math.isnan(value):
        return None
    return value


def layer_to_model(layer: LayerSpec) -> dict:
    return {
        "name": layer.name,
        "layer_type": layer.layer_type,
        "features": [f.name for f in layer.features if f.enabled],
        "disabled_features": [f.name for f in layer.features if not f.enabled],
        "source_feature": layer.source_feature,
        "target_feature": layer.target_feature,
        "allow_stacking": layer.allow_stacking,
    }


def build_cas(layers: list[LayerSpec], annotation_document: Optional[dict], text: str) -> Optional[dict]:
    """
    Turn a stored annotation document into the type -> instances mapping
    consumed by the diff. Relation endpoints are exposed under the layer's
    source/target feature names.
    """
    if annotation_document is None:
        return None
    cas = {}
    for layer in layers:
        if layer.layer_type == LAYER_SPAN:
            instances = []
            for span in annotation_document["spans"].get(layer.name, []):
                span = dict(span)
                if span.get("text") is None:
                    span["text"] = text[span["begin"]:span["end"]]
                instances.append(span)
            cas[layer.name] = instances
        elif layer.layer_type == LAYER_RELATION:
            instances = []
            for relation in annotation_document["relations"].get(layer.name, []):
                source, target = dict(relation["source"]), dict(relation["target"])
                for endpoint in (source, target):
                    if endpoint.get("text") is None:
                        endpoint["text"] = text[endpoint["begin"]:endpoint["end"]]
                instances.append({
                    layer.source_feature: source,
                    layer.target_feature: target,
                    "features": relation.get("features", {}),
                })
            cas[layer.name] = instances
    return cas


def split_param(value: Optional[str]) -> Optional[list[str]]:
    if not value:
        return None
    return [part.strip() for part in value.split(",") if part.strip()]


def run_diff(conn, project_id: str, document_id: str, types: Optional[list[str]] = None,
             annotators: Optional[list[str]] = None, begin: int = -1, end: int = -1):
    """Load a document's annotations and diff them. Raises HTTPException on bad input."""
    text = require_document(conn, project_id, document_id)
    layers = load_layers(conn, project_id)
    documents = load_annotation_documents(conn, project_id, document_id)

    if annotators is None:
        annotators = list(documents)
    cas_map = {a: build_cas(layers, documents.get(a), text) for a in annotators}

    try:
        adapters = get_adapters(layers)
        if types is None:
            types = [adapter.type for adapter in adapters]
        allow_stacking = ALLOW_STACKING_DIFF or {
            layer.name for layer in layers if layer.allow_stacking
        }
        return do_diff(types, adapters, cas_map, begin, end, allow_stacking)
    except DiffConfigurationError as e:
        raise HTTPException(422, str(e))


# ============================================================================
# Startup
# ============================================================================

@app.on_event("startup")
async def startup():
    """Initialize database on startup."""
    init_db()


# ============================================================================
# API Endpoints - Projects
# ============================================================================

@app.put(
    "/api/projects/{project_id}/layers",
    tags=["Projects"],
    summary="Register layer schema",
    description="Replace the layer schema of a project. Creates the project if needed.",
)
async def put_layers(project_id: str, layers: list[LayerModel]):
    """Register the layers of a project."""
    specs = []
    for layer in layers:
        source_feature = layer.source_feature
        target_feature = layer.target_feature
        if layer.layer_type == LAYER_RELATION:
            source_feature = source_feature or "source"
            target_feature = target_feature or "target"
        specs.append(LayerSpec(
            name=layer.name,
            layer_type=layer.layer_type,
            features=[FeatureSpec(f) for f in layer.features]
            + [FeatureSpec(f, enabled=False) for f in layer.disabled_features],
            source_feature=source_feature,
            target_feature=target_feature,
            allow_stacking=layer.allow_stacking,
        ))

    names = [spec.name for spec in specs]
    if len(set(names)) != len(names):
        raise HTTPException(422, "Duplicate layer names")
    try:
        get_adapters(specs)
    except DiffConfigurationError as e:
        raise HTTPException(422, str(e))

    with get_db() as conn:
        ensure_project(conn, project_id)
        conn.execute("DELETE FROM layers WHERE project_id = ?", (project_id,))
        for i, spec in enumerate(specs):
            conn.execute(
                """INSERT INTO layers (project_id, name, layer_type, features, source_feature,
                                       target_feature, allow_stacking, position)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (project_id, spec.name, spec.layer_type,
                 json.dumps([{"name": f.name, "enabled": f.enabled} for f in spec.features]),
                 spec.source_feature, spec.target_feature, int(spec.allow_stacking), i),
            )

    logger.info("Project [%s]: registered %d layers", project_id, len(specs))
    return {"project_id": project_id, "layers": [layer_to_model(s) for s in specs]}


@app.get(
    "/api/projects/{project_id}/layers",
    tags=["Projects"],
    summary="Get layer schema",
)
async def get_layers(project_id: str):
    """Get the layers of a project."""
    with get_db() as conn:
        require_project(conn, project_id)
        layers = load_layers(conn, project_id)
    return {"project_id": project_id, "layers": [layer_to_model(s) for s in layers]}


@app.put(
    "/api/projects/{project_id}/documents/{document_id}",
    tags=["Projects"],
    summary="Upload document text",
    description="Create or replace a document. An open search index is updated as well.",
)
async def put_document(project_id: str, document_id: str, document: DocumentModel):
    """Create or replace a document."""
    with get_db() as conn:
        ensure_project(conn, project_id)
        conn.execute(
            """INSERT INTO documents (project_id, document_id, text, updated_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT (project_id, document_id)
               DO UPDATE SET text = excluded.text, updated_at = excluded.updated_at""",
            (project_id, document_id, document.text, datetime.now().isoformat()),
        )

    index = index_registry.get(project_id)
    if index is not None:
        index.index_document(document_id, document.text)

    return {"project_id": project_id, "document_id": document_id, "length": len(document.text)}


# ============================================================================
# API Endpoints - Annotation
# ============================================================================

@app.put(
    "/api/projects/{project_id}/documents/{document_id}/annotations/{annotator}",
    tags=["Annotation"],
    summary="Upload annotations",
    description="Replace all annotations of one annotator on a document.",
)
async def put_annotations(project_id: str, document_id: str, annotator: str,
                          payload: AnnotationDocumentModel):
    """Replace an annotator's annotations and document state."""
    with get_db() as conn:
        text = require_document(conn, project_id, document_id)
        layers = {layer.name: layer for layer in load_layers(conn, project_id)}

        def check_offsets(layer_name: str, begin: int, end: int):
            if end < begin or end > len(text):
                raise HTTPException(
                    422, f"Layer [{layer_name}]: offsets ({begin}-{end}) outside document "
                         f"of length {len(text)}"
                )

        for layer_name, spans in payload.spans.items():
            layer = layers.get(layer_name)
            if layer is None or layer.layer_type != LAYER_SPAN:
                raise HTTPException(422, f"Not a span layer: {layer_name}")
            for span in spans:
                check_offsets(layer_name, span.begin, span.end)

        for layer_name, relations in payload.relations.items():
            layer = layers.get(layer_name)
            if layer is None or layer.layer_type != LAYER_RELATION:
                raise HTTPException(422, f"Not a relation layer: {layer_name}")
            for relation in relations:
                check_offsets(layer_name, relation.source.begin, relation.source.end)
                check_offsets(layer_name, relation.target.begin, relation.target.end)

        spans = {name: [s.model_dump() for s in items] for name, items in payload.spans.items()}
        relations = {name: [r.model_dump() for r in items]
                     for name, items in payload.relations.items()}
        save_annotation_document(conn, project_id, document_id, annotator,
                                 payload.state, spans, relations)

    return {
        "project_id": project_id,
        "document_id": document_id,
        "annotator": annotator,
        "state": payload.state,
        "span_count": sum(len(v) for v in spans.values()),
        "relation_count": sum(len(v) for v in relations.values()),
    }


@app.get(
    "/api/projects/{project_id}/documents/{document_id}/annotations/{annotator}",
    tags=["Annotation"],
    summary="Get annotations",
)
async def get_annotations(project_id: str, document_id: str, annotator: str):
    """Get an annotator's annotations on a document."""
    with get_db() as conn:
        require_document(conn, project_id, document_id)
        documents = load_annotation_documents(conn, project_id, document_id)

    document = documents.get(annotator)
    if document is None:
        raise HTTPException(404, f"No annotations of [{annotator}] on {project_id}/{document_id}")
    return {
        "annotator": annotator,
        "state": document["state"],
        "spans": document["spans"],
        "relations": document["relations"],
        "updated_at": document["updated_at"],
    }


# ============================================================================
# API Endpoints - Curation
# ============================================================================

@app.get(
    "/api/projects/{project_id}/documents/{document_id}/diff",
    tags=["Curation"],
    summary="Diff annotators",
    description="""
Align the annotations of all annotators (or the given ones) by position.

Each position reports whether all annotators who annotated it agree and
whether every annotator annotated it. Annotators listed in `annotators`
without an annotation document count as having annotated nothing.
    """,
)
async def get_diff(
    project_id: str,
    document_id: str,
    types: Optional[str] = Query(None, description="Comma-separated layers (default: all)"),
    annotators: Optional[str] = Query(None, description="Comma-separated annotators (default: all)"),
    begin: int = Query(-1, ge=-1, description="Window begin offset"),
    end: int = Query(-1, ge=-1, description="Window end offset"),
    only_differences: bool = Query(False, description="Only list disagreeing or incomplete positions"),
    format: str = Query("json", pattern="^(json|text)$"),
):
    """Diff the annotations on one document."""
    with get_db() as conn:
        result = run_diff(conn, project_id, document_id, split_param(types),
                          split_param(annotators), begin, end)

    if format == "text":
        return Response(content=fmt.format_diff(result, only_differences),
                        media_type="text/plain; charset=utf-8")

    positions = []
    for config_set in result.configuration_sets:
        agreement = result.is_agreement(config_set)
        complete = result.is_complete(config_set)
        if only_differences and agreement and complete:
            continue
        positions.append({
            "type": config_set.type,
            "position": config_set.position.to_minimal_string(),
            "kind": type(config_set.position).__name__,
            "agreement": agreement,
            "complete": complete,
            "configurations": [
                {"annotators": cfg.annotators, "label": cfg.label_dict()}
                for cfg in config_set.configurations
            ],
        })

    return {
        "annotators": result.annotators,
        "position_count": len(result),
        "differing_count": len(result.differing_configuration_sets),
        "incomplete_count": len(result.incomplete_configuration_sets),
        "positions": positions,
    }


# ============================================================================
# API Endpoints - Agreement
# ============================================================================

def resolve_measure(measure: Optional[str]) -> ConcreteAgreementMeasure:
    try:
        return ConcreteAgreementMeasure.from_key(measure or DEFAULT_MEASURE)
    except ValueError as e:
        raise HTTPException(422, str(e))


@app.get(
    "/api/projects/{project_id}/documents/{document_id}/agreement",
    tags=["Agreement"],
    summary="Pairwise agreement",
    description="""
Pairwise inter-annotator agreement on one feature of one layer.

**Measures:** `cohen_kappa`, `fleiss_kappa`, `krippendorff_alpha_nominal`

**Output Formats:**
- `json`: pairwise table (plus the overall value for multi-rater measures)
- `csv`: one row per annotator pair
- `text`: table for terminals and chat
    """,
)
async def get_agreement_table(
    project_id: str,
    document_id: str,
    type: str = Query(..., description="Layer to measure"),
    feature: str = Query(..., description="Feature to measure"),
    measure: Optional[str] = Query(None, description="Agreement measure"),
    annotators: Optional[str] = Query(None, description="Comma-separated annotators (default: all)"),
    exclude_incomplete: bool = Query(True, description="Skip positions not annotated by everyone"),
    format: str = Query("json", pattern="^(json|csv|text)$"),
):
    """Compute pairwise agreement."""
    concrete = resolve_measure(measure)
    with get_db() as conn:
        diff = run_diff(conn, project_id, document_id, [type], split_param(annotators))

    try:
        table = get_pairwise_agreement(concrete, exclude_incomplete, diff, type, feature)
        overall = None
        if concrete is not ConcreteAgreementMeasure.COHEN_KAPPA_AGREEMENT and len(diff.annotators) > 1:
            overall = get_agreement(concrete, exclude_incomplete, diff, type, feature)
    except ValueError as e:
        raise HTTPException(422, str(e))

    if format == "csv":
        return Response(
            content=pairwise_to_csv(table),
            media_type="text/csv",
            headers={
                "Content-Disposition": f"attachment; filename=agreement_{project_id}_{document_id}_{type}.csv"
            },
        )
    if format == "text":
        lines = [fmt.format_pairwise_table(table)]
        if overall is not None:
            lines.append("")
            lines.append(fmt.format_agreement(overall))
        return Response(content="\n".join(lines), media_type="text/plain; charset=utf-8")

    return {
        "type": type,
        "feature": feature,
        "measure": concrete.key,
        "annotators": table.annotators,
        "pairs": [
            {
                "annotator_1": first,
                "annotator_2": second,
                "agreement": nan_to_none(table.get(first, second).agreement),
                "item_count": table.get(first, second).study.item_count,
                "diff_set_count": table.get(first, second).diff_set_count,
                "unusable_set_count": table.get(first, second).unusable_set_count,
            }
            for first, second in table.pairs()
        ],
        "overall": nan_to_none(overall.agreement) if overall is not None else None,
    }


@app.get(
    "/api/projects/{project_id}/documents/{document_id}/agreement/report",
    tags=["Agreement"],
    summary="Agreement study report (CSV)",
    description="The coded items behind the agreement of two annotators, one row per position.",
)
async def get_agreement_report(
    project_id: str,
    document_id: str,
    type: str = Query(..., description="Layer to measure"),
    feature: str = Query(..., description="Feature to measure"),
    first: str = Query(..., description="First annotator"),
    second: str = Query(..., description="Second annotator"),
    measure: Optional[str] = Query(None, description="Agreement measure"),
):
    """CSV report of an agreement study."""
    concrete = resolve_measure(measure)
    with get_db() as conn:
        diff = run_diff(conn, project_id, document_id, [type], [first, second])

    try:
        result = get_agreement(concrete, True, diff, type, feature)
    except ValueError as e:
        raise HTTPException(422, str(e))

    return Response(
        content=agreement_to_csv(result),
        media_type="text/csv",
        headers={
            "Content-Disposition": f"attachment; filename=agreement_{first}_{second}_{type}.csv"
        },
    )


# ============================================================================
# API Endpoints - Search
# ============================================================================

def open_index(conn, project_id: str):
    """Open the project's search index, filling it from the database on first use."""
    index = index_registry.get(project_id)
    if index is not None:
        return index
    index = index_registry.open(project_id)
    if index.document_count == 0:
        rows = conn.execute(
            "SELECT document_id, text FROM documents WHERE project_id = ?",
            (project_id,),
        ).fetchall()
        for row in rows:
            index.index_document(row["document_id"], row["text"])
    return index


@app.post(
    "/api/projects/{project_id}/search",
    tags=["Search"],
    summary="Phrase search",
)
async def search(project_id: str, request: SearchRequest):
    """Case-insensitive phrase search over the project's documents."""
    with get_db() as conn:
        require_project(conn, project_id)
        index = open_index(conn, project_id)

    hits = index.search(request.query, request.document_id)
    return {
        "query": request.query,
        "count": len(hits),
        "hits": [
            {"document_id": h.document_id, "begin": h.begin, "end": h.end, "text": h.text}
            for h in hits
        ],
    }


@app.post(
    "/api/projects/{project_id}/bulk",
    tags=["Search"],
    summary="Bulk annotate at search hits",
    description="""
Create or delete span annotations of one annotator at every search hit.

**create:** adds an annotation with `feature_state` where none exists. With
`override_existing`, existing annotations at a hit get `feature_state`
instead. On layers that allow stacking, a new annotation is stacked onto
existing ones whose features differ.

**delete:** removes the annotations at each hit; with `delete_only_matching`
only those whose features match `feature_state`.

Documents the annotator marked `finished` or `ignore` are left untouched.
    """,
    response_model=BulkResponse,
)
async def bulk(project_id: str, request: BulkRequest):
    """Bulk annotation at search hits."""
    with get_db() as conn:
        require_project(conn, project_id)
        layers = {layer.name: layer for layer in load_layers(conn, project_id)}
        layer = layers.get(request.layer)
        if layer is None or layer.layer_type != LAYER_SPAN:
            raise HTTPException(422, f"Bulk operations need a span layer, got [{request.layer}]")

        if request.hits is not None:
            hits = [SearchHit(**h.model_dump()) for h in request.hits]
        elif request.query:
            hits = open_index(conn, project_id).search(request.query)
        else:
            raise HTTPException(422, "Either hits or query is required")

        store = MemoryAnnotationStore()
        stored = {}
        for document_id in dict.fromkeys(h.document_id for h in hits):
            text = require_document(conn, project_id, document_id)
            store.set_text(document_id, text)
            document = load_annotation_documents(conn, project_id, document_id).get(request.annotator)
            stored[document_id] = document
            if document is not None:
                store.load(document_id, request.annotator, document["spans"], document["state"])

        operator = BulkAnnotationOperator(
            store,
            SpanDiffAdapter(layer.name, *[f.name for f in layer.features if f.enabled]),
            request.annotator,
            feature_state=request.feature_state,
            allow_stacking=layer.allow_stacking,
            override_existing=request.override_existing,
            delete_only_matching=request.delete_only_matching,
        )
        try:
            if request.action == "create":
                result = operator.create_at_hits(hits)
            else:
                result = operator.delete_at_hits(hits)
        except DiffConfigurationError as e:
            raise HTTPException(422, str(e))

        for document_id, annotator in sorted(store.modified):
            document = stored.get(document_id)
            spans = {
                name: [{k: v for k, v in a.items() if k != "id"} for a in annotations]
                for name, annotations in store.annotations(document_id, annotator).items()
            }
            state = document["state"] if document else STATE_NEW
            if state == STATE_NEW:
                state = STATE_IN_PROGRESS
            save_annotation_document(conn, project_id, document_id, annotator, state, spans,
                                     document["relations"] if document else {})

    return BulkResponse(
        created=result.created,
        updated=result.updated,
        deleted=result.deleted,
        conflict=result.conflict,
        skipped_documents=result.skipped_documents,
        message=result.summary(),
    )


@app.delete(
    "/api/projects/{project_id}/index",
    tags=["Search"],
    summary="Close search index",
)
async def close_index(project_id: str):
    """Close the project's search index. It is rebuilt on the next search."""
    if not index_registry.close(project_id):
        raise HTTPException(404, f"No open index for project: {project_id}")
    return {"project_id": project_id, "closed": True}


# ============================================================================
# API Endpoints - System
# ============================================================================

@app.get(
    "/api/health",
    tags=["System"],
    summary="Health check",
)
async def health():
    """Service health and open search indexes."""
    return {
        "status": "ok",
        "version": app.version,
        "open_indexes": index_registry.open_project_ids(),
    }
