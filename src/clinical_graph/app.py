"""FastAPI server — the HTTP entry point for the graph service.

Endpoints:

- GET  /health       — Simple check that the server is running
- POST /graph-rag    — Answer a clinical question grounded in the graph
- POST /graph/build  — Extract relationships between supplied entities
- GET  /graph        — Graph-view projection of the stored graph
- POST /graph        — Build a projected graph from clinical records
- POST /generate     — Plain completion, optionally grounded in CSV data
- GET  /neo4j        — Connectivity check for the optional Neo4j graph

Errors come back as ``{"error": "<message>"}`` with 400 for bad input and
500 for backend / completion failures.

Run locally with:
    uvicorn clinical_graph.app:app --reload
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from clinical_graph.completion_client import CompletionClient, CompletionError
from clinical_graph.config import Settings
from clinical_graph.graph.context import ContextFormatError, format_csv_context
from clinical_graph.graph.extraction import (
    RelationshipExtractor,
    entities_from_records,
    normalize_entities,
)
from clinical_graph.graph.neo4j_source import Neo4jSource
from clinical_graph.graph.store import DocumentSource, EntityStore, GraphSource, GraphSourceError
from clinical_graph.graph.view import project_graph
from clinical_graph.rag import GraphRAGService

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Clinical Graph Service",
    description="Graph-grounded clinical question answering and graph building",
    version="0.1.0",
)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class GraphRAGRequest(BaseModel):
    """What the client sends to /graph-rag. ``query`` is accepted as an alias."""

    question: str | None = None
    query: str | None = None
    top_k: int | None = None
    neighbor_k: int | None = None
    include_types: list[str] | None = None

    def resolved_question(self) -> str:
        return (self.question or self.query or "").strip()


class GraphBuildRequest(BaseModel):
    """Raw entity lists for /graph/build, under any of their common names."""

    model_config = ConfigDict(populate_by_name=True)

    diagnoses: list[Any] | None = None
    diag: list[Any] | None = None
    conditions: list[Any] | None = None
    labs: list[Any] | None = None
    lab_tests: list[Any] | None = None
    lab_tests_camel: list[Any] | None = Field(default=None, alias="labTests")
    medications: list[Any] | None = None
    meds: list[Any] | None = None
    drugs: list[Any] | None = None
    save: bool = False
    save_graph: bool = False

    def diagnosis_nodes(self) -> list[Any]:
        return self.diagnoses or self.diag or self.conditions or []

    def lab_nodes(self) -> list[Any]:
        return self.labs or self.lab_tests or self.lab_tests_camel or []

    def medication_nodes(self) -> list[Any]:
        return self.medications or self.meds or self.drugs or []


class RecordsGraphRequest(BaseModel):
    """Clinical records to build a graph from (see entities_from_records)."""

    medical_records: list[dict[str, Any]] = []
    prescriptions: list[dict[str, Any]] = []


class GenerateRequest(BaseModel):
    prompt: str | None = None
    csv_content: str | None = None
    csv_delimiter: str = ","
    csv_max_rows: int = 1000
    rag_columns: str = "*"
    rag_max_chars: int = 4000


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------
# Each request gets its own collaborators. Tests swap any of them out with
# app.dependency_overrides.


def get_settings() -> Settings:
    return Settings.from_env()


def get_document_source(settings: Settings = Depends(get_settings)) -> DocumentSource:
    return DocumentSource(settings.graph_data_dir)


def get_neo4j_source(settings: Settings = Depends(get_settings)) -> Neo4jSource | None:
    return Neo4jSource.from_settings(settings)


def get_store(
    neo4j_source: Neo4jSource | None = Depends(get_neo4j_source),
    document_source: DocumentSource = Depends(get_document_source),
) -> EntityStore:
    sources: list[GraphSource] = [document_source]
    if neo4j_source is not None:
        sources.insert(0, neo4j_source)
    return EntityStore(sources)


async def get_completion_client(
    settings: Settings = Depends(get_settings),
) -> AsyncIterator[CompletionClient]:
    client = CompletionClient(
        base_url=settings.completion_base_url,
        api_key=settings.completion_api_key,
        model=settings.completion_model,
        timeout=settings.completion_timeout,
    )
    try:
        yield client
    finally:
        await client.close()


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error(f"Invalid request body: {exc.errors()}", 400)


@app.exception_handler(ContextFormatError)
async def context_error_handler(request: Request, exc: ContextFormatError) -> JSONResponse:
    return _error(str(exc), 400)


@app.exception_handler(CompletionError)
async def completion_error_handler(request: Request, exc: CompletionError) -> JSONResponse:
    logger.error("Completion failed for %s: %s", request.url.path, exc)
    return _error(str(exc), 500)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error for %s", request.url.path)
    return _error(str(exc), 500)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint. Returns 200 if the server is running."""
    return {"status": "ok"}


@app.post("/graph-rag", response_model=None)
async def graph_rag(
    request: GraphRAGRequest,
    store: EntityStore = Depends(get_store),
    gateway: CompletionClient = Depends(get_completion_client),
    settings: Settings = Depends(get_settings),
) -> dict[str, Any] | JSONResponse:
    """Answer a question using the knowledge graph as grounding.

    The response's ``context`` is exactly the text handed to the model.
    """
    question = request.resolved_question()
    if not question:
        return _error("Missing 'question' in request body.", 400)

    service = GraphRAGService(store, gateway, settings)
    result = await service.answer(
        question,
        top_k=request.top_k,
        neighbor_k=request.neighbor_k,
        include_types=request.include_types,
    )
    return result.to_dict()


@app.post("/graph/build", response_model=None)
async def build_graph(
    request: GraphBuildRequest,
    gateway: CompletionClient = Depends(get_completion_client),
    document_source: DocumentSource = Depends(get_document_source),
    settings: Settings = Depends(get_settings),
) -> dict[str, Any] | JSONResponse:
    """Link supplied diagnoses, labs and medications into a graph document."""
    diagnoses = normalize_entities(request.diagnosis_nodes())
    labs = normalize_entities(request.lab_nodes())
    medications = normalize_entities(request.medication_nodes())
    if not (diagnoses or labs or medications):
        return _error("No nodes provided. Include 'diagnoses', 'labs', or 'medications'.", 400)

    extractor = RelationshipExtractor(
        gateway,
        model=settings.link_model,
        temperature=settings.link_temperature,
        max_tokens=settings.link_max_tokens,
    )
    document = await extractor.build_graph(diagnoses, labs, medications)
    if request.save or request.save_graph:
        try:
            document_source.save(document)
        except OSError as exc:
            logger.warning("Could not save graph document: %s", exc)
    return document.to_dict()


@app.get("/graph", response_model=None)
async def get_graph(
    document_source: DocumentSource = Depends(get_document_source),
) -> dict[str, Any]:
    """Visualization view of the stored graph document."""
    document = await EntityStore([document_source]).load()
    return project_graph(document).to_dict()


@app.post("/graph", response_model=None)
async def graph_from_records(
    request: RecordsGraphRequest,
    gateway: CompletionClient = Depends(get_completion_client),
    settings: Settings = Depends(get_settings),
) -> dict[str, Any]:
    """Build and project a graph from medical records and prescriptions."""
    diagnoses, medications = entities_from_records(request.medical_records, request.prescriptions)
    if not diagnoses and not medications:
        return {"nodes": [], "edges": [], "error": "No records found to build graph."}

    extractor = RelationshipExtractor(
        gateway,
        model=settings.link_model,
        temperature=settings.link_temperature,
        max_tokens=settings.link_max_tokens,
    )
    document = await extractor.build_graph(diagnoses, [], medications)
    return project_graph(document).to_dict()


@app.post("/generate", response_model=None)
async def generate(
    request: GenerateRequest,
    gateway: CompletionClient = Depends(get_completion_client),
) -> dict[str, Any] | JSONResponse:
    """Plain completion; CSV content, if given, is prepended as a bounded table."""
    if not request.prompt:
        return _error("Missing 'prompt' in JSON body.", 400)

    user_content = request.prompt
    if request.csv_content:
        context = format_csv_context(
            request.csv_content,
            delimiter=request.csv_delimiter,
            max_rows=request.csv_max_rows,
            columns=request.rag_columns,
            max_chars=request.rag_max_chars,
        )
        user_content = f"{context}{user_content}"

    completion = await gateway.complete(user_content)
    return {"content": completion.content, "model": completion.model}


@app.get("/neo4j", response_model=None)
async def neo4j_status(
    neo4j_source: Neo4jSource | None = Depends(get_neo4j_source),
) -> dict[str, Any] | JSONResponse:
    """Report whether the optional Neo4j graph is reachable."""
    if neo4j_source is None:
        return _error(
            "Neo4j credentials not provided. Set NEO4J_USER/NEO4J_PASSWORD or NEO4J_AUTH.",
            400,
        )
    try:
        ok = await neo4j_source.ping()
    except GraphSourceError as exc:
        return JSONResponse({"connected": False, "error": str(exc)}, status_code=500)
    return {"connected": True, "ok": ok}
