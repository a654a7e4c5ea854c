"""Entity store: load the knowledge graph from the first source that has it.

Sources are tried in priority order (typically a live Neo4j graph, then the
local JSON documents). Each source's ``load()`` returns a GraphDocument, or
None / an empty document when it has nothing. A source that raises is
logged and skipped. Only when every source comes up empty does the caller
get an empty graph, and even then retrieval continues with no context.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Any, Protocol

from clinical_graph.config import GRAPH_DATA_DIR
from clinical_graph.models import Entity, GraphDocument

logger = logging.getLogger(__name__)

GRAPH_FILE = "graph.json"

# Flat entity lists, merged in this order when graph.json is unavailable.
# The second item is the tag applied to nodes that carry none.
LIST_FILES: tuple[tuple[str, str], ...] = (
    ("diagnoses.json", "diagnosis"),
    ("labs.json", "lab"),
    ("medications.json", "medication"),
)


class GraphSourceError(Exception):
    """Raised when a graph backend cannot be queried."""


class GraphSource(Protocol):
    """Anything that can produce a graph document."""

    name: str

    async def load(self) -> GraphDocument | None: ...


def _read_json(path: Path) -> Any | None:
    """Read a JSON file, returning None if it is missing or unparseable."""
    try:
        if not path.is_file():
            return None
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError, RecursionError) as exc:
        logger.warning("Could not read %s: %s", path, exc)
        return None


class DocumentSource:
    """Graph documents stored as JSON files in one directory.

    Prefers the combined ``graph.json``; falls back to the separate
    ``diagnoses.json`` / ``labs.json`` / ``medications.json`` lists (with no
    edges). Read or parse failures never propagate.
    """

    name = "document"

    def __init__(self, directory: str | Path = GRAPH_DATA_DIR) -> None:
        self.directory = Path(directory)

    @property
    def graph_path(self) -> Path:
        return self.directory / GRAPH_FILE

    async def load(self) -> GraphDocument | None:
        data = _read_json(self.graph_path)
        if isinstance(data, dict):
            document = GraphDocument.from_dict(data)
            if document:
                return document
        return self._load_lists()

    def _load_lists(self) -> GraphDocument | None:
        entities: list[Entity] = []
        for filename, default_tag in LIST_FILES:
            data = _read_json(self.directory / filename)
            if not isinstance(data, list):
                continue
            for raw in data:
                entity = Entity.from_raw(raw, default_tag=default_tag)
                if entity is not None:
                    entities.append(entity)
        if not entities:
            return None
        return GraphDocument(entities=tuple(entities))

    def save(self, document: GraphDocument) -> Path:
        """Write ``document`` as graph.json and return the path written."""
        self.directory.mkdir(parents=True, exist_ok=True)
        self.graph_path.write_text(
            json.dumps(document.to_dict(), indent=2, ensure_ascii=False),
            encoding="utf-8",
        )
        logger.info(
            "Saved graph with %d nodes / %d links to %s",
            len(document.entities),
            len(document.edges),
            self.graph_path,
        )
        return self.graph_path


class EntityStore:
    """Ordered chain of graph sources; the first non-empty one wins."""

    def __init__(self, sources: Sequence[GraphSource]) -> None:
        self.sources = list(sources)

    async def load(self) -> GraphDocument:
        for source in self.sources:
            try:
                document = await source.load()
            except Exception as exc:  # noqa: BLE001
                logger.warning("Graph source %r failed — trying next: %s", source.name, exc)
                continue
            if document:
                logger.info(
                    "Loaded %d entities / %d edges from %r",
                    len(document.entities),
                    len(document.edges),
                    source.name,
                )
                return document
            logger.debug("Graph source %r returned no data", source.name)

        logger.warning("No graph source returned data — continuing with an empty graph")
        return GraphDocument()
