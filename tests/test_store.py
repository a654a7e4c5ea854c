"""Tests for the entity store, the JSON document source and the Neo4j source.

Document tests write real files into pytest's tmp_path. The Neo4j source is
given a fake driver factory, so no database is needed.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
from neo4j import READ_ACCESS

from clinical_graph.config import Settings
from clinical_graph.graph.neo4j_source import (
    EDGES_QUERY,
    NODES_QUERY,
    Neo4jSource,
    resolve_neo4j_credentials,
)
from clinical_graph.graph.store import DocumentSource, EntityStore, GraphSourceError
from clinical_graph.models import Category, Edge, Entity, GraphDocument

# --- Test helpers ---


def _write(directory: Path, name: str, payload: Any) -> None:
    text = payload if isinstance(payload, str) else json.dumps(payload)
    (directory / name).write_text(text, encoding="utf-8")


GRAPH = {
    "Nodes": [
        {"title": "Hypertension", "body": "High BP", "tags": "Condition"},
        {"title": "Lisinopril", "body": "", "tags": "drug"},
    ],
    "Links": [
        {
            "source": "Hypertension",
            "target": "Lisinopril",
            "source_type": "diagnosis",
            "target_type": "medication",
            "description": "first-line treatment",
            "value": 0.9,
        }
    ],
}


class _StaticSource:
    def __init__(self, name: str, document: GraphDocument | None = None, error: Exception | None = None):
        self.name = name
        self.document = document
        self.error = error
        self.calls = 0

    async def load(self) -> GraphDocument | None:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.document


# --- DocumentSource ---


class TestDocumentSource:
    @pytest.mark.asyncio
    async def test_reads_combined_graph(self, tmp_path: Path) -> None:
        _write(tmp_path, "graph.json", GRAPH)
        document = await DocumentSource(tmp_path).load()

        assert document is not None
        assert [e.title for e in document.entities] == ["Hypertension", "Lisinopril"]
        assert document.entities[0].category is Category.DIAGNOSIS
        assert document.edges[0].confidence == 0.9

    @pytest.mark.asyncio
    async def test_falls_back_to_separate_lists_in_order(self, tmp_path: Path) -> None:
        _write(tmp_path, "medications.json", [{"title": "Metformin"}])
        _write(tmp_path, "diagnoses.json", [{"title": "Diabetes"}])
        _write(tmp_path, "labs.json", [{"title": "HbA1c", "tags": "LabTest"}])

        document = await DocumentSource(tmp_path).load()

        assert document is not None
        assert [e.title for e in document.entities] == ["Diabetes", "HbA1c", "Metformin"]
        assert [e.category for e in document.entities] == [
            Category.DIAGNOSIS,
            Category.TEST_RESULT,
            Category.MEDICATION,
        ]
        assert document.edges == ()

    @pytest.mark.asyncio
    async def test_corrupt_graph_uses_lists(self, tmp_path: Path) -> None:
        _write(tmp_path, "graph.json", "{ not json")
        _write(tmp_path, "diagnoses.json", [{"title": "Asthma"}])
        _write(tmp_path, "labs.json", "[[[")

        document = await DocumentSource(tmp_path).load()
        assert document is not None
        assert [e.title for e in document.entities] == ["Asthma"]

    @pytest.mark.asyncio
    async def test_deeply_nested_graph_uses_lists(self, tmp_path: Path) -> None:
        _write(tmp_path, "graph.json", "[" * 200_000 + "]" * 200_000)
        _write(tmp_path, "diagnoses.json", [{"title": "Asthma"}])

        document = await DocumentSource(tmp_path).load()
        assert document is not None
        assert [e.title for e in document.entities] == ["Asthma"]

    @pytest.mark.asyncio
    async def test_nothing_readable_returns_none(self, tmp_path: Path) -> None:
        _write(tmp_path, "graph.json", "garbage")
        assert await DocumentSource(tmp_path).load() is None
        assert await DocumentSource(tmp_path / "missing").load() is None

    @pytest.mark.asyncio
    async def test_save_round_trip(self, tmp_path: Path) -> None:
        source = DocumentSource(tmp_path / "out")
        document = GraphDocument(
            entities=(Entity(title="Asthma", tags="diagnosis", category=Category.DIAGNOSIS),),
            edges=(Edge(source_title="Asthma", target_title="Albuterol", description="rescue"),),
        )
        path = source.save(document)

        assert json.loads(path.read_text(encoding="utf-8"))["Links"][0]["description"] == "rescue"
        assert await source.load() == document


# --- EntityStore ---


class TestEntityStore:
    @pytest.mark.asyncio
    async def test_first_non_empty_source_wins(self) -> None:
        doc = GraphDocument(entities=(Entity(title="A"),))
        empty = _StaticSource("empty", GraphDocument())
        first = _StaticSource("first", doc)
        second = _StaticSource("second", GraphDocument(entities=(Entity(title="B"),)))

        result = await EntityStore([empty, first, second]).load()

        assert result == doc
        assert second.calls == 0

    @pytest.mark.asyncio
    async def test_failing_source_is_skipped(self) -> None:
        doc = GraphDocument(entities=(Entity(title="A"),))
        broken = _StaticSource("neo4j", error=ConnectionError("unreachable"))
        fallback = _StaticSource("document", doc)

        assert await EntityStore([broken, fallback]).load() == doc
        assert broken.calls == 1

    @pytest.mark.asyncio
    async def test_all_sources_empty_gives_empty_graph(self) -> None:
        store = EntityStore([_StaticSource("a"), _StaticSource("b", error=RuntimeError("x"))])
        result = await store.load()
        assert result == GraphDocument()
        assert not result


# --- Neo4j ---


class TestNeo4jCredentials:
    def test_plain_user_and_password(self) -> None:
        assert resolve_neo4j_credentials("bolt://db:7687", "neo4j", "secret") == (
            "bolt://db:7687",
            "neo4j",
            "secret",
        )

    def test_auth_with_slash_or_colon(self) -> None:
        assert resolve_neo4j_credentials("bolt://db:7687", "", "", "admin/p/w")[1:] == ("admin", "p/w")
        assert resolve_neo4j_credentials("bolt://db:7687", "neo4j", "", "admin:pw")[1:] == ("neo4j", "pw")

    def test_credentials_in_uri_are_extracted_and_stripped(self) -> None:
        assert resolve_neo4j_credentials("bolt://bob:hunter2@db:7687", "neo4j", "") == (
            "bolt://db:7687",
            "bob",
            "hunter2",
        )

    def test_no_password_means_no_source(self) -> None:
        settings = Settings(neo4j_uri="bolt://db:7687", neo4j_password="", neo4j_auth="")
        assert Neo4jSource.from_settings(settings) is None
        configured = Neo4jSource.from_settings(Settings(neo4j_password="pw"))
        assert configured is not None


class _FakeResult:
    def __init__(self, rows: list[dict[str, Any]]) -> None:
        self._rows = rows

    async def data(self) -> list[dict[str, Any]]:
        return self._rows


class _FakeSession:
    def __init__(self, responses: dict[str, list[dict[str, Any]]], log: list[Any]) -> None:
        self._responses = responses
        self._log = log

    async def __aenter__(self) -> _FakeSession:
        return self

    async def __aexit__(self, *exc: object) -> None:
        return None

    async def run(self, query: str) -> _FakeResult:
        self._log.append(query)
        return _FakeResult(self._responses[query])


class _FakeDriver:
    def __init__(self, responses: dict[str, list[dict[str, Any]]], log: list[Any]) -> None:
        self._responses = responses
        self._log = log

    async def __aenter__(self) -> _FakeDriver:
        return self

    async def __aexit__(self, *exc: object) -> None:
        return None

    def session(self, **kwargs: Any) -> _FakeSession:
        self._log.append(kwargs)
        return _FakeSession(self._responses, self._log)


class TestNeo4jSource:
    @pytest.mark.asyncio
    async def test_load_maps_nodes_and_relationships(self) -> None:
        log: list[Any] = []
        responses = {
            NODES_QUERY: [
                {"labels": ["Diagnosis"], "props": {"title": "Hypertension", "body": "High BP"}},
                {"labels": ["Medication"], "props": {"title": "Lisinopril"}},
                {"labels": ["Thing"], "props": {"name": "untitled"}},
            ],
            EDGES_QUERY: [
                {
                    "source": "Hypertension",
                    "source_labels": ["Diagnosis"],
                    "target": "Lisinopril",
                    "target_labels": ["Medication"],
                    "rel_type": "ASSOCIATED_WITH",
                    "props": {"description": "first-line treatment", "confidence": 0.9},
                },
                {
                    "source": None,
                    "source_labels": [],
                    "target": "Lisinopril",
                    "target_labels": ["Medication"],
                    "rel_type": "X",
                    "props": {},
                },
            ],
        }

        def factory(uri: str, auth: tuple[str, str]) -> _FakeDriver:
            log.append((uri, auth))
            return _FakeDriver(responses, log)

        source = Neo4jSource("bolt://db:7687", "neo4j", "pw", driver_factory=factory)
        document = await source.load()

        assert document is not None
        assert [(e.title, e.category) for e in document.entities] == [
            ("Hypertension", Category.DIAGNOSIS),
            ("Lisinopril", Category.MEDICATION),
        ]
        assert len(document.edges) == 1
        edge = document.edges[0]
        assert edge.source_category is Category.DIAGNOSIS
        assert edge.confidence == 0.9
        assert edge.extra == {"type": "ASSOCIATED_WITH"}
        # one driver and one read session serve both queries
        assert [e for e in log if isinstance(e, tuple)] == [("bolt://db:7687", ("neo4j", "pw"))]
        assert [e for e in log if isinstance(e, dict)] == [{"default_access_mode": READ_ACCESS}]
        assert [e for e in log if isinstance(e, str)] == [NODES_QUERY, EDGES_QUERY]

    @pytest.mark.asyncio
    async def test_ping(self) -> None:
        responses = {"RETURN 1 AS ok": [{"ok": 1}]}
        source = Neo4jSource(
            "bolt://db:7687",
            "neo4j",
            "pw",
            driver_factory=lambda uri, auth: _FakeDriver(responses, []),
        )
        assert await source.ping() == 1

    @pytest.mark.asyncio
    async def test_driver_failure_is_wrapped(self) -> None:
        def factory(uri: str, auth: tuple[str, str]) -> _FakeDriver:
            raise ConnectionRefusedError("connection refused")

        source = Neo4jSource("bolt://db:7687", "neo4j", "pw", driver_factory=factory)
        with pytest.raises(GraphSourceError, match="bolt://db:7687"):
            await source.load()

    @pytest.mark.asyncio
    async def test_store_falls_back_when_neo4j_is_down(self, tmp_path: Path) -> None:
        def factory(uri: str, auth: tuple[str, str]) -> _FakeDriver:
            raise ConnectionRefusedError("connection refused")

        _write(tmp_path, "graph.json", GRAPH)
        store = EntityStore(
            [
                Neo4jSource("bolt://db:7687", "neo4j", "pw", driver_factory=factory),
                DocumentSource(tmp_path),
            ]
        )
        document = await store.load()
        assert [e.title for e in document.entities] == ["Hypertension", "Lisinopril"]
