"""Core data model for the clinical knowledge graph.

The graph is small and flat: entities (diagnoses, labs, medications) keyed
by a case-insensitive title, and directed edges between titles carrying a
free-text description and an optional confidence in [0, 1].

Persisted documents use the shape::

    {
      "Nodes": [{"title": ..., "body": ..., "tags": ...}],
      "Links": [{"source": ..., "target": ..., "source_type": ...,
                 "target_type": ..., "description": ..., "value": ...}]
    }
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Category(str, Enum):
    """Entity category, derived from a free-text tag."""

    DIAGNOSIS = "Diagnosis"
    MEDICATION = "Medication"
    TEST_RESULT = "TestResult"
    ENTITY = "Entity"


_TAG_TO_CATEGORY: dict[str, Category] = {
    "diagnosis": Category.DIAGNOSIS,
    "condition": Category.DIAGNOSIS,
    "medication": Category.MEDICATION,
    "drug": Category.MEDICATION,
    "lab": Category.TEST_RESULT,
    "labtest": Category.TEST_RESULT,
    "test": Category.TEST_RESULT,
    "testresult": Category.TEST_RESULT,
}


def normalize_category(tag: Any) -> Category:
    """Map a raw tag (e.g. "Condition", "drug") to a Category.

    Unrecognized or empty tags fall back to Category.ENTITY.
    """
    key = str(tag or "").strip().lower()
    return _TAG_TO_CATEGORY.get(key, Category.ENTITY)


def clamp_confidence(value: Any) -> float | None:
    """Clamp a raw confidence value into [0, 1].

    Returns None (not 0) for anything that is not a finite number, so callers
    can omit the field instead of inventing a score.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    if number < 0:
        return 0.0
    if number > 1:
        return 1.0
    return number


def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


@dataclass(frozen=True)
class Entity:
    """A graph node: one diagnosis, medication, lab test or other concept."""

    title: str
    body: str = ""
    category: Category = Category.ENTITY
    tags: str = ""

    @property
    def key(self) -> str:
        return self.title.lower()

    @classmethod
    def from_raw(cls, raw: Any, default_tag: str = "") -> Entity | None:
        """Build an Entity from a persisted or user-supplied node object.

        Accepts the aliases seen in extraction payloads (``label`` for the
        title, ``description`` for the body, ``type`` for the tag).

        Returns:
            The entity, or None if ``raw`` is not a mapping or has no title.
        """
        if not isinstance(raw, dict):
            return None
        title = _text(raw.get("title") or raw.get("label"))
        if not title:
            return None
        body = _text(raw.get("body") or raw.get("description"))
        tags = _text(raw.get("tags") or raw.get("type")) or default_tag
        return cls(title=title, body=body, category=normalize_category(tags), tags=tags)

    def to_node(self) -> dict[str, str]:
        return {"title": self.title, "body": self.body, "tags": self.tags}


@dataclass(frozen=True)
class Edge:
    """A directed relationship between two entity titles.

    ``source_type`` / ``target_type`` keep the raw type strings as stored;
    the matching ``*_category`` fields are None when no type was given, so
    consumers can fall back to a title lookup. ``extra`` holds any other
    properties of a persisted link.
    """

    source_title: str
    target_title: str
    source_type: str = ""
    target_type: str = ""
    description: str = ""
    confidence: float | None = None
    extra: dict[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        if self.confidence is not None:
            object.__setattr__(self, "confidence", clamp_confidence(self.confidence))

    @property
    def source_category(self) -> Category | None:
        return normalize_category(self.source_type) if self.source_type else None

    @property
    def target_category(self) -> Category | None:
        return normalize_category(self.target_type) if self.target_type else None

    @classmethod
    def from_link(cls, raw: dict[str, Any]) -> Edge:
        """Read a persisted link object."""
        known = {
            "source",
            "target",
            "source_type",
            "sourceType",
            "target_type",
            "targetType",
            "description",
            "value",
            "confidence",
        }
        raw_value = raw.get("value")
        if raw_value is None:
            raw_value = raw.get("confidence")
        return cls(
            source_title=_text(raw.get("source")),
            target_title=_text(raw.get("target")),
            source_type=_text(raw.get("source_type") or raw.get("sourceType")),
            target_type=_text(raw.get("target_type") or raw.get("targetType")),
            description=_text(raw.get("description")),
            confidence=clamp_confidence(raw_value),
            extra={k: v for k, v in raw.items() if k not in known},
        )

    def to_link(self) -> dict[str, Any]:
        """Render the persisted link shape; ``value`` is omitted when unknown."""
        link: dict[str, Any] = {
            "source": self.source_title,
            "source_type": self.source_type,
            "target": self.target_title,
            "target_type": self.target_type,
            "description": self.description,
        }
        if self.confidence is not None:
            link["value"] = self.confidence
        return link


@dataclass(frozen=True)
class ScoredEntity:
    entity: Entity
    score: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.entity.category.value,
            "title": self.entity.title,
            "body": self.entity.body,
            "score": self.score,
        }


@dataclass(frozen=True)
class NeighborRow:
    """One relationship surfaced next to the selected entities."""

    source_title: str
    source_category: Category
    target_title: str
    target_category: Category
    description: str
    confidence: float | None = None
    source_body: str = ""
    target_body: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "src_label": self.source_category.value,
            "src_title": self.source_title,
            "src_body": self.source_body,
            "nbr_label": self.target_category.value,
            "nbr_title": self.target_title,
            "nbr_body": self.target_body,
            "rel_props": {
                "description": self.description,
                "confidence": self.confidence,
            },
        }


@dataclass(frozen=True)
class GraphDocument:
    """Entities and edges loaded for (or produced by) a single request."""

    entities: tuple[Entity, ...] = ()
    edges: tuple[Edge, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.entities or self.edges)

    @classmethod
    def from_dict(cls, data: Any) -> GraphDocument:
        """Parse a ``{"Nodes": [...], "Links": [...]}`` document.

        Lowercase ``nodes`` / ``links`` keys are accepted too. Malformed
        entries are skipped.
        """
        if not isinstance(data, dict):
            return cls()
        raw_nodes = data.get("Nodes", data.get("nodes", []))
        raw_links = data.get("Links", data.get("links", []))
        entities = [
            e
            for e in (Entity.from_raw(n) for n in (raw_nodes if isinstance(raw_nodes, list) else []))
            if e is not None
        ]
        edges = [
            Edge.from_link(link)
            for link in (raw_links if isinstance(raw_links, list) else [])
            if isinstance(link, dict)
        ]
        return cls(entities=tuple(entities), edges=tuple(edges))

    def to_dict(self) -> dict[str, list[dict[str, Any]]]:
        return {
            "Nodes": [e.to_node() for e in self.entities],
            "Links": [e.to_link() for e in self.edges],
        }
