"""Graph-view projection for visualization clients.

Turns a GraphDocument into ``{"nodes": [...], "edges": [...]}`` with stable,
synthesized ids:

- node id:  "{type-lowercase}:{slug(title)}", e.g. "diagnosis:type-2-diabetes"
- edge id:  "edge-{index}", index being the link's position in the document

The view uses its own display taxonomy: the entity categories plus Patient
and Appointment, with Guideline (not Entity) for unrecognized tags.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from clinical_graph.models import Category, GraphDocument, clamp_confidence, normalize_category

DEFAULT_VIEW_CONFIDENCE = 0.8

PATIENT = "Patient"
APPOINTMENT = "Appointment"
GUIDELINE = "Guideline"

_EXTRA_VIEW_TYPES = {
    "lab test": Category.TEST_RESULT.value,
    "test results": Category.TEST_RESULT.value,
    "patient": PATIENT,
    "appointment": APPOINTMENT,
}

_EDGE_TYPES: dict[tuple[str, str], str] = {
    (Category.DIAGNOSIS.value, Category.TEST_RESULT.value): "has_lab",
    (Category.DIAGNOSIS.value, Category.MEDICATION.value): "prescribed",
    (Category.TEST_RESULT.value, Category.MEDICATION.value): "prescribed",
    (Category.MEDICATION.value, Category.MEDICATION.value): "interacts_with",
    (PATIENT, APPOINTMENT): "has_appointment",
}

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def slugify(text: Any) -> str:
    """Lowercase, collapse non-alphanumeric runs to "-", strip edge hyphens."""
    return _NON_ALNUM.sub("-", str(text or "").strip().lower()).strip("-")


def view_node_type(tag: Any) -> str:
    key = str(tag or "").strip().lower()
    if key in _EXTRA_VIEW_TYPES:
        return _EXTRA_VIEW_TYPES[key]
    category = normalize_category(key)
    return GUIDELINE if category is Category.ENTITY else category.value


def edge_type(source_tag: Any, target_tag: Any) -> str:
    pair = (view_node_type(source_tag), view_node_type(target_tag))
    return _EDGE_TYPES.get(pair, "guideline")


def node_id(tag: Any, title: str) -> str:
    return f"{view_node_type(tag).lower()}:{slugify(title)}"


@dataclass
class GraphView:
    nodes: list[dict[str, Any]] = field(default_factory=list)
    edges: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, list[dict[str, Any]]]:
        return {"nodes": self.nodes, "edges": self.edges}


def project_graph(document: GraphDocument) -> GraphView:
    """Project entities and edges into view nodes and edges.

    Nodes are deduplicated by id (first wins). Edge endpoints missing from
    the node list are added, with body/tags borrowed from any entity with
    the same title. Links with an empty endpoint are skipped but still
    consume an index.
    """
    by_title = {entity.key: entity for entity in document.entities}
    nodes: dict[str, dict[str, Any]] = {}

    for entity in document.entities:
        nid = node_id(entity.tags, entity.title)
        if nid in nodes:
            continue
        node: dict[str, Any] = {
            "id": nid,
            "type": view_node_type(entity.tags),
            "label": entity.title,
            "body": entity.body,
        }
        if entity.tags:
            node["tags"] = entity.tags
        nodes[nid] = node

    def ensure_endpoint(title: str, tag: str) -> str:
        nid = node_id(tag, title)
        if nid not in nodes:
            node: dict[str, Any] = {"id": nid, "type": view_node_type(tag), "label": title}
            known = by_title.get(title.lower())
            if known is not None and known.body:
                node["body"] = known.body
            if known is not None and known.tags:
                node["tags"] = known.tags
            nodes[nid] = node
        return nid

    edges: list[dict[str, Any]] = []
    for index, edge in enumerate(document.edges):
        if not edge.source_title or not edge.target_title:
            continue
        confidence = clamp_confidence(edge.confidence)
        view_edge: dict[str, Any] = {
            "id": f"edge-{index}",
            "source": ensure_endpoint(edge.source_title, edge.source_type),
            "target": ensure_endpoint(edge.target_title, edge.target_type),
            "type": edge_type(edge.source_type, edge.target_type),
            "confidence": DEFAULT_VIEW_CONFIDENCE if confidence is None else confidence,
        }
        if edge.description:
            view_edge["description"] = edge.description
        edges.append(view_edge)

    return GraphView(nodes=list(nodes.values()), edges=edges)
