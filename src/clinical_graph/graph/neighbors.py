"""One-hop neighbor expansion around the selected entities."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from typing import Any

from clinical_graph.models import Category, Edge, Entity, NeighborRow

logger = logging.getLogger(__name__)

DEFAULT_NEIGHBOR_CAP = 10


def _fallback_description(edge: Edge) -> str:
    props: dict[str, Any] = dict(edge.extra)
    if edge.confidence is not None:
        props["confidence"] = edge.confidence
    return json.dumps(props, default=str, ensure_ascii=False)


def expand_neighbors(
    edges: Iterable[Edge],
    selected_titles: Iterable[str],
    neighbor_cap: int | None = DEFAULT_NEIGHBOR_CAP,
    entities: Iterable[Entity] = (),
) -> list[NeighborRow]:
    """Collect the edges touching any selected entity.

    Edges are visited in store order and collection stops as soon as
    ``neighbor_cap`` rows are found, so the cap keeps the *first* qualifying
    edges rather than the most confident ones.

    Args:
        edges: All edges, in store order.
        selected_titles: Titles of the selected entities (compared lowercased).
        neighbor_cap: Maximum rows; falsy uses the default, minimum 1.
        entities: Full entity collection, used to fill in categories and
            bodies the edge itself does not carry.

    Returns:
        Neighbor rows, a prefix of the qualifying edges.
    """
    selected = {title.lower() for title in selected_titles}
    cap = max(1, neighbor_cap or DEFAULT_NEIGHBOR_CAP)
    by_title = {entity.key: entity for entity in entities}

    def resolve(title: str, category: Category | None) -> tuple[Category, str]:
        known = by_title.get(title.lower())
        if category is None:
            category = known.category if known is not None else Category.ENTITY
        return category, known.body if known is not None else ""

    rows: list[NeighborRow] = []
    for edge in edges:
        if len(rows) >= cap:
            break
        if edge.source_title.lower() not in selected and edge.target_title.lower() not in selected:
            continue

        source_category, source_body = resolve(edge.source_title, edge.source_category)
        target_category, target_body = resolve(edge.target_title, edge.target_category)
        rows.append(
            NeighborRow(
                source_title=edge.source_title,
                source_category=source_category,
                target_title=edge.target_title,
                target_category=target_category,
                description=edge.description or _fallback_description(edge),
                confidence=edge.confidence,
                source_body=source_body,
                target_body=target_body,
            )
        )

    logger.debug("Expanded %d selected entities to %d neighbor rows", len(selected), len(rows))
    return rows
