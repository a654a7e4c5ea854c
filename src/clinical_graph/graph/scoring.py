"""Term-overlap relevance scoring over graph entities.

A deliberately simple heuristic: an entity's score is the number of times
the query's terms occur (as substrings) in its title and body.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from clinical_graph.config import LOCAL_TOP_K_DEFAULT
from clinical_graph.models import Entity, ScoredEntity

_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str | None) -> str:
    """Lowercase, collapse whitespace runs to one space, and trim."""
    return _WHITESPACE.sub(" ", str(text or "").lower()).strip()


def query_terms(query: str) -> list[str]:
    return [term for term in normalize_text(query).split(" ") if term]


def score_entity(entity: Entity, terms: Iterable[str]) -> int:
    haystack = normalize_text(f"{entity.title} {entity.body}")
    return sum(haystack.count(term) for term in terms)


def score_entities(
    entities: Iterable[Entity],
    query: str,
    top_k: int | None = None,
    include_types: Iterable[str] | None = None,
) -> list[ScoredEntity]:
    """Rank entities against a query and keep the best ``top_k``.

    Args:
        entities: Candidate entities, in store order.
        query: Free-text question.
        top_k: Number of results to keep; falsy values use the local
            default and anything below 1 is raised to 1.
        include_types: Optional category allow-list (case-insensitive,
            e.g. ["diagnosis", "medication"]). Empty means no filter.

    Returns:
        Entities with a positive score, highest first. Ties keep their
        input order.
    """
    terms = query_terms(query)
    allowed = {str(t).lower() for t in include_types} if include_types else None
    limit = max(1, top_k or LOCAL_TOP_K_DEFAULT)

    scored: list[ScoredEntity] = []
    for entity in entities:
        if allowed is not None and entity.category.value.lower() not in allowed:
            continue
        score = score_entity(entity, terms)
        if score > 0:
            scored.append(ScoredEntity(entity=entity, score=score))

    # sorted() is stable, so equal scores stay in store order
    scored = sorted(scored, key=lambda s: s.score, reverse=True)
    return scored[:limit]
