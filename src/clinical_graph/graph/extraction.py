"""LLM-driven relationship extraction (the knowledge graph builder).

Given the patient's diagnoses, labs and medications, fill the linker prompt,
ask the completion service for a JSON list of links, and turn whatever comes
back into validated Edge objects.

Extraction is best-effort: a failed completion call or an unparseable
response yields an empty edge list, never an exception.

API flow:
    raw entity lists -> normalize_entities() -> build_prompt()
    -> CompletionClient.complete() -> parse_completion() -> validate_links()
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from importlib import resources
from typing import Any

import httpx

from clinical_graph.completion_client import CompletionClient, CompletionError
from clinical_graph.config import LINK_MAX_TOKENS, LINK_MODEL, LINK_TEMPERATURE
from clinical_graph.models import Edge, Entity, GraphDocument, clamp_confidence

logger = logging.getLogger(__name__)

REASONING_PREAMBLE = "\n".join(
    [
        "You are an expert clinical knowledge graph builder.",
        "Think step-by-step. Infer clinically plausible relationships, but avoid hallucination.",
        "Prefer high-recall edges that are still clinically reasonable.",
        "Return strictly valid JSON with a top-level object containing 'Links'.",
        "Do not include any free text outside the JSON.",
    ]
)

DIAGNOSES_PLACEHOLDER = "<PATIENT_DIAGNOSES>"
LABS_PLACEHOLDER = "<PATIENT_LABS>"
MEDICATIONS_PLACEHOLDER = "<PATIENT_MEDICATIONS>"


def load_prompt_template() -> str:
    """Read the packaged linker prompt template."""
    return (
        resources.files("clinical_graph")
        .joinpath("prompts", "linker_prompt.txt")
        .read_text(encoding="utf-8")
    )


# ---------------------------------------------------------------------------
# Input normalization
# ---------------------------------------------------------------------------


def normalize_entities(raw_nodes: Any, default_tag: str = "") -> list[Entity]:
    """Clean a user-supplied node list.

    Drops non-objects and nodes without a title, removes duplicate titles
    (case-insensitive, first one wins) and defaults missing fields to "".
    """
    entities: list[Entity] = []
    seen: set[str] = set()
    for raw in raw_nodes if isinstance(raw_nodes, list) else []:
        entity = Entity.from_raw(raw, default_tag=default_tag)
        if entity is None or entity.key in seen:
            continue
        seen.add(entity.key)
        entities.append(entity)
    return entities


def _split_items(text: str) -> list[str]:
    return [item.strip() for item in re.split(r"[;,\n]+", text or "") if item.strip()]


def entities_from_records(
    medical_records: Iterable[dict[str, Any]],
    prescriptions: Iterable[dict[str, Any]],
) -> tuple[list[Entity], list[Entity]]:
    """Derive diagnosis and medication entities from clinical records.

    A record's ``diagnosis`` field may list several conditions separated by
    commas, semicolons or newlines; each becomes its own entity, with the
    history of present illness and physical examination as its body.
    Prescriptions become medication entities with dosage details as body.

    Returns:
        (diagnoses, medications), each deduplicated by title.
    """
    diagnoses: dict[str, Entity] = {}
    for record in medical_records:
        body = "\n".join(
            str(record[field])
            for field in ("history_of_present_illness", "physical_examination")
            if record.get(field)
        ).strip()
        for title in _split_items(str(record.get("diagnosis") or "")):
            diagnoses.setdefault(
                title.lower(), Entity.from_raw({"title": title, "body": body, "tags": "diagnosis"})
            )

    medications: dict[str, Entity] = {}
    for prescription in prescriptions:
        name = str(prescription.get("medication_name") or "").strip()
        if not name:
            continue
        bits = [
            f"{label}: {prescription[field]}"
            for field, label in (
                ("dosage", "Dosage"),
                ("frequency", "Frequency"),
                ("instructions", "Instructions"),
            )
            if prescription.get(field)
        ]
        medications.setdefault(
            name.lower(),
            Entity.from_raw({"title": name, "body": " | ".join(bits), "tags": "medication"}),
        )

    return (
        [e for e in diagnoses.values() if e is not None],
        [e for e in medications.values() if e is not None],
    )


def build_prompt(
    template: str,
    diagnoses: Sequence[Entity],
    labs: Sequence[Entity],
    medications: Sequence[Entity],
) -> str:
    """Fill the linker template; the preamble always comes first."""

    def dump(entities: Sequence[Entity]) -> str:
        return json.dumps([e.to_node() for e in entities], indent=2, ensure_ascii=False)

    return (
        f"{REASONING_PREAMBLE}\n\n{template}"
        .replace(DIAGNOSES_PLACEHOLDER, dump(diagnoses), 1)
        .replace(LABS_PLACEHOLDER, dump(labs), 1)
        .replace(MEDICATIONS_PLACEHOLDER, dump(medications), 1)
    )


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ParseResult:
    ok: bool
    value: Any = None


_FAILED = ParseResult(ok=False)
_OBJECT_SPAN = re.compile(r"\{.*\}", re.DOTALL)
_ARRAY_SPAN = re.compile(r"\[.*\]", re.DOTALL)


def parse_direct(text: str) -> ParseResult:
    try:
        return ParseResult(ok=True, value=json.loads(text))
    except ValueError:
        return _FAILED


def _parse_span(pattern: re.Pattern[str], text: str) -> ParseResult:
    match = pattern.search(text)
    if match is None:
        return _FAILED
    return parse_direct(match.group(0))


def parse_object_span(text: str) -> ParseResult:
    """Parse the outermost ``{...}`` span (e.g. JSON wrapped in prose or fences)."""
    return _parse_span(_OBJECT_SPAN, text)


def parse_array_span(text: str) -> ParseResult:
    return _parse_span(_ARRAY_SPAN, text)


PARSE_STRATEGIES: tuple[Callable[[str], ParseResult], ...] = (
    parse_direct,
    parse_object_span,
    parse_array_span,
)


def parse_completion(text: str) -> ParseResult:
    """Try each parse strategy in order; the first success wins."""
    for strategy in PARSE_STRATEGIES:
        result = strategy(text)
        if result.ok:
            return result
    return _FAILED


def links_from_payload(payload: Any) -> list[Any]:
    """Pull the raw link list out of a parsed response."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        links = payload.get("Links", payload.get("links"))
        if isinstance(links, list):
            return links
    return []


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_links(
    raw_links: Iterable[Any],
    diagnoses: Sequence[Entity],
    labs: Sequence[Entity],
    medications: Sequence[Entity],
) -> list[Edge]:
    """Turn raw link objects into Edges.

    Non-object entries are dropped. Confidence comes from ``value`` (or
    ``confidence``) clamped to [0, 1], and is left unset when not numeric.
    A missing endpoint type is inferred from which input list holds the
    title: "diagnosis", "lab" or "medication" (checked in that order).
    """
    memberships = (
        ("diagnosis", {e.key for e in diagnoses}),
        ("lab", {e.key for e in labs}),
        ("medication", {e.key for e in medications}),
    )

    def endpoint_type(raw_type: Any, title: str) -> str:
        given = str(raw_type or "").strip().lower()
        if given:
            return given
        for kind, titles in memberships:
            if title.lower() in titles:
                return kind
        return ""

    edges: list[Edge] = []
    for link in raw_links:
        if not isinstance(link, dict):
            continue
        source = str(link.get("source") or "").strip()
        target = str(link.get("target") or "").strip()
        raw_value = link.get("value")
        if raw_value is None:
            raw_value = link.get("confidence")
        edges.append(
            Edge(
                source_title=source,
                target_title=target,
                source_type=endpoint_type(link.get("source_type") or link.get("sourceType"), source),
                target_type=endpoint_type(link.get("target_type") or link.get("targetType"), target),
                description=str(link.get("description") or "").strip(),
                confidence=clamp_confidence(raw_value),
            )
        )
    return edges


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------


class RelationshipExtractor:
    """Mines typed edges between diagnoses, labs and medications via the LLM."""

    def __init__(
        self,
        gateway: CompletionClient,
        template: str | None = None,
        model: str = LINK_MODEL,
        temperature: float = LINK_TEMPERATURE,
        max_tokens: int = LINK_MAX_TOKENS,
    ) -> None:
        self.gateway = gateway
        self.template = template if template is not None else load_prompt_template()
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def extract(
        self,
        diagnoses: Sequence[Entity],
        labs: Sequence[Entity],
        medications: Sequence[Entity],
    ) -> list[Edge]:
        """Ask the completion service for relationships between the entities.

        Args:
            diagnoses: Normalized diagnosis entities.
            labs: Normalized lab entities.
            medications: Normalized medication entities.

        Returns:
            The validated edges, or [] if the call or parsing fails.
        """
        prompt = build_prompt(self.template, diagnoses, labs, medications)
        logger.debug("Linker prompt:\n%s", prompt)

        try:
            completion = await self.gateway.complete(
                prompt,
                model=self.model,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except (CompletionError, httpx.HTTPError) as exc:
            logger.warning("Relationship extraction failed — returning no links: %s", exc)
            return []

        logger.debug("Linker response:\n%s", completion.content)
        parsed = parse_completion(completion.content)
        if not parsed.ok:
            logger.warning("Linker response was not valid JSON — returning no links")
            return []

        edges = validate_links(links_from_payload(parsed.value), diagnoses, labs, medications)
        logger.info("Extracted %d relationships", len(edges))
        return edges

    async def build_graph(
        self,
        diagnoses: Sequence[Entity],
        labs: Sequence[Entity],
        medications: Sequence[Entity],
    ) -> GraphDocument:
        """Extract edges and bundle them with the nodes, diagnoses first."""
        edges = await self.extract(diagnoses, labs, medications)
        return GraphDocument(
            entities=(*diagnoses, *labs, *medications),
            edges=tuple(edges),
        )
