"""Graph-based retrieval-augmented question answering.

This module wires the retrieval pipeline together:

    question -> score_entities() over the store's entities
             -> expand_neighbors() one hop out from the top entities
             -> format_context()
             -> CompletionClient.complete() with the context as grounding

The store and the completion client are passed in, so tests (and the
FastAPI dependencies) decide what backs them.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from clinical_graph.completion_client import CompletionClient
from clinical_graph.config import Settings
from clinical_graph.graph.context import format_context
from clinical_graph.graph.neighbors import expand_neighbors
from clinical_graph.graph.scoring import score_entities
from clinical_graph.graph.store import EntityStore
from clinical_graph.models import NeighborRow, ScoredEntity

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a clinical assistant. Use the provided graph context consisting of "
    "relevant nodes and their relationships to answer the question accurately. "
    "Cite node titles when applicable."
)


def build_prompt(question: str, context: str) -> str:
    user_content = f"Question:\n{question}\n\nGraph Context:\n{context}\n\nAnswer concisely."
    return f"{SYSTEM_PROMPT}\n\n{user_content}"


@dataclass(frozen=True)
class RetrievalContext:
    top_nodes: list[ScoredEntity] = field(default_factory=list)
    neighbors: list[NeighborRow] = field(default_factory=list)
    context: str = ""


@dataclass(frozen=True)
class RetrievalResult:
    question: str
    answer: str
    model: str
    context: str
    top_nodes: list[ScoredEntity]
    neighbors: list[NeighborRow]

    def to_dict(self) -> dict[str, Any]:
        return {
            "question": self.question,
            "answer": self.answer,
            "model": self.model,
            "context": self.context,
            "top_nodes": [n.to_dict() for n in self.top_nodes],
            "neighbors": [n.to_dict() for n in self.neighbors],
        }


class GraphRAGService:
    """Answers clinical questions grounded in the knowledge graph."""

    def __init__(
        self,
        store: EntityStore,
        gateway: CompletionClient,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.settings = settings or Settings.from_env()

    async def build_context(
        self,
        question: str,
        top_k: int | None = None,
        neighbor_k: int | None = None,
        include_types: Sequence[str] | None = None,
    ) -> RetrievalContext:
        """Select relevant entities and their neighbors for a question.

        Args:
            question: The clinician's question.
            top_k: Entities to keep; defaults to GRAPH_RAG_TOP_K_DEFAULT.
            neighbor_k: Neighbor rows to keep; defaults to
                GRAPH_RAG_NEIGHBOR_K_DEFAULT.
            include_types: Optional category allow-list.

        Returns:
            The selected entities, neighbor rows and rendered context. An
            empty graph gives an empty selection, not an error.
        """
        if top_k is None:
            top_k = self.settings.top_k_default
        if neighbor_k is None:
            neighbor_k = self.settings.neighbor_k_default

        document = await self.store.load()
        top_nodes = score_entities(document.entities, question, top_k, include_types)
        neighbors = expand_neighbors(
            document.edges,
            (n.entity.title for n in top_nodes),
            neighbor_k,
            entities=document.entities,
        )
        context = format_context(top_nodes, neighbors)
        logger.info(
            "Built context: %d nodes, %d neighbor rows, %d chars",
            len(top_nodes),
            len(neighbors),
            len(context),
        )
        return RetrievalContext(top_nodes=top_nodes, neighbors=neighbors, context=context)

    async def answer(
        self,
        question: str,
        top_k: int | None = None,
        neighbor_k: int | None = None,
        include_types: Sequence[str] | None = None,
    ) -> RetrievalResult:
        """Answer a question with graph context.

        Raises:
            CompletionError: If the completion service cannot be reached or
                is not configured. Retrieval has no answer without it.
        """
        retrieved = await self.build_context(question, top_k, neighbor_k, include_types)
        completion = await self.gateway.complete(
            build_prompt(question, retrieved.context),
            temperature=self.settings.answer_temperature,
            max_tokens=self.settings.answer_max_tokens,
            system_prompt="You are a clinical assistant.",
        )
        return RetrievalResult(
            question=question,
            answer=completion.content,
            model=completion.model,
            context=retrieved.context,
            top_nodes=retrieved.top_nodes,
            neighbors=retrieved.neighbors,
        )
