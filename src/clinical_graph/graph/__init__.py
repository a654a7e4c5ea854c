"""Knowledge graph retrieval and construction.

Modules, in the order a question flows through them:
- store.py:         Load entities/edges from the first available source
- neo4j_source.py:  Optional live Neo4j source
- scoring.py:       Term-overlap relevance scoring, top-K selection
- neighbors.py:     One-hop expansion to linked entities
- context.py:       Plain-text context for the completion prompt
- extraction.py:    LLM relationship extraction (graph building)
- view.py:          Node/edge projection for visualization clients
"""
