"""Clinical knowledge graph service.

This package answers free-text clinical questions using a small knowledge
graph of diagnoses, labs and medications as grounding context for an LLM,
and builds that graph from raw entity lists by asking the LLM to link them.
"""
