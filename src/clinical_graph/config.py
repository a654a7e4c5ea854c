"""Configuration for the clinical graph service.

Loads settings from environment variables (via a .env file or the system
environment). Every value has a default so the package imports cleanly in
CI and in tests without real credentials.

Missing credentials are only reported when something actually needs them
(the completion gateway refuses to send a request without an API key).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# Optional .env next to the project root; absent in CI and containers
_env_path = Path(__file__).resolve().parent.parent.parent / ".env"
load_dotenv(_env_path)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    try:
        return float(raw)
    except ValueError:
        return default


# --- Completion service (OpenAI-compatible, Cerebras by default) ---
CEREBRAS_BASE_URL: str = os.getenv("CEREBRAS_BASE_URL", "https://api.cerebras.ai/v1")
# OPENAI_API_KEY is accepted as a fallback for OpenAI-compatible deployments
CEREBRAS_API_KEY: str = os.getenv("CEREBRAS_API_KEY") or os.getenv("OPENAI_API_KEY", "")
CEREBRAS_MODEL: str = os.getenv("CEREBRAS_MODEL", "gpt-oss-120b")
COMPLETION_TIMEOUT: float = _env_float("COMPLETION_TIMEOUT", 60.0)

# --- Relationship extraction ("linker") model settings ---
LINK_MODEL: str = (
    os.getenv("LINK_MODEL") or os.getenv("CEREBRAS_LINK_MODEL") or CEREBRAS_MODEL
)
LINK_TEMPERATURE: float = _env_float("LINK_TEMPERATURE", 0.35)
LINK_MAX_TOKENS: int = _env_int("LINK_MAX_TOKENS", 16384)

# --- Question answering ---
ANSWER_TEMPERATURE: float = _env_float("ANSWER_TEMPERATURE", 0.7)
ANSWER_MAX_TOKENS: int = _env_int("ANSWER_MAX_TOKENS", 4096)

# --- Retrieval defaults ---
# Request-level defaults, used when the caller omits top_k / neighbor_k
GRAPH_RAG_TOP_K_DEFAULT: int = _env_int("GRAPH_RAG_TOP_K_DEFAULT", 12)
GRAPH_RAG_NEIGHBOR_K_DEFAULT: int = _env_int("GRAPH_RAG_NEIGHBOR_K_DEFAULT", 10)
# Fallback used by the scorer itself when handed a zero/absent top_k
LOCAL_TOP_K_DEFAULT: int = 6

# --- Graph documents ---
# Directory holding graph.json (or diagnoses.json / labs.json / medications.json)
GRAPH_DATA_DIR: str = os.getenv(
    "GRAPH_DATA_DIR",
    str(Path(__file__).resolve().parent.parent.parent / "data"),
)

# --- Neo4j (optional live graph) ---
NEO4J_URI: str = os.getenv("NEO4J_URI", "bolt://localhost:7687")
NEO4J_USER: str = os.getenv("NEO4J_USER", "neo4j")
NEO4J_PASSWORD: str = os.getenv("NEO4J_PASSWORD", "")
# Combined "user/password" (or "user:password"), as used by the Neo4j docker image
NEO4J_AUTH: str = os.getenv("NEO4J_AUTH", "")


@dataclass(frozen=True)
class Settings:
    """Snapshot of the module-level settings, handed to services explicitly."""

    completion_base_url: str = CEREBRAS_BASE_URL
    completion_api_key: str = CEREBRAS_API_KEY
    completion_model: str = CEREBRAS_MODEL
    completion_timeout: float = COMPLETION_TIMEOUT
    link_model: str = LINK_MODEL
    link_temperature: float = LINK_TEMPERATURE
    link_max_tokens: int = LINK_MAX_TOKENS
    answer_temperature: float = ANSWER_TEMPERATURE
    answer_max_tokens: int = ANSWER_MAX_TOKENS
    top_k_default: int = GRAPH_RAG_TOP_K_DEFAULT
    neighbor_k_default: int = GRAPH_RAG_NEIGHBOR_K_DEFAULT
    graph_data_dir: str = GRAPH_DATA_DIR
    neo4j_uri: str = NEO4J_URI
    neo4j_user: str = NEO4J_USER
    neo4j_password: str = NEO4J_PASSWORD
    neo4j_auth: str = NEO4J_AUTH

    @classmethod
    def from_env(cls) -> Settings:
        """Build settings from the values loaded at import time."""
        return cls()
