"""
Runtime configuration for the ePro memory engine.

All values come from environment variables (optionally via a .env file).
Numeric options are range-checked; a bad value raises ConfigError naming
the variable instead of silently falling back.
"""

import math
import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

from dotenv import find_dotenv, load_dotenv

from db.memory_store import DecayConfig
from errors import ConfigError

# Load environment variables
_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_LLM_MODEL = "gpt-4o-mini"
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///" + os.path.expanduser(
    "~/.epro-memory/epro_memory.db"
)
DEFAULT_CHECKPOINT_PATH = "~/.epro-memory/checkpoints"
HASH_EMBEDDING_DIM = 64

EMBEDDING_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
}


def vector_dims_for_model(model: str) -> int:
    return EMBEDDING_DIMENSIONS.get(model, 1536)


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    embedding_backend: str = "openai"
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    embedding_api_base: str = ""
    embedding_api_key: str = ""
    embedding_dim: int = 1536
    embedding_send_dimensions: bool = False
    llm_api_base: str = ""
    llm_api_key: str = ""
    llm_model: str = DEFAULT_LLM_MODEL
    remote_timeout_sec: float = 30.0
    recall_limit: int = 5
    recall_min_score: float = 0.3
    extract_max_chars: int = 8000
    extract_min_messages: int = 4
    decay: DecayConfig = field(default_factory=DecayConfig)
    checkpoint_enabled: bool = False
    checkpoint_path: str = DEFAULT_CHECKPOINT_PATH
    checkpoint_auto_recover: bool = True


class _EnvReader:
    def __init__(self, environ: Mapping[str, str]) -> None:
        self._environ = environ

    def first(self, names: List[str], default: str = "") -> str:
        for name in names:
            value = self._environ.get(name)
            if value is None:
                continue
            candidate = value.strip()
            if candidate:
                return candidate
        return default

    def boolean(self, name: str, default: bool) -> bool:
        raw = self._environ.get(name)
        if raw is None:
            return default
        return raw.strip().lower() in {"1", "true", "yes", "on", "enabled"}

    def number(
        self,
        name: str,
        default: float,
        minimum: float,
        maximum: float,
        *,
        integer: bool = False,
    ) -> float:
        raw = self._environ.get(name)
        if raw is None or not raw.strip():
            return default
        try:
            value = int(raw) if integer else float(raw)
        except (TypeError, ValueError):
            raise ConfigError(f"{name} must be a number, got {raw!r}") from None
        if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
            raise ConfigError(f"{name} must be a number, got {raw!r}")
        if value < minimum or value > maximum:
            raise ConfigError(
                f"{name} must be a number between {minimum:g} and {maximum:g}, got: {raw}"
            )
        return value


def _normalize_api_base(base: str) -> str:
    value = (base or "").strip().rstrip("/")
    for suffix in ("/embeddings", "/chat/completions"):
        if value.lower().endswith(suffix):
            value = value[: -len(suffix)]
    return value


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from the environment.

    Raises:
        ConfigError: when a numeric option is non-numeric or out of range,
                     or a remote backend is selected without an API base.
    """
    env = _EnvReader(os.environ if environ is None else environ)

    backend = env.first(["EPRO_EMBEDDING_BACKEND"], default="openai").lower()
    if backend not in {"openai", "api", "hash"}:
        raise ConfigError(
            f"EPRO_EMBEDDING_BACKEND must be one of openai, api, hash, got: {backend}"
        )
    embedding_model = env.first(
        ["EPRO_EMBEDDING_MODEL", "OPENAI_EMBEDDING_MODEL"], default=DEFAULT_EMBEDDING_MODEL
    )
    default_dim = (
        HASH_EMBEDDING_DIM if backend == "hash" else vector_dims_for_model(embedding_model)
    )
    embedding_dim = int(
        env.number("EPRO_EMBEDDING_DIM", default_dim, 1, 16384, integer=True)
    )
    embedding_api_base = _normalize_api_base(
        env.first(["EPRO_EMBEDDING_API_BASE", "OPENAI_BASE_URL", "OPENAI_API_BASE"])
    )
    if backend == "openai" and not embedding_api_base:
        embedding_api_base = "https://api.openai.com/v1"
    if backend == "api" and not embedding_api_base:
        raise ConfigError("EPRO_EMBEDDING_API_BASE is required for the 'api' backend")

    llm_api_base = _normalize_api_base(
        env.first(
            ["EPRO_LLM_API_BASE", "OPENAI_BASE_URL", "OPENAI_API_BASE"],
            default="https://api.openai.com/v1",
        )
    )

    decay = DecayConfig(
        enabled=env.boolean("EPRO_DECAY_ENABLED", False),
        half_life_days=env.number("EPRO_DECAY_HALF_LIFE_DAYS", 30.0, 1, 365),
        active_weight=env.number("EPRO_DECAY_ACTIVE_WEIGHT", 0.1, 0, 1),
    )

    return Settings(
        database_url=env.first(["EPRO_DATABASE_URL"], default=DEFAULT_DATABASE_URL),
        embedding_backend=backend,
        embedding_model=embedding_model,
        embedding_api_base=embedding_api_base,
        embedding_api_key=env.first(["EPRO_EMBEDDING_API_KEY", "OPENAI_API_KEY"]),
        embedding_dim=embedding_dim,
        embedding_send_dimensions=env.boolean("EPRO_EMBEDDING_SEND_DIMENSIONS", False),
        llm_api_base=llm_api_base,
        llm_api_key=env.first(["EPRO_LLM_API_KEY", "OPENAI_API_KEY"]),
        llm_model=env.first(["EPRO_LLM_MODEL", "OPENAI_MODEL"], default=DEFAULT_LLM_MODEL),
        remote_timeout_sec=env.number("EPRO_REMOTE_TIMEOUT_SEC", 30.0, 1, 600),
        recall_limit=int(env.number("EPRO_RECALL_LIMIT", 5, 1, 100, integer=True)),
        recall_min_score=env.number("EPRO_RECALL_MIN_SCORE", 0.3, 0, 1),
        extract_max_chars=int(
            env.number("EPRO_EXTRACT_MAX_CHARS", 8000, 100, 100000, integer=True)
        ),
        extract_min_messages=int(
            env.number("EPRO_EXTRACT_MIN_MESSAGES", 4, 1, 100, integer=True)
        ),
        decay=decay,
        checkpoint_enabled=env.boolean("EPRO_CHECKPOINT_ENABLED", False),
        checkpoint_path=env.first(["EPRO_CHECKPOINT_PATH"], default=DEFAULT_CHECKPOINT_PATH),
        checkpoint_auto_recover=env.boolean("EPRO_CHECKPOINT_AUTO_RECOVER", True),
    )
