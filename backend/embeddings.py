"""
Embedding capability: text -> fixed-width vector.

Backends:
- openai / api: OpenAI-compatible ``POST {base}/embeddings``
- hash: deterministic local token-hash vectors (offline use, tests)

A remote failure raises EmbeddingUnavailableError; there is no retry and
no silent switch to the hash backend.
"""

import hashlib
import math
import re
from typing import Any, List, Optional

import httpx

from errors import EmbeddingUnavailableError
from remote_api import post_json

REMOTE_BACKENDS = {"openai", "api"}


def extract_embedding_from_response(payload: Any) -> Optional[List[float]]:
    candidates: List[Any] = []
    if isinstance(payload, dict):
        data = payload.get("data")
        if isinstance(data, list) and data:
            first_item = data[0]
            if isinstance(first_item, dict):
                candidates.append(first_item.get("embedding"))
            elif isinstance(first_item, list):
                candidates.append(first_item)

        candidates.append(payload.get("embedding"))

        result = payload.get("result")
        if isinstance(result, dict):
            candidates.append(result.get("embedding"))
            result_data = result.get("data")
            if isinstance(result_data, list) and result_data:
                first_result = result_data[0]
                if isinstance(first_result, dict):
                    candidates.append(first_result.get("embedding"))
                elif isinstance(first_result, list):
                    candidates.append(first_result)

    for candidate in candidates:
        if not isinstance(candidate, list) or not candidate:
            continue
        try:
            return [float(v) for v in candidate]
        except (TypeError, ValueError):
            continue
    return None


def hash_embedding(content: str, dim: int) -> List[float]:
    """Unit-length signed feature-hash of the lowercase tokens in ``content``."""
    vector = [0.0] * dim

    normalized = re.sub(r"\s+", " ", content.strip().lower())
    tokens = re.findall(r"[a-z0-9_]+", normalized)
    if not tokens and normalized:
        tokens = list(normalized)

    for token in tokens:
        digest = hashlib.sha256(token.encode("utf-8")).digest()
        for i in range(0, 8, 2):
            idx = digest[i] % dim
            sign = -1.0 if (digest[i + 1] & 1) else 1.0
            weight = 1.0 + (digest[(i + 2) % len(digest)] / 255.0)
            vector[idx] += sign * weight

    norm = math.sqrt(sum(v * v for v in vector))
    if norm <= 0:
        return [0.0] * dim
    return [v / norm for v in vector]


class Embeddings:
    def __init__(
        self,
        *,
        backend: str = "openai",
        model: str = "text-embedding-3-small",
        dim: int = 1536,
        api_base: str = "",
        api_key: str = "",
        timeout_sec: float = 30.0,
        send_dimensions: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.backend = (backend or "openai").strip().lower()
        self.model = model
        self.dim = int(dim)
        self._api_base = api_base
        self._api_key = api_key
        self._timeout_sec = timeout_sec
        self._send_dimensions = send_dimensions
        self._transport = transport

    async def embed(self, text: str) -> List[float]:
        if self.backend == "hash":
            return hash_embedding(text, self.dim)
        if self.backend not in REMOTE_BACKENDS:
            raise EmbeddingUnavailableError(f"unsupported embedding backend: {self.backend}")

        payload = {"model": self.model, "input": text}
        if self._send_dimensions:
            payload["dimensions"] = self.dim
        response = await post_json(
            self._api_base,
            "/embeddings",
            payload,
            api_key=self._api_key,
            timeout_sec=self._timeout_sec,
            transport=self._transport,
            error_cls=EmbeddingUnavailableError,
        )
        embedding = extract_embedding_from_response(response)
        if embedding is None:
            raise EmbeddingUnavailableError(
                f"Embedding API returned empty data for model {self.model}"
            )
        if len(embedding) != self.dim:
            raise EmbeddingUnavailableError(
                f"Embedding API returned {len(embedding)} dimensions for model "
                f"{self.model}, expected {self.dim}"
            )
        return embedding
