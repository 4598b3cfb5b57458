import json
from typing import Any, Dict, List

import httpx
import pytest

from embeddings import Embeddings, extract_embedding_from_response, hash_embedding
from errors import CompletionUnavailableError, EmbeddingUnavailableError
from llm_client import LlmClient


def _json_transport(body: Any, status_code: int = 200, seen: List[httpx.Request] = None):
    def _handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(status_code, json=body)

    return httpx.MockTransport(_handler)


def _chat_reply(content: str) -> Dict[str, Any]:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


@pytest.mark.asyncio
async def test_embeddings_posts_openai_payload() -> None:
    seen: List[httpx.Request] = []
    embeddings = Embeddings(
        backend="api",
        model="embed-small",
        dim=3,
        api_base="http://embed.local/v1",
        api_key="secret",
        send_dimensions=True,
        transport=_json_transport({"data": [{"embedding": [0.1, 0.2, 0.3]}]}, seen=seen),
    )

    vector = await embeddings.embed("hello world")

    assert vector == [0.1, 0.2, 0.3]
    request = seen[0]
    assert str(request.url) == "http://embed.local/v1/embeddings"
    assert request.headers["Authorization"] == "Bearer secret"
    assert json.loads(request.content) == {
        "model": "embed-small",
        "input": "hello world",
        "dimensions": 3,
    }


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body, status_code",
    [
        ({"error": "overloaded"}, 503),
        ({"data": []}, 200),
        ({"data": [{"embedding": [0.1, 0.2]}]}, 200),
    ],
)
async def test_embedding_failures_raise(body: Any, status_code: int) -> None:
    embeddings = Embeddings(
        backend="openai",
        dim=3,
        api_base="http://embed.local/v1",
        transport=_json_transport(body, status_code),
    )

    with pytest.raises(EmbeddingUnavailableError):
        await embeddings.embed("text")


@pytest.mark.asyncio
async def test_embedding_without_base_url_raises() -> None:
    with pytest.raises(EmbeddingUnavailableError):
        await Embeddings(backend="api", dim=3, api_base="").embed("text")


@pytest.mark.asyncio
async def test_hash_backend_is_local_and_deterministic() -> None:
    embeddings = Embeddings(backend="hash", dim=16)

    first = await embeddings.embed("Alpha beta")
    second = await embeddings.embed("alpha   BETA")

    assert first == second
    assert len(first) == 16
    assert sum(v * v for v in first) == pytest.approx(1.0)
    assert hash_embedding("", 8) == [0.0] * 8


def test_extract_embedding_accepts_known_shapes() -> None:
    assert extract_embedding_from_response({"embedding": [1, 2]}) == [1.0, 2.0]
    assert extract_embedding_from_response({"data": [[3, 4]]}) == [3.0, 4.0]
    assert extract_embedding_from_response({"result": {"embedding": [5]}}) == [5.0]
    assert extract_embedding_from_response({"data": [{"embedding": ["x"]}]}) is None
    assert extract_embedding_from_response([1, 2]) is None


@pytest.mark.asyncio
async def test_llm_complete_json_parses_fenced_reply() -> None:
    seen: List[httpx.Request] = []
    llm = LlmClient(
        model="chat-mini",
        api_base="http://llm.local/v1/",
        transport=_json_transport(
            _chat_reply('Result:\n```json\n{"decision": "skip"}\n```'), seen=seen
        ),
    )

    assert await llm.complete_json("prompt") == {"decision": "skip"}
    payload = json.loads(seen[0].content)
    assert str(seen[0].url) == "http://llm.local/v1/chat/completions"
    assert payload["model"] == "chat-mini"
    assert payload["temperature"] == 0
    assert payload["messages"] == [{"role": "user", "content": "prompt"}]
    assert "Authorization" not in seen[0].headers


@pytest.mark.asyncio
async def test_llm_unparseable_reply_returns_none() -> None:
    llm = LlmClient(
        model="chat-mini",
        api_base="http://llm.local/v1",
        transport=_json_transport(_chat_reply("I cannot answer that.")),
    )
    assert await llm.complete_json("prompt") is None


@pytest.mark.asyncio
async def test_llm_backend_error_raises() -> None:
    llm = LlmClient(
        model="chat-mini",
        api_base="http://llm.local/v1",
        transport=_json_transport({"error": "bad key"}, 401),
    )
    with pytest.raises(CompletionUnavailableError):
        await llm.complete_json("prompt")


@pytest.mark.asyncio
async def test_llm_transport_error_raises() -> None:
    def _boom(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    llm = LlmClient(
        model="chat-mini",
        api_base="http://llm.local/v1",
        transport=httpx.MockTransport(_boom),
    )
    with pytest.raises(CompletionUnavailableError):
        await llm.complete("prompt")
