import json

import httpx
import pytest

from app.ai_feature.errors import LLMError
from app.ai_feature.llm import LLMClient, extract_json, extract_sql


def test_extract_json_plain_and_fenced():
    assert extract_json('{"path": "exact"}') == {"path": "exact"}
    assert extract_json('```json\n{"path": "insight"}\n```') == {"path": "insight"}


def test_extract_json_inside_prose():
    reply = 'Sure! Here it is: {"metric": "revenue", "horizon_days": 14} Hope that helps.'
    assert extract_json(reply) == {"metric": "revenue", "horizon_days": 14}


def test_extract_json_rejects_non_objects():
    assert extract_json("[1, 2, 3]") is None
    assert extract_json("no json here") is None
    assert extract_json("") is None


def test_extract_sql_from_fenced_reply():
    reply = "Here you go:\n```sql\nSELECT 1;\n```\nNotes: counts rows"
    assert extract_sql(reply) == "SELECT 1"


def test_extract_sql_drops_leading_prose_and_notes():
    reply = "The query is\nWITH x AS (SELECT 1) SELECT * FROM x\nNote: trivial"
    assert extract_sql(reply) == "WITH x AS (SELECT 1) SELECT * FROM x"


def test_extract_sql_keeps_non_select_for_the_guard():
    assert extract_sql("DROP TABLE users_table;") == "DROP TABLE users_table"


def use_transport(monkeypatch, handler):
    real_client = httpx.AsyncClient

    def client_factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(httpx, "AsyncClient", client_factory)


def completion(content):
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


@pytest.mark.asyncio
async def test_azure_request_shape(monkeypatch):
    seen = {}

    def handler(request: httpx.Request):
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=completion("SELECT 1"))

    use_transport(monkeypatch, handler)
    client = LLMClient(
        endpoint="https://example.openai.azure.com/",
        api_key="secret",
        deployment="gpt-4o",
        api_version="2024-06-01",
    )

    reply = await client.complete([{"role": "user", "content": "hi"}], json_mode=True)

    assert reply == "SELECT 1"
    assert seen["url"] == (
        "https://example.openai.azure.com/openai/deployments/gpt-4o"
        "/chat/completions?api-version=2024-06-01"
    )
    assert seen["headers"]["api-key"] == "secret"
    assert seen["body"]["response_format"] == {"type": "json_object"}
    assert "model" not in seen["body"]


@pytest.mark.asyncio
async def test_openai_compatible_request_shape(monkeypatch):
    seen = {}

    def handler(request: httpx.Request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=completion("ok"))

    use_transport(monkeypatch, handler)
    client = LLMClient(
        endpoint="http://localhost:11434/v1",
        api_key="token",
        deployment="llama3",
        api_version="",
    )

    assert await client.complete([{"role": "user", "content": "hi"}]) == "ok"
    assert seen["url"] == "http://localhost:11434/v1/chat/completions"
    assert seen["auth"] == "Bearer token"
    assert seen["body"]["model"] == "llama3"
    assert seen["body"]["temperature"] == 0


@pytest.mark.asyncio
async def test_http_error_becomes_llm_error(monkeypatch):
    use_transport(monkeypatch, lambda request: httpx.Response(503, text="busy"))
    client = LLMClient(endpoint="http://llm.local", api_version="")

    with pytest.raises(LLMError, match="503"):
        await client.complete([{"role": "user", "content": "hi"}])


@pytest.mark.asyncio
async def test_empty_reply_becomes_llm_error(monkeypatch):
    use_transport(monkeypatch, lambda request: httpx.Response(200, json={"choices": []}))
    client = LLMClient(endpoint="http://llm.local", api_version="")

    with pytest.raises(LLMError):
        await client.complete([{"role": "user", "content": "hi"}])


@pytest.mark.asyncio
async def test_missing_endpoint():
    client = LLMClient(endpoint="", api_version="")
    client.endpoint = ""

    with pytest.raises(LLMError, match="not configured"):
        await client.complete([{"role": "user", "content": "hi"}])
