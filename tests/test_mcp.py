import json

import pytest
from httpx import AsyncClient


def rpc(method, params=None, request_id=1):
    message = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


async def call(client, headers, message):
    response = await client.post("/mcp", json=message, headers=headers)
    assert response.status_code == 200
    return response.json()


@pytest.mark.asyncio
async def test_initialize(client: AsyncClient, auth_headers_user):
    reply = await call(client, auth_headers_user, rpc("initialize"))

    assert reply["id"] == 1
    assert reply["result"]["protocolVersion"] == "2024-11-05"
    assert reply["result"]["serverInfo"]["name"] == "askdata-schema"


@pytest.mark.asyncio
async def test_tools_list(client: AsyncClient, auth_headers_user):
    reply = await call(client, auth_headers_user, rpc("tools/list"))

    names = [tool["name"] for tool in reply["result"]["tools"]]
    assert names == ["list_tables", "describe_table", "run_query"]


@pytest.mark.asyncio
async def test_list_and_describe_tables(client: AsyncClient, auth_headers_user):
    reply = await call(
        client, auth_headers_user, rpc("tools/call", {"name": "list_tables"})
    )
    content = json.loads(reply["result"]["content"][0]["text"])
    assert content == {"tables": ["daily_changes_snapshot"]}

    reply = await call(
        client,
        auth_headers_user,
        rpc(
            "tools/call",
            {"name": "describe_table", "arguments": {"table": "daily_changes_snapshot"}},
        ),
    )
    table = json.loads(reply["result"]["content"][0]["text"])
    assert table["name"] == "daily_changes_snapshot"
    assert "metric" in [c["name"] for c in table["columns"]]


@pytest.mark.asyncio
async def test_describe_unknown_table_is_tool_error(
    client: AsyncClient, auth_headers_user
):
    reply = await call(
        client,
        auth_headers_user,
        rpc("tools/call", {"name": "describe_table", "arguments": {"table": "users_table"}}),
    )

    assert reply["result"]["isError"] is True
    assert "users_table" in reply["result"]["content"][0]["text"]


@pytest.mark.asyncio
async def test_run_query(client: AsyncClient, auth_headers_user, snapshot_rows):
    reply = await call(
        client,
        auth_headers_user,
        rpc(
            "tools/call",
            {
                "name": "run_query",
                "arguments": {
                    "sql": "SELECT COUNT(*) AS n FROM daily_changes_snapshot WHERE entity = 'Store A'"
                },
            },
        ),
    )

    assert reply["result"]["isError"] is False
    payload = json.loads(reply["result"]["content"][0]["text"])
    assert payload == {"columns": ["n"], "rows": [[10]], "truncated": False}


@pytest.mark.asyncio
async def test_run_query_rejects_writes(client: AsyncClient, auth_headers_user):
    reply = await call(
        client,
        auth_headers_user,
        rpc(
            "tools/call",
            {"name": "run_query", "arguments": {"sql": "DROP TABLE users_table"}},
        ),
    )

    assert reply["result"]["isError"] is True
    assert reply["result"]["content"][0]["text"].startswith("not_select")


@pytest.mark.asyncio
async def test_resources(client: AsyncClient, auth_headers_user):
    listed = await call(client, auth_headers_user, rpc("resources/list"))
    uris = [r["uri"] for r in listed["result"]["resources"]]
    assert uris == ["schema://daily_changes_snapshot"]

    read = await call(
        client, auth_headers_user, rpc("resources/read", {"uri": uris[0]})
    )
    contents = read["result"]["contents"][0]
    assert contents["uri"] == uris[0]
    assert json.loads(contents["text"])["name"] == "daily_changes_snapshot"

    missing = await call(
        client, auth_headers_user, rpc("resources/read", {"uri": "schema://users_table"})
    )
    assert missing["error"]["code"] == -32602


@pytest.mark.asyncio
async def test_protocol_errors(client: AsyncClient, auth_headers_user):
    unknown = await call(client, auth_headers_user, rpc("tools/destroy"))
    assert unknown["error"]["code"] == -32601

    bad_params = await call(
        client, auth_headers_user, rpc("tools/call", {"name": "explode"})
    )
    assert bad_params["error"]["code"] == -32602

    not_rpc = await call(client, auth_headers_user, {"id": 7, "method": "ping"})
    assert not_rpc["error"]["code"] == -32600
    assert not_rpc["id"] == 7

    list_params = await call(
        client,
        auth_headers_user,
        {"jsonrpc": "2.0", "id": 3, "method": "tools/list", "params": [1]},
    )
    assert list_params["error"]["code"] == -32602
    assert list_params["id"] == 3

    bad_method = await call(
        client, auth_headers_user, {"jsonrpc": "2.0", "id": 4, "method": 42}
    )
    assert bad_method["error"]["code"] == -32600

    response = await client.post(
        "/mcp", content=b"{not json", headers=auth_headers_user
    )
    assert response.json()["error"]["code"] == -32700


@pytest.mark.asyncio
async def test_notification_gets_no_body(client: AsyncClient, auth_headers_user):
    response = await client.post(
        "/mcp",
        json={"jsonrpc": "2.0", "method": "notifications/initialized"},
        headers=auth_headers_user,
    )
    assert response.status_code == 202


@pytest.mark.asyncio
async def test_null_id_is_a_request_not_a_notification(
    client: AsyncClient, auth_headers_user
):
    reply = await call(
        client, auth_headers_user, {"jsonrpc": "2.0", "id": None, "method": "ping"}
    )
    assert reply == {"jsonrpc": "2.0", "id": None, "result": {}}


@pytest.mark.asyncio
async def test_mcp_requires_login(client: AsyncClient):
    response = await client.post("/mcp", json=rpc("ping"))
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_run_query_cannot_read_hidden_tables(
    client: AsyncClient, auth_headers_user
):
    for sql in (
        "SELECT email, password FROM (users_table)",
        "SELECT * FROM daily_changes_snapshot JOIN (users_table) ON 1=1",
    ):
        reply = await call(
            client,
            auth_headers_user,
            rpc("tools/call", {"name": "run_query", "arguments": {"sql": sql}}),
        )

        assert reply["result"]["isError"] is True
        text = reply["result"]["content"][0]["text"]
        assert text.startswith("unknown_table")
        assert "$2b$" not in text
