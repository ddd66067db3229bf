"""
MCP-style schema server (JSON-RPC 2.0 over HTTP POST)

Lets external agents discover the queryable schema and run read-only
SQL through the same guard and executor the Exact path uses.

Methods:
    initialize
    tools/list
    tools/call      list_tables | describe_table | run_query
    resources/list
    resources/read  schema://<table>
    ping
Notifications (no id) are accepted and produce no response.
"""

import json
import logging
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError

from app.core import schemas
from app.core.config import settings
from app.ai_feature.errors import AgentError
from app.ai_feature.executor import ReadOnlyExecutor
from app.ai_feature.schema_catalog import SchemaCatalog, load_catalog
from app.ai_feature.sql_guard import validate_sql

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
SERVER_INFO = {"name": "askdata-schema", "version": "0.1.0"}

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602

TOOLS = [
    {
        "name": "list_tables",
        "description": "List the tables that can be queried.",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "describe_table",
        "description": "Columns, types and keys of one queryable table.",
        "inputSchema": {
            "type": "object",
            "properties": {"table": {"type": "string"}},
            "required": ["table"],
        },
    },
    {
        "name": "run_query",
        "description": "Run one read-only SELECT against the queryable tables.",
        "inputSchema": {
            "type": "object",
            "properties": {"sql": {"type": "string"}},
            "required": ["sql"],
        },
    },
]


class JsonRpcError(Exception):
    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def error_response(request_id: Any, code: int, message: str) -> Dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "error": {"code": code, "message": message},
    }


def _text_content(payload: Any, is_error: bool = False) -> Dict[str, Any]:
    text = payload if isinstance(payload, str) else json.dumps(payload, default=str)
    return {"content": [{"type": "text", "text": text}], "isError": is_error}


class SchemaServer:
    def __init__(self, executor: ReadOnlyExecutor, catalog: Optional[SchemaCatalog] = None):
        self.executor = executor
        self._catalog = catalog

    async def catalog(self) -> SchemaCatalog:
        if self._catalog is None:
            self._catalog = await load_catalog(
                self.executor.engine, settings.QUERYABLE_TABLES
            )
        return self._catalog

    # ------------------------------------------------------------------
    # Method handlers
    # ------------------------------------------------------------------

    async def _initialize(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"tools": {}, "resources": {}},
            "serverInfo": SERVER_INFO,
        }

    async def _ping(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {}

    async def _tools_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"tools": TOOLS}

    async def _tools_call(self, params: Dict[str, Any]) -> Dict[str, Any]:
        name = params.get("name")
        arguments = params.get("arguments") or {}
        if not isinstance(arguments, dict):
            raise JsonRpcError(INVALID_PARAMS, "arguments must be an object")

        catalog = await self.catalog()

        if name == "list_tables":
            return _text_content({"tables": catalog.table_names()})

        if name == "describe_table":
            table = arguments.get("table")
            if not isinstance(table, str) or not table:
                raise JsonRpcError(INVALID_PARAMS, "'table' is required")
            try:
                return _text_content(catalog.describe(table).to_dict())
            except KeyError:
                return _text_content(f"Unknown table: {table}", is_error=True)

        if name == "run_query":
            sql = arguments.get("sql")
            if not isinstance(sql, str):
                raise JsonRpcError(INVALID_PARAMS, "'sql' is required")
            # Tool failures are results, so the calling agent can repair its SQL
            try:
                statement = validate_sql(sql, catalog.table_names())
                result = await self.executor.run(statement)
            except AgentError as e:
                return _text_content(str(e), is_error=True)
            return _text_content(
                {
                    "columns": result.columns,
                    "rows": result.rows,
                    "truncated": result.truncated,
                }
            )

        raise JsonRpcError(INVALID_PARAMS, f"Unknown tool: {name}")

    async def _resources_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        catalog = await self.catalog()
        return {
            "resources": [
                {
                    "uri": f"schema://{name}",
                    "name": name,
                    "mimeType": "application/json",
                }
                for name in catalog.table_names()
            ]
        }

    async def _resources_read(self, params: Dict[str, Any]) -> Dict[str, Any]:
        uri = params.get("uri")
        if not isinstance(uri, str) or not uri.startswith("schema://"):
            raise JsonRpcError(INVALID_PARAMS, "uri must look like schema://<table>")
        catalog = await self.catalog()
        table = uri[len("schema://") :]
        try:
            info = catalog.describe(table)
        except KeyError:
            raise JsonRpcError(INVALID_PARAMS, f"Unknown resource: {uri}")
        return {
            "contents": [
                {
                    "uri": uri,
                    "mimeType": "application/json",
                    "text": json.dumps(info.to_dict()),
                }
            ]
        }

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _handlers(self) -> Dict[str, Callable]:
        return {
            "initialize": self._initialize,
            "ping": self._ping,
            "tools/list": self._tools_list,
            "tools/call": self._tools_call,
            "resources/list": self._resources_list,
            "resources/read": self._resources_read,
        }

    async def handle(self, message: Any) -> Optional[Dict[str, Any]]:
        """
        Handle one decoded JSON-RPC message.

        Returns the response object, or None for notifications.
        """
        if not isinstance(message, dict):
            return error_response(None, INVALID_REQUEST, "request must be an object")

        try:
            request = schemas.JsonRpcRequest.model_validate(message)
        except ValidationError as e:
            request_id = message.get("id")
            if not isinstance(request_id, (int, str)):
                request_id = None
            if all(err["loc"][:1] == ("params",) for err in e.errors()):
                return error_response(request_id, INVALID_PARAMS, "params must be an object")
            return error_response(request_id, INVALID_REQUEST, "invalid JSON-RPC request")

        if request.is_notification:
            logger.debug(f"MCP notification: {request.method}")
            return None

        handler = self._handlers().get(request.method)
        if handler is None:
            return error_response(
                request.id, METHOD_NOT_FOUND, f"Method not found: {request.method}"
            )

        try:
            result = await handler(request.params or {})
        except JsonRpcError as e:
            return error_response(request.id, e.code, e.message)

        return {"jsonrpc": "2.0", "id": request.id, "result": result}
