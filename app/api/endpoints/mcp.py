import json
from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse

from app.core import models
from app.core.security import get_current_user
from app.ai_feature.executor import ReadOnlyExecutor, get_executor
from app.ai_feature.mcp import PARSE_ERROR, SchemaServer, error_response

router = APIRouter(tags=["MCP"])

user_dep = Annotated[models.User, Depends(get_current_user)]
executor_dep = Annotated[ReadOnlyExecutor, Depends(get_executor)]


@router.post("/mcp")
async def mcp_endpoint(request: Request, current_user: user_dep, executor: executor_dep):
    """
    JSON-RPC 2.0 endpoint exposing the queryable schema to MCP clients.

    Always answers HTTP 200 with a JSON-RPC body; notifications get 202.
    """
    try:
        message = json.loads(await request.body())
    except ValueError:
        return JSONResponse(error_response(None, PARSE_ERROR, "Parse error"))

    server = SchemaServer(executor)
    reply = await server.handle(message)
    if reply is None:
        return Response(status_code=status.HTTP_202_ACCEPTED)
    return JSONResponse(reply)
