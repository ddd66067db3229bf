from fastapi import APIRouter
from app.api.endpoints import (
    ask,
    auth,
    conversations,
    documents,
    etl,
    mcp,
    schema,
    users,
)

api_router = APIRouter()

# Combine all sub-routers into one
# auth before users: /profile/me must win over /profile/{user_id}
api_router.include_router(auth.router)
api_router.include_router(users.router)
api_router.include_router(ask.router)
api_router.include_router(conversations.router)
api_router.include_router(documents.router)
api_router.include_router(schema.router)
api_router.include_router(mcp.router)
api_router.include_router(etl.router)
