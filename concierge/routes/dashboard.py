from __future__ import annotations
"""
Concierge — Dashboard Data Routes
"""
from fastapi import APIRouter, Header, HTTPException

import concierge.database as database
from concierge.models import AgentCreateRequest
from concierge.routes.auth import require_user

router = APIRouter()


@router.post("/api/organizations/ensure")
async def ensure_organization(authorization: str | None = Header(default=None)):
    """Return the user's organization, creating one on first sign-in."""
    user = await require_user(authorization)
    return await database.ensure_user_has_organization(user)


@router.get("/api/organizations/current")
async def current_organization(authorization: str | None = Header(default=None)):
    user = await require_user(authorization)
    organization = await database.get_current_organization(user["id"])
    if organization is None:
        raise HTTPException(status_code=404, detail="No organization")
    return organization


@router.get("/api/agents")
async def list_agents(authorization: str | None = Header(default=None)):
    user = await require_user(authorization)
    organization = await database.get_current_organization(user["id"])
    if organization is None:
        return {"agents": []}
    return {"agents": await database.list_agents(organization["id"])}


@router.post("/api/agents")
async def create_agent(req: AgentCreateRequest, authorization: str | None = Header(default=None)):
    user = await require_user(authorization)
    organization = await database.ensure_user_has_organization(user)
    return await database.create_agent(organization["id"], req.name.strip())


@router.get("/api/subscription")
async def get_subscription(authorization: str | None = Header(default=None)):
    user = await require_user(authorization)
    return {"subscription": await database.get_subscription(user["id"])}
