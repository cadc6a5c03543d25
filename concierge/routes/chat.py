from __future__ import annotations
"""
Concierge — Organization Chat Routes
"""
import json
import logging

from fastapi import APIRouter, Header, HTTPException, Request
from fastapi.responses import StreamingResponse

import concierge.database as database
from concierge.chat_engine import run_chat_turn
from concierge.models import ChatRequest, FieldResetRequest
from concierge.onboarding_engine import OnboardingEngine, SqliteFactStore
from concierge.routes.auth import require_user

logger = logging.getLogger(__name__)

router = APIRouter()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def sse_frame(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def get_onboarding_engine(request: Request) -> OnboardingEngine:
    return OnboardingEngine(SqliteFactStore(), request.app.state.generator)


# ===========================================================================
# Routes: Organization chat (streaming)
# ===========================================================================

@router.post("/api/organization-chat")
async def organization_chat(
    req: ChatRequest,
    request: Request,
    authorization: str | None = Header(default=None),
):
    """Run one onboarding/business chat turn and stream it as SSE frames."""
    user = await require_user(authorization)
    organization = await database.ensure_user_has_organization(user)
    engine = get_onboarding_engine(request)
    messages = [m.model_dump() for m in req.messages]

    logger.info(f"[chat] Turn for org {organization['id']} ({len(messages)} messages, locale={req.locale})")

    async def event_generator():
        async for kind, payload in run_chat_turn(organization, messages, engine, req.locale):
            if kind == "phase":
                yield sse_frame("phase", {"name": payload})
            elif kind == "result":
                yield sse_frame("result", payload)
                return
            elif kind == "error":
                yield sse_frame("error", {"message": payload})
                return

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


# ===========================================================================
# Routes: Onboarding status
# ===========================================================================

@router.get("/api/onboarding-status")
async def onboarding_status(
    request: Request,
    authorization: str | None = Header(default=None),
):
    """Progress, completion state and the current question for the user's organization."""
    user = await require_user(authorization)
    organization = await database.ensure_user_has_organization(user)
    engine = get_onboarding_engine(request)

    progress = await engine.progress(organization["id"])
    current = await engine.current_question(organization["id"])
    return {
        "organization_id": organization["id"],
        "website_scraping_state": organization["website_scraping_state"],
        "progress": progress,
        "setup_completed": progress["completed"],
        "current_question": (
            {
                "field_name": current["field_name"],
                "question": current["question_template"],
                "multiple_choices": current["choices"],
                "allow_multiple": current["allow_multiple"],
            }
            if current
            else None
        ),
    }


@router.post("/api/onboarding/reset-field")
async def onboarding_reset_field(
    req: FieldResetRequest,
    request: Request,
    authorization: str | None = Header(default=None),
):
    """Reopen an answered business field so the assistant asks it again."""
    user = await require_user(authorization)
    organization = await database.ensure_user_has_organization(user)
    engine = get_onboarding_engine(request)

    if not await engine.reset_field(organization["id"], req.field_name):
        raise HTTPException(status_code=404, detail="Answered field not found")
    return {"success": True, "field_name": req.field_name}
