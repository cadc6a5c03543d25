from __future__ import annotations
"""
Concierge — Authentication Routes
"""
import logging
import random
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Header, HTTPException

import concierge.database as database
from concierge.email_utils import is_email_configured, send_auth_code
from concierge.models import AuthSendCodeRequest, AuthVerifyCodeRequest

logger = logging.getLogger(__name__)

router = APIRouter()

CODE_TTL_MINUTES = 10
SESSION_TTL_DAYS = 90
MAX_CODES_PER_HOUR = 3


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization.replace("Bearer ", "", 1).strip() or None


async def get_current_user(authorization: str | None) -> dict | None:
    token = _bearer_token(authorization)
    if token is None:
        return None
    return await database.get_user_by_token(token)


async def require_user(authorization: str | None) -> dict:
    user = await get_current_user(authorization)
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


def is_valid_email(email: str) -> bool:
    return "@" in email and "." in email.split("@")[-1] and not email.startswith("@")


def _user_payload(user: dict) -> dict:
    return {"user_id": user["id"], "email": user["email"], "name": user["name"]}


# ===========================================================================
# Routes: Passwordless Authentication
# ===========================================================================

@router.post("/api/auth/otp/send")
async def auth_send_code(req: AuthSendCodeRequest):
    """Send a 6-digit sign-in code to the user's email."""
    email = req.email.strip().lower()
    if not is_valid_email(email):
        raise HTTPException(status_code=422, detail="Invalid email address")

    # Rate limiting: max 3 codes per email per hour
    one_hour_ago = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()
    recent_count = await database.count_recent_auth_codes(email, one_hour_ago)
    if recent_count >= MAX_CODES_PER_HOUR:
        raise HTTPException(status_code=429, detail="Too many codes requested. Try again later.")

    name = (req.name or "").strip() or None
    await database.get_or_create_user(email, name)

    code = f"{random.randint(0, 999999):06d}"
    expires_at = (datetime.now(timezone.utc) + timedelta(minutes=CODE_TTL_MINUTES)).isoformat()
    await database.create_auth_code(email, code, expires_at)

    if is_email_configured():
        if not send_auth_code(email, code, name):
            logger.warning(f"[auth] Failed to send code to {email}")
            raise HTTPException(status_code=502, detail="Failed to send verification code")
    else:
        logger.info(f"[auth] SMTP not configured, code for {email}: {code}")

    logger.info(f"[auth] {'Resent' if req.resend else 'Sent'} code to {email}")
    return {"success": True, "message": "Code sent to your email"}


@router.post("/api/auth/otp/verify")
async def auth_verify_code(req: AuthVerifyCodeRequest):
    """Verify a 6-digit code and return a session token."""
    email = req.email.strip().lower()
    code = req.code.strip()

    valid = await database.verify_auth_code(email, code)
    if not valid:
        return {"success": False, "message": "Invalid or expired code"}

    user = await database.get_user_by_email(email)
    if user is None:
        raise HTTPException(status_code=500, detail="User record not found after verification")

    expires_at = (datetime.now(timezone.utc) + timedelta(days=SESSION_TTL_DAYS)).isoformat()
    token = await database.create_auth_session(user["id"], expires_at)
    logger.info(f"[auth] {email} signed in")

    return {"success": True, "token": token, **_user_payload(user)}


@router.post("/api/auth/refresh")
async def auth_refresh(authorization: str | None = Header(default=None)):
    """Swap a valid session token for a fresh one."""
    token = _bearer_token(authorization)
    user = await database.get_user_by_token(token) if token else None
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")

    expires_at = (datetime.now(timezone.utc) + timedelta(days=SESSION_TTL_DAYS)).isoformat()
    new_token = await database.create_auth_session(user["id"], expires_at)
    await database.delete_auth_session(token)
    return {"success": True, "token": new_token, **_user_payload(user)}


@router.post("/api/auth/logout")
async def auth_logout(authorization: str | None = Header(default=None)):
    """Invalidate the current session token."""
    token = _bearer_token(authorization)
    if token:
        await database.delete_auth_session(token)
    return {"success": True}


@router.get("/api/auth/me")
async def auth_me(authorization: str | None = Header(default=None)):
    """Get the current authenticated user, or 401."""
    user = await require_user(authorization)
    return _user_payload(user)
