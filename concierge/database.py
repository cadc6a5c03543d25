from __future__ import annotations
"""
Concierge — Database Layer
==========================
Async SQLite storage for identities, organizations, and the business-info
fact store that drives onboarding.
"""

import json
import logging
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Database path (set by main.py at startup)
# ---------------------------------------------------------------------------
_db_path: str = ""


def set_db_path(path: str):
    global _db_path
    _db_path = path


def _get_db_path() -> str:
    if not _db_path:
        raise RuntimeError("Database path not set. Call set_db_path() first.")
    return _db_path


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ===========================================================================
# Initialization
# ===========================================================================

async def init_db():
    """Create tables if they don't exist."""
    Path(_get_db_path()).parent.mkdir(parents=True, exist_ok=True)

    async with aiosqlite.connect(_get_db_path()) as db:
        # --- Users (passwordless auth) ---
        await db.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                email TEXT UNIQUE NOT NULL,
                name TEXT,
                email_verified BOOLEAN DEFAULT FALSE,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                last_login_at TIMESTAMP
            )
        """)

        # --- Auth Codes (one-time passcodes) ---
        await db.execute("""
            CREATE TABLE IF NOT EXISTS auth_codes (
                id TEXT PRIMARY KEY,
                email TEXT NOT NULL,
                code TEXT NOT NULL,
                expires_at TIMESTAMP NOT NULL,
                used BOOLEAN DEFAULT FALSE,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # --- Auth Sessions (bearer tokens) ---
        await db.execute("""
            CREATE TABLE IF NOT EXISTS auth_sessions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES users(id),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                expires_at TIMESTAMP NOT NULL
            )
        """)

        # --- Organizations ---
        await db.execute("""
            CREATE TABLE IF NOT EXISTS organizations (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                slug TEXT UNIQUE NOT NULL,
                owner_id TEXT NOT NULL REFERENCES users(id),
                website_scraping_state TEXT NOT NULL DEFAULT 'pending',
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS team_members (
                id TEXT PRIMARY KEY,
                organization_id TEXT NOT NULL REFERENCES organizations(id),
                user_id TEXT NOT NULL REFERENCES users(id),
                role TEXT NOT NULL DEFAULT 'member',
                status TEXT NOT NULL DEFAULT 'active',
                joined_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(organization_id, user_id)
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS agents (
                id TEXT PRIMARY KEY,
                organization_id TEXT NOT NULL REFERENCES organizations(id),
                name TEXT NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS user_subscriptions (
                id TEXT PRIMARY KEY,
                user_id TEXT UNIQUE NOT NULL REFERENCES users(id),
                plan_name TEXT NOT NULL DEFAULT 'free',
                status TEXT NOT NULL DEFAULT 'active',
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # --- Business info fields (the onboarding fact store) ---
        await db.execute("""
            CREATE TABLE IF NOT EXISTS business_info_fields (
                id TEXT PRIMARY KEY,
                organization_id TEXT NOT NULL REFERENCES organizations(id),
                field_name TEXT NOT NULL,
                field_type TEXT NOT NULL DEFAULT 'text',
                is_answered BOOLEAN NOT NULL DEFAULT FALSE,
                field_value TEXT,
                confidence REAL,
                question_template TEXT NOT NULL,
                multiple_choices TEXT,
                allow_multiple BOOLEAN DEFAULT FALSE,
                source TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(organization_id, field_name)
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS setup_completion (
                organization_id TEXT PRIMARY KEY REFERENCES organizations(id),
                setup_status TEXT NOT NULL DEFAULT 'in_progress',
                completed_at TIMESTAMP,
                completion_data TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS llm_usage (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                organization_id TEXT,
                phase TEXT,
                model TEXT,
                input_tokens INTEGER,
                output_tokens INTEGER,
                estimated_cost_usd REAL,
                timestamp DATETIME DEFAULT CURRENT_TIMESTAMP
            )
        """)

        await db.commit()


# ===========================================================================
# LLM Usage Tracking
# ===========================================================================

# Approximate costs per 1M tokens (USD)
_MODEL_COSTS = {
    "claude-sonnet-4-20250514": {"input": 3.0, "output": 15.0},
    "claude-sonnet-4-5-20250929": {"input": 3.0, "output": 15.0},
    "claude-haiku-4-5-20251001": {"input": 1.0, "output": 5.0},
}


async def log_llm_usage(
    response_usage,
    model: str,
    phase: str,
    organization_id: str | None = None,
) -> None:
    """Persist a single LLM call's token usage.

    Args:
        response_usage: The ``response.usage`` object from the Anthropic SDK.
        model: Model identifier string.
        phase: One of 'questions', 'extraction', 'reply', 'website'.
    """
    input_tokens = getattr(response_usage, "input_tokens", 0)
    output_tokens = getattr(response_usage, "output_tokens", 0)

    costs = _MODEL_COSTS.get(model, {"input": 3.0, "output": 15.0})
    estimated_cost = (input_tokens * costs["input"] + output_tokens * costs["output"]) / 1_000_000

    try:
        async with aiosqlite.connect(_get_db_path()) as db:
            await db.execute(
                """INSERT INTO llm_usage
                   (organization_id, phase, model, input_tokens, output_tokens, estimated_cost_usd)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (organization_id, phase, model, input_tokens, output_tokens, estimated_cost),
            )
            await db.commit()
    except Exception as e:
        logger.warning(f"[usage] Failed to record LLM usage: {e}")


# ===========================================================================
# Users & Authentication
# ===========================================================================

def _user_from_row(row) -> dict:
    return {
        "id": row["id"],
        "email": row["email"],
        "name": row["name"],
        "email_verified": bool(row["email_verified"]),
        "created_at": row["created_at"],
        "last_login_at": row["last_login_at"],
    }


async def get_or_create_user(email: str, name: str | None = None) -> dict:
    """Get an existing user or create a new one by email."""
    async with aiosqlite.connect(_get_db_path()) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            "SELECT * FROM users WHERE email = ?", (email,)
        )
        row = await cursor.fetchone()

        if row:
            if name and not row["name"]:
                await db.execute("UPDATE users SET name = ? WHERE id = ?", (name, row["id"]))
                await db.commit()
                user = _user_from_row(row)
                user["name"] = name
                return user
            return _user_from_row(row)

        user_id = str(uuid.uuid4())
        now = _now()
        await db.execute(
            "INSERT INTO users (id, email, name, created_at) VALUES (?, ?, ?, ?)",
            (user_id, email, name, now),
        )
        await db.commit()

    return {
        "id": user_id,
        "email": email,
        "name": name,
        "email_verified": False,
        "created_at": now,
        "last_login_at": None,
    }


async def create_auth_code(email: str, code: str, expires_at: str) -> dict:
    """Store a 6-digit auth code for passwordless login."""
    code_id = str(uuid.uuid4())
    now = _now()

    async with aiosqlite.connect(_get_db_path()) as db:
        await db.execute(
            """
            INSERT INTO auth_codes (id, email, code, expires_at, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (code_id, email, code, expires_at, now),
        )
        await db.commit()

    return {"id": code_id, "email": email, "expires_at": expires_at}


async def verify_auth_code(email: str, code: str) -> bool:
    """Check if a valid, unused, unexpired auth code exists for this email."""
    now = _now()

    async with aiosqlite.connect(_get_db_path()) as db:
        cursor = await db.execute(
            """
            SELECT id FROM auth_codes
            WHERE email = ? AND code = ? AND used = FALSE AND expires_at > ?
            ORDER BY created_at DESC LIMIT 1
            """,
            (email, code, now),
        )
        row = await cursor.fetchone()

        if row is None:
            return False

        await db.execute(
            "UPDATE auth_codes SET used = TRUE WHERE id = ?", (row[0],)
        )
        await db.execute(
            "UPDATE users SET email_verified = TRUE, last_login_at = ? WHERE email = ?",
            (now, email),
        )
        await db.commit()

    return True


async def count_recent_auth_codes(email: str, since: str) -> int:
    """Count auth codes sent to an email since a given timestamp (rate limiting)."""
    async with aiosqlite.connect(_get_db_path()) as db:
        cursor = await db.execute(
            "SELECT COUNT(*) FROM auth_codes WHERE email = ? AND created_at > ?",
            (email, since),
        )
        return (await cursor.fetchone())[0]


async def create_auth_session(user_id: str, expires_at: str) -> str:
    """Create a bearer-token session. Returns the token (which is the row ID)."""
    token = str(uuid.uuid4())

    async with aiosqlite.connect(_get_db_path()) as db:
        await db.execute(
            """
            INSERT INTO auth_sessions (id, user_id, created_at, expires_at)
            VALUES (?, ?, ?, ?)
            """,
            (token, user_id, _now(), expires_at),
        )
        await db.commit()

    return token


async def get_user_by_token(token: str) -> dict | None:
    """Look up a user by their session token. Returns None if invalid/expired."""
    async with aiosqlite.connect(_get_db_path()) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            """
            SELECT u.* FROM auth_sessions s
            JOIN users u ON s.user_id = u.id
            WHERE s.id = ? AND s.expires_at > ?
            """,
            (token, _now()),
        )
        row = await cursor.fetchone()

    if row is None:
        return None
    return _user_from_row(row)


async def delete_auth_session(token: str) -> bool:
    """Delete a session token (logout)."""
    async with aiosqlite.connect(_get_db_path()) as db:
        cursor = await db.execute(
            "DELETE FROM auth_sessions WHERE id = ?", (token,)
        )
        await db.commit()
        return cursor.rowcount > 0


async def get_user_by_email(email: str) -> dict | None:
    """Look up a user by email."""
    async with aiosqlite.connect(_get_db_path()) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            "SELECT * FROM users WHERE email = ?", (email,)
        )
        row = await cursor.fetchone()

    if row is None:
        return None
    return _user_from_row(row)


# ===========================================================================
# Organizations, Agents, Subscriptions
# ===========================================================================

def generate_slug_from_name(name: str) -> str:
    """Lowercase, hyphen-separated URL slug for an organization name."""
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug[:60].strip("-") or "organization"


async def _unique_slug(db, base: str, exclude_id: str | None = None) -> str:
    slug = base
    suffix = 2
    while True:
        cursor = await db.execute(
            "SELECT id FROM organizations WHERE slug = ? AND id != ?",
            (slug, exclude_id or ""),
        )
        if await cursor.fetchone() is None:
            return slug
        slug = f"{base}-{suffix}"
        suffix += 1


def _organization_from_row(row) -> dict:
    return {
        "id": row["id"],
        "name": row["name"],
        "slug": row["slug"],
        "owner_id": row["owner_id"],
        "website_scraping_state": row["website_scraping_state"],
        "created_at": row["created_at"],
    }


async def get_organization(organization_id: str) -> dict | None:
    async with aiosqlite.connect(_get_db_path()) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            "SELECT * FROM organizations WHERE id = ?", (organization_id,)
        )
        row = await cursor.fetchone()
    return _organization_from_row(row) if row else None


async def _current_organization(db, user_id: str) -> dict | None:
    db.row_factory = aiosqlite.Row
    cursor = await db.execute(
        """
        SELECT o.* FROM team_members m
        JOIN organizations o ON o.id = m.organization_id
        WHERE m.user_id = ? AND m.status = 'active'
        ORDER BY m.joined_at ASC, m.rowid ASC
        LIMIT 1
        """,
        (user_id,),
    )
    row = await cursor.fetchone()
    return _organization_from_row(row) if row else None


async def get_current_organization(user_id: str) -> dict | None:
    """Earliest active membership of a user, or None."""
    async with aiosqlite.connect(_get_db_path()) as db:
        return await _current_organization(db, user_id)


async def ensure_user_has_organization(user: dict) -> dict:
    """Return the user's organization, creating an owned one if needed.

    The membership check, slug choice and inserts share one write transaction.
    """
    email_prefix = (user.get("email") or "user").split("@")[0] or "user"
    name = f"{email_prefix}'s Organization"
    org_id = str(uuid.uuid4())
    now = _now()

    async with aiosqlite.connect(_get_db_path()) as db:
        # Takes the write lock up front; a second caller waits here
        await db.execute("BEGIN IMMEDIATE")
        existing = await _current_organization(db, user["id"])
        if existing:
            await db.rollback()
            return existing

        slug = await _unique_slug(db, generate_slug_from_name(name))
        await db.execute(
            """
            INSERT INTO organizations (id, name, slug, owner_id, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (org_id, name, slug, user["id"], now, now),
        )
        await db.execute(
            """
            INSERT INTO team_members (id, organization_id, user_id, role, status, joined_at)
            VALUES (?, ?, ?, 'owner', 'active', ?)
            """,
            (str(uuid.uuid4()), org_id, user["id"], now),
        )
        await db.commit()

    logger.info(f"[db] Created organization {slug} for user {user['id']}")
    return {
        "id": org_id,
        "name": name,
        "slug": slug,
        "owner_id": user["id"],
        "website_scraping_state": "pending",
        "created_at": now,
    }


async def update_organization_identity(organization_id: str, name: str) -> dict | None:
    """Rename an organization and regenerate its slug."""
    async with aiosqlite.connect(_get_db_path()) as db:
        await db.execute("BEGIN IMMEDIATE")
        slug = await _unique_slug(db, generate_slug_from_name(name), exclude_id=organization_id)
        cursor = await db.execute(
            "UPDATE organizations SET name = ?, slug = ?, updated_at = ? WHERE id = ?",
            (name, slug, _now(), organization_id),
        )
        await db.commit()
        if cursor.rowcount == 0:
            return None
    return {"id": organization_id, "name": name, "slug": slug}


async def set_website_scraping_state(organization_id: str, state: str) -> bool:
    async with aiosqlite.connect(_get_db_path()) as db:
        cursor = await db.execute(
            "UPDATE organizations SET website_scraping_state = ?, updated_at = ? WHERE id = ?",
            (state, _now(), organization_id),
        )
        await db.commit()
        return cursor.rowcount > 0


async def list_agents(organization_id: str) -> list[dict]:
    async with aiosqlite.connect(_get_db_path()) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            "SELECT * FROM agents WHERE organization_id = ? ORDER BY created_at DESC",
            (organization_id,),
        )
        rows = await cursor.fetchall()
    return [
        {
            "id": r["id"],
            "organization_id": r["organization_id"],
            "name": r["name"],
            "created_at": r["created_at"],
        }
        for r in rows
    ]


async def create_agent(organization_id: str, name: str) -> dict:
    agent_id = str(uuid.uuid4())
    now = _now()
    async with aiosqlite.connect(_get_db_path()) as db:
        await db.execute(
            "INSERT INTO agents (id, organization_id, name, created_at) VALUES (?, ?, ?, ?)",
            (agent_id, organization_id, name, now),
        )
        await db.commit()
    return {"id": agent_id, "organization_id": organization_id, "name": name, "created_at": now}


async def get_subscription(user_id: str) -> dict | None:
    async with aiosqlite.connect(_get_db_path()) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            "SELECT * FROM user_subscriptions WHERE user_id = ?", (user_id,)
        )
        row = await cursor.fetchone()
    if row is None:
        return None
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "plan_name": row["plan_name"],
        "status": row["status"],
        "created_at": row["created_at"],
    }


# ===========================================================================
# Business Info Fields
# ===========================================================================

def _field_from_row(row) -> dict:
    return {
        "organization_id": row["organization_id"],
        "field_name": row["field_name"],
        "field_type": row["field_type"],
        "is_answered": bool(row["is_answered"]),
        "value": row["field_value"],
        "confidence": row["confidence"],
        "question_template": row["question_template"],
        "choices": json.loads(row["multiple_choices"]) if row["multiple_choices"] else None,
        "allow_multiple": bool(row["allow_multiple"]),
        "source": row["source"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


async def list_business_fields(organization_id: str, answered: bool | None = None) -> list[dict]:
    """All fields for an organization in insertion order, optionally filtered."""
    query = "SELECT * FROM business_info_fields WHERE organization_id = ?"
    params: tuple = (organization_id,)
    if answered is not None:
        query += " AND is_answered = ?"
        params += (answered,)
    query += " ORDER BY created_at ASC, rowid ASC"

    async with aiosqlite.connect(_get_db_path()) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(query, params)
        rows = await cursor.fetchall()
    return [_field_from_row(r) for r in rows]


async def insert_business_fields(organization_id: str, fields: list[dict]) -> int:
    """Insert unanswered question fields. Existing field names are left untouched.

    Returns the number of rows actually inserted.
    """
    now = _now()
    inserted = 0
    async with aiosqlite.connect(_get_db_path()) as db:
        for f in fields:
            choices = f.get("choices")
            cursor = await db.execute(
                """
                INSERT OR IGNORE INTO business_info_fields
                    (id, organization_id, field_name, field_type, is_answered,
                     question_template, multiple_choices, allow_multiple, source,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, FALSE, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(uuid.uuid4()),
                    organization_id,
                    f["field_name"],
                    f.get("field_type") or "text",
                    f["question_template"],
                    json.dumps(choices) if choices else None,
                    bool(f.get("allow_multiple", False)),
                    f.get("source"),
                    now,
                    now,
                ),
            )
            inserted += cursor.rowcount
        await db.commit()
    return inserted


async def mark_business_field_answered(
    organization_id: str,
    field_name: str,
    value: str,
    confidence: float,
    source: str = "conversation",
) -> bool:
    """Answer a field only if it is still unanswered. Returns True if this call wrote it."""
    async with aiosqlite.connect(_get_db_path()) as db:
        cursor = await db.execute(
            """
            UPDATE business_info_fields
            SET field_value = ?, confidence = ?, is_answered = TRUE, source = ?, updated_at = ?
            WHERE organization_id = ? AND field_name = ? AND is_answered = FALSE
            """,
            (value, confidence, source, _now(), organization_id, field_name),
        )
        await db.commit()
        return cursor.rowcount > 0


async def reset_business_field(organization_id: str, field_name: str) -> bool:
    """Put an answered field back in the queue so it can be asked again."""
    async with aiosqlite.connect(_get_db_path()) as db:
        cursor = await db.execute(
            """
            UPDATE business_info_fields
            SET field_value = NULL, confidence = NULL, is_answered = FALSE, updated_at = ?
            WHERE organization_id = ? AND field_name = ? AND is_answered = TRUE
            """,
            (_now(), organization_id, field_name),
        )
        await db.commit()
        return cursor.rowcount > 0


# ===========================================================================
# Setup Completion
# ===========================================================================

async def get_or_create_setup_completion(organization_id: str) -> dict:
    now = _now()
    async with aiosqlite.connect(_get_db_path()) as db:
        db.row_factory = aiosqlite.Row
        await db.execute(
            """
            INSERT OR IGNORE INTO setup_completion
                (organization_id, setup_status, created_at, updated_at)
            VALUES (?, 'in_progress', ?, ?)
            """,
            (organization_id, now, now),
        )
        await db.commit()
        cursor = await db.execute(
            "SELECT * FROM setup_completion WHERE organization_id = ?", (organization_id,)
        )
        row = await cursor.fetchone()

    return {
        "organization_id": row["organization_id"],
        "setup_status": row["setup_status"],
        "completed_at": row["completed_at"],
        "completion_data": json.loads(row["completion_data"]) if row["completion_data"] else {},
    }


async def mark_setup_completed(organization_id: str, completion_data: dict | None = None) -> None:
    record = await get_or_create_setup_completion(organization_id)
    data = {**record["completion_data"], **(completion_data or {})}
    now = _now()
    async with aiosqlite.connect(_get_db_path()) as db:
        await db.execute(
            """
            UPDATE setup_completion
            SET setup_status = 'completed', completed_at = ?, completion_data = ?, updated_at = ?
            WHERE organization_id = ? AND setup_status != 'completed'
            """,
            (now, json.dumps(data), now, organization_id),
        )
        await db.commit()


async def record_setup_stage(organization_id: str, stage: str) -> None:
    """Append a completed stage name to the setup record's completion data."""
    record = await get_or_create_setup_completion(organization_id)
    data = record["completion_data"]
    stages = data.setdefault("stages", [])
    if stage in stages:
        return
    stages.append(stage)
    async with aiosqlite.connect(_get_db_path()) as db:
        await db.execute(
            "UPDATE setup_completion SET completion_data = ?, updated_at = ? WHERE organization_id = ?",
            (json.dumps(data), _now(), organization_id),
        )
        await db.commit()
