from __future__ import annotations
"""
Concierge — FastAPI Backend
===========================
Main application entry point. Defines app, lifespan, CORS, and includes
route modules. All route handlers live in concierge/routes/.
"""

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).parent
load_dotenv(PROJECT_ROOT / ".env")

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("concierge")

# Database setup
import concierge.database as database
from concierge.ai_generator import ClaudeGenerator

DATABASE_PATH = os.getenv("DATABASE_PATH", str(PROJECT_ROOT / "data" / "concierge.db"))
database.set_db_path(DATABASE_PATH)


# ---------------------------------------------------------------------------
# Lifespan (startup / shutdown)
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    await database.init_db()
    print(f"Database initialized at: {DATABASE_PATH}")

    # Tests install a fake generator before startup
    if getattr(app.state, "generator", None) is None:
        app.state.generator = ClaudeGenerator()
        print(f"[startup] Chat model: {app.state.generator.model} "
              f"(fallback {app.state.generator.fallback_model})")

    yield


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Concierge",
    description="Conversational business onboarding with passwordless sign-in",
    version="1.0.0",
    lifespan=lifespan,
)
app.state.generator = None

# CORS
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "concierge"}


# ---------------------------------------------------------------------------
# Include route modules
# ---------------------------------------------------------------------------

from concierge.routes.auth import router as auth_router
from concierge.routes.chat import router as chat_router
from concierge.routes.website import router as website_router
from concierge.routes.dashboard import router as dashboard_router

app.include_router(auth_router, tags=["Auth"])
app.include_router(chat_router, tags=["Chat"])
app.include_router(website_router, tags=["Website"])
app.include_router(dashboard_router, tags=["Dashboard"])


# ---------------------------------------------------------------------------
# Local runner
# ---------------------------------------------------------------------------

HOST = os.getenv("HOST", "127.0.0.1")
PORT = int(os.getenv("PORT", "8000"))
RELOAD = os.getenv("RELOAD", "false").lower() in ("1", "true", "yes")


def serve():
    """Run the API with uvicorn (``python main.py``)."""
    uvicorn.run(
        "main:app",
        host=HOST,
        port=PORT,
        reload=RELOAD,
        log_level=os.getenv("LOG_LEVEL", "INFO").lower(),
    )


if __name__ == "__main__":
    serve()
