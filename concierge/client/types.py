from __future__ import annotations
"""
Concierge — Client Types
========================
Plain data shared by the client runtime: session phases, identities,
transcript messages, OTP actions and chat stream events.
"""

from dataclasses import dataclass, field, replace
from enum import Enum


class SessionPhase(str, Enum):
    INITIALIZING = "initializing"
    AWAITING_NAME = "awaiting_name"
    AWAITING_EMAIL = "awaiting_email"
    AWAITING_OTP = "awaiting_otp"
    AUTHENTICATED = "authenticated"


class AuthEvent(str, Enum):
    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"


class LoadingState(str, Enum):
    NONE = "none"
    SENDING = "sending"
    VERIFYING = "verifying"


@dataclass
class Identity:
    """An authenticated principal as returned by the identity provider."""

    user_id: str
    email: str
    name: str | None = None
    token: str | None = None


@dataclass(frozen=True)
class PendingIdentity:
    name: str = ""
    email: str = ""
    otp_attempts: int = 0
    resend_cooldown_seconds: int = 0

    def evolve(self, **changes) -> "PendingIdentity":
        return replace(self, **changes)


@dataclass(frozen=True)
class Message:
    role: str  # user | ai | system
    content: str
    id: str | None = None
    timestamp: float | None = None
    multiple_choices: list[str] | None = None
    allow_multiple: bool = False


# ---------------------------------------------------------------------------
# OTP actions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AddMessages:
    messages: tuple[Message, ...]


@dataclass(frozen=True)
class SetAuthPhase:
    phase: SessionPhase


@dataclass(frozen=True)
class SetInput:
    value: str


@dataclass(frozen=True)
class SetLoading:
    state: LoadingState


@dataclass(frozen=True)
class SetError:
    message: str | None


@dataclass(frozen=True)
class SetCooldown:
    seconds: int


@dataclass(frozen=True)
class BlurInput:
    pass


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PhaseEvent:
    name: str


@dataclass(frozen=True)
class ResultEvent:
    ai_message: str
    multiple_choices: list[str] | None = None
    allow_multiple: bool = False
    status_signal: str | None = None


@dataclass(frozen=True)
class ErrorEvent:
    message: str


@dataclass
class DependentData:
    """Data loaded once per sign-in for the dashboard."""

    organization: dict | None = None
    current_organization: dict | None = None
    agents: list[dict] = field(default_factory=list)
    subscription: dict | None = None
