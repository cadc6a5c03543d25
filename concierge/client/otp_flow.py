from __future__ import annotations
"""
Concierge — OTP Flow Engine
===========================
Sign-in conversation: name -> email -> 6-digit code -> authenticated.

The decision functions are pure. Given the phase, the typed text and the
pending identity they return an ``OtpDecision``: the actions for the UI,
the new pending identity, and at most one effect (send or verify a code)
that ``OtpFlow`` performs through the transport. The outcome of an effect
is turned into the next decision by ``resolve_dispatch`` or
``resolve_verification``.
"""

import logging
import re
from dataclasses import dataclass
from typing import Protocol

from concierge.client.types import (
    AddMessages,
    BlurInput,
    LoadingState,
    Message,
    PendingIdentity,
    SessionPhase,
    SetAuthPhase,
    SetCooldown,
    SetError,
    SetInput,
    SetLoading,
)

logger = logging.getLogger(__name__)

RESEND_COOLDOWN_SECONDS = 30

EMAIL_PROMPT = "Great! What is your email address?"
CODE_SENT = "I just sent a 6-digit code to your email. Please enter it below to continue."
CODE_RESENT = "New verification code sent! Please check your email."
INVALID_CODE = "Invalid verification code. Please try again."
INVALID_EMAIL = "That doesn't look like a valid email address. Please try again."
SEND_FAILED = "Failed to send verification code. Please enter a valid email."
RESEND_FAILED = "Failed to resend verification code."

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_CODE_RE = re.compile(r"^\d{6}$")


# ---------------------------------------------------------------------------
# Effects & decisions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DispatchCode:
    email: str
    name: str = ""
    resend: bool = False


@dataclass(frozen=True)
class VerifyCode:
    email: str
    code: str


@dataclass(frozen=True)
class OtpDecision:
    actions: tuple
    pending: PendingIdentity
    effect: DispatchCode | VerifyCode | None = None


def is_valid_email(email: str) -> bool:
    return bool(_EMAIL_RE.match(email))


def _user(text: str) -> Message:
    return Message(role="user", content=text)


def _ai(text: str) -> Message:
    return Message(role="ai", content=text)


def _clear_input() -> tuple:
    return (SetInput(""), BlurInput())


def decide(phase: SessionPhase, text: str, pending: PendingIdentity) -> OtpDecision:
    """Interpret one line of input typed while signed out."""
    value = (text or "").strip()

    if phase == SessionPhase.AWAITING_NAME:
        if not value:
            return OtpDecision((SetError("Name is required"),), pending)
        return OtpDecision(
            (
                AddMessages((_user(value), _ai(EMAIL_PROMPT))),
                *_clear_input(),
                SetError(None),
                SetAuthPhase(SessionPhase.AWAITING_EMAIL),
            ),
            pending.evolve(name=value),
        )

    if phase == SessionPhase.AWAITING_EMAIL:
        if not value:
            return OtpDecision((SetError("Email is required"),), pending)
        if not is_valid_email(value):
            return OtpDecision(
                (
                    AddMessages((_user(value), _ai(INVALID_EMAIL))),
                    *_clear_input(),
                    SetError("Invalid email address"),
                ),
                pending,
            )
        email = value.lower()
        return OtpDecision(
            (
                AddMessages((_user(value),)),
                *_clear_input(),
                SetError(None),
                SetLoading(LoadingState.SENDING),
            ),
            pending.evolve(email=email),
            DispatchCode(email=email, name=pending.name),
        )

    if phase == SessionPhase.AWAITING_OTP:
        if not value:
            return OtpDecision((SetError("Verification code is required"),), pending)
        actions = (AddMessages((_user(value),)), *_clear_input())
        if not _CODE_RE.match(value):
            failed = resolve_verification(pending, ok=False)
            return OtpDecision(actions + failed.actions, failed.pending)
        return OtpDecision(
            actions + (SetLoading(LoadingState.VERIFYING),),
            pending,
            VerifyCode(email=pending.email, code=value),
        )

    return OtpDecision((), pending)


def decide_resend(phase: SessionPhase, pending: PendingIdentity) -> OtpDecision:
    """Resend is only offered while waiting for a code and after the cooldown."""
    if phase != SessionPhase.AWAITING_OTP or not pending.email:
        return OtpDecision((), pending)
    if pending.resend_cooldown_seconds > 0:
        return OtpDecision((), pending)
    return OtpDecision(
        (SetLoading(LoadingState.SENDING), SetError(None)),
        pending,
        DispatchCode(email=pending.email, name=pending.name, resend=True),
    )


def resolve_dispatch(
    pending: PendingIdentity,
    ok: bool,
    error: str | None = None,
    resend: bool = False,
) -> OtpDecision:
    if ok:
        message = CODE_RESENT if resend else CODE_SENT
        actions = [AddMessages((_ai(message),))]
        if not resend:
            actions.append(SetAuthPhase(SessionPhase.AWAITING_OTP))
        actions += [
            SetCooldown(RESEND_COOLDOWN_SECONDS),
            SetLoading(LoadingState.NONE),
            SetError(None),
        ]
        return OtpDecision(
            tuple(actions),
            pending.evolve(resend_cooldown_seconds=RESEND_COOLDOWN_SECONDS),
        )

    if resend:
        return OtpDecision(
            (
                AddMessages((_ai(error or RESEND_FAILED),)),
                SetLoading(LoadingState.NONE),
                SetError(error or RESEND_FAILED),
            ),
            pending,
        )

    return OtpDecision(
        (
            AddMessages((_ai(error or SEND_FAILED),)),
            SetAuthPhase(SessionPhase.AWAITING_EMAIL),
            SetLoading(LoadingState.NONE),
            SetError(error or "Failed to send verification code."),
        ),
        pending.evolve(email=""),
    )


def resolve_verification(pending: PendingIdentity, ok: bool) -> OtpDecision:
    if ok:
        return OtpDecision(
            (
                SetLoading(LoadingState.NONE),
                SetError(None),
                SetAuthPhase(SessionPhase.AUTHENTICATED),
            ),
            PendingIdentity(),
        )
    return OtpDecision(
        (
            AddMessages((_ai(INVALID_CODE),)),
            SetLoading(LoadingState.NONE),
            SetError("Invalid verification code"),
        ),
        pending.evolve(otp_attempts=pending.otp_attempts + 1),
    )


# ===========================================================================
# Executor
# ===========================================================================

class OtpTransport(Protocol):
    async def send_code(self, email: str, name: str = "", resend: bool = False) -> None: ...

    async def verify_code(self, email: str, code: str) -> bool: ...


class OtpTransportError(Exception):
    """Code dispatch was rejected. The message is safe to show."""


class ChatActionSink:
    """Applies OTP actions to the session manager and the transcript."""

    def __init__(self, session, transcript):
        self.session = session
        self.transcript = transcript
        self.input_value = ""
        self.loading = LoadingState.NONE
        self.error: str | None = None
        self.blur_requests = 0

    def apply(self, action):
        if isinstance(action, AddMessages):
            self.transcript.extend(action.messages)
        elif isinstance(action, SetAuthPhase):
            self.session.request_phase(action.phase)
        elif isinstance(action, SetInput):
            self.input_value = action.value
        elif isinstance(action, SetLoading):
            self.loading = action.state
        elif isinstance(action, SetError):
            self.error = action.message
        elif isinstance(action, SetCooldown):
            self.session.start_cooldown(action.seconds)
        elif isinstance(action, BlurInput):
            self.blur_requests += 1
        else:
            raise TypeError(f"Unknown OTP action: {action!r}")


class OtpFlow:
    """Runs decisions against a transport and applies their actions to a sink."""

    def __init__(self, session, transport: OtpTransport, sink):
        self.session = session
        self.transport = transport
        self.sink = sink
        self.pending = PendingIdentity()
        session.on_sign_out(self.reset)

    def reset(self):
        self.pending = PendingIdentity()

    def _pending_now(self) -> PendingIdentity:
        # The ticking cooldown lives on the session manager
        return self.pending.evolve(resend_cooldown_seconds=self.session.cooldown_seconds)

    def _apply(self, decision: OtpDecision):
        self.pending = decision.pending
        for action in decision.actions:
            self.sink.apply(action)

    async def handle_input(self, text: str) -> bool:
        """Feed one line of signed-out input. Returns False when not in the sign-in flow."""
        phase = self.session.phase
        if phase not in (SessionPhase.AWAITING_NAME, SessionPhase.AWAITING_EMAIL, SessionPhase.AWAITING_OTP):
            return False
        decision = decide(phase, text, self._pending_now())
        self._apply(decision)
        if decision.effect is not None:
            await self._perform(decision.effect)
        return True

    async def resend(self) -> bool:
        decision = decide_resend(self.session.phase, self._pending_now())
        if decision.effect is None:
            return False
        self._apply(decision)
        await self._perform(decision.effect)
        return True

    async def _perform(self, effect):
        if isinstance(effect, DispatchCode):
            try:
                await self.transport.send_code(effect.email, effect.name, resend=effect.resend)
            except OtpTransportError as e:
                logger.warning(f"[otp] Code dispatch rejected for {effect.email}: {e}")
                self._apply(resolve_dispatch(self.pending, ok=False, error=str(e) or None, resend=effect.resend))
            except Exception as e:
                logger.error(f"[otp] Code dispatch failed for {effect.email}: {e}")
                self._apply(resolve_dispatch(self.pending, ok=False, resend=effect.resend))
            else:
                self._apply(resolve_dispatch(self.pending, ok=True, resend=effect.resend))
        elif isinstance(effect, VerifyCode):
            try:
                ok = await self.transport.verify_code(effect.email, effect.code)
            except Exception as e:
                logger.error(f"[otp] Verification failed for {effect.email}: {e}")
                ok = False
            self._apply(resolve_verification(self.pending, ok=ok))
