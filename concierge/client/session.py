from __future__ import annotations
"""
Concierge — Session Lifecycle Manager
=====================================
Single source of truth for whether the client is signed in.

The manager reports AWAITING_NAME synchronously from ``start()`` so the
chat can render the sign-in conversation at once, then restores any
existing session in the background. Identity events from the provider
(SIGNED_IN, SIGNED_OUT, TOKEN_REFRESHED) are reconciled against that
restore without doing the same work twice:

  * ``InitState`` replaces the usual is-initializing / has-initialized pair.
  * Every sign-out bumps ``epoch``; work started under an older epoch is
    dropped when it completes.
  * While the page is hidden, sign-in and refresh events only update the
    identity in place. Suppression lifts VISIBILITY_RESUME_DELAY seconds
    after the page is visible again.

Nothing raised by the provider or the data loader escapes the manager.
"""

import asyncio
import logging
from dataclasses import replace
from enum import Enum
from typing import Callable

from concierge.client.types import AuthEvent, DependentData, Identity, SessionPhase

logger = logging.getLogger(__name__)

VISIBILITY_RESUME_DELAY = 0.5
COOLDOWN_TICK_INTERVAL = 1.0


class InitState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    INITIALIZED = "initialized"


def same_principal(a: Identity | None, b: Identity | None) -> bool:
    return a is not None and b is not None and a.user_id == b.user_id


class SessionLifecycleManager:
    def __init__(
        self,
        provider,
        data_loader,
        tick_interval: float = COOLDOWN_TICK_INTERVAL,
        resume_delay: float = VISIBILITY_RESUME_DELAY,
    ):
        self.provider = provider
        self.data_loader = data_loader
        self.tick_interval = tick_interval
        self.resume_delay = resume_delay

        self.phase = SessionPhase.INITIALIZING
        self.identity: Identity | None = None
        self.data = DependentData()
        self.init_state = InitState.IDLE
        self.epoch = 0

        self.visible = True
        self.suppressed = False
        self.cooldown_seconds = 0
        self.code_sent = False

        self._loop: asyncio.AbstractEventLoop | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._restore_task: asyncio.Task | None = None
        self._cooldown_task: asyncio.Task | None = None
        self._resume_handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()
        self._phase_listeners: list[Callable[[SessionPhase], None]] = []
        self._sign_out_listeners: list[Callable[[], None]] = []

    # =======================================================================
    # Lifecycle
    # =======================================================================

    def start(self):
        """Show the sign-in flow immediately and restore any session in the background."""
        self._loop = asyncio.get_running_loop()
        self._set_phase(SessionPhase.AWAITING_NAME)
        self._unsubscribe = self.provider.subscribe(self._on_auth_event)
        self._restore_task = self._spawn(self._restore())

    async def restored(self):
        if self._restore_task is not None:
            await asyncio.gather(self._restore_task, return_exceptions=True)

    async def settled(self):
        """Wait for every background task started so far."""
        await self.restored()
        while True:
            pending = [t for t in self._tasks if t is not self._cooldown_task]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def dispose(self):
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._cancel_cooldown()
        if self._resume_handle is not None:
            self._resume_handle.cancel()
            self._resume_handle = None
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    # =======================================================================
    # Observers
    # =======================================================================

    def on_phase_change(self, callback: Callable[[SessionPhase], None]) -> Callable[[], None]:
        self._phase_listeners.append(callback)
        return lambda: self._phase_listeners.remove(callback)

    def on_sign_out(self, callback: Callable[[], None]) -> Callable[[], None]:
        self._sign_out_listeners.append(callback)
        return lambda: self._sign_out_listeners.remove(callback)

    @property
    def is_authenticated(self) -> bool:
        return self.phase == SessionPhase.AUTHENTICATED and self.identity is not None

    # =======================================================================
    # Phase
    # =======================================================================

    def request_phase(self, phase: SessionPhase) -> bool:
        """Phase change requested by another component. Returns False if refused."""
        if phase == SessionPhase.INITIALIZING:
            return False
        if phase == SessionPhase.AUTHENTICATED and self.identity is None:
            logger.warning("[session] Refused AUTHENTICATED without an identity")
            return False
        if self.phase == SessionPhase.AUTHENTICATED and phase != SessionPhase.AUTHENTICATED:
            # Leaving the authenticated state goes through sign-out
            return False
        self._set_phase(phase)
        return True

    def _set_phase(self, phase: SessionPhase):
        if phase == self.phase:
            return
        self.phase = phase
        for callback in list(self._phase_listeners):
            try:
                callback(phase)
            except Exception as e:
                logger.error(f"[session] Phase listener failed: {e}")

    # =======================================================================
    # Restore & dependent data
    # =======================================================================

    async def _restore(self):
        epoch = self.epoch
        if self.init_state != InitState.IDLE:
            return
        self.init_state = InitState.INITIALIZING

        try:
            restored = await self.provider.get_current_session()
        except Exception as e:
            logger.warning(f"[session] Session restore failed: {e}")
            restored = None

        if epoch != self.epoch:
            return

        # A SIGNED_IN event may have landed while the restore was in flight
        identity = self.identity or restored
        if identity is None:
            self.init_state = InitState.IDLE
            if self.phase == SessionPhase.INITIALIZING:
                self._set_phase(SessionPhase.AWAITING_NAME)
            return

        await self._load(identity, epoch)

    def _begin_initialize(self, identity: Identity):
        self.init_state = InitState.INITIALIZING
        self.identity = identity
        self._set_phase(SessionPhase.AUTHENTICATED)
        self._spawn(self._load(identity, self.epoch))

    async def _load(self, identity: Identity, epoch: int):
        self.identity = self.identity if same_principal(self.identity, identity) else identity
        self._set_phase(SessionPhase.AUTHENTICATED)

        loader = self.data_loader
        results = await asyncio.gather(
            loader.ensure_organization(identity),
            loader.list_agents(identity),
            loader.get_subscription(identity),
            loader.get_current_organization(identity),
            return_exceptions=True,
        )

        if epoch != self.epoch:
            logger.info("[session] Discarding dependent data from a stale sign-in")
            return

        names = ("organization", "agents", "subscription", "current organization")
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                logger.error(f"[session] Failed to load {name}: {result}")

        def value(result, default):
            return default if isinstance(result, BaseException) or result is None else result

        self.data = DependentData(
            organization=value(results[0], None),
            agents=list(value(results[1], [])),
            subscription=value(results[2], None),
            current_organization=value(results[3], None) or value(results[0], None),
        )
        self.init_state = InitState.INITIALIZED
        logger.info(f"[session] Initialized for {identity.email}")

    # =======================================================================
    # Identity events
    # =======================================================================

    def _on_auth_event(self, event: AuthEvent, identity: Identity | None = None):
        try:
            if event == AuthEvent.INITIAL_SESSION:
                return
            if event == AuthEvent.SIGNED_OUT:
                self.sign_out_reset()
            elif event == AuthEvent.SIGNED_IN:
                self._on_signed_in(identity)
            elif event == AuthEvent.TOKEN_REFRESHED:
                self._on_token_refreshed(identity)
        except Exception as e:
            logger.error(f"[session] Failed to handle {event}: {e}")
            if self.identity is None:
                self._set_phase(SessionPhase.AWAITING_NAME)

    def _update_identity(self, identity: Identity):
        """Refresh identity fields in place, no phase change and no refetch."""
        self.identity = replace(
            self.identity,
            email=identity.email or self.identity.email,
            name=identity.name or self.identity.name,
            token=identity.token or self.identity.token,
        )

    def _on_signed_in(self, identity: Identity | None):
        if identity is None:
            return

        if same_principal(self.identity, identity):
            self._update_identity(identity)
            if self.init_state == InitState.IDLE:
                self._begin_initialize(self.identity)
            return

        if self.suppressed and self.identity is not None:
            logger.info("[session] Page hidden, deferring sign-in for another identity")
            return

        if self.init_state == InitState.INITIALIZING and self.identity is None:
            # The restore in flight picks this identity up
            self.identity = identity
            self._set_phase(SessionPhase.AUTHENTICATED)
            return

        if self.identity is not None:
            logger.info("[session] Different identity signed in, resetting session")
            self.sign_out_reset()

        self._begin_initialize(identity)

    def _on_token_refreshed(self, identity: Identity | None):
        if identity is None:
            return
        if self.identity is not None:
            if same_principal(self.identity, identity):
                self._update_identity(identity)
            return
        if not self.suppressed:
            self._on_signed_in(identity)

    def sign_out_reset(self):
        """Clear identity, caches and guards. In-flight work is invalidated."""
        self.epoch += 1
        self.identity = None
        self.data = DependentData()
        self.init_state = InitState.IDLE
        self._cancel_cooldown()
        self.cooldown_seconds = 0
        self.code_sent = False
        self._set_phase(SessionPhase.AWAITING_NAME)
        for callback in list(self._sign_out_listeners):
            try:
                callback()
            except Exception as e:
                logger.error(f"[session] Sign-out listener failed: {e}")

    # =======================================================================
    # Visibility
    # =======================================================================

    def set_visible(self, visible: bool):
        self.visible = visible
        if self._resume_handle is not None:
            self._resume_handle.cancel()
            self._resume_handle = None

        if not visible:
            self.suppressed = True
            return

        loop = self._event_loop()
        if loop is None:
            # Nothing to schedule on, so there is no stale event to wait out
            self._lift_suppression()
            return
        self._resume_handle = loop.call_later(self.resume_delay, self._lift_suppression)

    def _lift_suppression(self):
        self._resume_handle = None
        if self.visible:
            self.suppressed = False

    # =======================================================================
    # Resend cooldown
    # =======================================================================

    def start_cooldown(self, seconds: int):
        self._cancel_cooldown()
        self.cooldown_seconds = max(0, int(seconds))
        self.code_sent = True
        if self.cooldown_seconds > 0:
            self._cooldown_task = self._spawn(self._run_cooldown())

    async def _run_cooldown(self):
        while self.cooldown_seconds > 0:
            await asyncio.sleep(self.tick_interval)
            self.cooldown_seconds -= 1
        self._cooldown_task = None

    def _cancel_cooldown(self):
        if self._cooldown_task is not None:
            self._cooldown_task.cancel()
            self._cooldown_task = None

    # -----------------------------------------------------------------------

    def _event_loop(self) -> asyncio.AbstractEventLoop | None:
        """The loop captured by start(), else the running one, else None."""
        if self._loop is not None and not self._loop.is_closed():
            return self._loop
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            return None

    def _spawn(self, coro) -> asyncio.Task:
        task = (self._event_loop() or asyncio.get_running_loop()).create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
