from __future__ import annotations
"""
Concierge — Chat Orchestrator
=============================
Client side of one chat turn. The rolling history is posted to
/api/organization-chat and the SSE reply is read frame by frame: ``phase``
frames update ``current_phase``, the first ``result`` or ``error`` frame ends
the turn, and anything after it is ignored.

Two detours bypass the stream while signed in:

  * a message containing a URL goes to /api/website-scraping, with a
    transient "analyzing" placeholder in the transcript;
  * a skip reply to the website offer notifies /api/website-scraping/skip
    (best effort) and then continues as a normal turn.
"""

import asyncio
import json
import logging
import re
from typing import Callable

import httpx

from concierge.client.sse import SSEFrameParser, to_stream_event
from concierge.client.transcript import Transcript
from concierge.client.types import ErrorEvent, Message, PhaseEvent, ResultEvent

logger = logging.getLogger(__name__)

PHASE_CLEAR_DELAY = 1.0
PLACEHOLDER_UPDATE_DELAY = 2.0
NEAR_BOTTOM_THRESHOLD_PX = 100

WEBSITE_SCRAPING_OFFERED = "website_scraping_offered"

REQUEST_FAILED_MESSAGE = "Error processing request"
TRANSPORT_FAILED_MESSAGE = "Failed to process request. Please try again."

WEBSITE_FOLLOW_UP = (
    "Please share your business website URL (e.g., https://yourbusiness.com) and I'll "
    "extract the information to speed up your setup. If you don't have a website, just "
    "type 'skip' and I'll guide you through our standard questions."
)
ANALYZING_PLACEHOLDER = "🌐 Analyzing your website..."
EXTRACTING_PLACEHOLDER = "🔍 Extracting business information..."
WEBSITE_FAILED = "I couldn't analyze your website. Let's continue with our standard setup questions."
WEBSITE_TIMED_OUT = "Your website took too long to load. Let's continue with our standard setup questions."

LANGUAGE_NAMES = {"en": "English", "es": "Español"}

_URL_RE = re.compile(r"https?://(?:[-\w.])+(?::[0-9]+)?(?:/[^\s]*)?", re.IGNORECASE)
_SKIP_RE = re.compile(r"\b(skip|no)\b", re.IGNORECASE)


def detect_url(text: str) -> str | None:
    match = _URL_RE.search(text or "")
    if not match:
        return None
    return re.sub(r"[.,;!?]+$", "", match.group(0)) or None


def is_skip_reply(text: str) -> bool:
    return bool(_SKIP_RE.search(text or ""))


def is_near_bottom(
    scroll_top: float,
    client_height: float,
    scroll_height: float,
    threshold: float = NEAR_BOTTOM_THRESHOLD_PX,
) -> bool:
    """True when the viewport is close enough to the end to keep auto-scrolling."""
    return scroll_top + client_height >= scroll_height - threshold


class ChatOrchestrator:
    def __init__(
        self,
        api,
        transcript: Transcript | None = None,
        session=None,
        locale: str = "en",
        phase_clear_delay: float = PHASE_CLEAR_DELAY,
        placeholder_update_delay: float = PLACEHOLDER_UPDATE_DELAY,
    ):
        self.api = api
        self.transcript = transcript if transcript is not None else Transcript()
        self.session = session
        self.locale = locale
        self.phase_clear_delay = phase_clear_delay
        self.placeholder_update_delay = placeholder_update_delay

        self.current_phase: str | None = None
        self.error: str | None = None
        self.in_flight = False
        self.website_offer_open = False

        self._phase_clear: asyncio.TimerHandle | None = None
        self._phase_listeners: list[Callable[[str | None], None]] = []
        self._result_listeners: list[Callable[[ResultEvent], None]] = []

    # -----------------------------------------------------------------------
    # Observers
    # -----------------------------------------------------------------------

    def on_phase(self, callback: Callable[[str | None], None]) -> Callable[[], None]:
        self._phase_listeners.append(callback)
        return lambda: self._phase_listeners.remove(callback)

    def on_result(self, callback: Callable[[ResultEvent], None]) -> Callable[[], None]:
        self._result_listeners.append(callback)
        return lambda: self._result_listeners.remove(callback)

    def _set_phase(self, name: str | None):
        if self._phase_clear is not None:
            self._phase_clear.cancel()
            self._phase_clear = None
        self.current_phase = name
        for callback in list(self._phase_listeners):
            callback(name)

    def _clear_phase_later(self):
        loop = asyncio.get_running_loop()
        self._phase_clear = loop.call_later(self.phase_clear_delay, self._set_phase, None)

    @property
    def authenticated(self) -> bool:
        return self.session is None or self.session.is_authenticated

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def send_message(self, text: str) -> bool:
        """Send one user message. Returns False if ignored (blank or a turn is running)."""
        text = (text or "").strip()
        if not text or self.in_flight:
            return False

        self.in_flight = True
        try:
            if self.authenticated:
                url = detect_url(text)
                if url:
                    self.website_offer_open = False
                    await self._website_flow(text, url)
                    return True
                if self.website_offer_open and is_skip_reply(text):
                    self.website_offer_open = False
                    await self._skip_website()

            self.transcript.append(Message(role="user", content=text))
            await self._run_turn()
            return True
        finally:
            self.in_flight = False

    async def trigger_initial(self) -> bool:
        """Ask for the first assistant message without adding a user message."""
        if self.in_flight:
            return False
        self.in_flight = True
        try:
            await self._run_turn()
            return True
        finally:
            self.in_flight = False

    def set_locale(self, locale: str):
        if locale == self.locale:
            return
        self.locale = locale
        if len(self.transcript):
            name = LANGUAGE_NAMES.get(locale, locale)
            self.transcript.append(Message(
                role="system",
                content=f"Language switched to {name}. Please continue the conversation in {name}.",
            ))

    # -----------------------------------------------------------------------
    # Streaming turn
    # -----------------------------------------------------------------------

    async def _run_turn(self):
        self.error = None
        body = {"messages": self.transcript.to_wire(), "locale": self.locale}
        headers = {**self.api.headers(), "Accept": "text/event-stream"}
        terminal = None

        try:
            async with self.api.http.stream(
                "POST", "/api/organization-chat", json=body, headers=headers
            ) as response:
                if not 200 <= response.status_code < 300:
                    await response.aread()
                    self._fail(_response_error(response))
                    return

                parser = SSEFrameParser()
                async for chunk in response.aiter_bytes():
                    for frame in parser.feed(chunk):
                        terminal = self._handle_event(to_stream_event(frame))
                        if terminal is not None:
                            break
                    if terminal is not None:
                        break
                if terminal is None:
                    for frame in parser.close():
                        terminal = self._handle_event(to_stream_event(frame))
                        if terminal is not None:
                            break
        except httpx.HTTPError as e:
            logger.error(f"[chat] Request failed: {e}")
            self._fail(TRANSPORT_FAILED_MESSAGE)
            return

        if terminal is None:
            logger.warning("[chat] Stream ended without a result")
            self._fail(REQUEST_FAILED_MESSAGE)

    def _handle_event(self, event):
        """Apply one event. Returns the event if it ended the turn."""
        if isinstance(event, PhaseEvent):
            self._set_phase(event.name)
            return None
        if isinstance(event, ResultEvent):
            self._apply_result(event)
            return event
        if isinstance(event, ErrorEvent):
            self._fail(event.message or REQUEST_FAILED_MESSAGE)
            return event
        return None

    def _apply_result(self, result: ResultEvent):
        self.transcript.append(Message(
            role="ai",
            content=result.ai_message,
            multiple_choices=result.multiple_choices,
            allow_multiple=result.allow_multiple,
        ))

        if result.status_signal == WEBSITE_SCRAPING_OFFERED and self.authenticated:
            self.website_offer_open = True
            self.transcript.append(Message(role="ai", content=WEBSITE_FOLLOW_UP))

        for callback in list(self._result_listeners):
            try:
                callback(result)
            except Exception as e:
                logger.error(f"[chat] Result listener failed: {e}")

        self._clear_phase_later()

    def _fail(self, message: str):
        self.error = message
        self._set_phase(None)

    # -----------------------------------------------------------------------
    # Website detours
    # -----------------------------------------------------------------------

    async def _website_flow(self, text: str, url: str):
        self.transcript.append(Message(role="user", content=text))
        placeholder = self.transcript.append(Message(role="ai", content=ANALYZING_PLACEHOLDER))

        loop = asyncio.get_running_loop()
        update = loop.call_later(
            self.placeholder_update_delay,
            lambda: self.transcript.supersede(placeholder.id, content=EXTRACTING_PLACEHOLDER),
        )

        try:
            response = await self.api.http.post(
                "/api/website-scraping", json={"url": url}, headers=self.api.headers()
            )
            data = response.json() if response.content else {}
            if response.status_code >= 400 or not data.get("success"):
                fallback = WEBSITE_TIMED_OUT if response.status_code == 504 else WEBSITE_FAILED
                raise _WebsiteFailed(fallback)
        except httpx.TimeoutException as e:
            logger.warning(f"[chat] Website analysis timed out for {url}: {e}")
            self._replace_placeholder_with_fallback(placeholder.id, update, WEBSITE_TIMED_OUT)
            return
        except _WebsiteFailed as e:
            logger.warning(f"[chat] Website analysis failed for {url}")
            self._replace_placeholder_with_fallback(placeholder.id, update, e.fallback)
            return
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"[chat] Website analysis failed for {url}: {e}")
            self._replace_placeholder_with_fallback(placeholder.id, update, WEBSITE_FAILED)
            return

        update.cancel()
        self.transcript.supersede(placeholder.id, content=data.get("message") or WEBSITE_FAILED)

    def _replace_placeholder_with_fallback(self, placeholder_id: str, update, fallback: str):
        update.cancel()
        self.transcript.retract(placeholder_id)
        self.transcript.append(Message(role="ai", content=fallback))

    async def _skip_website(self):
        try:
            await self.api.http.post("/api/website-scraping/skip", json={}, headers=self.api.headers())
        except httpx.HTTPError as e:
            logger.warning(f"[chat] Skip notification failed: {e}")


class _WebsiteFailed(Exception):
    def __init__(self, fallback: str):
        super().__init__(fallback)
        self.fallback = fallback


def _response_error(response: httpx.Response) -> str:
    try:
        data = response.json()
    except (json.JSONDecodeError, ValueError):
        return REQUEST_FAILED_MESSAGE
    if isinstance(data, dict) and isinstance(data.get("error"), str) and data["error"]:
        return data["error"]
    return REQUEST_FAILED_MESSAGE
