#!/usr/bin/env python3
"""
Chat Orchestrator Tests
=======================
One streaming turn end to end against httpx.MockTransport: phase updates,
the single terminal event, error mapping, single-flight sends and the
website detours.
"""
from __future__ import annotations
import asyncio
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import httpx

from concierge.client.api import ConciergeApi
from concierge.client.chat import (
    ANALYZING_PLACEHOLDER,
    EXTRACTING_PLACEHOLDER,
    REQUEST_FAILED_MESSAGE,
    TRANSPORT_FAILED_MESSAGE,
    WEBSITE_FAILED,
    WEBSITE_FOLLOW_UP,
    WEBSITE_TIMED_OUT,
    ChatOrchestrator,
    detect_url,
    is_near_bottom,
    is_skip_reply,
)
from concierge.client.transcript import Transcript
from concierge.client.types import Message

PASS = 0
FAIL = 0


def check(name: str, condition: bool, detail: str = ""):
    global PASS, FAIL
    if condition:
        PASS += 1
        print(f"  ✅ {name}")
    else:
        FAIL += 1
        print(f"  ❌ {name} — {detail}")
    assert condition, f"{name}: {detail}"


# ── Helpers ─────────────────────────────────────────────────────────────

def sse(event: str, payload: dict) -> bytes:
    return f"event: {event}\ndata: {json.dumps(payload)}\n\n".encode("utf-8")


def chunked(body: bytes, size: int = 7):
    async def stream():
        for i in range(0, len(body), size):
            yield body[i:i + size]
            await asyncio.sleep(0)
    return stream()


def stream_response(*frames: bytes, size: int = 7) -> httpx.Response:
    return httpx.Response(
        200,
        headers={"Content-Type": "text/event-stream"},
        content=chunked(b"".join(frames), size),
    )


def orchestrator(handler, **kwargs) -> ChatOrchestrator:
    api = ConciergeApi(base_url="http://concierge.test", token="tok", transport=httpx.MockTransport(handler))
    kwargs.setdefault("phase_clear_delay", 0.01)
    kwargs.setdefault("placeholder_update_delay", 0.01)
    return ChatOrchestrator(api, **kwargs)


RESULT = sse("result", {"aiMessage": "What's your business name?", "multipleChoices": None})


class SignedOut:
    is_authenticated = False


# ── Streaming turn ──────────────────────────────────────────────────────

def test_result_and_phases():
    print("\n── Result with phases ──")
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return stream_response(
            sse("phase", {"name": "extracting"}),
            sse("phase", {"name": "generating"}),
            sse("result", {
                "aiMessage": "What kind of business is it?",
                "multipleChoices": ["Restaurant", "Shop"],
                "allowMultiple": False,
            }),
        )

    async def scenario():
        chat = orchestrator(handler)
        phases = []
        chat.on_phase(phases.append)
        ok = await chat.send_message("  We're Taquería Sol  ")
        check("Sent", ok)
        check("Phases observed in order", phases == ["extracting", "generating"], str(phases))
        check("Phase still shown right after the result", chat.current_phase == "generating")

        messages = chat.transcript.messages
        check("User then AI message", [m.role for m in messages] == ["user", "ai"])
        check("User text trimmed", messages[0].content == "We're Taquería Sol")
        check("Choices carried", messages[1].multiple_choices == ["Restaurant", "Shop"])
        check("No error", chat.error is None)

        await asyncio.sleep(0.05)
        check("Phase cleared after the delay", chat.current_phase is None and phases[-1] is None)
        check("Locale posted", bodies[0]["locale"] == "en")

    asyncio.run(scenario())


def test_wire_roles():
    print("\n── Wire format ──")
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return stream_response(RESULT)

    async def scenario():
        transcript = Transcript()
        transcript.append(Message(role="ai", content="Hi!"))
        chat = orchestrator(handler, transcript=transcript)
        await chat.send_message("Hello")
        sent = bodies[0]["messages"]
        check("ai mapped to assistant", sent[0] == {"role": "assistant", "content": "Hi!"})
        check("User message last", sent[-1] == {"role": "user", "content": "Hello"})

    asyncio.run(scenario())


def test_only_first_terminal_counts():
    print("\n── Single terminal event ──")

    def handler(request):
        return stream_response(
            RESULT,
            sse("result", {"aiMessage": "Second result"}),
            sse("error", {"message": "Late error"}),
        )

    async def scenario():
        chat = orchestrator(handler)
        await chat.send_message("hi")
        ai = [m for m in chat.transcript.messages if m.role == "ai"]
        check("One AI message", len(ai) == 1)
        check("No error after the result", chat.error is None)

    asyncio.run(scenario())


def test_error_frames_and_statuses():
    print("\n── Errors ──")

    async def run_with(handler):
        chat = orchestrator(handler)
        await chat.send_message("hi")
        return chat

    async def scenario():
        chat = await run_with(lambda r: stream_response(
            sse("phase", {"name": "generating"}), sse("error", {"message": "Try later"})
        ))
        check("Error frame message shown", chat.error == "Try later")
        check("Phase cleared at once on error", chat.current_phase is None)
        check("No AI message", [m.role for m in chat.transcript.messages] == ["user"])

        chat = await run_with(lambda r: httpx.Response(500, json={"error": "Boom"}))
        check("Non-2xx error body used", chat.error == "Boom")

        chat = await run_with(lambda r: httpx.Response(401, json={"detail": "Not authenticated"}))
        check("Non-2xx without error body", chat.error == REQUEST_FAILED_MESSAGE)

        chat = await run_with(lambda r: stream_response(sse("phase", {"name": "generating"})))
        check("Stream without a result is an error", chat.error == REQUEST_FAILED_MESSAGE)

        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        chat = await run_with(refuse)
        check("Transport failure message", chat.error == TRANSPORT_FAILED_MESSAGE)

    asyncio.run(scenario())


def test_single_flight():
    print("\n── Single-flight ──")
    calls = []

    async def scenario():
        gate = asyncio.Event()

        async def handler(request):
            calls.append(request.url.path)
            await gate.wait()
            return stream_response(RESULT)

        chat = orchestrator(handler)
        first = asyncio.create_task(chat.send_message("one"))
        await asyncio.sleep(0.01)
        check("In flight", chat.in_flight)
        check("Second send ignored", await chat.send_message("two") is False)
        check("Initial trigger ignored", await chat.trigger_initial() is False)
        gate.set()
        check("First send completes", await first)
        check("One request", calls == ["/api/organization-chat"])
        check("Blank send ignored", await chat.send_message("   ") is False)

    asyncio.run(scenario())


def test_trigger_initial_adds_no_user_message():
    print("\n── trigger_initial ──")

    async def scenario():
        chat = orchestrator(lambda r: stream_response(RESULT))
        check("Triggered", await chat.trigger_initial())
        check("Only the AI message", [m.role for m in chat.transcript.messages] == ["ai"])

    asyncio.run(scenario())


def test_listener_failure_is_isolated():
    print("\n── Result listener failure ──")

    async def scenario():
        chat = orchestrator(lambda r: stream_response(RESULT))

        def explode(result):
            raise RuntimeError("listener bug")

        seen = []
        chat.on_result(explode)
        chat.on_result(seen.append)
        await chat.send_message("hi")
        check("Later listener still called", len(seen) == 1)
        check("Message still appended", chat.transcript.messages[-1].role == "ai")

    asyncio.run(scenario())


# ── Website detours ─────────────────────────────────────────────────────

def test_offer_follow_up_and_skip():
    print("\n── Website offer and skip ──")
    paths = []

    def handler(request):
        paths.append(request.url.path)
        if request.url.path == "/api/website-scraping/skip":
            return httpx.Response(200, json={"success": True})
        if len(paths) == 1:
            return stream_response(sse("result", {
                "aiMessage": "Welcome!", "statusSignal": "website_scraping_offered",
            }))
        return stream_response(RESULT)

    async def scenario():
        chat = orchestrator(handler)
        await chat.trigger_initial()
        contents = [m.content for m in chat.transcript.messages]
        check("Follow-up appended after the offer", contents == ["Welcome!", WEBSITE_FOLLOW_UP])
        check("Offer open", chat.website_offer_open)

        await chat.send_message("Skip")
        check("Skip notified, then normal turn",
              paths == ["/api/organization-chat", "/api/website-scraping/skip", "/api/organization-chat"],
              str(paths))
        check("Offer closed", not chat.website_offer_open)
        check("Next question shown", chat.transcript.messages[-1].content == "What's your business name?")

    asyncio.run(scenario())


def test_no_follow_up_when_signed_out():
    print("\n── Signed out ──")
    paths = []

    def handler(request):
        paths.append(request.url.path)
        return stream_response(sse("result", {"aiMessage": "Hi", "statusSignal": "website_scraping_offered"}))

    async def scenario():
        chat = orchestrator(handler, session=SignedOut())
        await chat.send_message("see https://example.com")
        check("URL not detoured", paths == ["/api/organization-chat"])
        check("No follow-up", len(chat.transcript.messages) == 2)

    asyncio.run(scenario())


def test_website_flow_success():
    print("\n── Website analysis ──")
    posted = []

    async def handler(request):
        posted.append((request.url.path, json.loads(request.content)))
        await asyncio.sleep(0.05)
        return httpx.Response(200, json={
            "success": True, "hasEnoughInfo": True,
            "businessInfo": {"business_name": "Taquería Sol"},
            "message": "Business information extracted successfully!",
        })

    async def scenario():
        chat = orchestrator(handler)
        snapshots = []
        chat.transcript.subscribe(lambda msgs: snapshots.append([m.content for m in msgs]))
        await chat.send_message("Our site is https://taqueria.example.com.")

        check("Posted cleaned URL", posted == [("/api/website-scraping", {"url": "https://taqueria.example.com"})])
        check("Placeholder shown", any(ANALYZING_PLACEHOLDER in s for s in snapshots))
        check("Placeholder updated while waiting", any(EXTRACTING_PLACEHOLDER in s for s in snapshots))

        messages = chat.transcript.messages
        check("User message then result", [m.role for m in messages] == ["user", "ai"])
        check("Placeholder superseded", messages[1].content == "Business information extracted successfully!")

    asyncio.run(scenario())


def test_website_flow_failures():
    print("\n── Website analysis failures ──")

    async def run_with(handler):
        chat = orchestrator(handler)
        await chat.send_message("https://slow.example.com")
        return [m.content for m in chat.transcript.messages]

    async def scenario():
        contents = await run_with(lambda r: httpx.Response(504, json={"detail": "Timed out"}))
        check("504 gives the timeout fallback", contents == ["https://slow.example.com", WEBSITE_TIMED_OUT], str(contents))

        def slow(request):
            raise httpx.ReadTimeout("slow", request=request)

        contents = await run_with(slow)
        check("Client timeout gives the timeout fallback", contents[-1] == WEBSITE_TIMED_OUT)

        contents = await run_with(lambda r: httpx.Response(502, json={"detail": "Bad gateway"}))
        check("Other failures give the generic fallback", contents[-1] == WEBSITE_FAILED)
        check("Placeholder removed", ANALYZING_PLACEHOLDER not in contents)

    asyncio.run(scenario())


# ── Locale & helpers ────────────────────────────────────────────────────

def test_set_locale():
    print("\n── set_locale ──")

    async def scenario():
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return stream_response(RESULT)

        chat = orchestrator(handler)
        chat.set_locale("es")
        check("No system message on an empty transcript", len(chat.transcript) == 0)
        await chat.send_message("Hola")
        chat.set_locale("en")
        last = chat.transcript.messages[-1]
        check("System message appended", last.role == "system" and "English" in last.content)
        await chat.send_message("Thanks")
        check("Locale sent", bodies[-1]["locale"] == "en")
        check("System message on the wire", any(m["role"] == "system" for m in bodies[-1]["messages"]))

    asyncio.run(scenario())


def test_helpers():
    print("\n── Helpers ──")
    check("URL found", detect_url("visit http://shop.example.com/about, thanks") == "http://shop.example.com/about")
    check("No URL", detect_url("no website here") is None)
    check("skip word", is_skip_reply("Skip please"))
    check("no word", is_skip_reply("No, I don't have one"))
    check("'know' is not a skip", not is_skip_reply("I don't know"))
    check("Near bottom within 100px", is_near_bottom(850, 100, 1000))
    check("Far from bottom", not is_near_bottom(500, 100, 1000))


# ── Run All ─────────────────────────────────────────────────────────────

if __name__ == "__main__":
    print("=" * 60)
    print("CHAT ORCHESTRATOR TESTS")
    print("=" * 60)

    test_result_and_phases()
    test_wire_roles()
    test_only_first_terminal_counts()
    test_error_frames_and_statuses()
    test_single_flight()
    test_trigger_initial_adds_no_user_message()
    test_listener_failure_is_isolated()
    test_offer_follow_up_and_skip()
    test_no_follow_up_when_signed_out()
    test_website_flow_success()
    test_website_flow_failures()
    test_set_locale()
    test_helpers()

    print("\n" + "=" * 60)
    total = PASS + FAIL
    print(f"RESULTS: {PASS}/{total} passed, {FAIL} failed")
    print("=" * 60)
    sys.exit(1 if FAIL > 0 else 0)
