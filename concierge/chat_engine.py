from __future__ import annotations
"""
Concierge — Chat Turn Engine
============================
Runs one organization-chat turn as an async generator of events:

    ("phase", "extracting")       user text is being matched to open fields
    ("phase", "generating")       the reply is being prepared
    ("result", {...})             exactly one on success
    ("error", "message")          exactly one on failure, instead of result

During onboarding the reply is the head of the question queue (or a stage
message); once setup is complete the reply comes from the generator.
"""

import logging

import concierge.database as database
from concierge.errors import message_for_exception
from concierge.onboarding_engine import SETUP_COMPLETE, OnboardingEngine

logger = logging.getLogger(__name__)

WEBSITE_SCRAPING_OFFERED = "website_scraping_offered"

WELCOME_MESSAGE = (
    "Welcome! I'll help you set up your business assistant in a few quick steps. "
    "If your business has a website, I can read it to fill in most of the details for you."
)
SETUP_COMPLETE_MESSAGE = (
    "That's everything I need. Your business profile is complete and your assistant "
    "is ready to go! You can keep chatting with me any time to refine it."
)
ACKNOWLEDGEMENT = "Got it, thanks!"
RETRY_MESSAGE = (
    "Tell me a little more about your business, what you offer and who your "
    "customers are, and I'll pick up the next question from there."
)


def last_user_text(messages: list[dict]) -> str:
    for m in reversed(messages):
        if m.get("role") == "user" and (m.get("content") or "").strip():
            return m["content"].strip()
    return ""


def _recent_text(messages: list[dict], limit: int = 6) -> str:
    lines = []
    for m in messages[-limit:]:
        if m.get("role") in ("user", "assistant") and m.get("content"):
            lines.append(f"{m['role']}: {m['content']}")
    return "\n".join(lines)


def _question_result(field: dict, prefix: str = "") -> dict:
    text = field["question_template"]
    return {
        "aiMessage": f"{prefix} {text}".strip() if prefix else text,
        "multipleChoices": field.get("choices"),
        "allowMultiple": bool(field.get("allow_multiple")),
        "statusSignal": None,
    }


async def run_chat_turn(
    organization: dict,
    messages: list[dict],
    engine: OnboardingEngine,
    locale: str = "en",
):
    """Yield phase events followed by exactly one result or error event."""
    org_id = organization["id"]
    try:
        setup = await database.get_or_create_setup_completion(org_id)
        # A reopened field takes the conversation back to onboarding
        if setup["setup_status"] == "completed" and not await engine.unanswered(org_id):
            async for event in _business_turn(org_id, messages, engine, locale):
                yield event
            return

        user_text = last_user_text(messages)

        yield ("phase", "extracting")
        accepted = []
        if user_text:
            triples = await engine.extract(org_id, user_text)
            accepted = await engine.apply(org_id, triples)

        yield ("phase", "generating")

        fields = await engine.store.list_fields(org_id)
        if not fields and organization.get("website_scraping_state") == "pending":
            await database.set_website_scraping_state(org_id, "offered")
            logger.info(f"[chat] Offering website analysis to {org_id}")
            yield ("result", {
                "aiMessage": WELCOME_MESSAGE,
                "multipleChoices": None,
                "allowMultiple": False,
                "statusSignal": WEBSITE_SCRAPING_OFFERED,
            })
            return

        queue = await engine.next_questions(org_id, _recent_text(messages), locale)
        if queue is None:
            logger.info(f"[chat] No questions this turn for {org_id}, will retry next turn")
            yield ("result", {
                "aiMessage": f"{ACKNOWLEDGEMENT} {RETRY_MESSAGE}" if accepted else RETRY_MESSAGE,
                "multipleChoices": None,
                "allowMultiple": False,
                "statusSignal": None,
            })
            return
        if queue:
            yield ("result", _question_result(queue[0], ACKNOWLEDGEMENT if accepted else ""))
            return

        # The generator has nothing left to ask
        await engine.observe_assistant_message(
            org_id, f"{SETUP_COMPLETE_MESSAGE}\nSTATUS: {SETUP_COMPLETE}"
        )
        yield ("result", {
            "aiMessage": SETUP_COMPLETE_MESSAGE,
            "multipleChoices": None,
            "allowMultiple": False,
            "statusSignal": SETUP_COMPLETE,
        })

    except Exception as e:
        logger.error(f"[chat] Turn failed for {org_id}: {e}")
        yield ("error", message_for_exception(e))


async def _business_turn(org_id: str, messages: list[dict], engine: OnboardingEngine, locale: str):
    yield ("phase", "generating")
    answered = await database.list_business_fields(org_id, answered=True)
    reply = await engine.generator.generate_reply(org_id, messages, answered, locale)
    signal = await engine.observe_assistant_message(org_id, reply)
    # Markers are for the backend only
    visible = "\n".join(
        line for line in reply.splitlines() if not line.strip().startswith("STATUS:")
    ).strip()
    yield ("result", {
        "aiMessage": visible,
        "multipleChoices": None,
        "allowMultiple": False,
        "statusSignal": signal,
    })
