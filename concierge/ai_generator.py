from __future__ import annotations
"""
Concierge — AI Generator
========================
All calls to Claude go through here. The onboarding engine and the chat
engine depend only on the four coroutine methods of ``ClaudeGenerator``:

    generate_questions  next batch of onboarding questions
    extract_facts       (field_name, value, confidence) triples from user text
    generate_reply      free-form assistant reply once setup is complete
    summarize_website   business facts pulled from scraped website text

Each call tries the primary model first, then the fallback model.
"""

import json
import logging
import os
import re
from pathlib import Path

import anthropic
from dotenv import load_dotenv

from concierge.database import log_llm_usage
from concierge.errors import GENERIC_AI_MESSAGE, AIServiceError, to_service_error

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
CHAT_MODEL = os.getenv("CHAT_MODEL", "claude-sonnet-4-5-20250929")
FALLBACK_MODEL = os.getenv("FALLBACK_MODEL", "claude-sonnet-4-20250514")

FIELD_TYPES = ("text", "array", "boolean", "number", "multiple_choice")

# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

QUESTIONS_SYSTEM_PROMPT = """You are the onboarding assistant of a business dashboard. You collect the information needed to set up an AI agent for a small business, one short question at a time.

Given the facts already collected and the latest conversation, propose the next 1-3 questions that are still missing. Never repeat a field that is already known.

Reply with JSON only:
{"questions": [{"field_name": "snake_case_name", "field_type": "text|array|boolean|number|multiple_choice", "question_template": "the question to ask", "multiple_choices": ["optional", "choices"], "allow_multiple": false}]}

Return {"questions": []} when the business profile is complete."""

EXTRACTION_SYSTEM_PROMPT = """You extract business facts from a user's chat message.

You receive the list of open questions (field name and question) and the user's latest text. For every question the text answers, return the field name, the answer as a short string, and your confidence between 0 and 1. Only answer fields from the list. Do not guess.

Reply with JSON only:
{"facts": [{"field_name": "...", "value": "...", "confidence": 0.0}]}"""

REPLY_SYSTEM_PROMPT = """You are the AI assistant of the business described below. Setup is complete, so help the owner run and improve their agent. Be concise and friendly. Answer in the user's language ({locale}).

BUSINESS PROFILE:
{profile}"""

WEBSITE_SYSTEM_PROMPT = """You read the text of a business website and pull out the facts needed to set up the business's AI agent.

Reply with JSON only:
{"facts": [{"field_name": "snake_case_name", "value": "...", "confidence": 0.0}], "summary": "one paragraph overview"}

Use business_name for the company name when present. Leave out anything the text does not state."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _parse_json_response(text: str) -> dict:
    """Parse a JSON object from a model reply, tolerating code fences and preamble."""
    text = text.strip()
    fence = re.search(r"```(?:json)?\s*(.*?)```", text, re.DOTALL)
    if fence:
        text = fence.group(1).strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            raise
        data = json.loads(text[start:end + 1])
    if not isinstance(data, dict):
        raise ValueError("Expected a JSON object")
    return data


def _normalize_question(raw: dict) -> dict | None:
    field_name = str(raw.get("field_name") or "").strip()
    template = str(raw.get("question_template") or raw.get("question") or "").strip()
    if not field_name or not template:
        return None
    field_type = raw.get("field_type") if raw.get("field_type") in FIELD_TYPES else "text"
    choices = raw.get("multiple_choices") or raw.get("choices") or None
    if choices is not None:
        choices = [str(c) for c in choices if str(c).strip()] or None
    if choices and field_type == "text":
        field_type = "multiple_choice"
    return {
        "field_name": field_name,
        "field_type": field_type,
        "question_template": template,
        "choices": choices,
        "allow_multiple": bool(raw.get("allow_multiple", False)),
    }


def _normalize_fact(raw: dict) -> dict | None:
    field_name = str(raw.get("field_name") or "").strip()
    value = raw.get("value")
    if not field_name or value is None:
        return None
    if isinstance(value, (list, tuple)):
        value = ", ".join(str(v) for v in value)
    try:
        confidence = float(raw.get("confidence", 0.0))
    except (TypeError, ValueError):
        confidence = 0.0
    return {
        "field_name": field_name,
        "value": str(value).strip(),
        "confidence": max(0.0, min(confidence, 1.0)),
    }


def _format_fields(fields: list[dict]) -> str:
    if not fields:
        return "(none)"
    lines = []
    for f in fields:
        if f.get("is_answered"):
            lines.append(f"- {f['field_name']}: {f.get('value')}")
        else:
            lines.append(f"- {f['field_name']}: {f['question_template']}")
    return "\n".join(lines)


# ===========================================================================
# Generator
# ===========================================================================

class ClaudeGenerator:
    """Anthropic-backed implementation of the generator contract."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str = CHAT_MODEL,
        fallback_model: str = FALLBACK_MODEL,
        client: anthropic.AsyncAnthropic | None = None,
    ):
        self.model = model
        self.fallback_model = fallback_model
        self._api_key = api_key if api_key is not None else ANTHROPIC_API_KEY
        self._client = client

    def _get_client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            if not self._api_key:
                raise AIServiceError(GENERIC_AI_MESSAGE)
            self._client = anthropic.AsyncAnthropic(api_key=self._api_key)
        return self._client

    async def _call_claude(
        self,
        system: str,
        messages: list[dict],
        phase: str,
        organization_id: str | None = None,
        max_tokens: int = 1500,
    ) -> str:
        """Call Claude, falling back to the second model on refusal or error.

        Raises AIServiceError when both models fail.
        """
        client = self._get_client()
        last_error: Exception | None = None

        for model in [self.model, self.fallback_model]:
            try:
                response = await client.messages.create(
                    model=model,
                    max_tokens=max_tokens,
                    system=system,
                    messages=messages,
                )

                logger.info(
                    f"[ai] phase={phase} model={response.model} "
                    f"stop_reason={response.stop_reason} "
                    f"input_tokens={response.usage.input_tokens} "
                    f"output_tokens={response.usage.output_tokens}"
                )
                await log_llm_usage(response.usage, response.model, phase, organization_id)

                if response.stop_reason == "refusal" or not response.content:
                    logger.warning(f"[ai] {model} returned no usable content")
                    continue

                for block in response.content:
                    if getattr(block, "text", None):
                        return block.text
            except anthropic.APIError as e:
                logger.error(f"[ai] API error with {model}: {e}")
                last_error = e
                continue

        if last_error is not None:
            raise to_service_error(last_error)
        raise AIServiceError(GENERIC_AI_MESSAGE)

    async def generate_questions(
        self,
        organization_id: str,
        known_fields: list[dict],
        recent_text: str = "",
        locale: str = "en",
    ) -> list[dict]:
        user_content = (
            f"Language: {locale}\n\n"
            f"Known fields:\n{_format_fields(known_fields)}\n\n"
            f"Latest conversation:\n{recent_text or '(start of onboarding)'}"
        )
        text = await self._call_claude(
            QUESTIONS_SYSTEM_PROMPT,
            [{"role": "user", "content": user_content}],
            phase="questions",
            organization_id=organization_id,
        )
        data = _parse_json_response(text)
        questions = []
        for raw in data.get("questions") or []:
            if isinstance(raw, dict):
                q = _normalize_question(raw)
                if q:
                    questions.append(q)
        return questions

    async def extract_facts(
        self,
        organization_id: str,
        unanswered: list[dict],
        text: str,
    ) -> list[dict]:
        user_content = (
            f"Open questions:\n{_format_fields(unanswered)}\n\n"
            f"User text:\n{text}"
        )
        reply = await self._call_claude(
            EXTRACTION_SYSTEM_PROMPT,
            [{"role": "user", "content": user_content}],
            phase="extraction",
            organization_id=organization_id,
        )
        data = _parse_json_response(reply)
        facts = []
        for raw in data.get("facts") or []:
            if isinstance(raw, dict):
                fact = _normalize_fact(raw)
                if fact:
                    facts.append(fact)
        return facts

    async def generate_reply(
        self,
        organization_id: str,
        messages: list[dict],
        answered_fields: list[dict],
        locale: str = "en",
    ) -> str:
        system = REPLY_SYSTEM_PROMPT.format(
            locale=locale, profile=_format_fields(answered_fields)
        )
        conversation = [
            {"role": m["role"], "content": m["content"]}
            for m in messages
            if m.get("role") in ("user", "assistant") and m.get("content")
        ]
        if not conversation or conversation[0]["role"] != "user":
            conversation.insert(0, {"role": "user", "content": "Hello"})
        return await self._call_claude(
            system, conversation, phase="reply", organization_id=organization_id, max_tokens=2000
        )

    async def summarize_website(self, organization_id: str, url: str, content: str) -> dict:
        reply = await self._call_claude(
            WEBSITE_SYSTEM_PROMPT,
            [{"role": "user", "content": f"Website: {url}\n\n{content}"}],
            phase="website",
            organization_id=organization_id,
        )
        data = _parse_json_response(reply)
        facts = []
        for raw in data.get("facts") or []:
            if isinstance(raw, dict):
                fact = _normalize_fact(raw)
                if fact:
                    facts.append(fact)
        return {"facts": facts, "summary": str(data.get("summary") or "")}
