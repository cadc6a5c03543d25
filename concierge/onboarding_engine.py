from __future__ import annotations
"""
Concierge — Onboarding Engine
=============================
Turns free-form conversation into structured business facts and keeps a
FIFO queue of questions for whatever is still unknown.

  next_questions   unanswered queue, or a freshly generated batch
  extract          AI (field_name, value, confidence) triples for user text
  apply            accept triples above the confidence threshold, write-once
  progress         answered / total, 100% once setup completion is observed

Extraction failures are logged and treated as "nothing found". A failed
question generation returns None rather than an empty batch, so it is never
mistaken for "nothing left to ask"; onboarding tries again next turn.
"""

import logging
import os
import re

import concierge.database as database

logger = logging.getLogger(__name__)

# Extractions at or below this confidence are discarded.
ACCEPTANCE_THRESHOLD = float(os.getenv("EXTRACTION_CONFIDENCE_THRESHOLD", "0.3"))

SETUP_COMPLETE = "setup_complete"
COMPLETION_SIGNAL_ALIASES = {
    "setup_complete",
    "setup_completed",
    "onboarding_complete",
    "onboarding_completed",
    "completed",
}
STAGE_SIGNALS = {"stage_1_complete", "stage_2_complete", "stage_3_complete"}

_STATUS_RE = re.compile(r"STATUS:\s*([A-Za-z0-9_]+)")


def normalize_status_signal(signal: str | None) -> str | None:
    """Fold completion synonyms onto ``setup_complete``; other signals pass through."""
    if not signal:
        return None
    signal = signal.strip().lower()
    if signal in COMPLETION_SIGNAL_ALIASES:
        return SETUP_COMPLETE
    return signal


def _default_question(field_name: str) -> str:
    return f"What is your {field_name.replace('_', ' ')}?"


# ===========================================================================
# Fact store
# ===========================================================================

class SqliteFactStore:
    """Business-field storage backed by ``concierge.database``."""

    async def list_fields(self, organization_id: str) -> list[dict]:
        return await database.list_business_fields(organization_id)

    async def insert_fields(self, organization_id: str, fields: list[dict]) -> int:
        return await database.insert_business_fields(organization_id, fields)

    async def mark_answered(
        self,
        organization_id: str,
        field_name: str,
        value: str,
        confidence: float,
        source: str = "conversation",
    ) -> bool:
        return await database.mark_business_field_answered(
            organization_id, field_name, value, confidence, source
        )

    async def reset_field(self, organization_id: str, field_name: str) -> bool:
        return await database.reset_business_field(organization_id, field_name)


# ===========================================================================
# Engine
# ===========================================================================

class OnboardingEngine:
    def __init__(self, store, generator, threshold: float = ACCEPTANCE_THRESHOLD):
        self.store = store
        self.generator = generator
        self.threshold = threshold

    # -----------------------------------------------------------------------
    # Question queue
    # -----------------------------------------------------------------------

    async def unanswered(self, organization_id: str) -> list[dict]:
        fields = await self.store.list_fields(organization_id)
        return [f for f in fields if not f["is_answered"]]

    async def current_question(self, organization_id: str) -> dict | None:
        queue = await self.unanswered(organization_id)
        return queue[0] if queue else None

    async def next_questions(
        self,
        organization_id: str,
        recent_text: str = "",
        locale: str = "en",
    ) -> list[dict] | None:
        """Return the unanswered queue, generating a new batch when it is empty.

        ``[]`` means the generator has nothing left to ask. ``None`` means
        generation failed and should be retried on the next turn.
        """
        fields = await self.store.list_fields(organization_id)
        queue = [f for f in fields if not f["is_answered"]]
        if queue:
            return queue

        try:
            generated = await self.generator.generate_questions(
                organization_id, fields, recent_text, locale
            )
        except Exception as e:
            logger.warning(f"[onboarding] Question generation failed for {organization_id}: {e}")
            return None

        known = {f["field_name"] for f in fields}
        batch = []
        for q in generated or []:
            name = q.get("field_name")
            if not name or name in known or not q.get("question_template"):
                continue
            known.add(name)
            batch.append({**q, "source": "conversation"})

        if not batch:
            return []

        inserted = await self.store.insert_fields(organization_id, batch)
        logger.info(f"[onboarding] Queued {inserted} new question(s) for {organization_id}")
        return await self.unanswered(organization_id)

    # -----------------------------------------------------------------------
    # Extraction
    # -----------------------------------------------------------------------

    async def extract(self, organization_id: str, text: str) -> list[dict]:
        """Ask the generator which open fields ``text`` answers."""
        if not text or not text.strip():
            return []
        queue = await self.unanswered(organization_id)
        if not queue:
            return []
        try:
            return list(await self.generator.extract_facts(organization_id, queue, text) or [])
        except Exception as e:
            logger.warning(f"[onboarding] Extraction failed for {organization_id}: {e}")
            return []

    async def apply(
        self,
        organization_id: str,
        triples: list[dict],
        source: str = "conversation",
    ) -> list[dict]:
        """Store every triple above the threshold whose field is still open.

        Returns the triples that were actually written.
        """
        accepted = []
        for t in triples:
            name = t.get("field_name")
            confidence = float(t.get("confidence") or 0.0)
            if not name:
                continue
            if confidence <= self.threshold:
                logger.info(
                    f"[onboarding] Discarded {name}={t.get('value')!r} "
                    f"(confidence {confidence:.2f} <= {self.threshold})"
                )
                continue

            written = await self.store.mark_answered(
                organization_id, name, str(t.get("value") or ""), confidence, source
            )
            if not written:
                logger.debug(f"[onboarding] {name} already answered or unknown, skipped")
                continue

            accepted.append(t)
            logger.info(f"[onboarding] Accepted {name} (confidence {confidence:.2f})")

            if name == "business_name":
                await self._rename_organization(organization_id, str(t.get("value") or ""))

        return accepted

    async def _rename_organization(self, organization_id: str, name: str):
        name = name.strip()
        if not name:
            return
        try:
            await database.update_organization_identity(organization_id, name)
        except Exception as e:
            logger.warning(f"[onboarding] Could not rename organization {organization_id}: {e}")

    async def reset_field(self, organization_id: str, field_name: str) -> bool:
        """Reopen an answered field so it is asked again."""
        reset = await self.store.reset_field(organization_id, field_name)
        if reset:
            logger.info(f"[onboarding] Reopened {field_name} for {organization_id}")
        return reset

    async def apply_website_facts(self, organization_id: str, info: dict) -> list[dict]:
        """Store facts pulled from the business website.

        Facts for fields that were never asked get a field created first, so
        they count towards progress and are never asked later.
        """
        facts = [f for f in info.get("facts") or [] if f.get("field_name")]
        known = {f["field_name"] for f in await self.store.list_fields(organization_id)}
        missing = [
            {
                "field_name": f["field_name"],
                "field_type": "text",
                "question_template": _default_question(f["field_name"]),
                "source": "website",
            }
            for f in facts
            if f["field_name"] not in known and float(f.get("confidence") or 0.0) > self.threshold
        ]
        if missing:
            await self.store.insert_fields(organization_id, missing)
        return await self.apply(organization_id, facts, source="website")

    # -----------------------------------------------------------------------
    # Progress & completion
    # -----------------------------------------------------------------------

    async def progress(self, organization_id: str) -> dict:
        fields = await self.store.list_fields(organization_id)
        total = len(fields)
        answered = sum(1 for f in fields if f["is_answered"])
        record = await database.get_or_create_setup_completion(organization_id)
        completed = record["setup_status"] == "completed"

        if completed:
            percentage = 100
        elif total:
            percentage = round(answered * 100 / total)
        else:
            percentage = 0

        return {
            "answered": answered,
            "total": total,
            "percentage": percentage,
            "completed": completed,
        }

    async def observe_assistant_message(self, organization_id: str, text: str) -> str | None:
        """Record status markers found in an assistant message.

        Returns the normalised completion signal, if any.
        """
        result = None
        for raw in _STATUS_RE.findall(text or ""):
            signal = normalize_status_signal(raw)
            if signal in STAGE_SIGNALS:
                await database.record_setup_stage(organization_id, signal.replace("_complete", ""))
            elif signal == SETUP_COMPLETE:
                fields = await self.store.list_fields(organization_id)
                await database.mark_setup_completed(
                    organization_id,
                    {"answers": {f["field_name"]: f["value"] for f in fields if f["is_answered"]}},
                )
                logger.info(f"[onboarding] Setup completed for {organization_id}")
                result = SETUP_COMPLETE
        return result
