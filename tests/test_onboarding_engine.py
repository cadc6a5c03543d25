#!/usr/bin/env python3
"""
Onboarding Engine Tests
=======================
Question queue, confidence threshold, write-once facts, progress and the
chat turn event sequence. Runs against a throwaway SQLite file with a
scripted generator; no API calls.
"""
from __future__ import annotations
import asyncio
import sqlite3
import sys
import tempfile
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import concierge.database as database
from concierge.chat_engine import (
    ACKNOWLEDGEMENT,
    RETRY_MESSAGE,
    SETUP_COMPLETE_MESSAGE,
    WEBSITE_SCRAPING_OFFERED,
    WELCOME_MESSAGE,
    run_chat_turn,
)
from concierge.errors import RATE_LIMIT_MESSAGE, AIServiceError
from concierge.onboarding_engine import (
    OnboardingEngine,
    SqliteFactStore,
    normalize_status_signal,
)

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


QUESTIONS = [
    {"field_name": "business_name", "field_type": "text",
     "question_template": "What's your business name?", "choices": None, "allow_multiple": False},
    {"field_name": "business_type", "field_type": "choice",
     "question_template": "What kind of business is it?",
     "choices": ["Restaurant", "Shop", "Services"], "allow_multiple": False},
]


class FakeGenerator:
    """Scripted stand-in for ClaudeGenerator."""

    def __init__(self, batches=None, facts=None, fail_extract=False, reply="Happy to help."):
        self.batches = list(batches if batches is not None else [QUESTIONS, []])
        self.facts = facts or {}
        self.fail_extract = fail_extract
        self.reply = reply
        self.generate_calls = 0

    async def generate_questions(self, organization_id, known_fields, recent_text="", locale="en"):
        self.generate_calls += 1
        return self.batches.pop(0) if self.batches else []

    async def extract_facts(self, organization_id, unanswered, text):
        if self.fail_extract:
            raise AIServiceError(RATE_LIMIT_MESSAGE, status_code=429)
        return self.facts.get(text, [])

    async def generate_reply(self, organization_id, messages, answered_fields, locale="en"):
        return self.reply


def fresh_db():
    tmp = tempfile.mkdtemp(prefix="concierge-test-")
    database.set_db_path(str(Path(tmp) / "test.db"))
    asyncio.run(database.init_db())


async def new_organization(email="maria@example.com"):
    user = await database.get_or_create_user(email, "Maria")
    return await database.ensure_user_has_organization(user)


async def collect(gen):
    return [event async for event in gen]


# ── Question queue ──────────────────────────────────────────────────────

def test_generation_and_fifo():
    print("\n── Question generation / FIFO ──")
    fresh_db()

    async def scenario():
        gen = FakeGenerator(batches=[QUESTIONS + [QUESTIONS[0]]])
        engine = OnboardingEngine(SqliteFactStore(), gen)
        queue = await engine.next_questions("org-1")
        check("Batch stored", [q["field_name"] for q in queue] == ["business_name", "business_type"])
        check("Duplicate name in batch dropped", len(queue) == 2)
        check("Choices stored", queue[1]["choices"] == ["Restaurant", "Shop", "Services"])

        again = await engine.next_questions("org-1")
        check("Existing queue returned, no regeneration", gen.generate_calls == 1)
        check("Head unchanged", again[0]["field_name"] == "business_name")

        head = await engine.current_question("org-1")
        check("current_question is the head", head["field_name"] == "business_name")

    asyncio.run(scenario())


def test_generation_failure_is_not_exhaustion():
    print("\n── Generation failure ──")
    fresh_db()

    class Broken(FakeGenerator):
        async def generate_questions(self, *args, **kwargs):
            raise AIServiceError("nope")

    async def scenario():
        engine = OnboardingEngine(SqliteFactStore(), Broken())
        check("Failure is None, not an empty queue", await engine.next_questions("org-1") is None)
        exhausted = OnboardingEngine(SqliteFactStore(), FakeGenerator(batches=[[]]))
        check("Nothing left to ask is []", await exhausted.next_questions("org-2") == [])

    asyncio.run(scenario())


# ── Threshold & write-once ──────────────────────────────────────────────

def test_threshold_is_exclusive():
    print("\n── Confidence threshold ──")
    fresh_db()

    async def scenario():
        engine = OnboardingEngine(SqliteFactStore(), FakeGenerator(), threshold=0.3)
        await engine.next_questions("org-1")

        rejected = await engine.apply("org-1", [
            {"field_name": "business_type", "value": "Restaurant", "confidence": 0.3},
        ])
        check("0.3 rejected", rejected == [])

        accepted = await engine.apply("org-1", [
            {"field_name": "business_type", "value": "Restaurant", "confidence": 0.31},
        ])
        check("0.31 accepted", len(accepted) == 1)

        fields = {f["field_name"]: f for f in await database.list_business_fields("org-1")}
        check("Value stored", fields["business_type"]["value"] == "Restaurant")
        check("Marked answered", fields["business_type"]["is_answered"])

    asyncio.run(scenario())


def test_write_once():
    print("\n── Write-once ──")
    fresh_db()

    async def scenario():
        engine = OnboardingEngine(SqliteFactStore(), FakeGenerator())
        await engine.next_questions("org-1")
        await engine.apply("org-1", [{"field_name": "business_type", "value": "Shop", "confidence": 0.9}])
        second = await engine.apply("org-1", [
            {"field_name": "business_type", "value": "Restaurant", "confidence": 0.99},
        ])
        check("Second answer ignored", second == [])
        fields = {f["field_name"]: f for f in await database.list_business_fields("org-1")}
        check("First value kept", fields["business_type"]["value"] == "Shop")

        unknown = await engine.apply("org-1", [{"field_name": "mascot", "value": "Owl", "confidence": 0.9}])
        check("Unknown field ignored", unknown == [])

        check("Reset reopens the field", await engine.reset_field("org-1", "business_type"))
        queue = await engine.unanswered("org-1")
        check("Field back in the queue", "business_type" in [q["field_name"] for q in queue])
        check("Reset of an open field is a no-op", not await engine.reset_field("org-1", "business_type"))

    asyncio.run(scenario())


def test_business_name_renames_organization():
    print("\n── business_name renames the organization ──")
    fresh_db()

    async def scenario():
        org = await new_organization()
        check("Default organization name", org["name"] == "maria's Organization")
        engine = OnboardingEngine(SqliteFactStore(), FakeGenerator())
        await engine.next_questions(org["id"])
        await engine.apply(org["id"], [
            {"field_name": "business_name", "value": "La Cocina de María", "confidence": 0.95},
        ])
        renamed = await database.get_organization(org["id"])
        check("Organization renamed", renamed["name"] == "La Cocina de María")
        check("Slug regenerated", renamed["slug"] == "la-cocina-de-mar-a", renamed["slug"])

    asyncio.run(scenario())


def test_concurrent_organization_creation():
    print("\n── Concurrent organization creation ──")
    fresh_db()

    async def scenario():
        maria = await database.get_or_create_user("maria@example.com", "Maria")
        first, second = await asyncio.gather(
            database.ensure_user_has_organization(maria),
            database.ensure_user_has_organization(maria),
        )
        check("Same organization for both calls", first["id"] == second["id"], f"{first['id']} != {second['id']}")
        again = await database.ensure_user_has_organization(maria)
        check("Later call returns it too", again["id"] == first["id"])

        # Same email prefix, same default name
        a = await database.get_or_create_user("maria@a.com", "Maria A")
        b = await database.get_or_create_user("maria@b.com", "Maria B")
        org_a, org_b = await asyncio.gather(
            database.ensure_user_has_organization(a),
            database.ensure_user_has_organization(b),
        )
        check("Distinct organizations", org_a["id"] != org_b["id"])
        check("Distinct slugs", org_a["slug"] != org_b["slug"], org_a["slug"])

    asyncio.run(scenario())

    with sqlite3.connect(database._get_db_path()) as conn:
        owned = conn.execute(
            "SELECT COUNT(*) FROM organizations o JOIN users u ON u.id = o.owner_id WHERE u.email = ?",
            ("maria@example.com",),
        ).fetchone()[0]
    check("One organization row per user", owned == 1, str(owned))


def test_extraction_failure_is_empty():
    print("\n── Extraction failure ──")
    fresh_db()

    async def scenario():
        engine = OnboardingEngine(SqliteFactStore(), FakeGenerator(fail_extract=True))
        await engine.next_questions("org-1")
        check("Failure gives no triples", await engine.extract("org-1", "We sell tacos") == [])
        check("Blank text skipped", await engine.extract("org-1", "   ") == [])

    asyncio.run(scenario())


# ── Website facts ───────────────────────────────────────────────────────

def test_apply_website_facts():
    print("\n── Website facts ──")
    fresh_db()

    async def scenario():
        engine = OnboardingEngine(SqliteFactStore(), FakeGenerator())
        await engine.next_questions("org-1")
        accepted = await engine.apply_website_facts("org-1", {"facts": [
            {"field_name": "business_name", "value": "Taquería Sol", "confidence": 0.9},
            {"field_name": "opening_hours", "value": "9-5", "confidence": 0.8},
            {"field_name": "phone", "value": "?", "confidence": 0.1},
        ]})
        names = [a["field_name"] for a in accepted]
        check("Known and new confident facts accepted", names == ["business_name", "opening_hours"], str(names))

        fields = {f["field_name"]: f for f in await database.list_business_fields("org-1")}
        check("New field created for a website fact", "opening_hours" in fields)
        check("Low-confidence fact created no field", "phone" not in fields)
        check("Source recorded", fields["opening_hours"]["source"] == "website")

    asyncio.run(scenario())


# ── Progress & status markers ───────────────────────────────────────────

def test_progress_and_completion():
    print("\n── Progress ──")
    fresh_db()

    async def scenario():
        engine = OnboardingEngine(SqliteFactStore(), FakeGenerator())
        empty = await engine.progress("org-1")
        check("No fields is 0%", empty["percentage"] == 0 and empty["total"] == 0)

        await engine.next_questions("org-1")
        await engine.apply("org-1", [{"field_name": "business_type", "value": "Shop", "confidence": 0.9}])
        half = await engine.progress("org-1")
        check("One of two answered", half["answered"] == 1 and half["total"] == 2)
        check("50%", half["percentage"] == 50)

        await engine.observe_assistant_message("org-1", "Nice!\nSTATUS: stage_1_complete")
        record = await database.get_or_create_setup_completion("org-1")
        check("Stage recorded", record["completion_data"].get("stages") == ["stage_1"])
        check("Not completed yet", record["setup_status"] == "in_progress")

        signal = await engine.observe_assistant_message("org-1", "All done. STATUS: onboarding_completed")
        check("Alias normalised", signal == "setup_complete")
        done = await engine.progress("org-1")
        check("Completed is 100%", done["percentage"] == 100 and done["completed"])
        record = await database.get_or_create_setup_completion("org-1")
        check("Answers snapshotted", record["completion_data"]["answers"] == {"business_type": "Shop"})
        check("Stages kept", record["completion_data"]["stages"] == ["stage_1"])

    asyncio.run(scenario())


def test_normalize_status_signal():
    print("\n── normalize_status_signal ──")
    check("completed → setup_complete", normalize_status_signal("completed") == "setup_complete")
    check("Case folded", normalize_status_signal(" SETUP_COMPLETED ") == "setup_complete")
    check("Other signals pass through", normalize_status_signal("stage_2_complete") == "stage_2_complete")
    check("None stays None", normalize_status_signal(None) is None)


# ── Chat turns ──────────────────────────────────────────────────────────

def test_first_turn_offers_website():
    print("\n── First turn offers website analysis ──")
    fresh_db()

    async def scenario():
        org = await new_organization()
        engine = OnboardingEngine(SqliteFactStore(), FakeGenerator())
        events = await collect(run_chat_turn(org, [], engine))
        check("Phases then result", [e[0] for e in events] == ["phase", "phase", "result"], str(events))
        check("Phase order", [e[1] for e in events[:2]] == ["extracting", "generating"])
        result = events[-1][1]
        check("Welcome message", result["aiMessage"] == WELCOME_MESSAGE)
        check("Offer signal", result["statusSignal"] == WEBSITE_SCRAPING_OFFERED)
        stored = await database.get_organization(org["id"])
        check("State moved to offered", stored["website_scraping_state"] == "offered")

    asyncio.run(scenario())


def test_conversation_reaches_completion():
    print("\n── Conversation to completion ──")
    fresh_db()

    async def scenario():
        org = await new_organization()
        await database.set_website_scraping_state(org["id"], "skipped")
        org = await database.get_organization(org["id"])
        gen = FakeGenerator(facts={
            "We're Taquería Sol": [
                {"field_name": "business_name", "value": "Taquería Sol", "confidence": 0.9},
            ],
            "A restaurant": [
                {"field_name": "business_type", "value": "Restaurant", "confidence": 0.8},
            ],
        })
        engine = OnboardingEngine(SqliteFactStore(), gen)

        events = await collect(run_chat_turn(org, [{"role": "user", "content": "skip"}], engine))
        first = events[-1][1]
        check("First question asked", first["aiMessage"] == "What's your business name?")

        history = [
            {"role": "user", "content": "skip"},
            {"role": "assistant", "content": first["aiMessage"]},
            {"role": "user", "content": "We're Taquería Sol"},
        ]
        events = await collect(run_chat_turn(org, history, engine))
        second = events[-1][1]
        check("Acknowledged and moved on", second["aiMessage"].startswith(ACKNOWLEDGEMENT))
        check("Next question with choices", second["multipleChoices"] == ["Restaurant", "Shop", "Services"])

        history += [
            {"role": "assistant", "content": second["aiMessage"]},
            {"role": "user", "content": "A restaurant"},
        ]
        events = await collect(run_chat_turn(org, history, engine))
        final = events[-1][1]
        check("Completion message", final["aiMessage"] == SETUP_COMPLETE_MESSAGE)
        check("Completion signal", final["statusSignal"] == "setup_complete")
        progress = await engine.progress(org["id"])
        check("Progress 100%", progress["percentage"] == 100)

        history += [
            {"role": "assistant", "content": final["aiMessage"]},
            {"role": "user", "content": "What's my plan?"},
        ]
        gen.reply = "You're on the free plan.\nSTATUS: setup_complete"
        events = await collect(run_chat_turn(org, history, engine))
        check("Completed org gets a generated reply", events[-1][1]["aiMessage"] == "You're on the free plan.")
        check("Only the generating phase", [e for e in events if e[0] == "phase"] == [("phase", "generating")])

    asyncio.run(scenario())


def test_generation_failure_does_not_complete_setup():
    print("\n── Question generation fails once ──")
    fresh_db()

    class FailsOnce(FakeGenerator):
        async def generate_questions(self, *args, **kwargs):
            if self.generate_calls == 0:
                self.generate_calls += 1
                raise AIServiceError(RATE_LIMIT_MESSAGE, status_code=429)
            return await super().generate_questions(*args, **kwargs)

    async def scenario():
        org = await new_organization()
        await database.set_website_scraping_state(org["id"], "skipped")
        org = await database.get_organization(org["id"])
        gen = FailsOnce()
        engine = OnboardingEngine(SqliteFactStore(), gen)

        history = [{"role": "user", "content": "skip"}]
        events = await collect(run_chat_turn(org, history, engine))
        first = events[-1]
        check("Still a result, not an error", first[0] == "result", str(first))
        check("Retry message", first[1]["aiMessage"] == RETRY_MESSAGE, first[1]["aiMessage"])
        check("No completion signal", first[1]["statusSignal"] is None)
        record = await database.get_or_create_setup_completion(org["id"])
        check("Setup not completed", record["setup_status"] == "in_progress", record["setup_status"])
        check("Progress not completed", not (await engine.progress(org["id"]))["completed"])

        history += [
            {"role": "assistant", "content": first[1]["aiMessage"]},
            {"role": "user", "content": "We sell tacos"},
        ]
        events = await collect(run_chat_turn(org, history, engine))
        check("Generation retried", gen.generate_calls == 2, str(gen.generate_calls))
        check("First question asked", events[-1][1]["aiMessage"] == "What's your business name?")

    asyncio.run(scenario())


def test_reopened_field_resumes_onboarding():
    print("\n── Reopened field after completion ──")
    fresh_db()

    async def scenario():
        org = await new_organization()
        await database.set_website_scraping_state(org["id"], "skipped")
        org = await database.get_organization(org["id"])
        engine = OnboardingEngine(SqliteFactStore(), FakeGenerator())
        await engine.next_questions(org["id"])
        await engine.apply(org["id"], [
            {"field_name": "business_name", "value": "Taquería Sol", "confidence": 0.9},
            {"field_name": "business_type", "value": "Restaurant", "confidence": 0.9},
        ])
        await engine.observe_assistant_message(org["id"], "STATUS: setup_complete")
        await engine.reset_field(org["id"], "business_type")

        events = await collect(run_chat_turn(org, [{"role": "user", "content": "hi"}], engine))
        result = events[-1][1]
        check("Reopened question asked", result["aiMessage"] == "What kind of business is it?", result["aiMessage"])
        check("Choices offered again", result["multipleChoices"] == ["Restaurant", "Shop", "Services"])

    asyncio.run(scenario())


def test_turn_error_is_terminal():
    print("\n── Failing turn ──")
    fresh_db()

    class Exploding(FakeGenerator):
        async def generate_reply(self, *args, **kwargs):
            raise AIServiceError(RATE_LIMIT_MESSAGE, status_code=429)

    async def scenario():
        await database.mark_setup_completed("org-err")
        engine = OnboardingEngine(SqliteFactStore(), Exploding())
        events = await collect(run_chat_turn(
            {"id": "org-err", "website_scraping_state": "completed"},
            [{"role": "user", "content": "hi"}],
            engine,
        ))
        terminals = [e for e in events if e[0] in ("result", "error")]
        check("Exactly one terminal event", len(terminals) == 1)
        check("It is an error", events[-1] == ("error", RATE_LIMIT_MESSAGE), str(events[-1]))

    asyncio.run(scenario())


# ── Run All ─────────────────────────────────────────────────────────────

if __name__ == "__main__":
    print("=" * 60)
    print("ONBOARDING ENGINE TESTS")
    print("=" * 60)

    test_generation_and_fifo()
    test_generation_failure_is_not_exhaustion()
    test_threshold_is_exclusive()
    test_write_once()
    test_business_name_renames_organization()
    test_concurrent_organization_creation()
    test_extraction_failure_is_empty()
    test_apply_website_facts()
    test_progress_and_completion()
    test_normalize_status_signal()
    test_first_turn_offers_website()
    test_conversation_reaches_completion()
    test_generation_failure_does_not_complete_setup()
    test_reopened_field_resumes_onboarding()
    test_turn_error_is_terminal()

    print("\n" + "=" * 60)
    total = PASS + FAIL
    print(f"RESULTS: {PASS}/{total} passed, {FAIL} failed")
    print("=" * 60)
    sys.exit(1 if FAIL > 0 else 0)
