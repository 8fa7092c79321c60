"""Tests for clarification tokens and the clarification markdown helpers."""

import threading

import pytest

from conveyor.core.clarifications import (
    ClarificationService,
    format_answer_comment,
    format_question_markdown,
    hash_token,
    parse_clarification_markdown,
)
from conveyor.core.config import ClarificationConfig
from conveyor.core.errors import ExpiredToken, InvalidToken
from conveyor.core.models import (
    ClarificationOption,
    ClarificationQuestion,
    WorkItem,
    WorkItemStatus,
)

AGENT_QUESTION = """## Context

The settings page has no persistence layer yet.

## Question

Where should the theme preference be stored?

## Options

✅ Option 1: Local storage
   - No backend change
   - Per-device only
⚠️ Option 2: User profile
   - Syncs across devices

## Recommendation

Start with local storage.
"""


@pytest.fixture
def item(store):
    return store.create_item(WorkItem(title="Add dark mode", status=WorkItemStatus.TECH_DESIGN))


@pytest.fixture
def question():
    return ClarificationQuestion(
        question="Where should the preference live?",
        options=[ClarificationOption(label="Local storage", recommended=True)],
    )


class TestIssueAndAnswer:
    def test_issue_stores_only_a_hash(self, clarifications, item, question, store, clock):
        clarification, token = clarifications.issue(item, question)

        stored = store.get_clarification(clarification.id)
        assert stored.status == "pending"
        assert stored.stage == WorkItemStatus.TECH_DESIGN
        assert token not in stored.token_hash
        assert stored.token_hash == hash_token("test-secret", clarification.id, token)
        assert (stored.expires_at - clock()).total_seconds() == 3600

    def test_tokens_are_unique(self, clarifications, item, question):
        _, first = clarifications.issue(item, question)
        _, second = clarifications.issue(item, question)
        assert first != second

    def test_answer_url(self, clarifications, item, question):
        clarification, token = clarifications.issue(item, question)

        url = clarifications.answer_url(clarification, token)

        assert url == f"https://conveyor.test/clarify/{clarification.id}?token={token}"

    def test_verify_does_not_consume(self, clarifications, item, question, store):
        clarification, token = clarifications.issue(item, question)

        clarifications.verify(clarification.id, token)

        assert store.get_clarification(clarification.id).status == "pending"

    def test_answer(self, clarifications, item, question, store):
        clarification, token = clarifications.issue(item, question)

        answered = clarifications.answer(clarification.id, token, "  Local storage  ")

        assert answered.status == "answered"
        assert answered.answer == "Local storage"
        assert answered.answered_at is not None
        assert store.get_clarification(clarification.id).status == "answered"

    def test_token_is_single_use(self, clarifications, item, question):
        clarification, token = clarifications.issue(item, question)
        clarifications.answer(clarification.id, token, "Local storage")

        with pytest.raises(InvalidToken, match="already answered"):
            clarifications.answer(clarification.id, token, "Profile")

    def test_wrong_token(self, clarifications, item, question):
        clarification, _ = clarifications.issue(item, question)

        with pytest.raises(InvalidToken, match="Invalid token"):
            clarifications.answer(clarification.id, "guess", "Local storage")

    def test_token_bound_to_its_clarification(self, clarifications, item, question):
        first, token = clarifications.issue(item, question)
        second, _ = clarifications.issue(item, question)

        with pytest.raises(InvalidToken):
            clarifications.verify(second.id, token)

    def test_unknown_clarification(self, clarifications):
        with pytest.raises(InvalidToken, match="Unknown clarification"):
            clarifications.verify("nope", "token")

    def test_empty_answer(self, clarifications, item, question, store):
        clarification, token = clarifications.issue(item, question)

        with pytest.raises(InvalidToken, match="must not be empty"):
            clarifications.answer(clarification.id, token, "   ")

        assert store.get_clarification(clarification.id).status == "pending"

    def test_concurrent_answers_one_wins(self, clarifications, item, question):
        clarification, token = clarifications.issue(item, question)
        barrier = threading.Barrier(4)
        results = []

        def submit(answer):
            barrier.wait()
            try:
                clarifications.answer(clarification.id, token, answer)
                results.append("ok")
            except InvalidToken:
                results.append("rejected")

        threads = [threading.Thread(target=submit, args=(f"answer {i}",)) for i in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(results) == ["ok", "rejected", "rejected", "rejected"]

    def test_requires_secret(self, store):
        with pytest.raises(ValueError, match="secret"):
            ClarificationService(store, ClarificationConfig(secret=None))


class TestExpiry:
    def test_expired_token(self, clarifications, item, question, clock, store):
        clarification, token = clarifications.issue(item, question)
        clock.advance(3600)

        with pytest.raises(ExpiredToken):
            clarifications.answer(clarification.id, token, "Local storage")

        assert store.get_clarification(clarification.id).status == "expired"

    def test_expired_stays_expired(self, clarifications, item, question, clock):
        clarification, token = clarifications.issue(item, question)
        clock.advance(3601)
        with pytest.raises(ExpiredToken):
            clarifications.verify(clarification.id, token)

        with pytest.raises(ExpiredToken):
            clarifications.verify(clarification.id, token)

    def test_just_before_expiry(self, clarifications, item, question, clock):
        clarification, token = clarifications.issue(item, question)
        clock.advance(3599)

        assert clarifications.answer(clarification.id, token, "ok").status == "answered"

    def test_expire_stale(self, clarifications, item, question, clock, store):
        old, _ = clarifications.issue(item, question)
        clock.advance(1800)
        fresh, _ = clarifications.issue(item, question)
        clock.advance(1801)

        expired = clarifications.expire_stale()

        assert [c.id for c in expired] == [old.id]
        assert store.get_clarification(fresh.id).status == "pending"
        assert clarifications.expire_stale() == []


class TestMarkdown:
    def test_parse_agent_question(self):
        parsed = parse_clarification_markdown(AGENT_QUESTION)

        assert parsed.question == "Where should the theme preference be stored?"
        assert parsed.context == "The settings page has no persistence layer yet."
        assert parsed.recommendation == "Start with local storage."
        assert [o.label for o in parsed.options] == ["Local storage", "User profile"]
        assert parsed.options[0].recommended is True
        assert parsed.options[0].details == ["No backend change", "Per-device only"]
        assert parsed.options[1].recommended is False

    def test_parse_without_options(self):
        assert parse_clarification_markdown("## Question\n\nWhat now?") is None

    def test_parse_without_question(self):
        assert parse_clarification_markdown("## Options\n\n✅ Option 1: Yes") is None

    def test_format_is_readable_by_parser(self):
        parsed = parse_clarification_markdown(AGENT_QUESTION)

        assert parse_clarification_markdown(format_question_markdown(parsed)) == parsed

    def test_format_answer_comment(self, question):
        comment = format_answer_comment(question, "Local storage")

        assert comment.startswith("## ✅ Clarification Provided")
        assert "**Q:** Where should the preference live?" in comment
        assert "**A:** Local storage" in comment
