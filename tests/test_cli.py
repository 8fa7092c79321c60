"""Tests for CLI commands."""

import json
import re
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from conveyor.cli.cli import app
from conveyor.core.config import AgentConfig
from conveyor.core.models import (
    ClarificationOption,
    ClarificationQuestion,
    ReviewStatus,
    WorkItemStatus,
)
from conveyor.core.workflow.pipeline import StagePipeline

from conftest import MERGE_SHA

runner = CliRunner()


@pytest.fixture
def cli_service(service):
    """Point every CLI command at the in-memory test service."""
    with patch("conveyor.cli.cli.get_service", return_value=service):
        yield service


@pytest.fixture
def cli_pipeline(cli_service, llm):
    pipeline = StagePipeline(cli_service, llm, AgentConfig(max_attempts=1, retry_delay=0))
    with patch("conveyor.cli.cli.get_pipeline", return_value=pipeline):
        yield pipeline


def test_cli_help():
    """Test CLI help command."""
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "Conveyor CLI" in result.output


def test_cli_version():
    """Test version flag."""
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert "version" in result.output.lower()


class TestItemCommands:
    def test_create_prints_only_the_id(self, cli_service, store):
        result = runner.invoke(
            app, ["create", "Add dark mode", "-d", "Users want it", "--issue", "42"]
        )

        assert result.exit_code == 0
        item_id = result.output.strip()
        item = store.get_item(item_id)
        assert item.title == "Add dark mode"
        assert item.description == "Users want it"
        assert item.issue_number == 42
        assert item.item_type == "feature"
        assert item.status == WorkItemStatus.BACKLOG

    def test_create_bug(self, cli_service, store):
        result = runner.invoke(app, ["create", "Crash on start", "--bug"])

        assert result.exit_code == 0
        assert store.get_item(result.output.strip()).item_type == "bug"

    def test_create_empty_title_fails(self, cli_service):
        result = runner.invoke(app, ["create", "   "])

        assert result.exit_code == 1
        assert "Error" in result.output

    def test_show(self, cli_service, items):
        item = items.in_review(42, issue=7)

        result = runner.invoke(app, ["show", item.id])

        assert result.exit_code == 0
        assert f"{item.id}  review  [waiting_for_review]  Add dark mode" in result.output
        assert "issue: #7" in result.output
        assert "pr: #42" in result.output

    def test_show_unknown_item(self, cli_service):
        result = runner.invoke(app, ["show", "missing"])

        assert result.exit_code == 1
        assert "Error: Work item missing not found" in result.output

    def test_route(self, cli_service, items, store):
        item = items.backlog()

        result = runner.invoke(app, ["route", item.id, "tech_design"])

        assert result.exit_code == 0
        assert "tech_design" in result.output
        assert store.get_item(item.id).status == WorkItemStatus.TECH_DESIGN

    def test_route_rejects_unknown_destination(self, cli_service, items):
        item = items.backlog()

        result = runner.invoke(app, ["route", item.id, "shipping"])

        assert result.exit_code != 0

    def test_invalid_transition_exits_1(self, cli_service, items, store):
        item = items.in_stage(WorkItemStatus.PRODUCT_DESIGN)

        result = runner.invoke(app, ["route", item.id, "implementation"])

        assert result.exit_code == 1
        assert "Error" in result.output
        assert store.get_item(item.id).status == WorkItemStatus.PRODUCT_DESIGN

    def test_history(self, cli_service, items):
        item = items.with_design(WorkItemStatus.PRODUCT_DESIGN)

        result = runner.invoke(app, ["history", item.id])

        assert result.exit_code == 0
        lines = result.output.strip().splitlines()
        assert len(lines) == 2
        assert "route_to_product_design" in lines[0]
        assert "complete_design" in lines[1]
        assert "waiting_for_review" in lines[1]


class TestReviewCommands:
    def test_review_design_approve(self, cli_service, items, store):
        item = items.with_design(WorkItemStatus.PRODUCT_DESIGN)

        result = runner.invoke(app, ["review-design", item.id, "approve"])

        assert result.exit_code == 0
        assert store.get_item(item.id).status == WorkItemStatus.TECH_DESIGN

    def test_review_design_unknown_action(self, cli_service, items):
        item = items.with_design(WorkItemStatus.PRODUCT_DESIGN)

        result = runner.invoke(app, ["review-design", item.id, "maybe"])

        assert result.exit_code == 1
        assert "unknown action 'maybe'" in result.output

    def test_review_design_changes_records_reason(self, cli_service, items, store):
        item = items.with_design(WorkItemStatus.TECH_DESIGN)

        result = runner.invoke(
            app, ["review-design", item.id, "changes", "--reason", "Cover migrations"]
        )

        assert result.exit_code == 0
        assert store.get_item(item.id).review_status == ReviewStatus.REQUEST_CHANGES
        assert store.list_transitions(item.id)[-1].reason == "Cover migrations"

    def test_approve_and_merge_pr(self, cli_service, items, store, adapter):
        item = items.in_review(42)

        result = runner.invoke(
            app, ["approve-pr", item.id, "--title", "feat: dark mode", "--body", "- Toggle"]
        )
        assert result.exit_code == 0
        assert store.list_transitions(item.id)[-1].actor == "human"

        result = runner.invoke(app, ["merge-pr", item.id, "42"])

        assert result.exit_code == 0
        assert store.get_item(item.id).status == WorkItemStatus.DONE
        assert adapter.merges == [(42, "feat: dark mode", "- Toggle")]

    def test_merge_without_approval_fails(self, cli_service, items, adapter):
        item = items.in_review(42)

        result = runner.invoke(app, ["merge-pr", item.id, "42"])

        assert result.exit_code == 1
        assert adapter.merges == []

    def test_request_changes(self, cli_service, items, store):
        item = items.in_review(42)

        result = runner.invoke(app, ["request-changes", item.id, "-r", "Add tests"])

        assert result.exit_code == 0
        updated = store.get_item(item.id)
        assert updated.status == WorkItemStatus.IMPLEMENTATION
        assert updated.review_status == ReviewStatus.REQUEST_CHANGES

    def test_revert_and_merge_revert(self, cli_service, items, store, adapter):
        item = items.done(42)

        result = runner.invoke(app, ["revert", item.id, "42", "--sha", MERGE_SHA[:7]])
        assert result.exit_code == 0
        assert store.get_item(item.id).status == WorkItemStatus.REVERTED

        result = runner.invoke(app, ["merge-revert", item.id, "99"])

        assert result.exit_code == 0
        assert store.get_item(item.id).status == WorkItemStatus.IMPLEMENTATION

    def test_undo(self, cli_service, items, store):
        item = items.with_design(WorkItemStatus.PRODUCT_DESIGN)
        runner.invoke(app, ["review-design", item.id, "approve"])

        result = runner.invoke(app, ["undo", item.id])

        assert result.exit_code == 0
        updated = store.get_item(item.id)
        assert updated.status == WorkItemStatus.PRODUCT_DESIGN
        assert updated.review_status == ReviewStatus.WAITING_FOR_REVIEW


class TestAgentCommands:
    def test_run_stage(self, mock_env, cli_pipeline, items, llm, store):
        item = items.in_stage(WorkItemStatus.PRODUCT_DESIGN)
        llm.queue(json.dumps({"design": "# Design", "comment": "Ready"}))

        result = runner.invoke(app, ["run-stage", item.id, "--run-id", "abc12345"])

        assert result.exit_code == 0
        assert "Parsed (run abc12345)" in result.output
        assert "[product_design] completed" in result.output
        assert f"items/{item.id}/product_design/abc12345.log" in result.output
        assert llm.contexts[0].run_id == "abc12345"
        assert store.get_item(item.id).review_status == ReviewStatus.WAITING_FOR_REVIEW

    def test_run_stage_unparsable_output(self, mock_env, cli_pipeline, items, llm):
        item = items.in_stage(WorkItemStatus.PRODUCT_DESIGN)
        llm.queue("no json here")

        result = runner.invoke(app, ["run-stage", item.id, "--run-id", "abc12346"])

        assert result.exit_code == 1
        assert "Unparsable product_design output" in result.output

    def test_answer_clarification(self, cli_service, items, notifier, store):
        item = items.in_stage(WorkItemStatus.IMPLEMENTATION)
        cli_service.request_clarification(
            item.id,
            ClarificationQuestion(question="Which API?", options=[ClarificationOption(label="v2")]),
        )
        link = next(text for text in notifier.texts("admin") if "token=" in text)
        clarification_id, token = re.search(
            r"clarify/([0-9a-f\-]+)\?token=([A-Za-z0-9_\-]+)", link
        ).groups()

        result = runner.invoke(app, ["answer", clarification_id, token, "Use v2"])

        assert result.exit_code == 0
        assert store.get_item(item.id).review_status == ReviewStatus.CLARIFICATION_RECEIVED

        result = runner.invoke(app, ["answer", clarification_id, token, "Again"])

        assert result.exit_code == 1
        assert "already answered" in result.output

    def test_reconcile(self, cli_service, items, adapter, store):
        adapter.fail_sync = True
        item = items.in_stage(WorkItemStatus.PRODUCT_DESIGN, issue=5)
        adapter.fail_sync = False

        result = runner.invoke(app, ["reconcile", item.id])

        assert result.exit_code == 0
        assert "board sync pending" not in result.output
        assert store.get_item(item.id).sync_pending is False
