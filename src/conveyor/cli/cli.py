"""Conveyor CLI - admin commands for the work-item pipeline."""

from pathlib import Path
from typing import Optional

import typer

from conveyor import __version__
from conveyor.core.config import load_config
from conveyor.core.errors import WorkflowError
from conveyor.core.factory import build_pipeline, build_service
from conveyor.core.models import CommitMessage, WorkItem, WorkItemStatus
from conveyor.core.utils import make_run_id, stage_log_path
from conveyor.core.workflow.pipeline import StagePipeline
from conveyor.core.workflow.service import WorkflowService

from .db import app as db_app

app = typer.Typer(
    invoke_without_command=True,
    no_args_is_help=True,
    help="Conveyor CLI - Work-item pipeline management",
)
app.add_typer(db_app, name="db")

_state = {"env_file": None}


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        typer.echo(f"Conveyor CLI version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    env_file: Optional[Path] = typer.Option(
        None, "--env-file", help="Path to a .env file to load"
    ),
):
    """Conveyor CLI - Work-item pipeline management."""
    _state["env_file"] = str(env_file) if env_file else None


def get_service() -> WorkflowService:
    """Build the workflow service; notifications are sent before the command exits."""
    config = load_config(dotenv_path=_state["env_file"])
    return build_service(config, synchronous_notifications=True)


def get_pipeline(service: WorkflowService) -> StagePipeline:
    return build_pipeline(load_config(dotenv_path=_state["env_file"]), service)


def _fail(message: str) -> None:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(1)


def _echo_item(item: WorkItem) -> None:
    review = item.review_status.value if item.review_status else "-"
    typer.echo(f"{item.id}  {item.status.value}  [{review}]  {item.title}")
    if item.sync_pending:
        typer.echo("  (board sync pending)")


def _run(operation):
    """Run a service operation, mapping domain errors to exit code 1."""
    try:
        return operation()
    except (WorkflowError, ValueError) as e:
        _fail(str(e))


@app.command()
def create(
    title: str,
    description: str = typer.Option("", "--description", "-d", help="Item description"),
    bug: bool = typer.Option(False, "--bug", help="Create a bug instead of a feature"),
    issue: Optional[int] = typer.Option(None, "--issue", help="Linked GitHub issue number"),
):
    """Create a Backlog work item.

    Example:
        conveyor create "Add dark mode" --issue 42
    """
    service = get_service()
    item = _run(
        lambda: service.create_item(
            title, description, item_type="bug" if bug else "feature", issue_number=issue
        )
    )
    typer.echo(f"{item.id}")  # Output only the ID for scripting


@app.command()
def show(item_id: str):
    """Show a work item's current state."""
    service = get_service()
    item = _run(lambda: service.get_item(item_id))
    _echo_item(item)
    if item.issue_number:
        typer.echo(f"  issue: #{item.issue_number}")
    if item.pr_number:
        typer.echo(f"  pr: #{item.pr_number}")
    if item.last_merge_sha:
        typer.echo(f"  last merge: #{item.last_merged_pr} ({item.last_merge_sha[:7]})")


@app.command()
def history(item_id: str):
    """Print a work item's transition log, oldest first."""
    service = get_service()
    transitions = _run(lambda: service.history(item_id))
    for t in transitions:
        review = t.to_review_status.value if t.to_review_status else "-"
        line = (
            f"{t.created_at:%Y-%m-%d %H:%M:%S}  {t.operation:<28} "
            f"{t.to_status.value} [{review}]  {t.actor}"
        )
        if t.compensates:
            line += f"  (undoes {t.compensates})"
        typer.echo(line)


@app.command()
def route(
    item_id: str,
    destination: WorkItemStatus = typer.Argument(..., help="product_design, tech_design or implementation"),
):
    """Move a Backlog item into a working stage."""
    service = get_service()
    _echo_item(_run(lambda: service.route(item_id, destination)))


@app.command("review-design")
def review_design(
    item_id: str,
    action: str = typer.Argument(..., help="approve, changes or reject"),
    reason: Optional[str] = typer.Option(None, "--reason", "-r"),
):
    """Approve, send back or reject the current design."""
    if action not in ("approve", "changes", "reject"):
        _fail(f"unknown action '{action}'")
    service = get_service()
    _echo_item(_run(lambda: service.review_design(item_id, action, reason=reason)))


@app.command("merge-design-pr")
def merge_design_pr(item_id: str, pr_number: int):
    """Merge the PR carrying the current design."""
    service = get_service()
    _echo_item(_run(lambda: service.merge_design_pr(item_id, pr_number)))


@app.command("submit-pr")
def submit_pr(item_id: str, pr_number: int):
    """Hand an implementation PR to review."""
    service = get_service()
    _echo_item(_run(lambda: service.submit_pr(item_id, pr_number, actor="human")))


@app.command("approve-pr")
def approve_pr(
    item_id: str,
    title: str = typer.Option(..., "--title", help="Squash commit title"),
    body: str = typer.Option("", "--body", help="Squash commit body"),
):
    """Approve the PR with the commit message used at merge time."""
    service = get_service()
    message = CommitMessage(title=title, body=body)
    _echo_item(_run(lambda: service.approve_pr(item_id, message, actor="human")))


@app.command("request-changes")
def request_changes(
    item_id: str,
    reason: Optional[str] = typer.Option(None, "--reason", "-r"),
):
    """Send the PR back to implementation."""
    service = get_service()
    _echo_item(_run(lambda: service.request_changes_on_pr(item_id, actor="human", reason=reason)))


@app.command("merge-pr")
def merge_pr(item_id: str, pr_number: int):
    """Squash-merge the approved implementation PR."""
    service = get_service()
    _echo_item(_run(lambda: service.merge_implementation_pr(item_id, pr_number)))


@app.command()
def done(item_id: str):
    """Mark a merged item Done."""
    service = get_service()
    _echo_item(_run(lambda: service.mark_done(item_id)))


@app.command()
def revert(
    item_id: str,
    pr_number: int,
    sha: Optional[str] = typer.Option(None, "--sha", help="Short SHA of the merge to revert"),
):
    """Open a PR reverting the item's last merge."""
    service = get_service()
    _echo_item(_run(lambda: service.revert_merge(item_id, pr_number, short_sha=sha)))


@app.command("merge-revert")
def merge_revert(item_id: str, pr_number: int):
    """Merge the revert PR and send the item back to implementation."""
    service = get_service()
    _echo_item(_run(lambda: service.merge_revert_pr(item_id, pr_number)))


@app.command()
def undo(
    item_id: str,
    transition_id: Optional[str] = typer.Option(
        None, "--transition", help="Transition to undo (default: the latest)"
    ),
):
    """Undo a recent status change."""
    service = get_service()
    _echo_item(_run(lambda: service.undo_status_change(item_id, transition_id)))


@app.command()
def answer(clarification_id: str, token: str, text: str):
    """Answer a pending clarification with its single-use token."""
    service = get_service()
    _echo_item(_run(lambda: service.answer_clarification(clarification_id, token, text)))


@app.command("run-stage")
def run_stage(
    item_id: str,
    run_id: Optional[str] = typer.Option(None, help="Run ID (auto-generated if not provided)"),
):
    """Run the agent for an item's current stage once."""
    service = get_service()
    pipeline = get_pipeline(service)
    pipeline.console_logs = True
    stage = _run(lambda: service.get_item(item_id)).status.value
    run_id = run_id or make_run_id()
    outcome = _run(lambda: pipeline.run_stage(item_id, run_id=run_id))
    typer.echo(f"{type(outcome).__name__} (run {run_id})")
    typer.echo(f"Log: {stage_log_path(item_id, stage, run_id)}")
    _echo_item(service.get_item(item_id))


@app.command()
def reconcile(item_id: str):
    """Push the internal status to the project board."""
    service = get_service()
    _echo_item(_run(lambda: service.reconcile(item_id)))


if __name__ == "__main__":
    app()
