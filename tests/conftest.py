"""Shared fixtures and in-memory fakes for the Conveyor test suite."""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

import pytest
import requests
from requests.adapters import BaseAdapter

from conveyor.core.agents.llm import AgentContext, LLMClient
from conveyor.core.clarifications import ClarificationService
from conveyor.core.config import ClarificationConfig, DEFAULT_COLUMN_MAP, WorkflowConfig
from conveyor.core.errors import ExternalSyncFailed
from conveyor.core.models import CommitMessage, ReviewStatus, WorkItem, WorkItemStatus
from conveyor.core.notifications.base import Notifier
from conveyor.core.notifications.dispatcher import NotificationDispatcher
from conveyor.core.project.base import ProjectAdapter
from conveyor.core.store import InMemoryStore
from conveyor.core.workflow.service import WorkflowService

MERGE_SHA = "abc1234def5678901234567890abcdef12345678"


class FakeTransport(BaseAdapter):
    """requests transport adapter that answers from a handler instead of the network.

    The handler receives the PreparedRequest and returns ``(status, body)``,
    where a ``str`` body is sent verbatim and anything else as JSON. It may
    also raise a ``requests`` exception to simulate a transport failure.
    """

    def __init__(self, handler: Callable[[requests.PreparedRequest], Tuple[int, Any]]):
        super().__init__()
        self.handler = handler
        self.requests: List[requests.PreparedRequest] = []

    def send(self, request, **kwargs):
        self.requests.append(request)
        status, body = self.handler(request)
        response = requests.Response()
        response.status_code = status
        response.request = request
        response.url = request.url
        if isinstance(body, str):
            response._content = body.encode("utf-8")
            response.headers["Content-Type"] = "text/html"
        else:
            response._content = json.dumps(body).encode("utf-8")
            response.headers["Content-Type"] = "application/json"
        return response

    def close(self):
        pass


def fake_session(handler: Callable[[requests.PreparedRequest], Tuple[int, Any]]) -> requests.Session:
    """A session whose every request is answered by ``handler``."""
    session = requests.Session()
    transport = FakeTransport(handler)
    session.mount("https://", transport)
    session.mount("http://", transport)
    return session


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeAdapter(ProjectAdapter):
    """Project board held in dictionaries."""

    def __init__(self):
        self.board: Dict[str, WorkItemStatus] = {}
        self.review: Dict[str, Optional[ReviewStatus]] = {}
        self.comments: List[Tuple[int, str]] = []
        self.designs: Dict[Tuple[int, str], str] = {}
        self.merges: List[Tuple[int, str, str]] = []
        self.reverts: List[Tuple[int, str]] = []
        self.status_calls: List[WorkItemStatus] = []
        self.fail_sync = False
        self.fail_merge = False
        self.merge_sha = MERGE_SHA
        self.next_revert_pr = 99

    def ensure_project_item(self, item: WorkItem) -> Optional[str]:
        if item.project_item_id:
            return item.project_item_id
        if item.issue_number is None:
            return None
        if self.fail_sync:
            raise ExternalSyncFailed("board unreachable")
        return f"PVTI_{item.issue_number}"

    def set_status(self, item: WorkItem, status: WorkItemStatus) -> None:
        if self.fail_sync:
            raise ExternalSyncFailed("board unreachable")
        self.status_calls.append(status)
        self.board[item.project_item_id] = status

    def set_review_status(self, item: WorkItem, review_status: Optional[ReviewStatus]) -> None:
        if self.fail_sync:
            raise ExternalSyncFailed("board unreachable")
        self.review[item.project_item_id] = review_status

    def read_status(self, item: WorkItem) -> Optional[WorkItemStatus]:
        if self.fail_sync:
            raise ExternalSyncFailed("board unreachable")
        return self.board.get(item.project_item_id)

    def post_comment(self, item: WorkItem, text: str) -> None:
        if self.fail_sync:
            raise ExternalSyncFailed("comments unavailable")
        self.comments.append((item.issue_number, text))

    def publish_design(self, item: WorkItem, section: str, design: str) -> None:
        if self.fail_sync:
            raise ExternalSyncFailed("issues unavailable")
        self.designs[(item.issue_number, section)] = design

    def get_status_options(self) -> Set[str]:
        return set(DEFAULT_COLUMN_MAP.values())

    def merge_pull_request(self, pr_number: int, title: str, body: str) -> str:
        if self.fail_merge:
            raise ExternalSyncFailed(f"PR #{pr_number} is not mergeable")
        self.merges.append((pr_number, title, body))
        return self.merge_sha

    def create_revert_pr(self, pr_number: int, merge_sha: str) -> int:
        if self.fail_merge:
            raise ExternalSyncFailed("revert failed")
        self.reverts.append((pr_number, merge_sha))
        return self.next_revert_pr


class RecordingNotifier(Notifier):
    def __init__(self, deliver: bool = True):
        self.messages: List[Tuple[str, str]] = []
        self.deliver = deliver

    def send_message(self, channel: str, text: str) -> bool:
        self.messages.append((channel, text))
        return self.deliver

    def texts(self, channel: Optional[str] = None) -> List[str]:
        return [text for ch, text in self.messages if channel is None or ch == channel]


class FakeLLM(LLMClient):
    """Returns queued replies in order; an exception in the queue is raised."""

    def __init__(self, *replies: Union[str, Exception]):
        self.replies = list(replies)
        self.prompts: List[str] = []
        self.contexts: List[AgentContext] = []

    def queue(self, *replies: Union[str, Exception]) -> None:
        self.replies.extend(replies)

    def run_agent(self, prompt: str, context: AgentContext) -> str:
        self.prompts.append(prompt)
        self.contexts.append(context)
        if not self.replies:
            raise AssertionError("FakeLLM has no reply queued")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class WorkItemFactory:
    """Drives items through the service into commonly needed states."""

    def __init__(self, service: WorkflowService):
        self.service = service

    def backlog(self, title: str = "Add dark mode", item_type: str = "feature", issue=None):
        return self.service.create_item(
            title, "Users want a dark theme.", item_type=item_type, issue_number=issue
        )

    def in_stage(self, status: WorkItemStatus, **kwargs) -> WorkItem:
        item = self.backlog(**kwargs)
        return self.service.route(item.id, status)

    def with_design(self, status: WorkItemStatus = WorkItemStatus.PRODUCT_DESIGN, **kwargs):
        item = self.in_stage(status, **kwargs)
        kind = "product_design" if status == WorkItemStatus.PRODUCT_DESIGN else "tech_design"
        artifact = self.service.record_artifact(
            item.id, kind, "# Design\n\nDark theme toggle.", {"comment": "Design summary"}
        )
        return self.service.complete_design(item.id, artifact.id)

    def in_review(self, pr_number: int = 42, **kwargs) -> WorkItem:
        item = self.in_stage(WorkItemStatus.IMPLEMENTATION, **kwargs)
        self.service.record_artifact(
            item.id,
            "implementation",
            "## Summary\n- Add theme toggle\n- Persist preference",
            {"pr_number": pr_number},
        )
        return self.service.submit_pr(item.id, pr_number)

    def approved(self, pr_number: int = 42, **kwargs) -> WorkItem:
        item = self.in_review(pr_number, **kwargs)
        message = CommitMessage(title="feat: add dark mode", body="- Add theme toggle")
        return self.service.approve_pr(item.id, message)

    def done(self, pr_number: int = 42, **kwargs) -> WorkItem:
        item = self.approved(pr_number, **kwargs)
        return self.service.merge_implementation_pr(item.id, pr_number)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def dispatcher(notifier):
    return NotificationDispatcher(notifier, synchronous=True)


@pytest.fixture
def clarification_config():
    return ClarificationConfig(
        secret="test-secret", ttl_seconds=3600, base_url="https://conveyor.test"
    )


@pytest.fixture
def clarifications(store, clarification_config, clock):
    return ClarificationService(store, clarification_config, clock=clock)


@pytest.fixture
def service(store, adapter, dispatcher, clarifications, clock):
    return WorkflowService(
        store,
        adapter=adapter,
        dispatcher=dispatcher,
        clarifications=clarifications,
        config=WorkflowConfig(undo_window_seconds=300),
        clock=clock,
    )


@pytest.fixture
def items(service):
    return WorkItemFactory(service)


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture(autouse=True)
def log_dir(monkeypatch, tmp_path):
    """Keep stage run logs out of the working tree."""
    monkeypatch.setenv("CONVEYOR_LOG_DIR", str(tmp_path / "logs"))
    return tmp_path / "logs"


@pytest.fixture
def mock_env(monkeypatch, tmp_path):
    """Environment for a memory-backed process with logs under tmp_path."""
    monkeypatch.setenv("CONVEYOR_STORE", "memory")
    monkeypatch.setenv("CLARIFICATION_SECRET", "test-secret")
    monkeypatch.setenv("CONVEYOR_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("CONVEYOR_AGENTS_DIR", str(tmp_path / "agents"))
    monkeypatch.setenv("TELEGRAM_ENABLED", "false")
    for name in ("GITHUB_TOKEN", "GITHUB_PAT", "GITHUB_OWNER", "GITHUB_REPO"):
        monkeypatch.delenv(name, raising=False)
