"""Wiring of the workflow components from an ``AppConfig``."""

import logging
from typing import Optional

from conveyor.core.agents.llm import ClaudeCodeClient, LLMClient
from conveyor.core.clarifications import ClarificationService
from conveyor.core.config import AppConfig
from conveyor.core.notifications.dispatcher import NotificationDispatcher
from conveyor.core.notifications.telegram import TelegramNotifier
from conveyor.core.project.base import ProjectAdapter
from conveyor.core.project.github import GitHubProjectAdapter
from conveyor.core.store import InMemoryStore, WorkItemStore
from conveyor.core.workflow.pipeline import StagePipeline
from conveyor.core.workflow.service import WorkflowService

logger = logging.getLogger(__name__)


def build_store(config: AppConfig) -> WorkItemStore:
    """Return the store selected by ``CONVEYOR_STORE``."""
    if config.workflow.store_backend == "memory":
        logger.warning("Using the in-memory store; state is lost when the process exits")
        return InMemoryStore()

    from conveyor.core.database import SupabaseStore, get_client

    return SupabaseStore(get_client(config.supabase))


def build_adapter(config: AppConfig) -> Optional[ProjectAdapter]:
    if not config.github.enabled:
        logger.info("GitHub is not configured, board mirroring disabled")
        return None
    return GitHubProjectAdapter(config.github)


def build_service(
    config: AppConfig,
    store: Optional[WorkItemStore] = None,
    synchronous_notifications: bool = False,
) -> WorkflowService:
    """Build a WorkflowService with every collaborator the config enables.

    Args:
        config: Process configuration.
        store: Store to use instead of the configured backend.
        synchronous_notifications: Deliver notifications inline, for
            short-lived CLI processes that would otherwise exit first.
    """
    dispatcher = NotificationDispatcher(
        TelegramNotifier(config.telegram),
        github=config.github,
        synchronous=synchronous_notifications,
    )
    store = store or build_store(config)

    clarifications = None
    if config.clarification.enabled:
        clarifications = ClarificationService(store, config.clarification)
    else:
        logger.warning("CLARIFICATION_SECRET is not set, clarification links are disabled")

    return WorkflowService(
        store,
        adapter=build_adapter(config),
        dispatcher=dispatcher,
        clarifications=clarifications,
        config=config.workflow,
    )


def build_pipeline(
    config: AppConfig,
    service: WorkflowService,
    llm: Optional[LLMClient] = None,
) -> StagePipeline:
    return StagePipeline(service, llm or ClaudeCodeClient(config.agent), config.agent)
