"""Work-item workflow: state graph, service and stage pipeline."""

from conveyor.core.workflow.fsm import WorkItemMachine, can_undo, replay
from conveyor.core.workflow.pipeline import StagePipeline
from conveyor.core.workflow.service import WorkflowService

__all__ = [
    "StagePipeline",
    "WorkItemMachine",
    "WorkflowService",
    "can_undo",
    "replay",
]
