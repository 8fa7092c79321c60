"""Project-management adapters mirroring work-item state externally."""

from conveyor.core.project.base import ProjectAdapter
from conveyor.core.project.github import GitHubProjectAdapter

__all__ = ["ProjectAdapter", "GitHubProjectAdapter"]
