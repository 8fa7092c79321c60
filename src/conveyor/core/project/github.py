"""GitHub Projects V2 adapter.

Mirrors work-item status onto a Projects V2 board's single-select ``Status``
field (and optional ``Review Status`` field) through the GraphQL API, and uses
the REST API for issue comments and pull-request merges.

Usage:
    adapter = GitHubProjectAdapter(config.github)
    adapter.set_status(item, WorkItemStatus.REVIEW)
    adapter.post_comment(item, "Design ready for review")
"""

import logging
from typing import Any, Dict, List, Optional, Set, cast

import requests

from conveyor.core.agents.parsing import (
    DESIGN_MARKERS,
    DesignSection,
    extract_design,
    extract_original_description,
    wrap_design,
)
from conveyor.core.config import GitHubConfig
from conveyor.core.errors import ExternalSyncFailed
from conveyor.core.http import build_session
from conveyor.core.models import ReviewStatus, WorkItem, WorkItemStatus
from conveyor.core.project.base import ProjectAdapter

logger = logging.getLogger(__name__)

STATUS_FIELD = "Status"
REVIEW_STATUS_FIELD = "Review Status"

REVIEW_STATUS_LABELS: Dict[ReviewStatus, str] = {
    ReviewStatus.WAITING_FOR_REVIEW: "Waiting for Review",
    ReviewStatus.APPROVED: "Approved",
    ReviewStatus.REQUEST_CHANGES: "Request Changes",
    ReviewStatus.REJECTED: "Rejected",
    ReviewStatus.WAITING_FOR_CLARIFICATION: "Waiting for Clarification",
    ReviewStatus.CLARIFICATION_RECEIVED: "Clarification Received",
}

_PROJECT_QUERY = """
query($login: String!, $number: Int!) {
  %s(login: $login) {
    projectV2(number: $number) { id title }
  }
}
"""

_FIELDS_QUERY = """
query($projectId: ID!) {
  node(id: $projectId) {
    ... on ProjectV2 {
      fields(first: 50) {
        nodes {
          ... on ProjectV2SingleSelectField { id name options { id name } }
        }
      }
    }
  }
}
"""

_ITEM_STATUS_QUERY = """
query($itemId: ID!) {
  node(id: $itemId) {
    ... on ProjectV2Item {
      fieldValues(first: 20) {
        nodes {
          ... on ProjectV2ItemFieldSingleSelectValue {
            name
            field { ... on ProjectV2SingleSelectField { name } }
          }
        }
      }
    }
  }
}
"""

_UPDATE_FIELD_MUTATION = """
mutation($projectId: ID!, $itemId: ID!, $fieldId: ID!, $optionId: String!) {
  updateProjectV2ItemFieldValue(
    input: {
      projectId: $projectId
      itemId: $itemId
      fieldId: $fieldId
      value: { singleSelectOptionId: $optionId }
    }
  ) { projectV2Item { id } }
}
"""

_CLEAR_FIELD_MUTATION = """
mutation($projectId: ID!, $itemId: ID!, $fieldId: ID!) {
  clearProjectV2ItemFieldValue(
    input: { projectId: $projectId, itemId: $itemId, fieldId: $fieldId }
  ) { projectV2Item { id } }
}
"""

_ADD_ITEM_MUTATION = """
mutation($projectId: ID!, $contentId: ID!) {
  addProjectV2ItemById(input: { projectId: $projectId, contentId: $contentId }) {
    item { id }
  }
}
"""

_REVERT_PR_MUTATION = """
mutation($pullRequestId: ID!, $title: String!, $body: String!) {
  revertPullRequest(input: { pullRequestId: $pullRequestId, title: $title, body: $body }) {
    revertPullRequest { number }
  }
}
"""


class _SelectField:
    """A single-select project field and its option ids keyed by name."""

    def __init__(self, field_id: str, options: Dict[str, str]):
        self.id = field_id
        self.options = options


def _dig(data: Any, *keys: str) -> Any:
    """Walk nested GraphQL objects, returning None where a level is missing or null."""
    for key in keys:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _nodes(data: Any, *keys: str) -> List[Dict[str, Any]]:
    nodes = _dig(data, *keys)
    if not isinstance(nodes, list):
        return []
    return [node for node in nodes if isinstance(node, dict)]


class GitHubProjectAdapter(ProjectAdapter):
    """ProjectAdapter implementation for GitHub Projects V2.

    Every failure, including unreadable or unexpectedly shaped responses,
    surfaces as ``ExternalSyncFailed``.
    """

    def __init__(self, config: GitHubConfig, session: Optional[requests.Session] = None):
        self.config = config
        self._session = session or build_session(
            config.max_attempts,
            config.backoff_factor,
            headers={
                "Authorization": f"Bearer {config.token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
        )
        self._project_id: Optional[str] = None
        self._status_field: Optional[_SelectField] = None
        self._review_field: Optional[_SelectField] = None
        self._column_to_status = {name: status for status, name in config.column_map.items()}

    # ============================================================
    # HTTP plumbing
    # ============================================================

    def _request(self, method: str, path: str, description: str, **kwargs: Any) -> Dict[str, Any]:
        url = f"{self.config.api_url}{path}"
        logger.debug(f"GitHub API: {method} {path}")
        try:
            response = self._session.request(method, url, timeout=self.config.timeout, **kwargs)
            response.raise_for_status()
            payload = response.json() if response.content else {}
        except requests.exceptions.JSONDecodeError as e:
            logger.error(f"GitHub {description} returned a non-JSON body")
            raise ExternalSyncFailed(f"GitHub {description} returned a non-JSON body") from e
        except requests.RequestException as e:
            logger.error(f"GitHub {description} failed: {e}")
            raise ExternalSyncFailed(f"GitHub {description} failed: {e}") from e

        if not isinstance(payload, dict):
            raise ExternalSyncFailed(
                f"GitHub {description} returned {type(payload).__name__}, expected an object"
            )
        return payload

    def _graphql(self, query: str, variables: Dict[str, Any], description: str) -> Dict[str, Any]:
        payload = self._request(
            "POST", "/graphql", description, json={"query": query, "variables": variables}
        )
        errors = payload.get("errors")
        if errors:
            if not isinstance(errors, list):
                errors = [errors]
            message = "; ".join(
                str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in errors
            )
            raise ExternalSyncFailed(f"GitHub {description} failed: {message}")
        data = payload.get("data")
        return data if isinstance(data, dict) else {}

    def _repo_path(self, suffix: str) -> str:
        return f"/repos/{self.config.owner}/{self.config.repo}{suffix}"

    # ============================================================
    # Project metadata
    # ============================================================

    def _ensure_project(self) -> str:
        if self._project_id is not None:
            return self._project_id

        owner_key = "organization" if self.config.owner_type == "org" else "user"
        data = self._graphql(
            _PROJECT_QUERY % owner_key,
            {"login": self.config.owner, "number": self.config.project_number},
            "project lookup",
        )
        project_id = _dig(data, owner_key, "projectV2", "id")
        if not project_id:
            raise ExternalSyncFailed(
                f"Project not found: {self.config.owner}/projects/{self.config.project_number}"
            )

        fields = self._graphql(_FIELDS_QUERY, {"projectId": project_id}, "field lookup")
        for node in _nodes(fields, "node", "fields", "nodes"):
            if not node.get("id") or "options" not in node:
                continue
            options = {
                opt["name"]: opt["id"]
                for opt in _nodes(node, "options")
                if opt.get("name") and opt.get("id")
            }
            if node.get("name") == STATUS_FIELD:
                self._status_field = _SelectField(node["id"], options)
            elif node.get("name") == REVIEW_STATUS_FIELD:
                self._review_field = _SelectField(node["id"], options)

        if self._status_field is None:
            raise ExternalSyncFailed("Status field not found in project")

        missing = set(self.config.column_map.values()) - set(self._status_field.options)
        if missing:
            logger.warning(f"Project board is missing status columns: {', '.join(sorted(missing))}")

        self._project_id = project_id
        title = _dig(data, owner_key, "projectV2", "title") or project_id
        logger.info(f"Connected to GitHub project {title}")
        return project_id

    def get_status_options(self) -> Set[str]:
        self._ensure_project()
        assert self._status_field is not None
        return set(self._status_field.options)

    def ensure_project_item(self, item: WorkItem) -> Optional[str]:
        if item.project_item_id:
            return item.project_item_id
        if item.issue_number is None:
            return None

        project_id = self._ensure_project()
        issue = self._request(
            "GET", self._repo_path(f"/issues/{item.issue_number}"), "issue lookup"
        )
        if not issue.get("node_id"):
            raise ExternalSyncFailed(f"Issue #{item.issue_number} lookup returned no node id")
        data = self._graphql(
            _ADD_ITEM_MUTATION,
            {"projectId": project_id, "contentId": issue["node_id"]},
            "add issue to project",
        )
        project_item_id = _dig(data, "addProjectV2ItemById", "item", "id")
        if not project_item_id:
            raise ExternalSyncFailed(f"Issue #{item.issue_number} was not added to the project")
        return project_item_id

    def _require_item_id(self, item: WorkItem) -> str:
        item_id = self.ensure_project_item(item)
        if not item_id:
            raise ExternalSyncFailed(f"Work item {item.id} is not linked to a GitHub issue")
        return item_id

    # ============================================================
    # Status
    # ============================================================

    def set_status(self, item: WorkItem, status: WorkItemStatus) -> None:
        project_id = self._ensure_project()
        assert self._status_field is not None
        column = self.config.column_map[status]
        option_id = self._status_field.options.get(column)
        if option_id is None:
            raise ExternalSyncFailed(
                f"Unknown status column: {column}. "
                f"Available: {', '.join(sorted(self._status_field.options))}"
            )
        self._graphql(
            _UPDATE_FIELD_MUTATION,
            {
                "projectId": project_id,
                "itemId": self._require_item_id(item),
                "fieldId": self._status_field.id,
                "optionId": option_id,
            },
            "status update",
        )
        logger.debug(f"Board status for {item.id} set to {column}")

    def set_review_status(self, item: WorkItem, review_status: Optional[ReviewStatus]) -> None:
        project_id = self._ensure_project()
        if self._review_field is None:
            logger.debug(f"Project has no {REVIEW_STATUS_FIELD} field, skipping")
            return

        variables: Dict[str, Any] = {
            "projectId": project_id,
            "itemId": self._require_item_id(item),
            "fieldId": self._review_field.id,
        }
        if review_status is None:
            self._graphql(_CLEAR_FIELD_MUTATION, variables, "review status clear")
            return

        label = REVIEW_STATUS_LABELS[review_status]
        option_id = self._review_field.options.get(label)
        if option_id is None:
            raise ExternalSyncFailed(f"Unknown review status: {label}")
        variables["optionId"] = option_id
        self._graphql(_UPDATE_FIELD_MUTATION, variables, "review status update")

    def read_status(self, item: WorkItem) -> Optional[WorkItemStatus]:
        if not item.project_item_id:
            return None
        data = self._graphql(
            _ITEM_STATUS_QUERY, {"itemId": item.project_item_id}, "status read"
        )
        for value in _nodes(data, "node", "fieldValues", "nodes"):
            if _dig(value, "field", "name") == STATUS_FIELD:
                return self._column_to_status.get(value.get("name") or "")
        return None

    # ============================================================
    # Comments and pull requests
    # ============================================================

    def post_comment(self, item: WorkItem, text: str) -> None:
        if item.issue_number is None:
            raise ExternalSyncFailed(f"Work item {item.id} is not linked to a GitHub issue")
        self._request(
            "POST",
            self._repo_path(f"/issues/{item.issue_number}/comments"),
            "comment",
            json={"body": text},
        )

    def publish_design(self, item: WorkItem, section: str, design: str) -> None:
        if item.issue_number is None:
            raise ExternalSyncFailed(f"Work item {item.id} is not linked to a GitHub issue")
        if section not in DESIGN_MARKERS:
            raise ValueError(f"Unknown design section: {section}")

        path = self._repo_path(f"/issues/{item.issue_number}")
        issue = self._request("GET", path, f"issue #{item.issue_number} lookup")
        body = issue.get("body")
        if not isinstance(body, str):
            body = ""

        names = [cast(DesignSection, name) for name in DESIGN_MARKERS]
        designs = {name: extract_design(body, name) for name in names}
        designs[cast(DesignSection, section)] = design
        parts = [extract_original_description(body)]
        parts += [wrap_design(name, text) for name, text in designs.items() if text]
        self._request(
            "PATCH",
            path,
            f"issue #{item.issue_number} update",
            json={"body": "\n\n".join(part for part in parts if part)},
        )
        logger.info(f"Embedded {section} design in issue #{item.issue_number}")

    def merge_pull_request(self, pr_number: int, title: str, body: str) -> str:
        result = self._request(
            "PUT",
            self._repo_path(f"/pulls/{pr_number}/merge"),
            f"merge of PR #{pr_number}",
            json={"merge_method": "squash", "commit_title": title, "commit_message": body},
        )
        if not result.get("merged"):
            raise ExternalSyncFailed(
                f"PR #{pr_number} was not merged: {result.get('message', 'unknown reason')}"
            )
        sha = result.get("sha")
        if not isinstance(sha, str) or not sha:
            raise ExternalSyncFailed(f"Merge of PR #{pr_number} returned no commit sha")
        logger.info(f"Merged PR #{pr_number} as {sha}")
        return sha

    def create_revert_pr(self, pr_number: int, merge_sha: str) -> int:
        pr = self._request("GET", self._repo_path(f"/pulls/{pr_number}"), f"PR #{pr_number} lookup")
        merge_commit_sha = pr.get("merge_commit_sha")
        if merge_commit_sha and merge_commit_sha != merge_sha:
            raise ExternalSyncFailed(
                f"PR #{pr_number} merge commit {str(merge_commit_sha)[:7]} "
                f"does not match {merge_sha[:7]}"
            )
        if not pr.get("node_id"):
            raise ExternalSyncFailed(f"PR #{pr_number} lookup returned no node id")
        data = self._graphql(
            _REVERT_PR_MUTATION,
            {
                "pullRequestId": pr["node_id"],
                "title": f"Revert \"{pr.get('title') or f'#{pr_number}'}\"",
                "body": f"Reverts #{pr_number} (merge commit {merge_sha[:7]}).",
            },
            f"revert of PR #{pr_number}",
        )
        number = _dig(data, "revertPullRequest", "revertPullRequest", "number")
        if not isinstance(number, int):
            raise ExternalSyncFailed(f"Failed to create revert PR for #{pr_number}")
        return number
