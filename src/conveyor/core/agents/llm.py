"""LLM boundary used by the agent runners.

``LLMClient.run_agent`` takes a prompt and returns the agent's final text.
``ClaudeCodeClient`` is the production implementation: it runs the Claude
Code CLI in print mode and reads the ``result`` field of its JSON output.
Transport problems (missing CLI, timeout, non-zero exit) surface as
``LLMUnavailable`` so the pipeline can retry them.
"""

import json
import logging
import os
import subprocess
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from pydantic import BaseModel

from conveyor.core.config import AgentConfig
from conveyor.core.errors import LLMUnavailable

logger = logging.getLogger(__name__)


class AgentContext(BaseModel):
    """Execution metadata passed alongside a prompt.

    Attributes:
        work_item_id: Work item the run is for
        stage: Work item status the agent works in
        agent_name: Agent name for the log directory (e.g. "tech_design")
        run_id: Identifier grouping the run's logs
        model: Optional model override
    """

    work_item_id: str
    stage: str
    agent_name: str
    run_id: Optional[str] = None
    model: Optional[str] = None


class LLMClient(ABC):
    """Abstract boundary to a language-model agent."""

    @abstractmethod
    def run_agent(self, prompt: str, context: AgentContext) -> str:
        """Run the agent and return its final text output.

        Raises:
            LLMUnavailable: If the model could not be reached or timed out.
        """


def _agents_dir() -> str:
    return os.environ.get(
        "CONVEYOR_AGENTS_DIR", os.path.join(os.getcwd(), ".conveyor/logs/agents")
    )


class ClaudeCodeClient(LLMClient):
    """Claude Code CLI provider.

    Prompts and raw JSON output are saved under
    ``.conveyor/logs/agents/{run_id}/{agent_name}/`` when a run id is given.
    """

    def __init__(self, config: AgentConfig):
        self.config = config

    def _build_command(self, prompt: str, model: str) -> List[str]:
        return [
            self.config.cli_path,
            "-p",
            prompt,
            "--model",
            model,
            "--output-format",
            "json",
            "--dangerously-skip-permissions",
        ]

    def _save(self, context: AgentContext, filename: str, content: str) -> None:
        if not context.run_id:
            return
        output_dir = os.path.join(_agents_dir(), context.run_id, context.agent_name)
        os.makedirs(output_dir, exist_ok=True)
        path = os.path.join(output_dir, filename)
        with open(path, "w") as f:
            f.write(content)
        logger.debug(f"Saved {filename} to: {path}")

    def run_agent(self, prompt: str, context: AgentContext) -> str:
        model = context.model or self.config.model
        cmd = self._build_command(prompt, model)
        self._save(context, "prompt.txt", prompt)

        logger.info(
            f"Running {context.agent_name} agent for work item {context.work_item_id} "
            f"(model: {model})"
        )
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.config.timeout,
                env=os.environ.copy(),
            )
        except FileNotFoundError as e:
            raise LLMUnavailable(
                f"Claude Code CLI is not installed. Expected at: {self.config.cli_path}"
            ) from e
        except subprocess.TimeoutExpired as e:
            raise LLMUnavailable(
                f"{context.agent_name} agent timed out after {self.config.timeout}s"
            ) from e

        self._save(context, "raw_output.json", result.stdout)

        if result.returncode != 0:
            detail = result.stderr.strip() or result.stdout.strip()
            if not detail:
                detail = f"Process exited with code {result.returncode}"
            raise LLMUnavailable(f"Claude Code error: {detail[:500]}")

        return self._extract_result(result.stdout)

    @staticmethod
    def _extract_result(stdout: str) -> str:
        """Return the ``result`` text of the CLI's JSON envelope.

        Output that is not a JSON envelope is returned unchanged so the
        stage parser can judge it.
        """
        try:
            envelope: Dict = json.loads(stdout)
        except json.JSONDecodeError:
            return stdout
        if not isinstance(envelope, dict) or "result" not in envelope:
            return stdout
        if envelope.get("is_error"):
            raise LLMUnavailable(f"Claude Code error: {str(envelope.get('result'))[:500]}")
        return str(envelope.get("result") or "")
