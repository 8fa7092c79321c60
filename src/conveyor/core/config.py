"""Process-wide configuration for Conveyor.

Configuration is read from the environment (optionally seeded from a ``.env``
file) exactly once at process start by :func:`load_config`, and the resulting
``AppConfig`` is passed to the components that need it.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from dotenv import load_dotenv

from conveyor.core.models import WorkItemStatus

logger = logging.getLogger(__name__)

# Default board column for each internal status
DEFAULT_COLUMN_MAP: Dict[WorkItemStatus, str] = {
    WorkItemStatus.BACKLOG: "Backlog",
    WorkItemStatus.PRODUCT_DESIGN: "Product Design",
    WorkItemStatus.TECH_DESIGN: "Technical Design",
    WorkItemStatus.IMPLEMENTATION: "Ready for development",
    WorkItemStatus.REVIEW: "PR Review",
    WorkItemStatus.DONE: "Done",
    WorkItemStatus.REVERTED: "Reverted",
}

VALID_STORE_BACKENDS = ("supabase", "memory")


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s: %r, using default %s", name, raw, default)
        return default


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


@dataclass
class SupabaseConfig:
    """Configuration for Supabase connection."""

    url: Optional[str] = None
    service_role_key: Optional[str] = None
    http_timeout: float = 30.0
    http_verify: bool = True

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "SupabaseConfig":
        return cls(
            url=env.get("SUPABASE_URL"),
            service_role_key=env.get("SUPABASE_SERVICE_ROLE_KEY"),
            http_timeout=float(env.get("SUPABASE_HTTP_TIMEOUT", "30")),
            http_verify=_env_bool(env, "SUPABASE_HTTP_VERIFY", True),
        )

    def validate(self) -> None:
        """Validate required environment variables are set."""
        missing = []

        if not self.url:
            missing.append("SUPABASE_URL")
        if not self.service_role_key:
            missing.append("SUPABASE_SERVICE_ROLE_KEY")

        if missing:
            raise ValueError(
                f"Missing required Supabase environment variables: "
                f"{', '.join(missing)}. "
                f"Please set these in your environment or .env file."
            )


@dataclass
class GitHubConfig:
    """GitHub repository and Projects V2 board settings."""

    token: Optional[str] = None
    owner: Optional[str] = None
    repo: Optional[str] = None
    project_number: Optional[int] = None
    owner_type: str = "user"
    api_url: str = "https://api.github.com"
    timeout: float = 30.0
    max_attempts: int = 3
    backoff_factor: float = 1.0
    column_map: Dict[WorkItemStatus, str] = field(
        default_factory=lambda: dict(DEFAULT_COLUMN_MAP)
    )

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "GitHubConfig":
        project_number = env.get("GITHUB_PROJECT_NUMBER")
        column_map = dict(DEFAULT_COLUMN_MAP)
        # CONVEYOR_COLUMN_<STATUS>=<board column name> overrides a single column
        for status in WorkItemStatus:
            override = env.get(f"CONVEYOR_COLUMN_{status.name}")
            if override:
                column_map[status] = override
        return cls(
            token=env.get("GITHUB_TOKEN") or env.get("GITHUB_PAT"),
            owner=env.get("GITHUB_OWNER"),
            repo=env.get("GITHUB_REPO"),
            project_number=int(project_number) if project_number else None,
            owner_type=env.get("GITHUB_OWNER_TYPE", "user").lower(),
            api_url=env.get("GITHUB_API_URL", "https://api.github.com").rstrip("/"),
            timeout=float(env.get("GITHUB_HTTP_TIMEOUT", "30")),
            max_attempts=_env_int(env, "GITHUB_MAX_ATTEMPTS", 3),
            backoff_factor=float(env.get("GITHUB_BACKOFF_FACTOR", "1")),
            column_map=column_map,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.token and self.owner and self.repo)

    def validate(self) -> None:
        """Validate GitHub settings."""
        missing = []
        if not self.token:
            missing.append("GITHUB_TOKEN")
        if not self.owner:
            missing.append("GITHUB_OWNER")
        if not self.repo:
            missing.append("GITHUB_REPO")
        if not self.project_number:
            missing.append("GITHUB_PROJECT_NUMBER")
        if missing:
            raise ValueError(f"Missing required GitHub environment variables: {', '.join(missing)}")
        if self.owner_type not in ("user", "org"):
            raise ValueError("GITHUB_OWNER_TYPE must be 'user' or 'org'")
        if len(set(self.column_map.values())) != len(self.column_map):
            raise ValueError("Board column names must be unique per status")

    def issue_url(self, issue_number: int) -> str:
        return f"https://github.com/{self.owner}/{self.repo}/issues/{issue_number}"

    def pr_url(self, pr_number: int) -> str:
        return f"https://github.com/{self.owner}/{self.repo}/pull/{pr_number}"

    def project_url(self) -> str:
        scope = "orgs" if self.owner_type == "org" else "users"
        return f"https://github.com/{scope}/{self.owner}/projects/{self.project_number}"


@dataclass
class TelegramConfig:
    """Telegram bot settings. Chat ids may be ``chatId`` or ``chatId:threadId``."""

    bot_token: Optional[str] = None
    admin_chat_id: Optional[str] = None
    info_chat_id: Optional[str] = None
    enabled: bool = True
    timeout: float = 10.0
    max_attempts: int = 3
    backoff_factor: float = 1.5

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "TelegramConfig":
        return cls(
            bot_token=env.get("TELEGRAM_BOT_TOKEN"),
            admin_chat_id=env.get("TELEGRAM_ADMIN_CHAT_ID"),
            info_chat_id=env.get("TELEGRAM_INFO_CHAT_ID") or env.get("TELEGRAM_ADMIN_CHAT_ID"),
            enabled=_env_bool(env, "TELEGRAM_ENABLED", True),
            timeout=float(env.get("TELEGRAM_HTTP_TIMEOUT", "10")),
            max_attempts=_env_int(env, "TELEGRAM_MAX_ATTEMPTS", 3),
            backoff_factor=float(env.get("TELEGRAM_BACKOFF_FACTOR", "1.5")),
        )

    def chat_for(self, channel: str) -> Optional[str]:
        return {"admin": self.admin_chat_id, "info": self.info_chat_id}.get(channel)


@dataclass
class AgentConfig:
    """LLM agent invocation settings."""

    cli_path: str = "claude"
    model: str = "opus"
    timeout: int = 1800
    max_attempts: int = 3
    retry_delay: float = 5.0

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "AgentConfig":
        return cls(
            cli_path=env.get("CLAUDE_CODE_PATH", "claude"),
            model=env.get("CONVEYOR_AGENT_MODEL", "opus"),
            timeout=_env_int(env, "CONVEYOR_AGENT_TIMEOUT_SECONDS", 1800),
            max_attempts=_env_int(env, "CONVEYOR_AGENT_MAX_ATTEMPTS", 3),
            retry_delay=float(env.get("CONVEYOR_AGENT_RETRY_DELAY", "5")),
        )

    def validate(self) -> None:
        if self.timeout <= 0:
            raise ValueError("agent timeout must be positive")
        if self.max_attempts <= 0:
            raise ValueError("agent max_attempts must be positive")


@dataclass
class ClarificationConfig:
    """Clarification token settings.

    The secret is optional; without it no answer links are issued.
    """

    secret: Optional[str] = None
    ttl_seconds: int = 24 * 60 * 60
    base_url: str = "http://localhost:3000"

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "ClarificationConfig":
        return cls(
            secret=env.get("CLARIFICATION_SECRET") or env.get("JWT_SECRET"),
            ttl_seconds=_env_int(env, "CLARIFICATION_TTL_SECONDS", 24 * 60 * 60),
            base_url=env.get("APP_BASE_URL", "http://localhost:3000").rstrip("/"),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.secret)

    def validate(self) -> None:
        if self.ttl_seconds <= 0:
            raise ValueError("CLARIFICATION_TTL_SECONDS must be positive")


@dataclass
class WorkflowConfig:
    """Workflow service behaviour."""

    undo_window_seconds: int = 5 * 60
    store_backend: str = "supabase"

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "WorkflowConfig":
        return cls(
            undo_window_seconds=_env_int(env, "CONVEYOR_UNDO_WINDOW_SECONDS", 5 * 60),
            store_backend=env.get("CONVEYOR_STORE", "supabase").lower(),
        )

    def validate(self) -> None:
        if self.undo_window_seconds <= 0:
            raise ValueError("CONVEYOR_UNDO_WINDOW_SECONDS must be positive")
        if self.store_backend not in VALID_STORE_BACKENDS:
            raise ValueError(f"CONVEYOR_STORE must be one of {list(VALID_STORE_BACKENDS)}")


@dataclass
class AppConfig:
    """Complete configuration built once at process start."""

    supabase: SupabaseConfig = field(default_factory=SupabaseConfig)
    github: GitHubConfig = field(default_factory=GitHubConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    clarification: ClarificationConfig = field(default_factory=ClarificationConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "AppConfig":
        env = os.environ if env is None else env
        return cls(
            supabase=SupabaseConfig.from_env(env),
            github=GitHubConfig.from_env(env),
            telegram=TelegramConfig.from_env(env),
            agent=AgentConfig.from_env(env),
            clarification=ClarificationConfig.from_env(env),
            workflow=WorkflowConfig.from_env(env),
        )

    def validate(self) -> None:
        """Validate the settings every deployment needs."""
        self.workflow.validate()
        self.agent.validate()
        self.clarification.validate()
        if self.workflow.store_backend == "supabase":
            self.supabase.validate()


def load_config(dotenv_path: Optional[str] = None, validate: bool = True) -> AppConfig:
    """Load ``.env`` (if present) and build the process configuration.

    Args:
        dotenv_path: Optional path to a specific .env file to load.
        validate: Whether to run ``AppConfig.validate`` before returning.

    Returns:
        The populated AppConfig.
    """
    load_dotenv(dotenv_path=dotenv_path, override=True)
    config = AppConfig.from_env()
    if validate:
        config.validate()
    logger.debug(
        "Configuration loaded (store=%s, github=%s, telegram=%s)",
        config.workflow.store_backend,
        config.github.enabled,
        bool(config.telegram.bot_token) and config.telegram.enabled,
    )
    return config
