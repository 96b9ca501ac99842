from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    queue_root: str = "state/feedback-queue"
    records_root: str = "state/records"
    prompts_root: str = "state/prompts"
    status_root: str = "state/status"
    heartbeat_path: str = "state/worker-heartbeat.txt"
    lease_seconds: int = 60
    max_agent_retries: int = 3
    retry_backoff_seconds: int = 30
    max_deploy_retries: int = 10
    deploy_poll_interval_seconds: int = 10
    deploy_max_wait_seconds: int = 1_800
    worker_poll_interval_seconds: int = 10
    completed_retention: int = 20
    agent_model: str = "gpt-4o"
    agent_command: str = ""
    repo_root: str = ""
    vercel_project_id: str = ""
    vercel_team_id: str = ""
    notify_webhook_url: str = ""

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            queue_root=os.getenv("PIPELINE_QUEUE_ROOT", "state/feedback-queue"),
            records_root=os.getenv("PIPELINE_RECORDS_ROOT", "state/records"),
            prompts_root=os.getenv("PIPELINE_PROMPTS_ROOT", "state/prompts"),
            status_root=os.getenv("PIPELINE_STATUS_ROOT", "state/status"),
            heartbeat_path=os.getenv("PIPELINE_HEARTBEAT_PATH", "state/worker-heartbeat.txt"),
            lease_seconds=_get_env_int("PIPELINE_LEASE_SECONDS", default=60, minimum=1),
            max_agent_retries=_get_env_int("PIPELINE_MAX_AGENT_RETRIES", default=3, minimum=1, maximum=100),
            retry_backoff_seconds=_get_env_int("PIPELINE_RETRY_BACKOFF_SECONDS", default=30, minimum=0),
            max_deploy_retries=_get_env_int("PIPELINE_MAX_DEPLOY_RETRIES", default=10, minimum=1, maximum=100),
            deploy_poll_interval_seconds=_get_env_int("PIPELINE_DEPLOY_POLL_INTERVAL", default=10, minimum=0),
            deploy_max_wait_seconds=_get_env_int("PIPELINE_DEPLOY_MAX_WAIT", default=1_800, minimum=1),
            worker_poll_interval_seconds=_get_env_int("PIPELINE_WORKER_POLL_INTERVAL", default=10, minimum=0),
            completed_retention=_get_env_int("PIPELINE_COMPLETED_RETENTION", default=20, minimum=0),
            agent_model=os.getenv("PIPELINE_AGENT_MODEL", "gpt-4o"),
            agent_command=os.getenv("PIPELINE_AGENT_COMMAND", ""),
            repo_root=os.getenv("PIPELINE_REPO_ROOT", ""),
            vercel_project_id=os.getenv("VERCEL_PROJECT_ID", ""),
            vercel_team_id=os.getenv("VERCEL_TEAM_ID", ""),
            notify_webhook_url=os.getenv("PIPELINE_NOTIFY_WEBHOOK_URL", ""),
        ).normalized()

    @property
    def repo_root_path(self) -> Path:
        """Return the repository root the agent edits, defaulting to cwd if unset."""
        return Path(self.repo_root) if self.repo_root else Path.cwd()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        for name, env in (
            ("queue_root", "PIPELINE_QUEUE_ROOT"),
            ("records_root", "PIPELINE_RECORDS_ROOT"),
            ("prompts_root", "PIPELINE_PROMPTS_ROOT"),
            ("status_root", "PIPELINE_STATUS_ROOT"),
            ("heartbeat_path", "PIPELINE_HEARTBEAT_PATH"),
        ):
            if not getattr(self, name).strip():
                raise ValueError(f"{env} must be non-empty")

        agent_model = self.agent_model.strip()
        if not agent_model:
            raise ValueError("PIPELINE_AGENT_MODEL must be non-empty")

        if self.lease_seconds < 1:
            raise ValueError(f"PIPELINE_LEASE_SECONDS must be >= 1, got: {self.lease_seconds}")
        if self.deploy_poll_interval_seconds > self.deploy_max_wait_seconds:
            raise ValueError(
                "PIPELINE_DEPLOY_POLL_INTERVAL must not exceed PIPELINE_DEPLOY_MAX_WAIT "
                f"({self.deploy_poll_interval_seconds} > {self.deploy_max_wait_seconds})"
            )

        webhook = self.notify_webhook_url.strip()
        if webhook and not webhook.startswith(("http://", "https://")):
            raise ValueError(f"PIPELINE_NOTIFY_WEBHOOK_URL must be an http(s) URL, got: {webhook!r}")

        return replace(
            self,
            agent_model=agent_model,
            agent_command=self.agent_command.strip(),
            vercel_project_id=self.vercel_project_id.strip(),
            vercel_team_id=self.vercel_team_id.strip(),
            notify_webhook_url=webhook,
        )

    def retry_backoff(self, attempt: int) -> int:
        """Seconds to wait before retry number ``attempt`` (1-based); doubles per attempt."""
        if attempt < 1:
            return 0
        return self.retry_backoff_seconds * (2 ** (attempt - 1))

    def _resolve(self, value: str, base: Path) -> Path:
        path = Path(value)
        return path if path.is_absolute() else base / path

    def queue_path(self, base: Path) -> Path:
        return self._resolve(self.queue_root, base)

    def records_path(self, base: Path) -> Path:
        return self._resolve(self.records_root, base)

    def prompts_path(self, base: Path) -> Path:
        return self._resolve(self.prompts_root, base)

    def status_path(self, base: Path) -> Path:
        return self._resolve(self.status_root, base)

    def heartbeat_file(self, base: Path) -> Path:
        return self._resolve(self.heartbeat_path, base)


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound (default 10M, prevents absurd values).

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
