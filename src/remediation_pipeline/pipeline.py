from __future__ import annotations

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from .agent import Agent, CommandAgent, DeepAgentRunner
from .analytics import execution_stats
from .deploy import DeploymentClient, DeployMonitor, VercelDeploymentClient
from .errors import ConflictError, NotFoundError
from .lifecycle import WorkspaceLifecycle, check_accepts_work
from .llm import require_secret
from .models import (
    AuthorType,
    Execution,
    ExecutionStatus,
    FeedbackBatch,
    LogSeverity,
    QueueEntry,
    QueueListing,
    QueueState,
    TimelineMessage,
    Workspace,
    utc_now,
)
from .notify import LoggingNotifier, Notifier, WebhookNotifier
from .orchestrator import Orchestrator, worker_is_alive
from .prompts import MarkdownPromptGenerator, PromptGenerator
from .queue_store import QueueStore
from .records import FileRecordStore
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

CANCELLED_ERROR = "cancelled by administrator"


class RemediationPipeline:
    """Wires the stores, orchestrator and deploy monitor behind one facade.

    Every administrator and producer operation goes through this class; the
    worker runs either in-process on a background thread (``start``) or in
    the foreground via ``run_worker``.
    """

    def __init__(
        self,
        settings: RuntimeSettings,
        base: Path,
        *,
        agent: Agent,
        deploy_client: DeploymentClient | None = None,
        deploy_client_factory: Callable[[], DeploymentClient] | None = None,
        notifier: Notifier | None = None,
        prompt_generator: PromptGenerator | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.settings = settings
        self.base = base
        self._clock = clock
        self.store = FileRecordStore(settings.records_path(base))
        self.queue = QueueStore(
            settings.queue_path(base),
            lease_seconds=settings.lease_seconds,
            completed_retention=settings.completed_retention,
            clock=clock,
        )
        self.lifecycle = WorkspaceLifecycle(self.store)
        self.heartbeat_path = settings.heartbeat_file(base)
        self.orchestrator = Orchestrator(
            queue=self.queue,
            store=self.store,
            lifecycle=self.lifecycle,
            agent=agent,
            prompts=prompt_generator or MarkdownPromptGenerator(),
            prompts_root=settings.prompts_path(base),
            max_agent_retries=settings.max_agent_retries,
            retry_backoff=settings.retry_backoff,
            heartbeat_path=self.heartbeat_path,
            clock=clock,
        )
        self.notifier = notifier or LoggingNotifier()
        self._sleep = sleep
        self._deploy_client_factory = deploy_client_factory
        self.deploy_monitor: DeployMonitor | None = None
        if deploy_client is not None:
            self._attach_deploy_monitor(deploy_client)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def _attach_deploy_monitor(self, client: DeploymentClient) -> DeployMonitor:
        monitor_kwargs: dict[str, Any] = {}
        if self._sleep is not None:
            monitor_kwargs["sleep"] = self._sleep
        self.deploy_monitor = DeployMonitor(
            store=self.store,
            lifecycle=self.lifecycle,
            client=client,
            notifier=self.notifier,
            schedule_retry=self.orchestrator.schedule_deploy_retry,
            max_retries=self.settings.max_deploy_retries,
            poll_interval=self.settings.deploy_poll_interval_seconds,
            max_wait=self.settings.deploy_max_wait_seconds,
            stale_after=max(float(self.settings.lease_seconds), 3 * self.settings.deploy_poll_interval_seconds),
            clock=self._clock,
            **monitor_kwargs,
        )
        self.orchestrator.deploy_monitor = self.deploy_monitor
        return self.deploy_monitor

    def _ensure_deploy_monitor(self) -> None:
        """Build the deploy monitor from its factory the first time the worker needs it.

        Raises:
            RuntimeError: If the factory cannot find its credentials.
        """
        if self.deploy_monitor is None and self._deploy_client_factory is not None:
            self._attach_deploy_monitor(self._deploy_client_factory())

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, base: Path | None = None) -> "RemediationPipeline":
        """Build a pipeline with the production adapters the settings select.

        ``PIPELINE_AGENT_COMMAND`` selects the external command agent, otherwise
        the deep agent runs in-process. Deployments are watched only when a
        Vercel project id is configured; its token is read when the worker
        starts, so administrator reads work without it.
        """
        base = base if base is not None else Path.cwd()
        repo_root = settings.repo_root_path
        agent: Agent
        if settings.agent_command:
            agent = CommandAgent(
                command=settings.agent_command,
                status_root=settings.status_path(base),
                repo_root=repo_root,
            )
        else:
            agent = DeepAgentRunner(model_name=settings.agent_model, repo_root=repo_root)

        deploy_client_factory: Callable[[], DeploymentClient] | None = None
        if settings.vercel_project_id:

            def _vercel_client() -> DeploymentClient:
                return VercelDeploymentClient(
                    token=require_secret("VERCEL_TOKEN", purpose="deployment status checks", repo_root=repo_root),
                    project_id=settings.vercel_project_id,
                    team_id=settings.vercel_team_id,
                )

            deploy_client_factory = _vercel_client
        else:
            logger.warning("VERCEL_PROJECT_ID is not set; committed changes will not be watched")

        notifier: Notifier = (
            WebhookNotifier(settings.notify_webhook_url) if settings.notify_webhook_url else LoggingNotifier()
        )
        return cls(settings, base, agent=agent, deploy_client_factory=deploy_client_factory, notifier=notifier)

    # ------------------------------------------------------------------
    # Worker control
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._ensure_deploy_monitor()
        self._stop.clear()
        self._thread = threading.Thread(
            target=self.orchestrator.run_forever,
            args=(self._stop, float(self.settings.worker_poll_interval_seconds)),
            name="remediation-worker",
            daemon=True,
        )
        self._thread.start()

    def shutdown(self, timeout: float | None = None) -> None:
        self._stop.set()
        self.orchestrator.wake()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def run_worker(self) -> None:
        """Run the worker loop in the calling thread until ``shutdown``."""
        self._ensure_deploy_monitor()
        self._stop.clear()
        self.orchestrator.run_forever(self._stop, float(self.settings.worker_poll_interval_seconds))

    def run_until_idle(self) -> int:
        self._ensure_deploy_monitor()
        return self.orchestrator.run_until_idle()

    def worker_alive(self, max_age: float | None = None) -> bool:
        if max_age is None:
            max_age = 3 * max(self.settings.worker_poll_interval_seconds, 1)
        return worker_is_alive(self.heartbeat_path, max_age)

    # ------------------------------------------------------------------
    # Producer operations
    # ------------------------------------------------------------------

    def create_workspace(
        self, workspace_id: str, *, name: str = "", category: str = "", description: str = ""
    ) -> Workspace:
        workspace = self.store.create_workspace(
            Workspace(workspace_id=workspace_id, name=name, category=category, description=description)
        )
        self.store.append_timeline(
            TimelineMessage(
                workspace_id=workspace.workspace_id,
                type="workspace_created",
                content=f"Workspace {workspace.name or workspace.workspace_id} created",
                status=workspace.status.value,
            )
        )
        return workspace

    def enqueue(self, workspace_id: str, batch: FeedbackBatch) -> str:
        """Queue a batch without opening an Execution; the worker opens one at dequeue.

        Raises:
            NotFoundError: If the workspace does not exist.
            ConflictError: If the workspace is verified.
        """
        check_accepts_work(self.store.get_workspace(workspace_id))
        entry_id = self.queue.enqueue(workspace_id, batch)
        self.orchestrator.wake()
        return entry_id

    def trigger(self, workspace_id: str, batch: FeedbackBatch, *, triggered_by: str | None = None) -> str:
        return self.orchestrator.trigger(workspace_id, batch, triggered_by=triggered_by)

    # ------------------------------------------------------------------
    # Administrator operations
    # ------------------------------------------------------------------

    def list_queue(self) -> QueueListing:
        return self.queue.list()

    def retry(self, entry_id: str) -> QueueEntry:
        """Send a failed entry back to pending and re-arm its Execution.

        The entry's retry counter is kept, so the next failure fails it again
        without further automatic retries.

        Raises:
            NotFoundError: If the entry does not exist.
            ConflictError: If the entry is not failed, the workspace is
                verified, or another Execution is active on the workspace.
        """
        item = self.queue.get(entry_id)
        if item.state is not QueueState.FAILED:
            raise ConflictError(f"queue entry {entry_id} is {item.state.value}, only failed entries can be retried")
        check_accepts_work(self.store.get_workspace(item.entry.workspace_id))

        execution_id = item.entry.execution_id
        if execution_id is not None:

            def _rearm(execution: Execution) -> None:
                execution.status = ExecutionStatus.PENDING
                execution.errored_at = None
                execution.append_log("Manually retried by administrator", LogSeverity.WARN)

            try:
                self.store.reactivate_execution(execution_id, _rearm)
            except NotFoundError:
                logger.warning("Execution %s for entry %s is missing; a new one opens at dequeue", execution_id, entry_id)

        try:
            entry = self.queue.retry(entry_id)
        except ConflictError:
            if execution_id is not None:
                self._fail_if_active(execution_id, item.entry.last_error or "manual retry aborted")
            raise
        self.store.append_timeline(
            TimelineMessage(
                workspace_id=entry.workspace_id,
                type="execution_retried",
                content=f"Queue entry {entry_id} manually retried",
                author_type=AuthorType.USER,
                execution_id=execution_id,
                status="pending",
            )
        )
        self.orchestrator.wake()
        return entry

    def _fail_if_active(self, execution_id: str, error: str) -> None:
        def _fail(execution: Execution) -> None:
            if not execution.is_active:
                return
            execution.status = ExecutionStatus.FAILED
            execution.error = error
            if execution.errored_at is None:
                execution.errored_at = utc_now()
            execution.append_log(error, LogSeverity.ERROR)

        try:
            self.store.update_execution(execution_id, _fail)
        except NotFoundError:
            logger.warning("Execution %s not found while failing it: %s", execution_id, error)

    def cancel(self, entry_id: str) -> QueueEntry:
        """Delete a pending or retrying entry and fail its pending Execution.

        Raises:
            NotFoundError: If the entry does not exist.
            ConflictError: If the entry is processing, failed or completed.
        """
        entry = self.queue.cancel(entry_id)
        execution_id = entry.execution_id
        if execution_id is None:
            # The worker may have opened an Execution and died before writing its id back.
            active = self.store.active_execution(entry.workspace_id)
            if active is not None and active.entry_id == entry_id:
                execution_id = active.execution_id
        if execution_id is not None:
            self._fail_if_active(execution_id, CANCELLED_ERROR)
        self.store.append_timeline(
            TimelineMessage(
                workspace_id=entry.workspace_id,
                type="execution_cancelled",
                content=f"Queue entry {entry_id} cancelled by administrator",
                author_type=AuthorType.USER,
                execution_id=execution_id,
                status="failed",
            )
        )
        return entry

    def prune(self, retain: int = 0) -> int:
        return self.queue.prune_completed(retain)

    def approve(self, workspace_id: str) -> Workspace:
        return self.lifecycle.approve(workspace_id)

    def verify(self, workspace_id: str) -> Workspace:
        return self.lifecycle.verify(workspace_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def status(self, execution_id: str) -> Execution:
        return self.store.get_execution(execution_id)

    def workspace(self, workspace_id: str) -> Workspace:
        return self.store.get_workspace(workspace_id)

    def timeline(self, workspace_id: str, *, limit: int = 50, offset: int = 0) -> tuple[list[TimelineMessage], bool]:
        self.store.get_workspace(workspace_id)
        return self.store.list_timeline(workspace_id, limit=limit, offset=offset)

    def stats(self, workspace_id: str | None = None) -> dict[str, Any]:
        executions = self.store.list_executions(workspace_id)
        return {
            "queue": self.queue.list().stats(),
            "executions": execution_stats(executions, self._clock()).model_dump(mode="json"),
            "worker_alive": self.worker_alive(),
        }
