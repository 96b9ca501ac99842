from __future__ import annotations

import logging
import time
import urllib.parse
from datetime import datetime, timedelta
from typing import Any, Callable, Protocol, Sequence, TypedDict

from langgraph.graph import END, START, StateGraph
from pydantic import BaseModel

from .errors import ConflictError
from .lifecycle import WorkspaceLifecycle
from .models import (
    AuthorType,
    DeployContext,
    DeployStatus,
    Execution,
    ExecutionStatus,
    LogSeverity,
    TimelineMessage,
    utc_now,
)
from .notify import EscalationNotice, Notifier, deliver
from .records import RecordStore
from .tools import _http_request_json

logger = logging.getLogger(__name__)

_VERCEL_API = "https://api.vercel.com"
_ERROR_MARKERS = ("Error", "error", "Failed", "failed")
_MAX_ERROR_LINES = 50
_MAX_LOG_LINES = 100


class DeploymentReport(BaseModel):
    status: DeployStatus
    deployment_id: str | None = None
    url: str | None = None
    logs: str = ""


class DeploymentClient(Protocol):
    def status(self, commit_hash: str) -> DeploymentReport: ...


def excerpt_deploy_logs(lines: Sequence[str]) -> str:
    """Reduce a deployment log to the part worth showing the agent.

    Returns the last 50 lines that mention an error or failure, or the last
    100 lines if none do.
    """
    kept = [line for line in lines if line.strip()]
    errors = [line for line in kept if any(marker in line for marker in _ERROR_MARKERS)]
    if errors:
        return "\n".join(errors[-_MAX_ERROR_LINES:])
    return "\n".join(kept[-_MAX_LOG_LINES:])


class VercelDeploymentClient:
    """Looks up the Vercel deployment built from a given git commit."""

    _STATE_MAP = {
        "READY": DeployStatus.SUCCEEDED,
        "ERROR": DeployStatus.FAILED,
        "CANCELED": DeployStatus.FAILED,
    }

    def __init__(
        self,
        *,
        token: str,
        project_id: str,
        team_id: str = "",
        base_url: str = _VERCEL_API,
        request: Callable[..., Any] = _http_request_json,
    ) -> None:
        if not token or not project_id:
            raise ValueError("Vercel client requires a token and a project id")
        self.token = token
        self.project_id = project_id
        self.team_id = team_id
        self.base_url = base_url.rstrip("/")
        self._request = request

    def _get(self, path: str, params: dict[str, str]) -> Any:
        if self.team_id:
            params = {**params, "teamId": self.team_id}
        query = f"?{urllib.parse.urlencode(params)}" if params else ""
        return self._request(
            f"{self.base_url}{path}{query}",
            headers={"Authorization": f"Bearer {self.token}"},
        )

    def _find_deployment(self, commit_hash: str) -> dict[str, Any] | None:
        data = self._get("/v6/deployments", {"projectId": self.project_id, "limit": "20"})
        for deployment in (data or {}).get("deployments", []):
            meta = deployment.get("meta") or {}
            sha = meta.get("githubCommitSha") or (meta.get("gitSource") or {}).get("sha")
            if sha == commit_hash:
                return deployment
        return None

    def fetch_logs(self, deployment_id: str) -> str:
        try:
            events = self._get(f"/v2/deployments/{urllib.parse.quote(deployment_id)}/events", {})
        except RuntimeError as exc:
            return f"Failed to fetch logs: {exc}"
        lines: list[str] = []
        for event in events or []:
            if isinstance(event, str):
                lines.append(event)
            elif isinstance(event, dict):
                text = event.get("text") or (event.get("payload") or {}).get("text")
                if text:
                    lines.append(str(text))
        return excerpt_deploy_logs(lines)

    def status(self, commit_hash: str) -> DeploymentReport:
        deployment = self._find_deployment(commit_hash)
        if deployment is None:
            return DeploymentReport(status=DeployStatus.PENDING)
        state = str(deployment.get("state") or deployment.get("readyState") or "")
        status = self._STATE_MAP.get(state, DeployStatus.PENDING)
        deployment_id = deployment.get("uid") or deployment.get("id")
        url = f"https://{deployment['url']}" if deployment.get("url") else None
        logs = ""
        if status is DeployStatus.FAILED and deployment_id:
            logs = self.fetch_logs(str(deployment_id))
        return DeploymentReport(status=status, deployment_id=deployment_id, url=url, logs=logs)


class DeployWatchState(TypedDict, total=False):
    execution_id: str
    workspace_id: str
    commit_hash: str
    status: str
    url: str | None
    logs: str
    error: str | None
    failures: int


RetryScheduler = Callable[[Execution, DeployContext], str]


class DeployMonitor:
    """Confirms a committed change is live, retrying or escalating on failure.

    ``watch`` runs a small graph: poll until the deployment is terminal or the
    maximum wait has passed, then either record success, schedule a new agent
    cycle with the captured logs, or escalate once the retry bound is hit.
    The deploy-failure counter is carried from each Execution to the retry
    cycle it spawns, so the bound holds across cycles.
    """

    def __init__(
        self,
        *,
        store: RecordStore,
        lifecycle: WorkspaceLifecycle,
        client: DeploymentClient,
        notifier: Notifier,
        schedule_retry: RetryScheduler,
        max_retries: int = 10,
        poll_interval: float = 10.0,
        max_wait: float = 1_800.0,
        stale_after: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.lifecycle = lifecycle
        self.client = client
        self.notifier = notifier
        self.schedule_retry = schedule_retry
        self.max_retries = max_retries
        self.poll_interval = poll_interval
        self.max_wait = max_wait
        self.stale_after = stale_after if stale_after is not None else max(60.0, 3 * poll_interval)
        self._sleep = sleep
        self._monotonic = monotonic
        self._clock = clock
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(DeployWatchState)
        graph.add_node("start", self._start_node)
        graph.add_node("poll", self._poll_node)
        graph.add_node("record_success", self._record_success_node)
        graph.add_node("record_failure", self._record_failure_node)
        graph.add_node("schedule_retry", self._schedule_retry_node)
        graph.add_node("escalate", self._escalate_node)

        graph.add_edge(START, "start")
        graph.add_edge("start", "poll")
        graph.add_conditional_edges(
            "poll",
            self._poll_route,
            {"succeeded": "record_success", "failed": "record_failure"},
        )
        graph.add_conditional_edges(
            "record_failure",
            self._failure_route,
            {"retry": "schedule_retry", "escalate": "escalate"},
        )
        graph.add_edge("record_success", END)
        graph.add_edge("schedule_retry", END)
        graph.add_edge("escalate", END)
        return graph

    def _timeline(self, state: DeployWatchState, type_: str, content: str, status: str, **data: Any) -> None:
        self.store.append_timeline(
            TimelineMessage(
                workspace_id=state["workspace_id"],
                type=type_,
                content=content,
                author_type=AuthorType.SYSTEM,
                execution_id=state["execution_id"],
                status=status,
                data={"commit_hash": state["commit_hash"], **data},
            )
        )

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def _start_node(self, state: DeployWatchState) -> dict[str, Any]:
        resumed: list[bool] = []

        def _apply(execution: Execution) -> None:
            now = self._clock()
            resumed.append(execution.deploy_started_at is not None)
            execution.deploy_status = DeployStatus.PENDING
            execution.deploy_checked_at = now
            if execution.deploy_started_at is None:
                execution.deploy_started_at = now
                execution.append_log(f"Watching deployment of {state['commit_hash']}")
            else:
                execution.append_log(f"Resumed watching deployment of {state['commit_hash']}", LogSeverity.WARN)

        self.store.update_execution(state["execution_id"], _apply)
        if resumed[0]:
            self._timeline(state, "deploy_started", "Deployment watch resumed", "in_progress", resumed=True)
        else:
            self._timeline(state, "deploy_started", "Deployment started", "in_progress")
        return {}

    def _mark_checked(self, execution_id: str) -> None:
        def _apply(execution: Execution) -> None:
            execution.deploy_checked_at = self._clock()

        self.store.update_execution(execution_id, _apply)

    def _poll_node(self, state: DeployWatchState) -> dict[str, Any]:
        started = self._monotonic()
        while True:
            try:
                report = self.client.status(state["commit_hash"])
            except (RuntimeError, OSError) as exc:
                logger.warning("Deployment status check for %s failed: %s", state["commit_hash"], exc)
                report = DeploymentReport(status=DeployStatus.PENDING)
            if report.status is not DeployStatus.PENDING:
                return {"status": report.status.value, "url": report.url, "logs": report.logs, "error": None}
            if self._monotonic() - started >= self.max_wait:
                error = f"deployment did not finish within {int(self.max_wait)}s"
                logger.warning("Deployment of %s timed out", state["commit_hash"])
                return {"status": DeployStatus.FAILED.value, "url": None, "logs": error, "error": error}
            # Another worker treats a watch whose check time goes stale as abandoned.
            self._mark_checked(state["execution_id"])
            self._sleep(self.poll_interval)

    def _poll_route(self, state: DeployWatchState) -> str:
        return "succeeded" if state["status"] == DeployStatus.SUCCEEDED.value else "failed"

    def _record_success_node(self, state: DeployWatchState) -> dict[str, Any]:
        def _apply(execution: Execution) -> None:
            execution.deploy_status = DeployStatus.SUCCEEDED
            execution.deploy_url = state.get("url")
            execution.deploy_completed_at = self._clock()
            execution.append_log("Deployment succeeded")

        self.store.update_execution(state["execution_id"], _apply)
        workspace = self.lifecycle.record_deploy_success(state["workspace_id"])
        self._timeline(
            state,
            "deploy_success",
            f"Deployment succeeded, version {workspace.version} is live",
            "success",
            url=state.get("url"),
            version=workspace.version,
        )
        logger.info("Deployment of %s succeeded for %s", state["commit_hash"], state["workspace_id"])
        return {}

    def _record_failure_node(self, state: DeployWatchState) -> dict[str, Any]:
        failures: list[int] = []

        def _apply(execution: Execution) -> None:
            execution.deploy_retry_count += 1
            failures.append(execution.deploy_retry_count)
            execution.deploy_status = DeployStatus.FAILED
            execution.deploy_logs = state.get("logs") or ""
            execution.deploy_completed_at = self._clock()
            execution.append_log(
                f"Deployment failed ({execution.deploy_retry_count}/{self.max_retries})", LogSeverity.ERROR
            )

        self.store.update_execution(state["execution_id"], _apply)
        return {"failures": failures[0]}

    def _failure_route(self, state: DeployWatchState) -> str:
        return "escalate" if state["failures"] >= self.max_retries else "retry"

    def _schedule_retry_node(self, state: DeployWatchState) -> dict[str, Any]:
        execution = self.store.get_execution(state["execution_id"])
        context = DeployContext(
            parent_execution_id=execution.execution_id,
            failed_commit=state["commit_hash"],
            logs=state.get("logs") or "",
            attempt=state["failures"],
            max_attempts=self.max_retries,
        )
        try:
            new_execution_id = self.schedule_retry(execution, context)
        except ConflictError as exc:
            # The workspace is busy or no longer accepts work, so nobody will fix this commit.
            summary = f"Deployment failed and no retry could be scheduled: {exc}"
            logs = state.get("logs") or ""

            def _unscheduled(item: Execution) -> None:
                item.error = summary
                item.append_log(summary, LogSeverity.ERROR)

            self.store.update_execution(execution.execution_id, _unscheduled)
            self._timeline(state, "deploy_failed", summary, "failed", logs=logs)
            deliver(
                self.notifier,
                EscalationNotice(
                    workspace_id=state["workspace_id"],
                    execution_id=state["execution_id"],
                    summary=summary,
                    logs=logs,
                    attempts=state["failures"],
                ),
            )
            logger.error("Could not schedule deploy retry for %s: %s", execution.execution_id, exc)
            return {}
        self._timeline(
            state,
            "deploy_retry",
            f"Deployment failed, retrying ({state['failures']}/{self.max_retries})",
            "retrying",
            retry_number=state["failures"],
            retry_execution_id=new_execution_id,
        )
        logger.warning(
            "Deployment of %s failed (%d/%d); scheduled %s",
            state["commit_hash"],
            state["failures"],
            self.max_retries,
            new_execution_id,
        )
        return {}

    def _escalate_node(self, state: DeployWatchState) -> dict[str, Any]:
        summary = f"Deployment failed after {state['failures']} attempts"
        logs = state.get("logs") or ""

        def _apply(execution: Execution) -> None:
            execution.error = summary
            execution.append_log(f"{summary}; escalated to a human", LogSeverity.ERROR)

        self.store.update_execution(state["execution_id"], _apply)
        self._timeline(state, "deploy_failed", summary, "failed", logs=logs)
        notice = EscalationNotice(
            workspace_id=state["workspace_id"],
            execution_id=state["execution_id"],
            summary=summary,
            logs=logs,
            attempts=state["failures"],
        )
        deliver(self.notifier, notice)
        logger.error("Escalated %s: %s", state["execution_id"], summary)
        return {}

    # ------------------------------------------------------------------

    def watch(self, execution_id: str, commit_id: str) -> DeployStatus:
        """Follow the deployment of ``commit_id`` for ``execution_id`` to a terminal state.

        A second call for an Execution whose deployment already finished is a
        no-op and returns the recorded status.
        """
        execution = self.store.get_execution(execution_id)
        if execution.deploy_completed_at is not None and execution.deploy_status is not None:
            logger.info("Deployment of %s already recorded as %s", execution_id, execution.deploy_status.value)
            return execution.deploy_status
        result = self.graph.invoke(
            {
                "execution_id": execution_id,
                "workspace_id": execution.workspace_id,
                "commit_hash": commit_id,
            }
        )
        return DeployStatus(result["status"])

    def _abandoned(self, execution: Execution, now: datetime) -> bool:
        if execution.status is not ExecutionStatus.COMPLETED or not execution.commit_hash:
            return False
        if execution.deploy_status is not DeployStatus.PENDING or execution.deploy_completed_at is not None:
            return False
        last_seen = execution.deploy_checked_at or execution.deploy_started_at or execution.completed_at
        return last_seen is None or now - last_seen >= timedelta(seconds=self.stale_after)

    def resume_stale_watches(self) -> list[str]:
        """Finish deploy watches left behind by a worker that died mid-watch.

        A watch counts as abandoned once its last status check is older
        than ``stale_after`` seconds.

        Returns:
            The ids of the Executions whose watch was resumed.
        """
        now = self._clock()
        resumed = []
        for execution in self.store.list_executions():
            if not self._abandoned(execution, now):
                continue
            logger.warning(
                "Resuming abandoned deployment watch for %s (commit %s)", execution.execution_id, execution.commit_hash
            )
            assert execution.commit_hash is not None
            self.watch(execution.execution_id, execution.commit_hash)
            resumed.append(execution.execution_id)
        return resumed
