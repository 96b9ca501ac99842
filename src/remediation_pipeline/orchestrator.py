from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, TypedDict

from langgraph.graph import END, START, StateGraph

from .agent import Agent
from .deploy import DeployMonitor
from .errors import ConflictError, NotFoundError
from .lifecycle import WorkspaceLifecycle, check_accepts_work
from .models import (
    PHASE_ORDER,
    AgentEvent,
    AgentRequest,
    AuthorType,
    Checkpoint,
    DeployContext,
    DeployStatus,
    Execution,
    ExecutionStatus,
    FailureEvent,
    FeedbackBatch,
    LogEvent,
    LogSeverity,
    Phase,
    PhaseEvent,
    ProgressEvent,
    QueueEntry,
    SuccessEvent,
    TimelineMessage,
    new_id,
    utc_now,
)
from .prompts import PromptGenerator, batch_fingerprint, write_prompt
from .queue_store import QueueStore
from .records import RecordStore, _atomic_write_text

logger = logging.getLogger(__name__)

DEPLOY_RETRY_TRIGGER = "deploy-monitor"


def clamp_progress(value: int) -> int:
    return max(0, min(100, int(value)))


def write_heartbeat(path: Path, now: Callable[[], float] = time.time) -> None:
    _atomic_write_text(path, f"{int(now())}\n")


def worker_is_alive(path: Path, max_age: float, now: Callable[[], float] = time.time) -> bool:
    """Return True if the heartbeat at ``path`` is younger than ``max_age`` seconds."""
    try:
        beat = float(path.read_text(encoding="utf-8").strip())
    except (FileNotFoundError, ValueError):
        return False
    return now() - beat <= max_age


class EntryRunState(TypedDict, total=False):
    entry: dict[str, Any]
    execution_id: str | None
    action: str
    outcome: str
    error: str | None
    files_changed: list[str]
    commit_hash: str | None
    commit_message: str | None


class _EventSink:
    """Applies agent events to one running Execution and keeps the first terminal event."""

    def __init__(self, orchestrator: Orchestrator, execution_id: str, entry: QueueEntry) -> None:
        self._orchestrator = orchestrator
        self._execution_id = execution_id
        self._entry = entry
        self._lock = threading.Lock()
        self.terminal: SuccessEvent | FailureEvent | None = None

    def __call__(self, event: AgentEvent) -> None:
        with self._lock:
            if isinstance(event, (SuccessEvent, FailureEvent)):
                if self.terminal is None:
                    self.terminal = event
                else:
                    logger.warning(
                        "Ignoring duplicate terminal event %s for %s", event.kind, self._execution_id
                    )
                return
            if self.terminal is not None:
                logger.warning("Ignoring %s event after terminal report for %s", event.kind, self._execution_id)
                return
            self._orchestrator.apply_event(self._execution_id, event)
            self._orchestrator.queue.renew_lease(self._entry)

    def renew(self) -> bool:
        with self._lock:
            return self._orchestrator.queue.renew_lease(self._entry)


class Orchestrator:
    """Single logical worker that drains the queue and drives Executions.

    Each claimed entry runs through a graph: ``start`` (bind or create the
    Execution, render the prompt, mark it running), ``invoke_agent``, then
    ``complete`` or ``fail``. A completed Execution with a commit is handed to
    the deploy monitor. ``trigger`` enforces at most one pending or running
    Execution per workspace.
    """

    def __init__(
        self,
        *,
        queue: QueueStore,
        store: RecordStore,
        lifecycle: WorkspaceLifecycle,
        agent: Agent,
        prompts: PromptGenerator,
        prompts_root: Path,
        max_agent_retries: int = 3,
        retry_backoff: Callable[[int], float] = lambda attempt: 0,
        worker_id: str | None = None,
        heartbeat_path: Path | None = None,
        lease_renew_interval: float | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.queue = queue
        self.store = store
        self.lifecycle = lifecycle
        self.agent = agent
        self.prompts = prompts
        self.prompts_root = prompts_root
        self.max_agent_retries = max_agent_retries
        self.retry_backoff = retry_backoff
        self.worker_id = worker_id or new_id("worker")
        self.heartbeat_path = heartbeat_path
        self.lease_renew_interval = (
            lease_renew_interval if lease_renew_interval is not None else max(queue.lease_seconds / 3, 0.1)
        )
        self._clock = clock
        self.deploy_monitor: DeployMonitor | None = None
        self._wake = threading.Event()
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(EntryRunState)
        graph.add_node("start", self._start_node)
        graph.add_node("invoke_agent", self._invoke_agent_node)
        graph.add_node("complete", self._complete_node)
        graph.add_node("fail", self._fail_node)
        graph.add_node("deploy", self._deploy_node)

        graph.add_edge(START, "start")
        graph.add_conditional_edges("start", self._start_route, {"run": "invoke_agent", "end": END})
        graph.add_conditional_edges(
            "invoke_agent",
            self._outcome_route,
            {"success": "complete", "failure": "fail"},
        )
        graph.add_conditional_edges("complete", self._deploy_route, {"deploy": "deploy", "end": END})
        graph.add_edge("fail", END)
        graph.add_edge("deploy", END)
        return graph

    def _timeline(
        self,
        workspace_id: str,
        type_: str,
        content: str,
        *,
        execution_id: str | None = None,
        author: AuthorType = AuthorType.SYSTEM,
        status: str | None = None,
        progress: int | None = None,
        **data: Any,
    ) -> None:
        self.store.append_timeline(
            TimelineMessage(
                workspace_id=workspace_id,
                type=type_,
                content=content,
                author_type=author,
                execution_id=execution_id,
                status=status,
                progress=progress,
                data=data,
            )
        )

    # ------------------------------------------------------------------
    # Triggering
    # ------------------------------------------------------------------

    def wake(self) -> None:
        """Signal the worker; extra signals while it is awake are harmless."""
        self._wake.set()

    def _open_execution(
        self,
        execution: Execution,
        batch: FeedbackBatch,
        prepare: Callable[[Any], None],
    ) -> str:
        self.store.create_execution_if_idle(execution, prepare)
        try:
            entry_id = self.queue.enqueue(execution.workspace_id, batch, execution_id=execution.execution_id)
        except OSError as exc:
            self.store.update_execution(
                execution.execution_id, lambda item: self._mark_failed(item, f"could not enqueue work: {exc}")
            )
            raise

        def _bind(item: Execution) -> None:
            if item.entry_id is None:
                item.entry_id = entry_id

        self.store.update_execution(execution.execution_id, _bind)
        return entry_id

    def trigger(self, workspace_id: str, batch: FeedbackBatch, *, triggered_by: str | None = None) -> str:
        """Open a pending Execution for ``workspace_id`` and queue its work.

        Raises:
            NotFoundError: If the workspace does not exist.
            ConflictError: If the workspace already has a pending or running
                Execution, or is verified. Nothing is written in that case.
        """
        execution = Execution(
            execution_id=new_id("EXEC"),
            workspace_id=workspace_id,
            triggered_at=self._clock(),
            feedback_ids=batch.feedback_ids,
            session_ids=list(batch.session_ids),
            triggered_by=triggered_by or batch.submitted_by,
            batch_digest=batch_fingerprint(batch),
        )
        execution.append_log(f"Execution triggered with {len(batch.items)} feedback items")
        previous = []

        def _prepare(workspace: Any) -> None:
            previous.append(
                self.lifecycle.prepare_trigger(
                    workspace, feedback_count=len(batch.items), session_count=len(batch.session_ids)
                )
            )

        entry_id = self._open_execution(execution, batch, _prepare)
        self.lifecycle.report_trigger(workspace_id, previous[0])
        self._timeline(
            workspace_id,
            "feedback_batch_sent",
            f"Sent {len(batch.items)} feedback items to the agent",
            execution_id=execution.execution_id,
            author=AuthorType.USER,
            status="pending",
            entry_id=entry_id,
            feedback_ids=batch.feedback_ids,
        )
        logger.info("Triggered %s for workspace %s (entry %s)", execution.execution_id, workspace_id, entry_id)
        self.wake()
        return execution.execution_id

    def schedule_deploy_retry(self, parent: Execution, context: DeployContext) -> str:
        """Open a new Execution cycle that asks the agent to fix a failed deployment."""
        execution = Execution(
            execution_id=new_id("EXEC"),
            workspace_id=parent.workspace_id,
            triggered_at=self._clock(),
            triggered_by=DEPLOY_RETRY_TRIGGER,
            parent_execution_id=parent.execution_id,
            deploy_retry_count=context.attempt,
        )
        execution.append_log(
            f"Deploy retry {context.attempt}/{context.max_attempts} for commit {context.failed_commit}",
            LogSeverity.WARN,
        )
        batch = FeedbackBatch(deploy_context=context, notes="Fix the failed deployment")
        execution.batch_digest = batch_fingerprint(batch)
        self._open_execution(execution, batch, check_accepts_work)
        self.wake()
        return execution.execution_id

    # ------------------------------------------------------------------
    # Event application
    # ------------------------------------------------------------------

    def apply_event(self, execution_id: str, event: AgentEvent) -> None:
        """Record one non-terminal agent event on a running Execution."""
        announced: list[Phase] = []

        def _apply(execution: Execution) -> None:
            if execution.status is not ExecutionStatus.RUNNING:
                logger.warning("Ignoring %s event for %s in status %s", event.kind, execution_id, execution.status.value)
                return
            if isinstance(event, PhaseEvent):
                current = execution.phase
                if current is None or PHASE_ORDER.index(event.phase) > PHASE_ORDER.index(current):
                    execution.phase = event.phase
                    execution.checkpoints.append(Checkpoint(phase=event.phase, description=event.description))
                    suffix = f": {event.description}" if event.description else ""
                    execution.append_log(f"Entered phase {event.phase.value}{suffix}")
                    announced.append(event.phase)
                elif event.phase is not current:
                    execution.append_log(
                        f"Ignored out-of-order phase change {current.value} -> {event.phase.value}",
                        LogSeverity.WARN,
                    )
                if event.progress is not None:
                    execution.progress = clamp_progress(event.progress)
            elif isinstance(event, ProgressEvent):
                execution.progress = clamp_progress(event.progress)
                if event.current_task:
                    execution.current_task = event.current_task
            elif isinstance(event, LogEvent):
                execution.append_log(event.message, event.severity)

        execution = self.store.update_execution(execution_id, _apply)
        if announced:
            self._timeline(
                execution.workspace_id,
                "agent_phase_update",
                f"Agent entered {announced[0].value}",
                execution_id=execution_id,
                author=AuthorType.AGENT,
                status="running",
                progress=execution.progress,
                phase=announced[0].value,
            )

    # ------------------------------------------------------------------
    # Graph nodes
    # ------------------------------------------------------------------

    def _bind_execution(self, entry: QueueEntry) -> Execution | None:
        if entry.execution_id is None:
            active = self.store.active_execution(entry.workspace_id)
            if active is not None and active.entry_id == entry.entry_id:
                # Opened by an earlier claim that died before saving the id on the entry.
                logger.warning("Adopting %s for %s", active.execution_id, entry.entry_id)
                entry.execution_id = active.execution_id
                self.queue.renew_lease(entry)
                return active

        if entry.execution_id is not None:
            try:
                execution = self.store.get_execution(entry.execution_id)
            except LookupError:
                execution = None
            if execution is not None:
                if execution.status is ExecutionStatus.COMPLETED:
                    logger.info("Execution %s already completed; closing %s", execution.execution_id, entry.entry_id)
                    self.queue.mark_done(entry)
                    return None
                if execution.is_terminal:
                    self.queue.mark_failed(entry, f"execution {execution.execution_id} is already {execution.status.value}")
                    return None
                return execution

        execution = Execution(
            execution_id=entry.execution_id or new_id("EXEC"),
            workspace_id=entry.workspace_id,
            triggered_at=self._clock(),
            entry_id=entry.entry_id,
            feedback_ids=entry.payload.feedback_ids,
            session_ids=list(entry.payload.session_ids),
            triggered_by=entry.payload.submitted_by,
            batch_digest=batch_fingerprint(entry.payload),
        )
        previous = []
        try:
            self.store.create_execution_if_idle(
                execution,
                lambda workspace: previous.append(
                    self.lifecycle.prepare_trigger(
                        workspace,
                        feedback_count=len(entry.payload.items),
                        session_count=len(entry.payload.session_ids),
                    )
                ),
            )
        except ConflictError as exc:
            if self.store.active_execution(entry.workspace_id) is None:
                self.queue.mark_failed(entry, str(exc))
            else:
                logger.info("Deferring %s: %s", entry.entry_id, exc)
                self.queue.release(entry)
            return None
        except LookupError as exc:
            self.queue.mark_failed(entry, str(exc))
            return None
        entry.execution_id = execution.execution_id
        self.queue.renew_lease(entry)
        self.lifecycle.report_trigger(entry.workspace_id, previous[0])
        return execution

    def _start_node(self, state: EntryRunState) -> dict[str, Any]:
        entry = QueueEntry.model_validate(state["entry"])
        execution = self._bind_execution(entry)
        if execution is None:
            return {"action": "end", "execution_id": None}

        workspace = self.store.get_workspace(entry.workspace_id)
        recent_failures = [
            item
            for item in self.store.list_executions(entry.workspace_id)
            if item.status is ExecutionStatus.FAILED
        ]
        prompt = self.prompts.generate(workspace, entry.payload, recent_failures)
        prompt_path = write_prompt(self.prompts_root, execution.execution_id, prompt)
        attempt = entry.retry_count + 1

        def _apply(item: Execution) -> None:
            item.status = ExecutionStatus.RUNNING
            item.entry_id = entry.entry_id
            item.prompt_path = str(prompt_path)
            item.retry_count = entry.retry_count
            if item.started_at is None:
                item.started_at = utc_now()
            if item.phase is None:
                item.phase = Phase.PLANNING
                item.checkpoints.append(Checkpoint(phase=Phase.PLANNING, description="Execution started"))
            item.append_log(f"Execution started (attempt {attempt}) by {self.worker_id}")

        self.store.update_execution(execution.execution_id, _apply)
        self._timeline(
            entry.workspace_id,
            "agent_started",
            f"Agent started working (attempt {attempt})",
            execution_id=execution.execution_id,
            author=AuthorType.AGENT,
            status="running",
            progress=0,
        )
        return {"action": "run", "execution_id": execution.execution_id, "entry": entry.model_dump(mode="json")}

    def _start_route(self, state: EntryRunState) -> str:
        return state.get("action", "end")

    def _keep_lease(self, sink: _EventSink, stop: threading.Event) -> None:
        """Renew the entry's lease while the agent runs, including quiet stretches."""
        while not stop.wait(self.lease_renew_interval):
            try:
                if not sink.renew():
                    return
            except OSError:
                logger.exception("Lease renewal failed")

    def _invoke_agent_node(self, state: EntryRunState) -> dict[str, Any]:
        entry = QueueEntry.model_validate(state["entry"])
        execution_id = state["execution_id"]
        execution = self.store.get_execution(execution_id)
        sink = _EventSink(self, execution_id, entry)
        request = AgentRequest(
            execution_id=execution_id,
            workspace_id=entry.workspace_id,
            prompt=Path(execution.prompt_path).read_text(encoding="utf-8") if execution.prompt_path else "",
            prompt_path=execution.prompt_path,
            attempt=entry.retry_count + 1,
        )
        stop = threading.Event()
        keeper = threading.Thread(
            target=self._keep_lease,
            args=(sink, stop),
            name=f"lease-{entry.entry_id}",
            daemon=True,
        )
        keeper.start()
        try:
            self.agent.run(request, sink)
        except Exception as exc:
            logger.exception("Agent raised for %s", execution_id)
            if sink.terminal is None:
                return {"outcome": "failure", "error": f"agent error: {exc}"}
        finally:
            stop.set()
            keeper.join()

        terminal = sink.terminal
        if terminal is None:
            return {"outcome": "failure", "error": "agent finished without reporting success or failure"}
        if isinstance(terminal, FailureEvent):
            return {"outcome": "failure", "error": terminal.error}
        return {
            "outcome": "success",
            "error": None,
            "files_changed": list(terminal.files_changed),
            "commit_hash": terminal.commit_hash,
            "commit_message": terminal.commit_message,
        }

    def _outcome_route(self, state: EntryRunState) -> str:
        return state["outcome"]

    def _complete_node(self, state: EntryRunState) -> dict[str, Any]:
        entry = QueueEntry.model_validate(state["entry"])
        commit_hash = state.get("commit_hash")
        files_changed = state.get("files_changed") or []
        record_success(
            self.store,
            state["execution_id"],
            files_changed=files_changed,
            commit_hash=commit_hash,
            commit_message=state.get("commit_message"),
            deploy_pending=bool(commit_hash) and self.deploy_monitor is not None,
        )
        try:
            self.queue.mark_done(entry)
        except ConflictError as exc:
            # The current holder sees the completed Execution and closes the entry.
            logger.warning("Execution %s completed after losing its entry: %s", state["execution_id"], exc)
            return {"action": "end"}
        self.lifecycle.record_execution_outcome(entry.workspace_id, succeeded=True)
        self._timeline(
            entry.workspace_id,
            "agent_completed",
            f"Agent completed: {len(files_changed)} files changed"
            + (f", commit {commit_hash[:12]}" if commit_hash else ", no commit"),
            execution_id=state["execution_id"],
            author=AuthorType.AGENT,
            status="completed",
            progress=100,
            files_changed=files_changed,
            commit_hash=commit_hash,
        )
        return {}

    def _deploy_route(self, state: EntryRunState) -> str:
        if state.get("action") == "end":
            return "end"
        if not state.get("commit_hash"):
            logger.info("Execution %s completed without a commit; no deployment to watch", state["execution_id"])
            return "end"
        if self.deploy_monitor is None:
            logger.warning("No deploy monitor attached; not watching %s", state["commit_hash"])
            return "end"
        return "deploy"

    def _deploy_node(self, state: EntryRunState) -> dict[str, Any]:
        assert self.deploy_monitor is not None
        self.deploy_monitor.watch(state["execution_id"], state["commit_hash"])
        return {}

    def _mark_failed(self, execution: Execution, error: str) -> None:
        execution.status = ExecutionStatus.FAILED
        execution.error = error
        if execution.errored_at is None:
            execution.errored_at = self._clock()
        execution.append_log(error, LogSeverity.ERROR)

    def _fail_node(self, state: EntryRunState) -> dict[str, Any]:
        entry = QueueEntry.model_validate(state["entry"])
        execution_id = state["execution_id"]
        error = state.get("error") or "agent failed"
        attempts = entry.retry_count + 1

        if attempts < self.max_agent_retries:
            not_before = self._clock() + timedelta(seconds=self.retry_backoff(attempts))
            try:
                retry_number = self.queue.mark_retry(entry, error, not_before)
            except ConflictError as exc:
                logger.warning("Attempt on %s failed after losing its entry: %s", execution_id, exc)
                return {}

            def _requeue(execution: Execution) -> None:
                execution.status = ExecutionStatus.PENDING
                execution.error = error
                execution.retry_count = retry_number
                execution.append_log(
                    f"Attempt {attempts} failed: {error}; retry {retry_number} scheduled", LogSeverity.WARN
                )

            execution = self.store.update_execution(execution_id, _requeue)
            self._timeline(
                execution.workspace_id,
                "agent_retry_scheduled",
                f"Attempt {attempts} failed, retrying ({retry_number}/{self.max_agent_retries - 1})",
                execution_id=execution_id,
                status="retrying",
                error=error,
                retry_number=retry_number,
            )
            return {}

        entry.retry_count = attempts
        try:
            self.queue.mark_failed(entry, error)
        except ConflictError as exc:
            logger.warning("Attempt on %s failed after losing its entry: %s", execution_id, exc)
            return {}

        def _fail(execution: Execution) -> None:
            execution.retry_count = attempts
            self._mark_failed(execution, f"Agent failed after {attempts} attempts: {error}")

        execution = self.store.update_execution(execution_id, _fail)
        self.lifecycle.record_execution_outcome(execution.workspace_id, succeeded=False)
        self._timeline(
            execution.workspace_id,
            "agent_failed",
            execution.error or error,
            execution_id=execution_id,
            author=AuthorType.AGENT,
            status="failed",
            error=error,
        )
        return {}

    # ------------------------------------------------------------------
    # Worker loop
    # ------------------------------------------------------------------

    def _admissible(self, entry: QueueEntry) -> bool:
        active = self.store.active_execution(entry.workspace_id)
        if active is None or active.execution_id == entry.execution_id:
            return True
        return entry.execution_id is None and active.entry_id == entry.entry_id

    def _orphan_reason(self, execution: Execution) -> str | None:
        """Explain why an active Execution can never run, or return None."""
        grace = timedelta(seconds=self.queue.lease_seconds)
        if execution.entry_id is None:
            item = self.queue.find_by_execution(execution.execution_id)
            if item is not None:
                entry_id = item.entry.entry_id

                def _link(record: Execution) -> None:
                    if record.entry_id is None:
                        record.entry_id = entry_id

                self.store.update_execution(execution.execution_id, _link)
                return None
            if self._clock() - execution.triggered_at < grace:
                # The trigger may still be writing its queue entry.
                return None
            return "queue entry was never written"
        for _ in range(2):
            # A state rename can hide the file from a single lookup.
            try:
                self.queue.locate(execution.entry_id)
                return None
            except NotFoundError:
                continue
        return f"queue entry {execution.entry_id} no longer exists"

    def reap_orphaned_executions(self) -> list[str]:
        """Fail pending Executions whose queue entry is gone or was never written.

        Such an Execution would otherwise hold the workspace forever, since
        nothing is left to run it.

        Returns:
            The ids of the Executions failed.
        """
        reaped = []
        for execution in self.store.list_executions():
            if execution.status is not ExecutionStatus.PENDING:
                continue
            reason = self._orphan_reason(execution)
            if reason is None:
                continue
            error = f"Execution abandoned: {reason}"
            failed: list[bool] = []

            def _fail(record: Execution) -> None:
                if record.status is ExecutionStatus.PENDING:
                    self._mark_failed(record, error)
                    failed.append(True)

            self.store.update_execution(execution.execution_id, _fail)
            if not failed:
                continue
            logger.error("Failed orphaned %s on %s: %s", execution.execution_id, execution.workspace_id, reason)
            self._timeline(
                execution.workspace_id,
                "execution_abandoned",
                error,
                execution_id=execution.execution_id,
                status="failed",
                error=error,
            )
            reaped.append(execution.execution_id)
        return reaped

    def process_entry(self, entry: QueueEntry) -> None:
        self.graph.invoke({"entry": entry.model_dump(mode="json")})

    def process_next(self) -> bool:
        """Claim and run the oldest admissible pending entry.

        Entries for a workspace that is busy with another Execution are
        skipped and revisited on a later pass.

        Returns:
            True if an entry was processed.
        """
        for candidate in self.queue.pending_entries():
            if not self._admissible(candidate):
                logger.debug("Skipping %s: workspace %s is busy", candidate.entry_id, candidate.workspace_id)
                continue
            claimed = self.queue.claim(candidate.entry_id, self.worker_id)
            if claimed is None:
                continue
            self.process_entry(claimed)
            return True
        return False

    def run_once(self) -> int:
        """One worker pass: reclaim leases, clear orphaned Executions, promote
        due retries, drain pending work, then resume abandoned deploy watches.

        Returns:
            The number of entries and Executions acted on.
        """
        reclaimed = self.queue.reap_expired_leases()
        orphaned = self.reap_orphaned_executions()
        promoted = self.queue.promote_due_retries()
        processed = 0
        while self.process_next():
            processed += 1
        resumed = self.deploy_monitor.resume_stale_watches() if self.deploy_monitor is not None else []
        if self.heartbeat_path is not None:
            write_heartbeat(self.heartbeat_path)
        return processed + len(promoted) + len(reclaimed) + len(orphaned) + len(resumed)

    def run_until_idle(self, max_passes: int = 1_000) -> int:
        total = 0
        for _ in range(max_passes):
            done = self.run_once()
            if done == 0:
                break
            total += done
        return total

    def run_forever(self, stop: threading.Event, poll_interval: float) -> None:
        logger.info("Worker %s started", self.worker_id)
        while not stop.is_set():
            self._wake.clear()
            try:
                self.run_once()
            except Exception:
                logger.exception("Worker pass failed")
            self._wake.wait(poll_interval)
        logger.info("Worker %s stopped", self.worker_id)


def record_success(
    store: RecordStore,
    execution_id: str,
    *,
    files_changed: list[str],
    commit_hash: str | None,
    commit_message: str | None = None,
    deploy_pending: bool = False,
) -> Execution:
    """Write the success terminal fields of an Execution.

    Terminal fields are written once; a repeated call leaves ``completed_at``
    and the recorded result untouched.

    With ``deploy_pending`` the deployment is marked pending in the same
    write, so a watch interrupted before it starts can still be resumed.
    """

    def _apply(execution: Execution) -> None:
        if execution.completed_at is not None:
            logger.warning("Execution %s already completed; ignoring repeated success", execution_id)
            return
        execution.status = ExecutionStatus.COMPLETED
        execution.completed_at = utc_now()
        execution.progress = 100
        execution.files_changed = list(files_changed)
        execution.commit_hash = commit_hash
        execution.commit_message = commit_message
        execution.error = None
        if deploy_pending:
            execution.deploy_status = DeployStatus.PENDING
        execution.append_log(
            f"Execution completed: {len(files_changed)} files changed"
            + (f", commit {commit_hash}" if commit_hash else "")
        )

    return store.update_execution(execution_id, _apply)
