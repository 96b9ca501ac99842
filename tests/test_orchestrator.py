from __future__ import annotations

import time
from dataclasses import replace
from pathlib import Path

import pytest

from conftest import (
    FakeClock,
    FakeDeploymentClient,
    ScriptedAgent,
    failing_run,
    make_batch,
    successful_run,
)
from remediation_pipeline.errors import ConflictError, NotFoundError
from remediation_pipeline.models import (
    DeployStatus,
    Execution,
    ExecutionStatus,
    FailureEvent,
    LogSeverity,
    Phase,
    PhaseEvent,
    ProgressEvent,
    QueueState,
    SuccessEvent,
    WorkspaceStatus,
)
from remediation_pipeline.orchestrator import record_success, worker_is_alive, write_heartbeat


def _all_phases(commit_hash: str | None = "c1") -> list:
    return [
        PhaseEvent(phase=Phase.PLANNING, description="Read feedback", progress=10),
        PhaseEvent(phase=Phase.IMPLEMENTING, description="Edit detector", progress=40),
        PhaseEvent(phase=Phase.TESTING, description="Run tests", progress=70),
        PhaseEvent(phase=Phase.REFINING, description="Polish", progress=90),
        SuccessEvent(files_changed=["patterns/rsi.py"], commit_hash=commit_hash, commit_message="Fix RSI"),
    ]


def _timeline_types(pipeline, workspace_id: str) -> list[str]:
    messages, _ = pipeline.timeline(workspace_id, limit=500)
    return [item.type for item in reversed(messages)]


def test_scenario_a_enqueue_runs_phases_and_deploys(make_pipeline, deploy_ok: FakeDeploymentClient) -> None:
    agent = ScriptedAgent([_all_phases()])
    pipeline = make_pipeline(agent, deploy_client=deploy_ok)
    pipeline.create_workspace("W1")

    entry_id = pipeline.enqueue("W1", make_batch())
    assert pipeline.store.list_executions("W1") == []
    assert pipeline.workspace("W1").status is WorkspaceStatus.DRAFT

    pipeline.run_until_idle()

    (execution,) = pipeline.store.list_executions("W1")
    assert execution.status is ExecutionStatus.COMPLETED
    assert execution.progress == 100
    assert execution.phase is Phase.REFINING
    assert [item.phase for item in execution.checkpoints] == [
        Phase.PLANNING,
        Phase.IMPLEMENTING,
        Phase.TESTING,
        Phase.REFINING,
    ]
    assert execution.commit_hash == "c1"
    assert execution.files_changed == ["patterns/rsi.py"]
    assert execution.deploy_status is DeployStatus.SUCCEEDED
    assert execution.deploy_url == "https://app.example.com"
    assert execution.entry_id == entry_id
    assert execution.feedback_ids == ["FB-1", "FB-2"]
    assert Path(execution.prompt_path).read_text(encoding="utf-8").startswith("# Pattern Implementation Feedback")

    workspace = pipeline.workspace("W1")
    assert workspace.status is WorkspaceStatus.BETA
    assert workspace.version == "1.0.1"
    assert workspace.completed_executions == 1
    assert workspace.success_rate == 100.0
    assert workspace.feedback_count == 2

    assert pipeline.queue.get(entry_id).state is QueueState.COMPLETED
    assert deploy_ok.calls == ["c1", "c1"]

    changes = [item for item in pipeline.timeline("W1", limit=500)[0] if item.type == "status_changed"]
    assert [item.data["to"] for item in reversed(changes)] == ["implementing", "beta"]
    types = _timeline_types(pipeline, "W1")
    assert types.index("agent_started") < types.index("agent_completed") < types.index("deploy_success")


def test_scenario_b_two_failures_then_success(make_pipeline, deploy_ok: FakeDeploymentClient) -> None:
    agent = ScriptedAgent([failing_run("lint failed"), failing_run("tests failed"), _all_phases()])
    pipeline = make_pipeline(agent, deploy_client=deploy_ok)
    pipeline.create_workspace("W1")
    execution_id = pipeline.trigger("W1", make_batch())
    entry_id = pipeline.status(execution_id).entry_id

    assert pipeline.orchestrator.process_next() is True
    item = pipeline.queue.get(entry_id)
    assert item.state is QueueState.RETRYING
    assert item.retry_number == 1
    assert pipeline.status(execution_id).status is ExecutionStatus.PENDING

    pipeline.queue.promote_due_retries()
    assert pipeline.orchestrator.process_next() is True
    item = pipeline.queue.get(entry_id)
    assert item.state is QueueState.RETRYING
    assert item.retry_number == 2

    pipeline.run_until_idle()
    assert pipeline.queue.get(entry_id).state is QueueState.COMPLETED

    execution = pipeline.status(execution_id)
    assert execution.status is ExecutionStatus.COMPLETED
    assert execution.retry_count == 2
    assert execution.error is None
    assert [request.attempt for request in agent.requests] == [1, 2, 3]
    assert [line.message for line in execution.log if line.severity is LogSeverity.WARN][:2] == [
        "Attempt 1 failed: lint failed; retry 1 scheduled",
        "Attempt 2 failed: tests failed; retry 2 scheduled",
    ]
    assert _timeline_types(pipeline, "W1").count("agent_retry_scheduled") == 2
    assert pipeline.workspace("W1").completed_executions == 1


def test_three_failures_fail_terminally(make_pipeline) -> None:
    agent = ScriptedAgent([failing_run("still broken")])
    pipeline = make_pipeline(agent)
    pipeline.create_workspace("W1")
    execution_id = pipeline.trigger("W1", make_batch())

    pipeline.run_until_idle()

    execution = pipeline.status(execution_id)
    assert len(agent.requests) == 3
    assert execution.status is ExecutionStatus.FAILED
    assert execution.retry_count == 3
    assert execution.errored_at is not None
    assert "still broken" in execution.error
    item = pipeline.queue.get(execution.entry_id)
    assert item.state is QueueState.FAILED
    assert item.entry.retry_count == 3
    workspace = pipeline.workspace("W1")
    assert workspace.failed_executions == 1
    assert workspace.success_rate == 0.0
    assert "agent_failed" in _timeline_types(pipeline, "W1")


def test_manual_retry_rearms_execution_for_one_more_attempt(make_pipeline) -> None:
    agent = ScriptedAgent([failing_run(), failing_run(), failing_run(), _all_phases(commit_hash=None)])
    pipeline = make_pipeline(agent)
    pipeline.create_workspace("W1")
    execution_id = pipeline.trigger("W1", make_batch())
    pipeline.run_until_idle()
    entry_id = pipeline.status(execution_id).entry_id

    with pytest.raises(ConflictError):
        pipeline.cancel(entry_id)

    pipeline.retry(entry_id)
    assert pipeline.status(execution_id).status is ExecutionStatus.PENDING
    with pytest.raises(ConflictError):
        pipeline.trigger("W1", make_batch())

    pipeline.run_until_idle()
    execution = pipeline.status(execution_id)
    assert execution.status is ExecutionStatus.COMPLETED
    assert execution.completed_at is not None
    assert pipeline.queue.get(entry_id).state is QueueState.COMPLETED
    assert len(agent.requests) == 4


def test_manual_retry_after_failure_fails_without_auto_retry(make_pipeline) -> None:
    agent = ScriptedAgent([failing_run()])
    pipeline = make_pipeline(agent)
    pipeline.create_workspace("W1")
    execution_id = pipeline.trigger("W1", make_batch())
    pipeline.run_until_idle()
    entry_id = pipeline.status(execution_id).entry_id

    pipeline.retry(entry_id)
    pipeline.run_until_idle()

    assert len(agent.requests) == 4
    assert pipeline.queue.get(entry_id).state is QueueState.FAILED
    assert pipeline.status(execution_id).status is ExecutionStatus.FAILED


def test_retry_rejects_entries_that_are_not_failed(make_pipeline) -> None:
    pipeline = make_pipeline(ScriptedAgent([successful_run()]))
    pipeline.create_workspace("W1")
    execution_id = pipeline.trigger("W1", make_batch())

    with pytest.raises(ConflictError):
        pipeline.retry(pipeline.status(execution_id).entry_id)
    with pytest.raises(NotFoundError):
        pipeline.retry("20260101T000000000000-Q-missing")


def test_scenario_d_cancel_pending_entry_before_pickup(make_pipeline) -> None:
    agent = ScriptedAgent([successful_run()])
    pipeline = make_pipeline(agent)
    pipeline.create_workspace("W1")
    entry_id = pipeline.enqueue("W1", make_batch())

    pipeline.cancel(entry_id)
    assert pipeline.list_queue().find(entry_id) is None

    pipeline.run_until_idle()
    assert agent.requests == []
    assert pipeline.store.list_executions("W1") == []
    with pytest.raises(NotFoundError):
        pipeline.cancel(entry_id)


def test_cancel_triggered_entry_fails_its_execution(make_pipeline) -> None:
    pipeline = make_pipeline(ScriptedAgent([successful_run()]))
    pipeline.create_workspace("W1")
    execution_id = pipeline.trigger("W1", make_batch())

    pipeline.cancel(pipeline.status(execution_id).entry_id)

    execution = pipeline.status(execution_id)
    assert execution.status is ExecutionStatus.FAILED
    assert execution.error == "cancelled by administrator"
    assert pipeline.store.active_execution("W1") is None
    pipeline.trigger("W1", make_batch())


def test_trigger_rejects_busy_verified_and_missing_workspaces(make_pipeline) -> None:
    pipeline = make_pipeline(ScriptedAgent([successful_run()]))
    with pytest.raises(NotFoundError):
        pipeline.trigger("nope", make_batch())

    pipeline.create_workspace("W1")
    pipeline.trigger("W1", make_batch())
    with pytest.raises(ConflictError):
        pipeline.trigger("W1", make_batch())
    assert len(pipeline.list_queue().pending) == 1

    pipeline.store.create_workspace(
        pipeline.workspace("W1").model_copy(update={"workspace_id": "W2", "status": WorkspaceStatus.VERIFIED})
    )
    with pytest.raises(ConflictError):
        pipeline.trigger("W2", make_batch())
    with pytest.raises(ConflictError):
        pipeline.enqueue("W2", make_batch())


def test_busy_workspace_entries_wait_while_other_workspaces_proceed(make_pipeline) -> None:
    agent = ScriptedAgent([failing_run(), successful_run(commit_hash=None)])
    pipeline = make_pipeline(agent)
    pipeline.create_workspace("W1")
    pipeline.create_workspace("W2")

    triggered = pipeline.trigger("W1", make_batch(1))
    follow_up = pipeline.enqueue("W1", make_batch(1))
    other = pipeline.enqueue("W2", make_batch(1))

    pipeline.orchestrator.run_once()
    assert pipeline.queue.get(follow_up).state is QueueState.PENDING
    assert pipeline.queue.get(other).state is QueueState.COMPLETED

    pipeline.run_until_idle()

    assert pipeline.status(triggered).status is ExecutionStatus.COMPLETED
    assert pipeline.queue.get(follow_up).state is QueueState.COMPLETED
    assert len(pipeline.store.list_executions("W1")) == 2
    assert [request.workspace_id for request in agent.requests] == ["W1", "W2", "W1", "W1"]


def test_success_without_commit_skips_deploy(make_pipeline, deploy_ok: FakeDeploymentClient) -> None:
    pipeline = make_pipeline(ScriptedAgent([successful_run(commit_hash=None)]), deploy_client=deploy_ok)
    pipeline.create_workspace("W1")
    execution_id = pipeline.trigger("W1", make_batch())

    pipeline.run_until_idle()

    execution = pipeline.status(execution_id)
    assert execution.status is ExecutionStatus.COMPLETED
    assert execution.deploy_status is None
    assert deploy_ok.calls == []
    assert pipeline.workspace("W1").status is WorkspaceStatus.IMPLEMENTING


def test_backward_phase_is_ignored_and_progress_clamped(make_pipeline) -> None:
    script = [
        PhaseEvent(phase=Phase.TESTING, description="Skip ahead"),
        PhaseEvent(phase=Phase.IMPLEMENTING, description="Go back"),
        ProgressEvent(progress=250, current_task="Overshoot"),
        SuccessEvent(files_changed=[], commit_hash=None),
    ]
    observed: list[int] = []

    def _run(request, emit) -> None:
        for event in script[:3]:
            emit(event)
        observed.append(pipeline.status(request.execution_id).progress)
        emit(script[3])

    pipeline = make_pipeline(ScriptedAgent([_run]))
    pipeline.create_workspace("W1")
    execution_id = pipeline.trigger("W1", make_batch())
    pipeline.run_until_idle()

    execution = pipeline.status(execution_id)
    assert observed == [100]
    assert [item.phase for item in execution.checkpoints] == [Phase.PLANNING, Phase.TESTING]
    assert execution.phase is Phase.TESTING
    assert any(
        line.severity is LogSeverity.WARN and "testing -> implementing" in line.message for line in execution.log
    )


def test_duplicate_terminal_events_are_ignored(make_pipeline) -> None:
    script = [
        SuccessEvent(files_changed=["a.py"], commit_hash=None),
        SuccessEvent(files_changed=["b.py"], commit_hash=None),
        FailureEvent(error="late failure"),
    ]
    pipeline = make_pipeline(ScriptedAgent([script]))
    pipeline.create_workspace("W1")
    execution_id = pipeline.trigger("W1", make_batch())
    pipeline.run_until_idle()

    execution = pipeline.status(execution_id)
    assert execution.status is ExecutionStatus.COMPLETED
    assert execution.files_changed == ["a.py"]


def test_record_success_sets_completed_at_once(make_pipeline) -> None:
    pipeline = make_pipeline(ScriptedAgent([successful_run(commit_hash=None)]))
    pipeline.create_workspace("W1")
    execution_id = pipeline.trigger("W1", make_batch())
    pipeline.run_until_idle()
    first = pipeline.status(execution_id)

    again = record_success(pipeline.store, execution_id, files_changed=["other.py"], commit_hash="zzz")

    assert again.completed_at == first.completed_at
    assert again.files_changed == first.files_changed
    assert again.commit_hash is None


def test_agent_exception_counts_as_failed_attempt(make_pipeline) -> None:
    agent = ScriptedAgent([RuntimeError("model unavailable"), successful_run(commit_hash=None)])
    pipeline = make_pipeline(agent)
    pipeline.create_workspace("W1")
    execution_id = pipeline.trigger("W1", make_batch())

    pipeline.run_until_idle()

    execution = pipeline.status(execution_id)
    assert execution.status is ExecutionStatus.COMPLETED
    assert execution.retry_count == 1
    assert any("model unavailable" in line.message for line in execution.log)


def test_agent_without_terminal_event_fails_attempt(make_pipeline) -> None:
    agent = ScriptedAgent([[ProgressEvent(progress=20)]])
    pipeline = make_pipeline(agent)
    pipeline.create_workspace("W1")
    execution_id = pipeline.trigger("W1", make_batch())

    pipeline.run_until_idle()

    execution = pipeline.status(execution_id)
    assert execution.status is ExecutionStatus.FAILED
    assert "without reporting" in execution.error


def test_crashed_worker_entry_is_reclaimed_and_rerun(make_pipeline) -> None:
    pipeline = make_pipeline(ScriptedAgent([successful_run(commit_hash=None)]))
    pipeline.create_workspace("W1")
    execution_id = pipeline.trigger("W1", make_batch())
    entry_id = pipeline.status(execution_id).entry_id
    claimed = pipeline.queue.claim(entry_id, "worker-that-died")
    assert claimed is not None
    claimed.lease.expires_at = claimed.lease.acquired_at
    pipeline.queue._write_entry(pipeline.queue.root / f"{entry_id}.json.processing", claimed)

    pipeline.run_until_idle()

    assert pipeline.queue.get(entry_id).state is QueueState.COMPLETED
    assert pipeline.status(execution_id).status is ExecutionStatus.COMPLETED


def test_stats_summarise_queue_and_executions(make_pipeline) -> None:
    pipeline = make_pipeline(ScriptedAgent([successful_run(commit_hash=None)]))
    pipeline.create_workspace("W1")
    pipeline.trigger("W1", make_batch())
    pipeline.run_until_idle()

    stats = pipeline.stats()
    assert stats["queue"]["completed"] == 1
    assert stats["executions"]["total"] == 1
    assert stats["executions"]["by_status"]["completed"] == 1
    assert stats["executions"]["success_rate"] == 100.0
    assert stats["worker_alive"] is True


def test_heartbeat_liveness(tmp_path: Path) -> None:
    path = tmp_path / "heartbeat.txt"
    assert worker_is_alive(path, 30) is False

    write_heartbeat(path, now=lambda: 1_000.0)
    assert worker_is_alive(path, 30, now=lambda: 1_020.0) is True
    assert worker_is_alive(path, 30, now=lambda: 1_031.0) is False


def test_background_worker_processes_trigger(make_pipeline, test_settings) -> None:
    settings = replace(test_settings, worker_poll_interval_seconds=1)
    pipeline = make_pipeline(ScriptedAgent([successful_run(commit_hash=None)]), settings=settings)
    pipeline.create_workspace("W1")
    pipeline.start()
    try:
        execution_id = pipeline.trigger("W1", make_batch())
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            if pipeline.status(execution_id).status is ExecutionStatus.COMPLETED:
                break
            time.sleep(0.02)
    finally:
        pipeline.shutdown(timeout=5)

    assert pipeline.status(execution_id).status is ExecutionStatus.COMPLETED


class _Crash(BaseException):
    """Stands in for the process dying between two writes."""


def test_trigger_interrupted_before_enqueue_frees_workspace(make_pipeline, monkeypatch: pytest.MonkeyPatch) -> None:
    clock = FakeClock()
    agent = ScriptedAgent([successful_run(commit_hash=None)])
    pipeline = make_pipeline(agent, clock=clock)
    pipeline.create_workspace("W1")

    def _die(*args, **kwargs):
        raise _Crash()

    with monkeypatch.context() as patch:
        patch.setattr(pipeline.queue, "enqueue", _die)
        with pytest.raises(_Crash):
            pipeline.trigger("W1", make_batch())

    orphan = pipeline.store.active_execution("W1")
    assert orphan is not None
    assert orphan.entry_id is None
    with pytest.raises(ConflictError):
        pipeline.trigger("W1", make_batch())

    # A trigger still inside its grace period may be about to write the entry.
    pipeline.run_until_idle()
    assert pipeline.status(orphan.execution_id).status is ExecutionStatus.PENDING

    clock.advance(seconds=61)
    pipeline.run_until_idle()
    failed = pipeline.status(orphan.execution_id)
    assert failed.status is ExecutionStatus.FAILED
    assert failed.error == "Execution abandoned: queue entry was never written"
    assert "execution_abandoned" in _timeline_types(pipeline, "W1")

    execution_id = pipeline.trigger("W1", make_batch())
    pipeline.run_until_idle()
    assert pipeline.status(execution_id).status is ExecutionStatus.COMPLETED
    assert len(agent.requests) == 1


def test_pending_execution_whose_entry_vanished_is_failed(make_pipeline) -> None:
    pipeline = make_pipeline(ScriptedAgent([successful_run(commit_hash=None)]))
    pipeline.create_workspace("W1")
    execution_id = pipeline.trigger("W1", make_batch())
    entry_id = pipeline.status(execution_id).entry_id
    (pipeline.queue.root / f"{entry_id}.json").unlink()

    pipeline.run_until_idle()

    execution = pipeline.status(execution_id)
    assert execution.status is ExecutionStatus.FAILED
    assert execution.error == f"Execution abandoned: queue entry {entry_id} no longer exists"
    assert pipeline.store.active_execution("W1") is None


def test_execution_opened_by_dead_claim_is_adopted(make_pipeline) -> None:
    clock = FakeClock()
    agent = ScriptedAgent([successful_run(commit_hash=None)])
    pipeline = make_pipeline(agent, clock=clock)
    pipeline.create_workspace("W1")
    entry_id = pipeline.enqueue("W1", make_batch())
    # The dead worker opened the Execution but never wrote its id onto the entry.
    assert pipeline.queue.claim(entry_id, "worker-that-died") is not None
    pipeline.store.create_execution_if_idle(
        Execution(execution_id="EXEC-dead", workspace_id="W1", entry_id=entry_id, triggered_at=clock())
    )
    clock.advance(seconds=120)

    pipeline.run_until_idle()

    assert pipeline.status("EXEC-dead").status is ExecutionStatus.COMPLETED
    item = pipeline.queue.get(entry_id)
    assert item.state is QueueState.COMPLETED
    assert item.entry.execution_id == "EXEC-dead"
    assert [request.execution_id for request in agent.requests] == ["EXEC-dead"]
    assert [execution.execution_id for execution in pipeline.store.list_executions("W1")] == ["EXEC-dead"]


def test_cancel_fails_execution_opened_for_unlinked_entry(make_pipeline) -> None:
    pipeline = make_pipeline(ScriptedAgent([successful_run(commit_hash=None)]))
    pipeline.create_workspace("W1")
    entry_id = pipeline.enqueue("W1", make_batch())
    pipeline.store.create_execution_if_idle(Execution(execution_id="EXEC-dead", workspace_id="W1", entry_id=entry_id))

    pipeline.cancel(entry_id)

    execution = pipeline.status("EXEC-dead")
    assert execution.status is ExecutionStatus.FAILED
    assert execution.error == "cancelled by administrator"
    assert pipeline.store.active_execution("W1") is None


def test_agent_outliving_its_lease_still_completes(make_pipeline, deploy_ok: FakeDeploymentClient) -> None:
    clock = FakeClock()
    reclaimed: list[str] = []

    def _quiet_then_succeed(request, emit) -> None:
        clock.advance(seconds=120)
        reclaimed.extend(pipeline.queue.reap_expired_leases())
        for event in successful_run(commit_hash="c1"):
            emit(event)

    pipeline = make_pipeline(ScriptedAgent([_quiet_then_succeed]), deploy_client=deploy_ok, clock=clock)
    pipeline.create_workspace("W1")
    execution_id = pipeline.trigger("W1", make_batch())
    entry_id = pipeline.status(execution_id).entry_id

    pipeline.run_until_idle()

    assert reclaimed == [entry_id]
    assert pipeline.queue.get(entry_id).state is QueueState.COMPLETED
    execution = pipeline.status(execution_id)
    assert execution.status is ExecutionStatus.COMPLETED
    assert execution.deploy_status is DeployStatus.SUCCEEDED
    workspace = pipeline.workspace("W1")
    assert workspace.completed_executions == 1
    assert workspace.status is WorkspaceStatus.BETA


def test_lease_is_renewed_while_agent_is_quiet(make_pipeline, test_settings) -> None:
    settings = replace(test_settings, lease_seconds=1)
    reclaimed: list[str] = []

    def _quiet(request, emit) -> None:
        time.sleep(1.6)
        reclaimed.extend(pipeline.queue.reap_expired_leases())
        for event in successful_run(commit_hash=None):
            emit(event)

    pipeline = make_pipeline(ScriptedAgent([_quiet]), settings=settings)
    pipeline.create_workspace("W1")
    execution_id = pipeline.trigger("W1", make_batch())

    pipeline.run_until_idle()

    assert reclaimed == []
    assert pipeline.status(execution_id).status is ExecutionStatus.COMPLETED
    assert pipeline.queue.get(pipeline.status(execution_id).entry_id).state is QueueState.COMPLETED


def test_entry_for_completed_execution_is_closed_without_rerun(make_pipeline) -> None:
    agent = ScriptedAgent([successful_run(commit_hash=None)])
    pipeline = make_pipeline(agent)
    pipeline.create_workspace("W1")
    execution_id = pipeline.trigger("W1", make_batch())
    record_success(pipeline.store, execution_id, files_changed=["patterns/rsi.py"], commit_hash=None)

    pipeline.run_until_idle()

    assert agent.requests == []
    assert pipeline.queue.get(pipeline.status(execution_id).entry_id).state is QueueState.COMPLETED


def test_worker_resumes_abandoned_deploy_watch(make_pipeline, deploy_ok: FakeDeploymentClient) -> None:
    clock = FakeClock()
    pipeline = make_pipeline(ScriptedAgent([successful_run()]), deploy_client=deploy_ok, clock=clock)
    pipeline.create_workspace("W1")
    pipeline.store.update_workspace("W1", lambda workspace: setattr(workspace, "status", WorkspaceStatus.IMPLEMENTING))
    started = clock()
    # The worker watching this deployment died mid-poll.
    pipeline.store.create_execution_if_idle(
        Execution(
            execution_id="EXEC-1",
            workspace_id="W1",
            status=ExecutionStatus.COMPLETED,
            commit_hash="c1",
            triggered_at=started,
            completed_at=started,
            deploy_status=DeployStatus.PENDING,
            deploy_started_at=started,
            deploy_checked_at=started,
        )
    )

    pipeline.run_until_idle()
    assert deploy_ok.calls == []

    clock.advance(minutes=5)
    pipeline.run_until_idle()

    execution = pipeline.status("EXEC-1")
    assert execution.deploy_status is DeployStatus.SUCCEEDED
    assert execution.deploy_url == "https://app.example.com"
    assert execution.deploy_started_at == started
    assert pipeline.workspace("W1").status is WorkspaceStatus.BETA
    assert deploy_ok.calls == ["c1", "c1"]
