from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from remediation_pipeline.deploy import DeploymentReport
from remediation_pipeline.models import (
    AgentEvent,
    AgentRequest,
    DeployStatus,
    FailureEvent,
    FeedbackBatch,
    FeedbackItem,
    LogEvent,
    Phase,
    PhaseEvent,
    ProgressEvent,
    SuccessEvent,
    utc_now,
)
from remediation_pipeline.notify import EscalationNotice
from remediation_pipeline.pipeline import RemediationPipeline
from remediation_pipeline.settings import RuntimeSettings


class ScriptedAgent:
    """Plays one scripted run per call; the last script repeats once the list is exhausted."""

    def __init__(self, scripts: Sequence[object]) -> None:
        self.scripts = list(scripts)
        self.requests: list[AgentRequest] = []

    def run(self, request: AgentRequest, emit: Callable[[AgentEvent], None]) -> None:
        self.requests.append(request)
        index = min(len(self.requests) - 1, len(self.scripts) - 1)
        script = self.scripts[index]
        if isinstance(script, Exception):
            raise script
        if callable(script):
            script(request, emit)
            return
        for event in script:
            emit(event)


class FakeDeploymentClient:
    """Returns one queued report per status call; the last report repeats."""

    def __init__(self, reports: Sequence[DeploymentReport]) -> None:
        self.reports = list(reports)
        self.calls: list[str] = []

    def status(self, commit_hash: str) -> DeploymentReport:
        self.calls.append(commit_hash)
        index = min(len(self.calls) - 1, len(self.reports) - 1)
        return self.reports[index]


class RecordingNotifier:
    def __init__(self) -> None:
        self.notices: list[EscalationNotice] = []

    def notify(self, notice: EscalationNotice) -> None:
        self.notices.append(notice)


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 5, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


def successful_run(*, commit_hash: str | None = "abc123def456", files: Sequence[str] = ("patterns/rsi.py",)) -> list[AgentEvent]:
    return [
        PhaseEvent(phase=Phase.PLANNING, description="Read the feedback", progress=5),
        PhaseEvent(phase=Phase.IMPLEMENTING, description="Adjust thresholds", progress=30),
        ProgressEvent(progress=55, current_task="Editing detector"),
        PhaseEvent(phase=Phase.TESTING, description="Run detector tests", progress=80),
        LogEvent(message="tests passed"),
        SuccessEvent(files_changed=list(files), commit_hash=commit_hash, commit_message="Tune RSI detector"),
    ]


def failing_run(error: str = "tests failed") -> list[AgentEvent]:
    return [PhaseEvent(phase=Phase.PLANNING, progress=5), FailureEvent(error=error)]


def make_batch(count: int = 2, *, submitted_by: str | None = "reviewer@example.com") -> FeedbackBatch:
    return FeedbackBatch(
        items=[
            FeedbackItem(
                feedback_id=f"FB-{index}",
                correction_type="false_positive" if index % 2 else "missed_pattern",
                reasoning=f"Correction number {index}",
                session_id=f"S-{index}",
            )
            for index in range(1, count + 1)
        ],
        session_ids=[f"S-{index}" for index in range(1, count + 1)],
        submitted_by=submitted_by,
    )


@pytest.fixture()
def test_settings() -> RuntimeSettings:
    return RuntimeSettings(
        lease_seconds=60,
        retry_backoff_seconds=0,
        deploy_poll_interval_seconds=0,
        deploy_max_wait_seconds=5,
        worker_poll_interval_seconds=0,
    ).normalized()


@pytest.fixture()
def make_pipeline(tmp_path: Path, test_settings: RuntimeSettings):
    def _make(
        agent: ScriptedAgent,
        *,
        deploy_client: FakeDeploymentClient | None = None,
        notifier: RecordingNotifier | None = None,
        settings: RuntimeSettings | None = None,
        clock: FakeClock | None = None,
    ) -> RemediationPipeline:
        return RemediationPipeline(
            settings or test_settings,
            tmp_path,
            agent=agent,
            deploy_client=deploy_client,
            notifier=notifier,
            clock=clock or utc_now,
            sleep=lambda _seconds: None,
        )

    return _make


@pytest.fixture()
def deploy_ok() -> FakeDeploymentClient:
    return FakeDeploymentClient(
        [
            DeploymentReport(status=DeployStatus.PENDING),
            DeploymentReport(status=DeployStatus.SUCCEEDED, deployment_id="dpl_1", url="https://app.example.com"),
        ]
    )
