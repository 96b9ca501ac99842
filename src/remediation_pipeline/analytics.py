from __future__ import annotations

from datetime import datetime, timedelta
from typing import Sequence

from pydantic import BaseModel, Field

from .models import Execution, ExecutionStatus


class ExecutionSummary(BaseModel):
    execution_id: str
    workspace_id: str
    status: ExecutionStatus
    progress: int
    triggered_at: datetime
    completed_at: datetime | None = None
    error: str | None = None


class ExecutionStats(BaseModel):
    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    success_rate: float = 0.0
    running: list[ExecutionSummary] = Field(default_factory=list)
    recent: list[ExecutionSummary] = Field(default_factory=list)
    recent_failures: list[ExecutionSummary] = Field(default_factory=list)
    average_duration_minutes: float | None = None
    last_24h: int = 0
    last_7d: int = 0


def _summary(execution: Execution) -> ExecutionSummary:
    return ExecutionSummary(
        execution_id=execution.execution_id,
        workspace_id=execution.workspace_id,
        status=execution.status,
        progress=execution.progress,
        triggered_at=execution.triggered_at,
        completed_at=execution.completed_at,
        error=execution.error,
    )


def execution_stats(executions: Sequence[Execution], now: datetime) -> ExecutionStats:
    """Aggregate Execution records for the administrator overview.

    Success rate is completed / (completed + failed) as a percentage; the
    average duration covers completed Executions that have both a start and
    a completion time.
    """
    ordered = sorted(executions, key=lambda item: item.triggered_at, reverse=True)
    by_status = {status.value: 0 for status in ExecutionStatus}
    for execution in ordered:
        by_status[execution.status.value] += 1

    finished = by_status[ExecutionStatus.COMPLETED.value] + by_status[ExecutionStatus.FAILED.value]
    success_rate = round(100.0 * by_status[ExecutionStatus.COMPLETED.value] / finished, 2) if finished else 0.0

    durations = [
        (execution.completed_at - execution.started_at).total_seconds() / 60.0
        for execution in ordered
        if execution.status is ExecutionStatus.COMPLETED
        and execution.started_at is not None
        and execution.completed_at is not None
    ]

    return ExecutionStats(
        total=len(ordered),
        by_status=by_status,
        success_rate=success_rate,
        running=[_summary(item) for item in ordered if item.status is ExecutionStatus.RUNNING],
        recent=[_summary(item) for item in ordered[:10]],
        recent_failures=[_summary(item) for item in ordered if item.status is ExecutionStatus.FAILED][:5],
        average_duration_minutes=round(sum(durations) / len(durations), 2) if durations else None,
        last_24h=sum(1 for item in ordered if now - item.triggered_at <= timedelta(hours=24)),
        last_7d=sum(1 for item in ordered if now - item.triggered_at <= timedelta(days=7)),
    )
