from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Enumerations and state tables
# ---------------------------------------------------------------------------

class QueueState(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    FAILED = "failed"
    RETRYING = "retrying"
    COMPLETED = "completed"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_EXECUTION_STATUSES: frozenset[ExecutionStatus] = frozenset(
    {ExecutionStatus.PENDING, ExecutionStatus.RUNNING}
)


class Phase(str, Enum):
    PLANNING = "planning"
    IMPLEMENTING = "implementing"
    TESTING = "testing"
    REFINING = "refining"


PHASE_ORDER: tuple[Phase, ...] = (Phase.PLANNING, Phase.IMPLEMENTING, Phase.TESTING, Phase.REFINING)


class LogSeverity(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class DeployStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class WorkspaceStatus(str, Enum):
    DRAFT = "draft"
    IMPLEMENTING = "implementing"
    BETA = "beta"
    IN_REVIEW = "in_review"
    VERIFIED = "verified"


WORKSPACE_STATUS_TRANSITIONS: dict[WorkspaceStatus, frozenset[WorkspaceStatus]] = {
    WorkspaceStatus.DRAFT: frozenset({WorkspaceStatus.IMPLEMENTING}),
    WorkspaceStatus.IMPLEMENTING: frozenset({WorkspaceStatus.BETA}),
    WorkspaceStatus.BETA: frozenset({WorkspaceStatus.IN_REVIEW}),
    WorkspaceStatus.IN_REVIEW: frozenset({WorkspaceStatus.VERIFIED}),
    WorkspaceStatus.VERIFIED: frozenset(),
}


class AuthorType(str, Enum):
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


# ---------------------------------------------------------------------------
# Feedback payload
# ---------------------------------------------------------------------------

class FeedbackAttachment(BaseModel):
    filename: str
    url: str
    category: str = "screenshot"


class FeedbackItem(BaseModel):
    """One user correction on the pattern-detection output."""

    feedback_id: str
    correction_type: str = "general"
    reasoning: str = ""
    session_id: str | None = None
    attachments: list[FeedbackAttachment] = Field(default_factory=list)


class DeployContext(BaseModel):
    """Diagnostic context attached to a batch created by a failed deployment."""

    parent_execution_id: str
    failed_commit: str
    logs: str
    attempt: int = Field(ge=1)
    max_attempts: int = Field(ge=1)


class FeedbackBatch(BaseModel):
    items: list[FeedbackItem] = Field(default_factory=list)
    session_ids: list[str] = Field(default_factory=list)
    submitted_by: str | None = None
    notes: str = ""
    deploy_context: DeployContext | None = None

    @property
    def feedback_ids(self) -> list[str]:
        return [item.feedback_id for item in self.items]


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

class Lease(BaseModel):
    worker_id: str
    acquired_at: datetime
    expires_at: datetime

    def expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class QueueEntry(BaseModel):
    entry_id: str
    workspace_id: str
    payload: FeedbackBatch
    execution_id: str | None = None
    retry_count: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    next_attempt_at: datetime | None = None
    last_error: str | None = None
    lease: Lease | None = None


class QueueItem(BaseModel):
    """Listing view of one queue file."""

    entry: QueueEntry
    state: QueueState
    filename: str
    retry_number: int | None = None
    stale: bool = False


class QueueListing(BaseModel):
    pending: list[QueueItem] = Field(default_factory=list)
    processing: list[QueueItem] = Field(default_factory=list)
    failed: list[QueueItem] = Field(default_factory=list)
    retrying: list[QueueItem] = Field(default_factory=list)
    completed: list[QueueItem] = Field(default_factory=list)

    def partition(self, state: QueueState) -> list[QueueItem]:
        return getattr(self, state.value)

    def stats(self) -> dict[str, int]:
        return {state.value: len(self.partition(state)) for state in QueueState}

    def find(self, entry_id: str) -> QueueItem | None:
        for state in QueueState:
            for item in self.partition(state):
                if item.entry.entry_id == entry_id:
                    return item
        return None


# ---------------------------------------------------------------------------
# Execution and workspace records
# ---------------------------------------------------------------------------

class Checkpoint(BaseModel):
    phase: Phase
    at: datetime = Field(default_factory=utc_now)
    description: str = ""


class LogLine(BaseModel):
    at: datetime = Field(default_factory=utc_now)
    message: str
    severity: LogSeverity = LogSeverity.INFO


class Execution(BaseModel):
    execution_id: str
    workspace_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    phase: Phase | None = None
    progress: int = Field(default=0, ge=0, le=100)
    current_task: str | None = None
    checkpoints: list[Checkpoint] = Field(default_factory=list)
    log: list[LogLine] = Field(default_factory=list)
    files_changed: list[str] = Field(default_factory=list)
    commit_hash: str | None = None
    commit_message: str | None = None
    deploy_status: DeployStatus | None = None
    deploy_url: str | None = None
    deploy_logs: str | None = None
    deploy_retry_count: int = Field(default=0, ge=0)
    error: str | None = None
    retry_count: int = Field(default=0, ge=0)
    entry_id: str | None = None
    feedback_ids: list[str] = Field(default_factory=list)
    session_ids: list[str] = Field(default_factory=list)
    triggered_by: str | None = None
    parent_execution_id: str | None = None
    prompt_path: str | None = None
    batch_digest: str | None = None
    triggered_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    errored_at: datetime | None = None
    deploy_started_at: datetime | None = None
    deploy_checked_at: datetime | None = None
    deploy_completed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_EXECUTION_STATUSES

    @property
    def is_terminal(self) -> bool:
        return not self.is_active

    def append_log(self, message: str, severity: LogSeverity = LogSeverity.INFO) -> LogLine:
        line = LogLine(message=message, severity=severity)
        self.log.append(line)
        return line


def bump_patch_version(version: str) -> str:
    """Increment the patch component of a ``major.minor.patch`` version string."""
    parts = version.split(".")
    while len(parts) < 3:
        parts.append("0")
    try:
        patch = int(parts[2])
    except ValueError as exc:
        raise ValueError(f"version {version!r} has a non-numeric patch component") from exc
    return f"{parts[0]}.{parts[1]}.{patch + 1}"


class Workspace(BaseModel):
    """Per-pattern aggregate the pipeline acts on."""

    workspace_id: str
    name: str = ""
    category: str = ""
    description: str = ""
    status: WorkspaceStatus = WorkspaceStatus.DRAFT
    version: str = "1.0.0"
    session_count: int = Field(default=0, ge=0)
    feedback_count: int = Field(default=0, ge=0)
    completed_executions: int = Field(default=0, ge=0)
    failed_executions: int = Field(default=0, ge=0)
    success_rate: float = Field(default=0.0, ge=0.0, le=100.0)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    last_tested_at: datetime | None = None

    @field_validator("workspace_id")
    @classmethod
    def _non_empty_id(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("workspace_id must be non-empty")
        return value.strip()

    def record_outcome(self, *, succeeded: bool) -> None:
        if succeeded:
            self.completed_executions += 1
        else:
            self.failed_executions += 1
        finished = self.completed_executions + self.failed_executions
        self.success_rate = round(100.0 * self.completed_executions / finished, 2) if finished else 0.0


class TimelineMessage(BaseModel):
    message_id: str = Field(default_factory=lambda: new_id("MSG"))
    workspace_id: str
    type: str
    content: str
    author_type: AuthorType = AuthorType.SYSTEM
    execution_id: str | None = None
    status: str | None = None
    progress: int | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Agent contract
# ---------------------------------------------------------------------------

class AgentRequest(BaseModel):
    execution_id: str
    workspace_id: str
    prompt: str
    prompt_path: str | None = None
    attempt: int = Field(default=1, ge=1)


class PhaseEvent(BaseModel):
    kind: Literal["phase"] = "phase"
    phase: Phase
    description: str = ""
    progress: int | None = None


class ProgressEvent(BaseModel):
    kind: Literal["progress"] = "progress"
    progress: int
    current_task: str | None = None


class LogEvent(BaseModel):
    kind: Literal["log"] = "log"
    message: str
    severity: LogSeverity = LogSeverity.INFO


class SuccessEvent(BaseModel):
    kind: Literal["success"] = "success"
    files_changed: list[str] = Field(default_factory=list)
    commit_hash: str | None = None
    commit_message: str | None = None


class FailureEvent(BaseModel):
    kind: Literal["failure"] = "failure"
    error: str


AgentEvent = Annotated[
    Union[PhaseEvent, ProgressEvent, LogEvent, SuccessEvent, FailureEvent],
    Field(discriminator="kind"),
]

AGENT_EVENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(AgentEvent)
