from importlib.metadata import version

from .agent import Agent, CommandAgent, DeepAgentRunner
from .analytics import ExecutionStats, execution_stats
from .deploy import DeploymentClient, DeploymentReport, DeployMonitor, VercelDeploymentClient
from .errors import ConflictError, NotFoundError, PipelineError
from .lifecycle import WorkspaceLifecycle
from .models import (
    AgentEvent,
    AgentRequest,
    DeployContext,
    DeployStatus,
    Execution,
    ExecutionStatus,
    FailureEvent,
    FeedbackAttachment,
    FeedbackBatch,
    FeedbackItem,
    LogEvent,
    LogSeverity,
    Phase,
    PhaseEvent,
    ProgressEvent,
    QueueEntry,
    QueueListing,
    QueueState,
    SuccessEvent,
    TimelineMessage,
    Workspace,
    WorkspaceStatus,
)
from .notify import EscalationNotice, LoggingNotifier, Notifier, WebhookNotifier
from .orchestrator import Orchestrator
from .pipeline import RemediationPipeline
from .queue_store import QueueStore
from .records import FileRecordStore, RecordStore
from .settings import RuntimeSettings

DISTRIBUTION_NAME = "feedback-remediation-pipeline"


def get_version() -> str:
    try:
        return version(DISTRIBUTION_NAME)
    except Exception:
        return "0.0.0"


__all__ = [
    "Agent",
    "AgentEvent",
    "AgentRequest",
    "CommandAgent",
    "ConflictError",
    "DeepAgentRunner",
    "DeployContext",
    "DeployMonitor",
    "DeployStatus",
    "DeploymentClient",
    "DeploymentReport",
    "EscalationNotice",
    "Execution",
    "ExecutionStats",
    "ExecutionStatus",
    "FailureEvent",
    "FeedbackAttachment",
    "FeedbackBatch",
    "FeedbackItem",
    "FileRecordStore",
    "LogEvent",
    "LogSeverity",
    "LoggingNotifier",
    "NotFoundError",
    "Notifier",
    "Orchestrator",
    "Phase",
    "PhaseEvent",
    "PipelineError",
    "ProgressEvent",
    "QueueEntry",
    "QueueListing",
    "QueueState",
    "QueueStore",
    "RecordStore",
    "RemediationPipeline",
    "RuntimeSettings",
    "SuccessEvent",
    "TimelineMessage",
    "VercelDeploymentClient",
    "WebhookNotifier",
    "Workspace",
    "WorkspaceLifecycle",
    "WorkspaceStatus",
    "execution_stats",
    "get_version",
]
