from __future__ import annotations

import logging

from .errors import ConflictError
from .models import (
    WORKSPACE_STATUS_TRANSITIONS,
    AuthorType,
    TimelineMessage,
    Workspace,
    WorkspaceStatus,
    bump_patch_version,
    utc_now,
)
from .records import RecordStore

logger = logging.getLogger(__name__)


def check_transition(workspace: Workspace, target: WorkspaceStatus) -> None:
    """Raise ``ConflictError`` unless ``workspace`` may move to ``target``."""
    allowed = WORKSPACE_STATUS_TRANSITIONS[workspace.status]
    if target not in allowed:
        raise ConflictError(
            f"Illegal workspace status transition for {workspace.workspace_id}: "
            f"{workspace.status.value} -> {target.value}"
        )


def check_accepts_work(workspace: Workspace) -> None:
    """Raise ``ConflictError`` if new Executions may not be opened on ``workspace``."""
    if workspace.status is WorkspaceStatus.VERIFIED:
        raise ConflictError(f"workspace {workspace.workspace_id} is verified and does not accept new executions")


class WorkspaceLifecycle:
    """Human-facing workspace status machine layered over Execution outcomes.

    ``draft -> implementing -> beta -> in_review -> verified``; there are no
    backward moves. Every transition is checked and written under the
    workspace record lock, so a human ``approve``/``verify`` cannot interleave
    with the pipeline's own updates.
    """

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    def _status_message(self, workspace: Workspace, previous: WorkspaceStatus, reason: str) -> None:
        self.store.append_timeline(
            TimelineMessage(
                workspace_id=workspace.workspace_id,
                type="status_changed",
                content=f"Status changed from {previous.value} to {workspace.status.value}: {reason}",
                author_type=AuthorType.SYSTEM,
                status=workspace.status.value,
                data={"from": previous.value, "to": workspace.status.value},
            )
        )
        logger.info(
            "Workspace %s: %s -> %s (%s)", workspace.workspace_id, previous.value, workspace.status.value, reason
        )

    def transition(self, workspace_id: str, target: WorkspaceStatus, *, reason: str) -> Workspace:
        """Apply one transition from the status table.

        Raises:
            NotFoundError: If the workspace does not exist.
            ConflictError: If the table does not allow the move; nothing is written.
        """
        previous: list[WorkspaceStatus] = []

        def _apply(workspace: Workspace) -> None:
            check_transition(workspace, target)
            previous.append(workspace.status)
            workspace.status = target

        workspace = self.store.update_workspace(workspace_id, _apply)
        self._status_message(workspace, previous[0], reason)
        return workspace

    def approve(self, workspace_id: str) -> Workspace:
        return self.transition(workspace_id, WorkspaceStatus.IN_REVIEW, reason="approved by user")

    def verify(self, workspace_id: str) -> Workspace:
        return self.transition(workspace_id, WorkspaceStatus.VERIFIED, reason="verified by administrator")

    def prepare_trigger(self, workspace: Workspace, *, feedback_count: int, session_count: int) -> WorkspaceStatus:
        """Mutate a locked workspace for a newly triggered Execution.

        Returns the status the workspace had before, so the caller can report
        a ``draft -> implementing`` move after the write commits.
        """
        check_accepts_work(workspace)
        previous = workspace.status
        if workspace.status is WorkspaceStatus.DRAFT:
            workspace.status = WorkspaceStatus.IMPLEMENTING
        workspace.feedback_count += feedback_count
        workspace.session_count += session_count
        return previous

    def report_trigger(self, workspace_id: str, previous: WorkspaceStatus) -> None:
        if previous is WorkspaceStatus.DRAFT:
            workspace = self.store.get_workspace(workspace_id)
            self._status_message(workspace, previous, "first execution triggered")

    def record_execution_outcome(self, workspace_id: str, *, succeeded: bool) -> Workspace:
        return self.store.update_workspace(workspace_id, lambda ws: ws.record_outcome(succeeded=succeeded))

    def record_deploy_success(self, workspace_id: str) -> Workspace:
        """Bump the patch version and promote ``implementing`` to ``beta``."""
        previous: list[WorkspaceStatus] = []

        def _apply(workspace: Workspace) -> None:
            previous.append(workspace.status)
            workspace.version = bump_patch_version(workspace.version)
            workspace.last_tested_at = utc_now()
            if workspace.status is WorkspaceStatus.IMPLEMENTING:
                workspace.status = WorkspaceStatus.BETA

        workspace = self.store.update_workspace(workspace_id, _apply)
        if workspace.status is not previous[0]:
            self._status_message(workspace, previous[0], f"deployment of version {workspace.version} succeeded")
        return workspace
