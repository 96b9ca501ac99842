from __future__ import annotations

import fcntl
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from .errors import ConflictError, NotFoundError
from .models import Execution, TimelineMessage, Workspace, utc_now

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

# ---------------------------------------------------------------------------
# File helpers shared with the queue store
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"
_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def validate_record_id(value: str, label: str = "id") -> str:
    """Return ``value`` if it is safe to use as a file name stem.

    Raises:
        NotFoundError: If the id contains characters no stored record can have.
    """
    if not _SAFE_ID.match(value) or ".." in value:
        raise NotFoundError(f"{label} not found: {value!r}")
    return value


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive ``flock`` on a ``.lock`` sidecar of *path*.

    The sidecar keeps the lock alive while the data file itself is swapped
    with ``os.replace``. Every acquisition opens its own file description, so
    two threads of one process exclude each other as well.
    """
    lock_path = path.with_name(path.name + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* through a fsynced temp file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_json(path: Path, label: str) -> str:
    """Read a JSON document, failing clearly if it is missing or unreadable.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or not UTF-8.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{label} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{label} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{label} at {path} is empty")
    return text


def _read_model(path: Path, model: type[ModelT], label: str) -> ModelT:
    text = _safe_read_json(path, label)
    try:
        return model.model_validate_json(text)
    except ValidationError as exc:
        raise ValueError(f"{label} at {path} failed validation: {exc}") from exc


# ---------------------------------------------------------------------------
# Record store
# ---------------------------------------------------------------------------

class RecordStore(Protocol):
    """Durable Execution, Workspace and timeline records."""

    def create_workspace(self, workspace: Workspace) -> Workspace: ...

    def get_workspace(self, workspace_id: str) -> Workspace: ...

    def list_workspaces(self) -> list[Workspace]: ...

    def update_workspace(self, workspace_id: str, mutate: Callable[[Workspace], None]) -> Workspace: ...

    def create_execution_if_idle(
        self,
        execution: Execution,
        prepare: Callable[[Workspace], None] | None = None,
    ) -> Execution: ...

    def reactivate_execution(self, execution_id: str, mutate: Callable[[Execution], None]) -> Execution: ...

    def get_execution(self, execution_id: str) -> Execution: ...

    def update_execution(self, execution_id: str, mutate: Callable[[Execution], None]) -> Execution: ...

    def list_executions(self, workspace_id: str | None = None) -> list[Execution]: ...

    def active_execution(self, workspace_id: str) -> Execution | None: ...

    def append_timeline(self, message: TimelineMessage) -> TimelineMessage: ...

    def list_timeline(
        self, workspace_id: str, *, limit: int = 50, offset: int = 0
    ) -> tuple[list[TimelineMessage], bool]: ...


class FileRecordStore:
    """JSON-document record store rooted at one directory.

    Layout::

        <root>/workspaces/<workspace_id>.json
        <root>/executions/<execution_id>.json
        <root>/timeline/<workspace_id>.jsonl

    Every read-modify-write runs under an ``fcntl`` lock on the document.
    Creating an Execution locks the owning workspace document, which is what
    serialises concurrent ``trigger`` calls for the same workspace.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.workspaces_dir = root / "workspaces"
        self.executions_dir = root / "executions"
        self.timeline_dir = root / "timeline"
        for directory in (self.root, self.workspaces_dir, self.executions_dir, self.timeline_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def _workspace_path(self, workspace_id: str) -> Path:
        return self.workspaces_dir / f"{validate_record_id(workspace_id, 'workspace')}.json"

    def _execution_path(self, execution_id: str) -> Path:
        return self.executions_dir / f"{validate_record_id(execution_id, 'execution')}.json"

    def _timeline_path(self, workspace_id: str) -> Path:
        return self.timeline_dir / f"{validate_record_id(workspace_id, 'workspace')}.jsonl"

    # ------------------------------------------------------------------
    # Workspaces
    # ------------------------------------------------------------------

    def create_workspace(self, workspace: Workspace) -> Workspace:
        """Persist a new workspace.

        Raises:
            ConflictError: If a workspace with the same id already exists.
        """
        path = self._workspace_path(workspace.workspace_id)
        with _locked_file(path):
            if path.exists():
                raise ConflictError(f"workspace already exists: {workspace.workspace_id}")
            _atomic_write_text(path, workspace.model_dump_json(indent=2))
        logger.info("Created workspace %s", workspace.workspace_id)
        return workspace

    def get_workspace(self, workspace_id: str) -> Workspace:
        path = self._workspace_path(workspace_id)
        if not path.is_file():
            raise NotFoundError(f"workspace not found: {workspace_id}")
        return _read_model(path, Workspace, f"workspace {workspace_id}")

    def list_workspaces(self) -> list[Workspace]:
        workspaces = []
        for path in sorted(self.workspaces_dir.glob("*.json")):
            try:
                workspaces.append(_read_model(path, Workspace, "workspace"))
            except (FileNotFoundError, ValueError) as exc:
                logger.warning("Skipping unreadable workspace record %s: %s", path.name, exc)
        return workspaces

    def update_workspace(self, workspace_id: str, mutate: Callable[[Workspace], None]) -> Workspace:
        """Apply ``mutate`` to a workspace under its lock and persist the result.

        If ``mutate`` raises, nothing is written.

        Raises:
            NotFoundError: If the workspace does not exist.
        """
        path = self._workspace_path(workspace_id)
        with _locked_file(path):
            workspace = self.get_workspace(workspace_id)
            mutate(workspace)
            workspace.updated_at = utc_now()
            _atomic_write_text(path, workspace.model_dump_json(indent=2))
        return workspace

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    def create_execution_if_idle(
        self,
        execution: Execution,
        prepare: Callable[[Workspace], None] | None = None,
    ) -> Execution:
        """Insert ``execution`` unless its workspace already has an active one.

        The check and the insert happen under the workspace lock. ``prepare``
        runs against the locked workspace before anything is written and may
        raise to veto the insert; any change it makes to the workspace is
        persisted together with the new Execution.

        Raises:
            NotFoundError: If the workspace does not exist.
            ConflictError: If an Execution for the workspace is pending or running.
        """
        workspace_id = execution.workspace_id
        path = self._workspace_path(workspace_id)
        execution_path = self._execution_path(execution.execution_id)
        with _locked_file(path):
            workspace = self.get_workspace(workspace_id)
            active = self.active_execution(workspace_id)
            if active is not None:
                raise ConflictError(
                    f"workspace {workspace_id} already has an active execution: {active.execution_id}"
                )
            if execution_path.exists():
                raise ConflictError(f"execution already exists: {execution.execution_id}")
            if prepare is not None:
                prepare(workspace)
                workspace.updated_at = utc_now()
                _atomic_write_text(path, workspace.model_dump_json(indent=2))
            _atomic_write_text(execution_path, execution.model_dump_json(indent=2))
        return execution

    def reactivate_execution(self, execution_id: str, mutate: Callable[[Execution], None]) -> Execution:
        """Re-arm a terminal Execution, enforcing the single-active invariant.

        Raises:
            NotFoundError: If the execution or its workspace does not exist.
            ConflictError: If another Execution for the workspace is active.
        """
        current = self.get_execution(execution_id)
        workspace_path = self._workspace_path(current.workspace_id)
        with _locked_file(workspace_path):
            active = self.active_execution(current.workspace_id)
            if active is not None and active.execution_id != execution_id:
                raise ConflictError(
                    f"workspace {current.workspace_id} already has an active execution: {active.execution_id}"
                )
            return self.update_execution(execution_id, mutate)

    def get_execution(self, execution_id: str) -> Execution:
        path = self._execution_path(execution_id)
        if not path.is_file():
            raise NotFoundError(f"execution not found: {execution_id}")
        return _read_model(path, Execution, f"execution {execution_id}")

    def update_execution(self, execution_id: str, mutate: Callable[[Execution], None]) -> Execution:
        """Apply ``mutate`` to an Execution under its lock and persist the result.

        Raises:
            NotFoundError: If the execution does not exist.
        """
        path = self._execution_path(execution_id)
        with _locked_file(path):
            execution = self.get_execution(execution_id)
            mutate(execution)
            # Re-validate so a mutation cannot persist an out-of-range field.
            execution = Execution.model_validate(execution.model_dump())
            _atomic_write_text(path, execution.model_dump_json(indent=2))
        return execution

    def list_executions(self, workspace_id: str | None = None) -> list[Execution]:
        """Return executions newest first, optionally for one workspace."""
        executions = []
        for path in self.executions_dir.glob("*.json"):
            try:
                execution = _read_model(path, Execution, "execution")
            except FileNotFoundError:
                continue
            except ValueError as exc:
                logger.warning("Skipping unreadable execution record %s: %s", path.name, exc)
                continue
            if workspace_id is None or execution.workspace_id == workspace_id:
                executions.append(execution)
        executions.sort(key=lambda item: item.triggered_at, reverse=True)
        return executions

    def active_execution(self, workspace_id: str) -> Execution | None:
        for execution in self.list_executions(workspace_id):
            if execution.is_active:
                return execution
        return None

    # ------------------------------------------------------------------
    # Timeline
    # ------------------------------------------------------------------

    def append_timeline(self, message: TimelineMessage) -> TimelineMessage:
        path = self._timeline_path(message.workspace_id)
        with _locked_file(path):
            with path.open("a", encoding="utf-8") as handle:
                handle.write(message.model_dump_json() + "\n")
                handle.flush()
                os.fsync(handle.fileno())
        return message

    def list_timeline(
        self, workspace_id: str, *, limit: int = 50, offset: int = 0
    ) -> tuple[list[TimelineMessage], bool]:
        """Return one page of the workspace timeline, newest first.

        Returns:
            ``(messages, has_more)`` where ``has_more`` is true if older
            messages exist beyond this page.
        """
        if limit < 1 or offset < 0:
            raise ValueError(f"limit must be >= 1 and offset >= 0, got limit={limit} offset={offset}")
        path = self._timeline_path(workspace_id)
        if not path.is_file():
            return [], False
        messages: list[TimelineMessage] = []
        with path.open("r", encoding="utf-8") as handle:
            for line_number, line in enumerate(handle, start=1):
                if not line.strip():
                    continue
                try:
                    messages.append(TimelineMessage.model_validate_json(line))
                except ValidationError as exc:
                    logger.warning("Skipping corrupt timeline line %s:%d: %s", path.name, line_number, exc)
        messages.reverse()
        page = messages[offset: offset + limit]
        return page, offset + limit < len(messages)
