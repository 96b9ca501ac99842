from __future__ import annotations

import json
import logging
import subprocess
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any, Callable

from langchain_core.tools import BaseTool, tool

from .models import AgentEvent, LogEvent, LogSeverity, Phase, PhaseEvent, ProgressEvent

logger = logging.getLogger(__name__)

_HTTP_TIMEOUT_SECONDS = 30
_GIT_TIMEOUT_SECONDS = 120


def _http_request_json(
    url: str,
    *,
    method: str = "GET",
    payload: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    timeout: int = _HTTP_TIMEOUT_SECONDS,
) -> Any:
    """Send an HTTP request with an optional JSON body and parse the JSON reply.

    Returns:
        The decoded JSON document, or ``None`` for an empty body.

    Raises:
        RuntimeError: If the request fails or the reply is not valid JSON.
    """
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    request_headers = {"Accept": "application/json", **(headers or {})}
    if data is not None:
        request_headers["Content-Type"] = "application/json"
    request = urllib.request.Request(url, method=method, headers=request_headers, data=data)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            body = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        detail = ""
        try:
            detail = exc.read().decode("utf-8", errors="replace")[:500]
        except OSError:
            pass
        logger.error("HTTP %d from %s: %s", exc.code, url, detail)
        raise RuntimeError(f"HTTP {exc.code} from {url}: {exc.reason}") from exc
    except urllib.error.URLError as exc:
        logger.error("URL error reaching %s: %s", url, exc.reason)
        raise RuntimeError(f"Failed to reach {url}: {exc.reason}") from exc
    if not body.strip():
        return None
    try:
        return json.loads(body)
    except json.JSONDecodeError as exc:
        logger.error("Invalid JSON response from %s", url)
        raise RuntimeError(f"Invalid JSON response from {url}") from exc


def _run_git(repo_root: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", *args],
        cwd=str(repo_root),
        capture_output=True,
        text=True,
        timeout=_GIT_TIMEOUT_SECONDS,
        check=False,
    )
    if completed.returncode != 0:
        raise RuntimeError(f"git {' '.join(args)} failed ({completed.returncode}): {completed.stderr.strip()[:500]}")
    return completed.stdout


def build_reporting_tools(emit: Callable[[AgentEvent], None]) -> list[BaseTool]:
    """Tools through which the agent reports phase, progress and log lines."""

    @tool("report_phase")
    def report_phase(phase: str, description: str = "", progress: int = -1) -> str:
        """Announce that work has entered a new phase.

        Args:
            phase: One of planning, implementing, testing, refining.
            description: One sentence on what this phase will do.
            progress: Overall progress 0-100, or -1 to leave it unchanged.
        """
        try:
            parsed = Phase(phase.strip().lower())
        except ValueError:
            allowed = ", ".join(item.value for item in Phase)
            return f"Unknown phase {phase!r}; use one of: {allowed}"
        emit(PhaseEvent(phase=parsed, description=description, progress=progress if progress >= 0 else None))
        return f"phase recorded: {parsed.value}"

    @tool("report_progress")
    def report_progress(progress: int, current_task: str = "") -> str:
        """Report overall progress as an integer percentage from 0 to 100.

        Args:
            progress: Percentage complete.
            current_task: Short description of the task in hand.
        """
        emit(ProgressEvent(progress=progress, current_task=current_task or None))
        return "progress recorded"

    @tool("report_log")
    def report_log(message: str, severity: str = "info") -> str:
        """Append a line to the execution log visible to reviewers.

        Args:
            message: The log message.
            severity: info, warn or error.
        """
        try:
            level = LogSeverity(severity.strip().lower())
        except ValueError:
            level = LogSeverity.INFO
        emit(LogEvent(message=message, severity=level))
        return "log recorded"

    return [report_phase, report_progress, report_log]


def build_git_tools(repo_root: Path) -> list[BaseTool]:
    """Tools that let the agent inspect and commit its changes."""

    @tool("git_status")
    def git_status() -> str:
        """Show the short status of the working tree."""
        return _run_git(repo_root, "status", "--short") or "working tree clean"

    @tool("git_commit")
    def git_commit(message: str) -> str:
        """Stage every change in the working tree and commit it.

        Args:
            message: The commit message.

        Returns:
            JSON with ``commit_hash`` and ``files_changed``, or an explanation
            if there was nothing to commit.
        """
        _run_git(repo_root, "add", "--all")
        staged = [line for line in _run_git(repo_root, "diff", "--cached", "--name-only").splitlines() if line]
        if not staged:
            return "nothing to commit"
        _run_git(repo_root, "commit", "--message", message)
        commit_hash = _run_git(repo_root, "rev-parse", "HEAD").strip()
        logger.info("Agent committed %s (%d files)", commit_hash[:12], len(staged))
        return json.dumps({"commit_hash": commit_hash, "files_changed": staged})

    return [git_status, git_commit]
