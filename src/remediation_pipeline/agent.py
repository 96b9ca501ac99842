from __future__ import annotations

import json
import logging
import os
import re
import shlex
import subprocess
import time
from pathlib import Path
from typing import Any, Callable, Literal, Protocol

from deepagents import create_deep_agent
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .backends import build_repo_backend
from .llm import get_chat_model
from .models import (
    AgentEvent,
    AgentRequest,
    FailureEvent,
    Phase,
    PhaseEvent,
    ProgressEvent,
    SuccessEvent,
)
from .tools import build_git_tools, build_reporting_tools

logger = logging.getLogger(__name__)

EmitFn = Callable[[AgentEvent], None]

SYSTEM_PROMPT = """You are a senior engineer fixing pattern-detection code from user feedback.

Work through the phases in order: planning, implementing, testing, refining.
Call report_phase when you enter each phase and report_progress as you go.
Use report_log for anything a reviewer should see.
Edit files with the filesystem tools, then commit with git_commit.

Finish with a single JSON object and nothing else:
{"status": "completed" | "failed", "files_changed": [...], "commit_hash": "...", "commit_message": "...", "error": "..."}
"""


class Agent(Protocol):
    """Code-modification agent.

    ``run`` reports progress through ``emit`` and must finish by emitting
    exactly one ``SuccessEvent`` or ``FailureEvent``. Raising is treated as
    a failure by the caller.
    """

    def run(self, request: AgentRequest, emit: EmitFn) -> None: ...


# ---------------------------------------------------------------------------
# Output parsing
# ---------------------------------------------------------------------------

def _content_to_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, str):
                chunks.append(item)
            elif isinstance(item, dict) and isinstance(item.get("text"), str):
                chunks.append(item["text"])
            elif isinstance(item, dict) and item.get("content") is not None:
                chunks.append(_content_to_text(item["content"]))
            else:
                chunks.append(json.dumps(item, sort_keys=True) if isinstance(item, dict) else str(item))
        return "\n".join(chunk for chunk in chunks if chunk.strip())
    if isinstance(content, dict):
        if "content" in content:
            return _content_to_text(content["content"])
        return json.dumps(content, sort_keys=True)
    return str(content)


def extract_agent_text(response: Any) -> str:
    """Return the text of the last message of an agent response."""
    if isinstance(response, str):
        return response
    if isinstance(response, dict):
        messages = response.get("messages")
        if isinstance(messages, list) and messages:
            return extract_agent_text(messages[-1])
        if "output" in response:
            return extract_agent_text(response["output"])
        if "content" in response:
            return _content_to_text(response["content"])
    content = getattr(response, "content", None)
    if content is not None:
        return _content_to_text(content)
    return _content_to_text(response)


def extract_json_payload(text: str) -> dict[str, Any]:
    """Extract a JSON object from agent text output.

    Tries, in order: the whole text, a fenced code block, and the span from
    the first ``{`` to the last ``}``.

    Raises:
        RuntimeError: If no JSON object can be found.
    """
    body = text.strip()
    if not body:
        raise RuntimeError("Agent returned empty output; expected JSON object")

    candidates = [body]
    fenced = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", body, flags=re.DOTALL)
    if fenced is not None:
        candidates.append(fenced.group(1))
    start, end = body.find("{"), body.rfind("}")
    if start != -1 and end > start:
        candidates.append(body[start: end + 1])

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed

    preview = body[:220].replace("\n", " ")
    raise RuntimeError(f"Agent output did not contain a JSON object: {preview}")


class AgentReport(BaseModel):
    """Final answer of the deep agent."""

    model_config = ConfigDict(extra="ignore")

    status: Literal["completed", "failed"]
    files_changed: list[str] = Field(default_factory=list)
    commit_hash: str | None = None
    commit_message: str | None = None
    error: str | None = None


def report_to_event(payload: dict[str, Any]) -> SuccessEvent | FailureEvent:
    """Convert the agent's final JSON answer into a terminal event.

    An answer that does not match ``AgentReport`` becomes a failure.
    """
    try:
        report = AgentReport.model_validate(payload)
    except ValidationError as exc:
        return FailureEvent(error=f"agent returned an invalid final report: {exc.errors()[0]['msg']}")
    if report.status == "failed":
        return FailureEvent(error=report.error or "agent reported failure without an error message")
    return SuccessEvent(
        files_changed=report.files_changed,
        commit_hash=report.commit_hash or None,
        commit_message=report.commit_message,
    )


# ---------------------------------------------------------------------------
# Deep agent
# ---------------------------------------------------------------------------

class DeepAgentRunner:
    """Runs the remediation prompt through a deepagents tool-using agent."""

    def __init__(
        self,
        *,
        model_name: str,
        repo_root: Path,
        model_factory: Callable[..., Any] = get_chat_model,
        agent_factory: Callable[..., Any] = create_deep_agent,
    ) -> None:
        self.model_name = model_name
        self.repo_root = repo_root
        self._model_factory = model_factory
        self._agent_factory = agent_factory

    def run(self, request: AgentRequest, emit: EmitFn) -> None:
        model = self._model_factory(model_name=self.model_name, repo_root=self.repo_root)
        agent = self._agent_factory(
            model=model,
            tools=[*build_reporting_tools(emit), *build_git_tools(self.repo_root)],
            backend=build_repo_backend(self.repo_root),
            system_prompt=SYSTEM_PROMPT,
            name="remediation-agent",
        )
        logger.info("Running deep agent for %s (attempt %d)", request.execution_id, request.attempt)
        response = agent.invoke(
            {"messages": [{"role": "user", "content": request.prompt}]},
            config={"configurable": {"thread_id": f"{request.execution_id}-{request.attempt}"}},
        )
        emit(report_to_event(extract_json_payload(extract_agent_text(response))))


# ---------------------------------------------------------------------------
# External command agent (status-file protocol)
# ---------------------------------------------------------------------------

class StatusSnapshot(BaseModel):
    """One snapshot of ``execution-<id>.json`` written by an external agent."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: str = "running"
    phase: str | None = None
    progress: int | None = None
    current_task: str | None = Field(default=None, alias="currentTask")
    files_changed: list[str] = Field(default_factory=list, alias="filesChanged")
    commit_hash: str | None = Field(default=None, alias="commitHash")
    commit_message: str | None = Field(default=None, alias="commitMessage")
    error: str | None = None


def status_to_events(snapshot: StatusSnapshot, previous: StatusSnapshot | None) -> list[AgentEvent]:
    """Translate the change between two status snapshots into agent events.

    Phases outside the pipeline vocabulary (the protocol also has
    ``deploying``) are ignored.
    """
    events: list[AgentEvent] = []
    phase_changed = snapshot.phase is not None and (previous is None or previous.phase != snapshot.phase)
    if phase_changed and snapshot.phase in {item.value for item in Phase}:
        events.append(
            PhaseEvent(phase=Phase(snapshot.phase), description=snapshot.current_task or "", progress=snapshot.progress)
        )
    elif snapshot.progress is not None and (previous is None or previous.progress != snapshot.progress):
        events.append(ProgressEvent(progress=snapshot.progress, current_task=snapshot.current_task))

    if snapshot.status == "completed":
        events.append(
            SuccessEvent(
                files_changed=snapshot.files_changed,
                commit_hash=snapshot.commit_hash or None,
                commit_message=snapshot.commit_message,
            )
        )
    elif snapshot.status == "failed":
        events.append(FailureEvent(error=snapshot.error or "agent reported failure without an error message"))
    return events


def read_status_snapshot(path: Path) -> StatusSnapshot | None:
    """Read a status file, returning ``None`` if it is absent or half-written."""
    try:
        return StatusSnapshot.model_validate_json(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (ValidationError, UnicodeDecodeError) as exc:
        logger.debug("Ignoring unreadable status file %s: %s", path, exc)
        return None


class CommandAgent:
    """Runs an external agent command and follows its status file.

    The command receives the prompt file path as its last argument and the
    environment variables ``REMEDIATION_EXECUTION_ID`` and
    ``REMEDIATION_STATUS_FILE``.
    """

    def __init__(
        self,
        *,
        command: str,
        status_root: Path,
        repo_root: Path,
        poll_interval: float = 2.0,
        timeout_seconds: float | None = None,
    ) -> None:
        if not command.strip():
            raise ValueError("agent command must be non-empty")
        self.argv = shlex.split(command)
        self.status_root = status_root
        self.repo_root = repo_root
        self.poll_interval = poll_interval
        self.timeout_seconds = timeout_seconds

    def status_file(self, execution_id: str) -> Path:
        return self.status_root / f"execution-{execution_id}.json"

    def run(self, request: AgentRequest, emit: EmitFn) -> None:
        if request.prompt_path is None:
            raise ValueError(f"execution {request.execution_id} has no prompt file")
        status_path = self.status_file(request.execution_id)
        status_path.parent.mkdir(parents=True, exist_ok=True)
        status_path.unlink(missing_ok=True)

        env = {
            **os.environ,
            "REMEDIATION_EXECUTION_ID": request.execution_id,
            "REMEDIATION_STATUS_FILE": str(status_path),
        }
        logger.info("Starting agent command for %s: %s", request.execution_id, self.argv[0])
        process = subprocess.Popen([*self.argv, request.prompt_path], cwd=str(self.repo_root), env=env)
        started = time.monotonic()
        previous: StatusSnapshot | None = None
        try:
            while True:
                exited = process.poll() is not None
                snapshot = read_status_snapshot(status_path)
                if snapshot is not None and snapshot != previous:
                    for event in status_to_events(snapshot, previous):
                        emit(event)
                        if isinstance(event, (SuccessEvent, FailureEvent)):
                            return
                    previous = snapshot
                if exited:
                    break
                if self.timeout_seconds is not None and time.monotonic() - started > self.timeout_seconds:
                    raise TimeoutError(f"agent command exceeded {self.timeout_seconds}s")
                time.sleep(self.poll_interval)
        finally:
            if process.poll() is None:
                process.kill()
                process.wait()

        if process.returncode != 0:
            emit(FailureEvent(error=f"agent command exited with code {process.returncode}"))
        else:
            emit(FailureEvent(error="agent command exited without reporting a final status"))
