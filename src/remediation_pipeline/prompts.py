from __future__ import annotations

from collections import Counter
from pathlib import Path
from typing import Protocol, Sequence

from .canonical import fingerprint
from .models import Execution, FeedbackBatch, Workspace
from .records import _atomic_write_text

MAX_RECENT_FAILURES = 5


class PromptGenerator(Protocol):
    def generate(self, workspace: Workspace, batch: FeedbackBatch, recent_failures: Sequence[Execution]) -> str: ...


def batch_fingerprint(batch: FeedbackBatch) -> str:
    return fingerprint(batch)


def render_deploy_retry_prompt(logs: str, attempt: int, max_attempts: int, *, commit_hash: str | None = None) -> str:
    """Render the instructions for an agent cycle that fixes a failed deployment."""
    lines = [f"# Deployment Error - Retry {attempt}/{max_attempts}", ""]
    if commit_hash:
        lines.append(f"The deployment of commit `{commit_hash}` failed.")
    else:
        lines.append("The previous deployment failed.")
    lines.extend(["", "## Error Logs", "```", logs.strip() or "(no log output captured)", "```", ""])
    lines.append("## Your Task")
    for index, step in enumerate(
        (
            "Analyze the deployment error logs above",
            "Identify the root cause",
            "Fix the issue",
            "Commit the fix",
            "The deployment will be triggered automatically",
        ),
        start=1,
    ):
        lines.append(f"{index}. {step}")
    lines.append("")
    lines.append("Focus on fixing the build or deployment error, not the original pattern implementation.")
    return "\n".join(lines).strip() + "\n"


class MarkdownPromptGenerator:
    """Render a feedback batch as Markdown instructions for the agent."""

    def generate(self, workspace: Workspace, batch: FeedbackBatch, recent_failures: Sequence[Execution]) -> str:
        if batch.deploy_context is not None:
            return render_deploy_retry_prompt(
                batch.deploy_context.logs,
                batch.deploy_context.attempt,
                batch.deploy_context.max_attempts,
                commit_hash=batch.deploy_context.failed_commit,
            )

        lines = ["# Pattern Implementation Feedback", "", "## Workspace Information"]
        lines.append(f"- **Pattern**: {workspace.workspace_id}")
        if workspace.name:
            lines.append(f"- **Pattern Name**: {workspace.name}")
        if workspace.category:
            lines.append(f"- **Category**: {workspace.category}")
        lines.append(f"- **Current Status**: {workspace.status.value}")
        lines.append(f"- **Version**: {workspace.version}")
        lines.append("")
        lines.append("## Pattern Description")
        lines.append(workspace.description or "No description provided")
        lines.append("")

        by_type = Counter(item.correction_type for item in batch.items)
        lines.append("## Feedback Summary")
        lines.append(f"- **Total Corrections**: {len(batch.items)}")
        for correction_type in sorted(by_type):
            lines.append(f"- **{correction_type.capitalize()} Corrections**: {by_type[correction_type]}")
        lines.append(f"- **Sessions Analyzed**: {len(batch.session_ids)}")
        if batch.notes:
            lines.append("")
            lines.append(batch.notes.strip())
        lines.append("")

        lines.append("## Detailed Corrections")
        lines.append("")
        for index, item in enumerate(batch.items, start=1):
            lines.append(f"### Correction {index}: {item.correction_type.upper()}")
            lines.append(f"- **Feedback**: {item.feedback_id}")
            if item.session_id:
                lines.append(f"- **Session**: {item.session_id}")
            lines.append("")
            lines.append("#### Reasoning")
            lines.append(item.reasoning or "No reasoning provided")
            if item.attachments:
                lines.append("")
                lines.append("#### Attachments")
                for attachment in item.attachments:
                    lines.append(f"- {attachment.filename} ({attachment.category}): {attachment.url}")
            lines.append("")
            lines.append("---")
            lines.append("")

        failures = [execution for execution in recent_failures if execution.error][:MAX_RECENT_FAILURES]
        if failures:
            lines.append("## Recent Failed Attempts")
            lines.append("")
            for execution in failures:
                lines.append(f"- `{execution.execution_id}`: {execution.error}")
            lines.append("")

        lines.append("## Your Task")
        for index, step in enumerate(
            (
                "**Analyze** all corrections above carefully",
                "**Identify** the root causes behind the feedback",
                "**Plan** the necessary algorithmic changes",
                "**Implement** the fixes in the pattern detection code",
                "**Test** the changes against the corrected examples",
                "**Commit** with a clear, descriptive message",
                "**Report** each phase and your progress as you go",
            ),
            start=1,
        ):
            lines.append(f"{index}. {step}")
        lines.append("")
        lines.append("Phases, in order: planning, implementing, testing, refining.")
        return "\n".join(lines).strip() + "\n"


def write_prompt(prompts_root: Path, execution_id: str, prompt: str) -> Path:
    path = prompts_root / f"{execution_id}.md"
    _atomic_write_text(path, prompt)
    return path
