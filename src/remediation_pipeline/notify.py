from __future__ import annotations

import logging
from typing import Callable, Protocol

from pydantic import BaseModel, Field

from .models import utc_now
from .tools import _http_request_json

logger = logging.getLogger(__name__)

_MAX_LOG_CHARS = 4_000


class EscalationNotice(BaseModel):
    workspace_id: str
    execution_id: str
    summary: str
    logs: str = ""
    attempts: int = 0
    raised_at: str = Field(default_factory=lambda: utc_now().isoformat())


class Notifier(Protocol):
    def notify(self, notice: EscalationNotice) -> None: ...


class LoggingNotifier:
    """Writes escalations to the process log only."""

    def notify(self, notice: EscalationNotice) -> None:
        logger.error(
            "ESCALATION workspace=%s execution=%s attempts=%d: %s",
            notice.workspace_id,
            notice.execution_id,
            notice.attempts,
            notice.summary,
        )


class WebhookNotifier:
    """POSTs escalations as JSON to a webhook URL."""

    def __init__(self, url: str, *, post: Callable[..., object] = _http_request_json) -> None:
        self.url = url
        self._post = post

    def notify(self, notice: EscalationNotice) -> None:
        payload = notice.model_dump(mode="json")
        payload["logs"] = notice.logs[-_MAX_LOG_CHARS:]
        payload["text"] = f"[{notice.workspace_id}] {notice.summary}"
        self._post(self.url, method="POST", payload=payload)
        logger.info("Escalation for %s delivered to webhook", notice.execution_id)


def deliver(notifier: Notifier, notice: EscalationNotice) -> bool:
    """Invoke ``notifier``; delivery errors are logged, never raised.

    Returns:
        True if the notifier returned without raising.
    """
    try:
        notifier.notify(notice)
    except Exception:
        logger.exception("Failed to deliver escalation for execution %s", notice.execution_id)
        return False
    return True
