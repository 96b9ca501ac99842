from __future__ import annotations


class PipelineError(RuntimeError):
    """Base class for errors reported synchronously to pipeline callers."""


class ConflictError(PipelineError):
    """Raised when a request would violate a pipeline invariant.

    Covers triggering an Execution while one is already active for the
    workspace, lifecycle transitions outside the state table, and queue
    operations against an entry in the wrong lifecycle stage. Nothing is
    mutated when this is raised.
    """


class NotFoundError(PipelineError, LookupError):
    """Raised when an entry, execution, or workspace id does not exist."""
