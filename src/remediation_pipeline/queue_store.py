from __future__ import annotations

import logging
import os
import re
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Callable, NamedTuple

from pydantic import ValidationError

from .errors import ConflictError, NotFoundError
from .models import FeedbackBatch, Lease, QueueEntry, QueueItem, QueueListing, QueueState, new_id, utc_now
from .records import _atomic_write_text, _safe_read_json, validate_record_id

logger = logging.getLogger(__name__)

PENDING_SUFFIX = ".json"
PROCESSING_SUFFIX = ".json.processing"
COMPLETED_SUFFIX = ".json.processed"
FAILED_SUFFIX = ".json.failed"
_RETRY_RE = re.compile(r"^(?P<entry_id>.+)\.json\.retry\.(?P<number>\d+)$")


class QueueFile(NamedTuple):
    path: Path
    entry_id: str
    state: QueueState
    retry_number: int | None


def classify_queue_file(path: Path) -> QueueFile | None:
    """Map a queue file name to its entry id and lifecycle state.

    Exactly one state matches any name; temp files, lock files and unknown
    names return ``None``.
    """
    name = path.name
    if name.startswith("."):
        return None
    match = _RETRY_RE.match(name)
    if match:
        return QueueFile(path, match.group("entry_id"), QueueState.RETRYING, int(match.group("number")))
    for suffix, state in (
        (PROCESSING_SUFFIX, QueueState.PROCESSING),
        (COMPLETED_SUFFIX, QueueState.COMPLETED),
        (FAILED_SUFFIX, QueueState.FAILED),
        (PENDING_SUFFIX, QueueState.PENDING),
    ):
        if name.endswith(suffix) and len(name) > len(suffix):
            return QueueFile(path, name[: -len(suffix)], state, None)
    return None


class QueueStore:
    """Crash-safe work queue kept in one directory.

    An entry's lifecycle stage is encoded by its file suffix:

    * ``<id>.json`` pending
    * ``<id>.json.processing`` claimed by a worker; the file carries a lease
    * ``<id>.json.retry.<n>`` waiting for automatic retry number ``n``
    * ``<id>.json.failed`` terminal until an administrator retries it
    * ``<id>.json.processed`` completed

    Stage changes are ``os.rename`` calls, which are atomic within one
    filesystem, so each entry has exactly one stage at any instant and two
    workers can never both claim the same entry. Content is only rewritten
    (atomically) while the entry is in a stage owned by a single actor.
    """

    def __init__(
        self,
        root: Path,
        *,
        lease_seconds: int = 60,
        completed_retention: int = 20,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.root = root
        self.lease_seconds = lease_seconds
        self.completed_retention = completed_retention
        self._clock = clock
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, entry_id: str, state: QueueState, retry_number: int | None = None) -> Path:
        if state is QueueState.RETRYING:
            return self.root / f"{entry_id}.json.retry.{retry_number}"
        suffix = {
            QueueState.PENDING: PENDING_SUFFIX,
            QueueState.PROCESSING: PROCESSING_SUFFIX,
            QueueState.COMPLETED: COMPLETED_SUFFIX,
            QueueState.FAILED: FAILED_SUFFIX,
        }[state]
        return self.root / f"{entry_id}{suffix}"

    def _scan(self) -> list[QueueFile]:
        files = []
        for path in self.root.iterdir():
            classified = classify_queue_file(path)
            if classified is not None and path.is_file():
                files.append(classified)
        return files

    def _read_entry(self, path: Path) -> QueueEntry:
        text = _safe_read_json(path, "queue entry")
        try:
            return QueueEntry.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"queue entry at {path} failed validation: {exc}") from exc

    def _write_entry(self, path: Path, entry: QueueEntry) -> None:
        entry.updated_at = self._clock()
        _atomic_write_text(path, entry.model_dump_json(indent=2))

    def locate(self, entry_id: str) -> QueueFile:
        """Find the single file currently holding ``entry_id``.

        Raises:
            NotFoundError: If no queue file exists for the id.
        """
        validate_record_id(entry_id, "queue entry")
        for state in (QueueState.PENDING, QueueState.PROCESSING, QueueState.FAILED, QueueState.COMPLETED):
            path = self._path(entry_id, state)
            if path.is_file():
                return QueueFile(path, entry_id, state, None)
        for path in self.root.glob(f"{entry_id}.json.retry.*"):
            classified = classify_queue_file(path)
            if classified is not None and classified.entry_id == entry_id:
                return classified
        raise NotFoundError(f"queue entry not found: {entry_id}")

    def get(self, entry_id: str) -> QueueItem:
        located = self.locate(entry_id)
        entry = self._read_entry(located.path)
        return QueueItem(
            entry=entry,
            state=located.state,
            filename=located.path.name,
            retry_number=located.retry_number,
            stale=self._is_stale(located, entry),
        )

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(
        self,
        workspace_id: str,
        payload: FeedbackBatch,
        *,
        execution_id: str | None = None,
    ) -> str:
        """Durably add a pending entry and return its id.

        The entry becomes visible to readers only once fully written.
        """
        now = self._clock()
        entry_id = f"{now.strftime('%Y%m%dT%H%M%S%f')}-{new_id('Q')}"
        entry = QueueEntry(
            entry_id=entry_id,
            workspace_id=workspace_id,
            payload=payload,
            execution_id=execution_id,
            created_at=now,
            updated_at=now,
        )
        _atomic_write_text(self._path(entry_id, QueueState.PENDING), entry.model_dump_json(indent=2))
        logger.info("Enqueued %s for workspace %s (%d feedback items)", entry_id, workspace_id, len(payload.items))
        return entry_id

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def _is_stale(self, located: QueueFile, entry: QueueEntry | None) -> bool:
        if located.state is not QueueState.PROCESSING:
            return False
        now = self._clock()
        if entry is not None and entry.lease is not None:
            return entry.lease.expired(now)
        try:
            modified = datetime.fromtimestamp(located.path.stat().st_mtime, tz=UTC)
        except FileNotFoundError:
            return False
        return now - modified > timedelta(seconds=self.lease_seconds)

    def list(self) -> QueueListing:
        """Scan the directory and partition entries by lifecycle stage.

        Each partition is sorted newest first. The completed partition is
        capped at ``completed_retention`` entries. Unreadable files are
        logged and skipped.
        """
        listing = QueueListing()
        for located in self._scan():
            try:
                entry = self._read_entry(located.path)
            except FileNotFoundError:
                # Renamed by another actor between the scan and the read.
                continue
            except ValueError as exc:
                logger.warning("Skipping corrupt queue file %s: %s", located.path.name, exc)
                continue
            listing.partition(located.state).append(
                QueueItem(
                    entry=entry,
                    state=located.state,
                    filename=located.path.name,
                    retry_number=located.retry_number,
                    stale=self._is_stale(located, entry),
                )
            )
        for state in QueueState:
            listing.partition(state).sort(key=lambda item: item.entry.created_at, reverse=True)
        del listing.completed[self.completed_retention:]
        return listing

    def pending_entries(self) -> list[QueueEntry]:
        """Return readable pending entries oldest first (FIFO dequeue order)."""
        entries = []
        for located in self._scan():
            if located.state is not QueueState.PENDING:
                continue
            try:
                entries.append(self._read_entry(located.path))
            except FileNotFoundError:
                continue
            except ValueError as exc:
                logger.warning("Skipping corrupt queue file %s: %s", located.path.name, exc)
        entries.sort(key=lambda entry: (entry.created_at, entry.entry_id))
        return entries

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def claim(self, entry_id: str, worker_id: str) -> QueueEntry | None:
        """Atomically move a pending entry to processing and write its lease.

        Returns:
            The claimed entry, or ``None`` if another actor got there first.
        """
        source = self._path(entry_id, QueueState.PENDING)
        target = self._path(entry_id, QueueState.PROCESSING)
        try:
            os.rename(source, target)
        except FileNotFoundError:
            logger.debug("Lost claim race for %s", entry_id)
            return None
        try:
            entry = self._read_entry(target)
        except ValueError as exc:
            logger.error("Claimed corrupt queue file %s, moving it to failed: %s", target.name, exc)
            os.rename(target, self._path(entry_id, QueueState.FAILED))
            return None
        now = self._clock()
        entry.lease = Lease(
            worker_id=worker_id,
            acquired_at=now,
            expires_at=now + timedelta(seconds=self.lease_seconds),
        )
        self._write_entry(target, entry)
        return entry

    def _lease_holder(self, path: Path) -> Lease | None:
        try:
            return self._read_entry(path).lease
        except (FileNotFoundError, ValueError):
            return None

    @staticmethod
    def _same_lease(current: Lease | None, ours: Lease | None) -> bool:
        if current is None or ours is None:
            return False
        return current.worker_id == ours.worker_id and current.acquired_at == ours.acquired_at

    def renew_lease(self, entry: QueueEntry) -> bool:
        """Push the lease expiry of a processing entry forward.

        Returns:
            ``False`` when the entry is no longer processing under this lease,
            for example after another worker reclaimed it.
        """
        if entry.lease is None:
            return False
        path = self._path(entry.entry_id, QueueState.PROCESSING)
        if not self._same_lease(self._lease_holder(path), entry.lease):
            logger.warning("Cannot renew lease for %s: entry is no longer held by this worker", entry.entry_id)
            return False
        entry.lease.expires_at = self._clock() + timedelta(seconds=self.lease_seconds)
        self._write_entry(path, entry)
        return True

    def _finish(self, entry: QueueEntry, state: QueueState, retry_number: int | None = None) -> None:
        source = self._path(entry.entry_id, QueueState.PROCESSING)
        if source.is_file():
            if entry.lease is not None and not self._same_lease(self._lease_holder(source), entry.lease):
                raise ConflictError(f"queue entry {entry.entry_id} is now held by another worker")
        else:
            # A reaped lease sends the entry back to pending. Nobody has
            # claimed it again yet, so the outcome still belongs to us.
            pending = self._path(entry.entry_id, QueueState.PENDING)
            if entry.lease is None or not pending.is_file():
                raise ConflictError(f"queue entry {entry.entry_id} is not processing")
            logger.warning("Queue entry %s lost its lease but finished before being claimed again", entry.entry_id)
            source = pending
        entry.lease = None
        self._write_entry(source, entry)
        try:
            os.rename(source, self._path(entry.entry_id, state, retry_number))
        except FileNotFoundError as exc:
            raise ConflictError(f"queue entry {entry.entry_id} moved while finishing") from exc

    def find_by_execution(self, execution_id: str) -> QueueItem | None:
        """Return the queue entry linked to ``execution_id``, if any."""
        for located in self._scan():
            try:
                entry = self._read_entry(located.path)
            except FileNotFoundError:
                continue
            except ValueError as exc:
                logger.warning("Skipping corrupt queue file %s: %s", located.path.name, exc)
                continue
            if entry.execution_id == execution_id:
                return QueueItem(
                    entry=entry,
                    state=located.state,
                    filename=located.path.name,
                    retry_number=located.retry_number,
                    stale=self._is_stale(located, entry),
                )
        return None

    def release(self, entry: QueueEntry) -> None:
        """Hand a claimed entry back to pending without counting an attempt."""
        self._finish(entry, QueueState.PENDING)
        logger.info("Queue entry %s released back to pending", entry.entry_id)

    def mark_done(self, entry: QueueEntry) -> None:
        self._finish(entry, QueueState.COMPLETED)
        logger.info("Queue entry %s completed", entry.entry_id)

    def mark_failed(self, entry: QueueEntry, error: str) -> None:
        entry.last_error = error
        self._finish(entry, QueueState.FAILED)
        logger.warning("Queue entry %s failed terminally: %s", entry.entry_id, error)

    def mark_retry(self, entry: QueueEntry, error: str, not_before: datetime) -> int:
        """Park a processing entry as ``retrying(n)`` with ``n = retry_count + 1``.

        Returns:
            The new retry number.
        """
        entry.retry_count += 1
        entry.last_error = error
        entry.next_attempt_at = not_before
        self._finish(entry, QueueState.RETRYING, entry.retry_count)
        logger.info(
            "Queue entry %s scheduled for retry %d at %s", entry.entry_id, entry.retry_count, not_before.isoformat()
        )
        return entry.retry_count

    def promote_due_retries(self) -> list[str]:
        """Rename retrying entries whose backoff has elapsed back to pending."""
        now = self._clock()
        promoted = []
        for located in self._scan():
            if located.state is not QueueState.RETRYING:
                continue
            try:
                entry = self._read_entry(located.path)
            except FileNotFoundError:
                continue
            except ValueError as exc:
                logger.warning("Skipping corrupt queue file %s: %s", located.path.name, exc)
                continue
            if entry.next_attempt_at is not None and entry.next_attempt_at > now:
                continue
            try:
                os.rename(located.path, self._path(located.entry_id, QueueState.PENDING))
            except FileNotFoundError:
                continue
            promoted.append(located.entry_id)
        return promoted

    def reap_expired_leases(self) -> list[str]:
        """Return processing entries with an expired lease to pending.

        An entry with no readable lease is judged by its modification time
        against ``lease_seconds``.
        """
        reclaimed = []
        for located in self._scan():
            if located.state is not QueueState.PROCESSING:
                continue
            try:
                entry: QueueEntry | None = self._read_entry(located.path)
            except FileNotFoundError:
                continue
            except ValueError:
                entry = None
            if not self._is_stale(located, entry):
                continue
            holder = entry.lease.worker_id if entry is not None and entry.lease is not None else "unknown"
            if entry is not None:
                entry.lease = None
                self._write_entry(located.path, entry)
            try:
                os.rename(located.path, self._path(located.entry_id, QueueState.PENDING))
            except FileNotFoundError:
                continue
            logger.warning("Reclaimed expired lease on %s held by %s", located.entry_id, holder)
            reclaimed.append(located.entry_id)
        return reclaimed

    # ------------------------------------------------------------------
    # Administrator operations
    # ------------------------------------------------------------------

    def retry(self, entry_id: str) -> QueueEntry:
        """Move a failed entry back to pending for one more attempt.

        Raises:
            NotFoundError: If the entry does not exist.
            ConflictError: If the entry is not failed.
        """
        located = self.locate(entry_id)
        if located.state is not QueueState.FAILED:
            raise ConflictError(f"queue entry {entry_id} is {located.state.value}, only failed entries can be retried")
        entry = self._read_entry(located.path)
        entry.next_attempt_at = None
        self._write_entry(located.path, entry)
        try:
            os.rename(located.path, self._path(entry_id, QueueState.PENDING))
        except FileNotFoundError as exc:
            raise ConflictError(f"queue entry {entry_id} changed state during retry") from exc
        logger.info("Queue entry %s manually retried", entry_id)
        return entry

    def cancel(self, entry_id: str) -> QueueEntry:
        """Delete a pending or retrying entry.

        Raises:
            NotFoundError: If the entry does not exist.
            ConflictError: If the entry is processing, failed or completed.
        """
        located = self.locate(entry_id)
        if located.state not in (QueueState.PENDING, QueueState.RETRYING):
            raise ConflictError(f"queue entry {entry_id} is {located.state.value} and cannot be cancelled")
        entry = self._read_entry(located.path)
        try:
            os.unlink(located.path)
        except FileNotFoundError:
            # A worker claimed it between the lookup and the unlink.
            current = self.locate(entry_id)
            raise ConflictError(f"queue entry {entry_id} is {current.state.value} and cannot be cancelled") from None
        logger.info("Queue entry %s cancelled", entry_id)
        return entry

    def prune_completed(self, retain: int = 0) -> int:
        """Delete completed entries, keeping the newest ``retain`` of them.

        Returns:
            The number of files deleted; zero on an empty set.
        """
        completed = []
        for located in self._scan():
            if located.state is not QueueState.COMPLETED:
                continue
            try:
                created = self._read_entry(located.path).created_at
            except FileNotFoundError:
                continue
            except ValueError:
                created = datetime.fromtimestamp(located.path.stat().st_mtime, tz=UTC)
            completed.append((created, located.path))
        completed.sort(key=lambda pair: pair[0], reverse=True)
        removed = 0
        for _, path in completed[max(retain, 0):]:
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            removed += 1
        logger.info("Pruned %d completed queue entries (retained %d)", removed, min(retain, len(completed)))
        return removed
