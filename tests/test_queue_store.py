from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from conftest import FakeClock, make_batch
from remediation_pipeline.errors import ConflictError, NotFoundError
from remediation_pipeline.models import QueueState
from remediation_pipeline.queue_store import QueueStore, classify_queue_file


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def queue(tmp_path: Path, clock: FakeClock) -> QueueStore:
    return QueueStore(tmp_path / "queue", lease_seconds=60, completed_retention=3, clock=clock)


def _state_files(queue: QueueStore) -> list[str]:
    return sorted(path.name for path in queue.root.iterdir() if not path.name.startswith("."))


def test_classify_queue_file_maps_every_suffix() -> None:
    cases = {
        "E1.json": (QueueState.PENDING, None),
        "E1.json.processing": (QueueState.PROCESSING, None),
        "E1.json.processed": (QueueState.COMPLETED, None),
        "E1.json.failed": (QueueState.FAILED, None),
        "E1.json.retry.2": (QueueState.RETRYING, 2),
    }
    for name, (state, number) in cases.items():
        classified = classify_queue_file(Path(name))
        assert classified is not None
        assert classified.entry_id == "E1"
        assert classified.state is state
        assert classified.retry_number == number

    assert classify_queue_file(Path(".E1.json.abc.tmp")) is None
    assert classify_queue_file(Path("notes.txt")) is None


def test_enqueue_writes_single_pending_file(queue: QueueStore) -> None:
    entry_id = queue.enqueue("rsi-divergence", make_batch(), execution_id="EXEC-1")

    assert _state_files(queue) == [f"{entry_id}.json"]
    item = queue.get(entry_id)
    assert item.state is QueueState.PENDING
    assert item.entry.execution_id == "EXEC-1"
    assert item.entry.payload.feedback_ids == ["FB-1", "FB-2"]


def test_claim_is_exclusive_and_writes_lease(queue: QueueStore, clock: FakeClock) -> None:
    entry_id = queue.enqueue("rsi-divergence", make_batch())

    claimed = queue.claim(entry_id, "worker-a")
    assert claimed is not None
    assert claimed.lease is not None
    assert claimed.lease.worker_id == "worker-a"
    assert claimed.lease.expires_at == clock.now + timedelta(seconds=60)
    assert queue.claim(entry_id, "worker-b") is None
    assert _state_files(queue) == [f"{entry_id}.json.processing"]


def test_pending_entries_are_fifo(queue: QueueStore, clock: FakeClock) -> None:
    first = queue.enqueue("ws-a", make_batch(1))
    clock.advance(seconds=1)
    second = queue.enqueue("ws-b", make_batch(1))
    clock.advance(seconds=1)
    third = queue.enqueue("ws-a", make_batch(1))

    assert [entry.entry_id for entry in queue.pending_entries()] == [first, second, third]


def test_retry_cycle_and_promotion_respects_backoff(queue: QueueStore, clock: FakeClock) -> None:
    entry_id = queue.enqueue("rsi-divergence", make_batch())
    entry = queue.claim(entry_id, "worker-a")
    assert entry is not None

    number = queue.mark_retry(entry, "tests failed", clock.now + timedelta(seconds=30))
    assert number == 1
    assert _state_files(queue) == [f"{entry_id}.json.retry.1"]

    assert queue.promote_due_retries() == []
    clock.advance(seconds=31)
    assert queue.promote_due_retries() == [entry_id]

    item = queue.get(entry_id)
    assert item.state is QueueState.PENDING
    assert item.entry.retry_count == 1
    assert item.entry.last_error == "tests failed"


def test_failed_entry_can_be_retried_but_others_cannot(queue: QueueStore) -> None:
    entry_id = queue.enqueue("rsi-divergence", make_batch())
    with pytest.raises(ConflictError):
        queue.retry(entry_id)

    entry = queue.claim(entry_id, "worker-a")
    assert entry is not None
    queue.mark_failed(entry, "boom")
    assert queue.get(entry_id).state is QueueState.FAILED

    retried = queue.retry(entry_id)
    assert retried.last_error == "boom"
    assert queue.get(entry_id).state is QueueState.PENDING


def test_cancel_only_pending_or_retrying(queue: QueueStore, clock: FakeClock) -> None:
    pending = queue.enqueue("ws-a", make_batch())
    cancelled = queue.cancel(pending)
    assert cancelled.entry_id == pending
    with pytest.raises(NotFoundError):
        queue.get(pending)

    processing = queue.enqueue("ws-a", make_batch())
    entry = queue.claim(processing, "worker-a")
    assert entry is not None
    with pytest.raises(ConflictError):
        queue.cancel(processing)

    queue.mark_retry(entry, "flaky", clock.now)
    queue.cancel(processing)
    assert _state_files(queue) == []


def test_unknown_or_unsafe_ids_are_not_found(queue: QueueStore) -> None:
    with pytest.raises(NotFoundError):
        queue.get("missing-entry")
    with pytest.raises(NotFoundError):
        queue.retry("../escape")
    with pytest.raises(NotFoundError):
        queue.cancel("")


def test_expired_lease_is_reclaimed(queue: QueueStore, clock: FakeClock) -> None:
    entry_id = queue.enqueue("rsi-divergence", make_batch())
    assert queue.claim(entry_id, "worker-a") is not None

    assert queue.reap_expired_leases() == []
    assert queue.list().processing[0].stale is False

    clock.advance(seconds=61)
    assert queue.list().processing[0].stale is True
    assert queue.reap_expired_leases() == [entry_id]
    item = queue.get(entry_id)
    assert item.state is QueueState.PENDING
    assert item.entry.lease is None


def test_renewed_lease_is_not_reclaimed(queue: QueueStore, clock: FakeClock) -> None:
    entry_id = queue.enqueue("rsi-divergence", make_batch())
    entry = queue.claim(entry_id, "worker-a")
    assert entry is not None

    clock.advance(seconds=45)
    assert queue.renew_lease(entry) is True
    clock.advance(seconds=45)
    assert queue.reap_expired_leases() == []


def test_reclaimed_entry_is_not_renewed_or_finished_by_old_holder(queue: QueueStore, clock: FakeClock) -> None:
    entry_id = queue.enqueue("rsi-divergence", make_batch())
    stale = queue.claim(entry_id, "worker-a")
    assert stale is not None

    clock.advance(seconds=61)
    assert queue.reap_expired_leases() == [entry_id]
    fresh = queue.claim(entry_id, "worker-b")
    assert fresh is not None

    assert queue.renew_lease(stale) is False
    with pytest.raises(ConflictError, match="another worker"):
        queue.mark_done(stale)
    assert queue.get(entry_id).entry.lease.worker_id == "worker-b"

    queue.mark_done(fresh)
    assert queue.get(entry_id).state is QueueState.COMPLETED


def test_reclaimed_entry_finished_before_reclaim_keeps_outcome(queue: QueueStore, clock: FakeClock) -> None:
    entry_id = queue.enqueue("rsi-divergence", make_batch())
    entry = queue.claim(entry_id, "worker-a")
    assert entry is not None

    clock.advance(seconds=61)
    assert queue.reap_expired_leases() == [entry_id]
    assert queue.renew_lease(entry) is False

    queue.mark_done(entry)
    assert _state_files(queue) == [f"{entry_id}.json.processed"]


def test_find_by_execution(queue: QueueStore) -> None:
    queue.enqueue("rsi-divergence", make_batch())
    linked = queue.enqueue("rsi-divergence", make_batch(), execution_id="EXEC-7")

    item = queue.find_by_execution("EXEC-7")
    assert item is not None
    assert item.entry.entry_id == linked
    assert item.state is QueueState.PENDING
    assert queue.find_by_execution("EXEC-missing") is None


def test_release_returns_claim_without_counting_attempt(queue: QueueStore) -> None:
    entry_id = queue.enqueue("rsi-divergence", make_batch())
    entry = queue.claim(entry_id, "worker-a")
    assert entry is not None

    queue.release(entry)
    item = queue.get(entry_id)
    assert item.state is QueueState.PENDING
    assert item.entry.retry_count == 0


def test_finish_requires_processing_state(queue: QueueStore) -> None:
    entry_id = queue.enqueue("rsi-divergence", make_batch())
    entry = queue.get(entry_id).entry
    with pytest.raises(ConflictError):
        queue.mark_done(entry)


def test_list_partitions_skips_corrupt_and_caps_completed(queue: QueueStore, clock: FakeClock) -> None:
    done_ids = []
    for _ in range(5):
        clock.advance(seconds=1)
        entry_id = queue.enqueue("ws-a", make_batch(1))
        entry = queue.claim(entry_id, "worker-a")
        assert entry is not None
        queue.mark_done(entry)
        done_ids.append(entry_id)
    clock.advance(seconds=1)
    waiting = queue.enqueue("ws-b", make_batch(1))
    (queue.root / "garbage.json").write_text("{not json", encoding="utf-8")

    listing = queue.list()
    assert [item.entry.entry_id for item in listing.pending] == [waiting]
    assert [item.entry.entry_id for item in listing.completed] == list(reversed(done_ids))[:3]
    assert listing.stats() == {"pending": 1, "processing": 0, "failed": 0, "retrying": 0, "completed": 3}
    assert listing.find(waiting) is not None


def test_prune_completed_keeps_newest(queue: QueueStore, clock: FakeClock) -> None:
    assert queue.prune_completed() == 0

    newest = None
    for _ in range(4):
        clock.advance(seconds=1)
        entry_id = queue.enqueue("ws-a", make_batch(1))
        entry = queue.claim(entry_id, "worker-a")
        assert entry is not None
        queue.mark_done(entry)
        newest = entry_id

    assert queue.prune_completed(retain=1) == 3
    assert _state_files(queue) == [f"{newest}.json.processed"]
