import pytest

from matrix_hub.errors import BatchCommitError, ConfigError
from matrix_hub.services.batch_writer import BoundedBatchWriter, MAX_WRITE_BATCH
from matrix_hub.store import DeleteDoc

from fakes import RecordingStore


def _op(i):
    return DeleteDoc("gtin_inventory_matrix", f"{i:08d}")


@pytest.mark.parametrize("ceiling", [0, MAX_WRITE_BATCH + 1, 500])
def test_ceiling_must_stay_below_store_limit(ceiling):
    with pytest.raises(ConfigError):
        BoundedBatchWriter(RecordingStore(), ceiling=ceiling)


@pytest.mark.asyncio
async def test_commits_never_exceed_ceiling_and_sum_matches():
    store = RecordingStore()
    writer = BoundedBatchWriter(store, ceiling=400)

    for i in range(1001):
        writer.enqueue(_op(i))
        await writer.commit()
    assert [len(c) for c in store.commits] == [400, 400]
    assert writer.pending == 201

    await writer.commit(force=True)
    assert [len(c) for c in store.commits] == [400, 400, 201]
    assert all(len(c) <= 400 for c in store.commits)
    assert sum(len(c) for c in store.commits) == writer.enqueued == writer.committed == 1001
    assert writer.batches == 3


@pytest.mark.asyncio
async def test_forced_commit_splits_large_backlog():
    store = RecordingStore()
    writer = BoundedBatchWriter(store, ceiling=10)
    for i in range(25):
        writer.enqueue(_op(i))

    assert await writer.commit(force=True) == 25
    assert [len(c) for c in store.commits] == [10, 10, 5]


@pytest.mark.asyncio
async def test_empty_forced_commit_is_a_noop():
    store = RecordingStore()
    writer = BoundedBatchWriter(store)
    assert await writer.commit(force=True) == 0
    assert store.commits == []


@pytest.mark.asyncio
async def test_dry_run_discards_without_touching_store():
    store = RecordingStore()
    writer = BoundedBatchWriter(store, ceiling=5, dry_run=True)
    for i in range(12):
        writer.enqueue(_op(i))
        await writer.commit()
    await writer.commit(force=True)

    assert store.commits == []
    assert writer.committed == 0
    assert writer.discarded == 12
    assert writer.batches == 3


@pytest.mark.asyncio
async def test_commit_failure_raises_and_keeps_pending_writes():
    store = RecordingStore(fail_on_commit=2)
    writer = BoundedBatchWriter(store, ceiling=3)
    for i in range(6):
        writer.enqueue(_op(i))

    with pytest.raises(BatchCommitError) as exc:
        await writer.commit(force=True)

    assert exc.value.pending == 3
    assert writer.committed == 3
    assert writer.pending == 3
    assert isinstance(exc.value.__cause__, RuntimeError)
