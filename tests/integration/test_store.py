"""
Integration tests for the DuckDB entity store.

Runs against an in-memory DuckDB database on a fake clock.
"""
from datetime import timedelta

import pytest

from syncengine.exceptions import (
    ConcurrentModificationError,
    EntityNotFoundError,
    InvalidStateError,
    ValidationError,
)
from syncengine.models import (
    DiscrepancyType,
    ReconciliationFilter,
    ReconciliationRecord,
    SyncStatus,
)
from syncengine.store import EntityStore, MEMORY
from tests.fakes import T0


def _bump_row_version(store: EntityStore, entity_id: str) -> None:
    """Simulate a writer that bypasses the per-entity lock."""
    store._connection.execute(
        "UPDATE entities SET row_version = row_version + 1 WHERE id = ?", [entity_id]
    )


class TestEntityCrud:
    """Tests for create / get / update / delete."""

    @pytest.mark.asyncio
    async def test_create_starts_pending(self, store):
        entity = await store.create({"name": "Widget"})
        loaded = await store.get(entity.id)

        assert loaded.sync_status == SyncStatus.PENDING
        assert loaded.payload == {"name": "Widget"}
        assert loaded.local_modified_at == T0
        assert loaded.created_at == T0
        assert loaded.row_version == 0

    @pytest.mark.asyncio
    async def test_get_missing_raises(self, store):
        assert await store.find("nope") is None
        with pytest.raises(EntityNotFoundError):
            await store.get("nope")

    @pytest.mark.asyncio
    async def test_external_id_unique_on_create(self, store):
        await store.create({}, external_id="r-1")
        with pytest.raises(ValidationError) as exc_info:
            await store.create({}, external_id="r-1")
        assert exc_info.value.field == "external_id"

    @pytest.mark.asyncio
    async def test_update_round_trip(self, store, clock):
        """update() stores the mutator's result and bumps row_version."""
        entity = await store.create({"name": "Widget"}, external_id="r-1", external_version=2)
        clock.advance(5)

        def mutate(e):
            e.payload["price"] = 10
            e.sync_status = SyncStatus.SYNCED
            return e

        updated = await store.update(entity.id, mutate)
        loaded = await store.get(entity.id)

        assert updated.row_version == 1
        assert loaded.payload == {"name": "Widget", "price": 10}
        assert loaded.sync_status == SyncStatus.SYNCED
        assert loaded.status_changed_at == T0 + timedelta(seconds=5)

    @pytest.mark.asyncio
    async def test_update_noop(self, store):
        """A mutator returning None writes nothing."""
        entity = await store.create({"name": "Widget"})
        result = await store.update(entity.id, lambda e: None)
        assert result.row_version == 0
        assert (await store.get(entity.id)).row_version == 0

    @pytest.mark.asyncio
    async def test_mutator_error_writes_nothing(self, store):
        entity = await store.create({"name": "Widget"})

        def mutate(e):
            e.payload["name"] = "changed"
            raise InvalidStateError("nope", e.id)

        with pytest.raises(InvalidStateError):
            await store.update(entity.id, mutate)
        assert (await store.get(entity.id)).payload == {"name": "Widget"}

    @pytest.mark.asyncio
    async def test_mutator_receives_copy(self, store):
        """The mutator's copy is private; later reads see only stored state."""
        entity = await store.create({"tags": ["a"]})
        seen = []

        def mutate(e):
            e.payload["tags"].append("b")
            seen.append(e)
            return None

        await store.update(entity.id, mutate)
        assert (await store.get(entity.id)).payload == {"tags": ["a"]}

    @pytest.mark.asyncio
    async def test_delete(self, store):
        entity = await store.create({})
        assert await store.delete(entity.id) is True
        assert await store.delete(entity.id) is False
        assert await store.find(entity.id) is None


class TestInvariants:
    """Tests for write-time invariants."""

    @pytest.mark.asyncio
    async def test_external_version_never_decreases(self, store):
        entity = await store.create({}, external_id="r-1", external_version=5)

        def mutate(e):
            e.external_version = 4
            return e

        with pytest.raises(InvalidStateError):
            await store.update(entity.id, mutate)

    @pytest.mark.asyncio
    async def test_version_reset_allowed_with_new_external_id(self, store):
        """Detaching and relinking starts a fresh version sequence."""
        entity = await store.create({}, external_id="r-1", external_version=5)

        def mutate(e):
            e.external_id = "r-2"
            e.external_version = 1
            return e

        updated = await store.update(entity.id, mutate)
        assert updated.external_version == 1

    @pytest.mark.asyncio
    async def test_external_id_unique_on_update(self, store):
        await store.create({}, external_id="r-1")
        other = await store.create({})

        def mutate(e):
            e.external_id = "r-1"
            return e

        with pytest.raises(ValidationError):
            await store.update(other.id, mutate)

    @pytest.mark.asyncio
    async def test_id_immutable(self, store):
        entity = await store.create({})

        def mutate(e):
            e.id = "other"
            return e

        with pytest.raises(InvalidStateError):
            await store.update(entity.id, mutate)


class TestOptimisticConcurrency:
    """Tests for the row_version check-then-set."""

    @pytest.mark.asyncio
    async def test_lost_write_is_retried(self, store):
        """A concurrent write between read and write forces one retry."""
        entity = await store.create({"count": 0})
        calls = []

        def mutate(e):
            calls.append(e.row_version)
            if len(calls) == 1:
                _bump_row_version(store, e.id)
            e.payload["count"] += 1
            return e

        updated = await store.update(entity.id, mutate)

        assert calls == [0, 1]
        assert updated.row_version == 2
        assert (await store.get(entity.id)).payload == {"count": 1}

    @pytest.mark.asyncio
    async def test_gives_up_after_write_attempts(self, clock):
        store = EntityStore(MEMORY, clock=clock, write_attempts=3)
        entity = await store.create({})
        calls = []

        def mutate(e):
            calls.append(e.row_version)
            _bump_row_version(store, e.id)
            return e

        with pytest.raises(ConcurrentModificationError) as exc_info:
            await store.update(entity.id, mutate)
        assert exc_info.value.attempts == 3
        assert len(calls) == 3
        await store.close()

    @pytest.mark.asyncio
    async def test_mark_reconciled_bumps_row_version(self, store):
        entity = await store.create({}, external_id="r-1")
        assert await store.mark_reconciled([entity.id]) == 1
        loaded = await store.get(entity.id)
        assert loaded.row_version == 1
        assert loaded.last_reconciled_at == T0


class TestQueries:
    """Tests for the pending, in-flight and status queries."""

    @pytest.mark.asyncio
    async def test_query_pending_respects_gate(self, store, clock):
        """Entities gated by next_retry_at are held back until it passes."""
        ready = await store.create({"n": 1})
        gated = await store.create({"n": 2})
        await store.create({"n": 3}, status=SyncStatus.SYNCED)

        def gate(e):
            e.next_retry_at = T0 + timedelta(seconds=30)
            return e

        await store.update(gated.id, gate)

        assert [e.id for e in await store.query_pending()] == [ready.id]

        clock.advance(31)
        assert {e.id for e in await store.query_pending()} == {ready.id, gated.id}

    @pytest.mark.asyncio
    async def test_query_pending_skips_in_flight(self, store):
        entity = await store.create({})

        def stamp(e):
            e.sync_job_ref = "job"
            return e

        await store.update(entity.id, stamp)
        assert await store.query_pending() == []

    @pytest.mark.asyncio
    async def test_query_in_flight(self, store, clock):
        entity = await store.create({})

        def stamp(e):
            e.sync_job_ref = "job"
            e.last_sync_attempt = T0
            return e

        await store.update(entity.id, stamp)

        assert await store.query_in_flight(T0) == []
        assert [e.id for e in await store.query_in_flight(T0 + timedelta(seconds=1))] == [entity.id]

    @pytest.mark.asyncio
    async def test_query_by_status(self, store):
        await store.create({}, status=SyncStatus.SYNCED)
        dead = await store.create({}, status=SyncStatus.DEAD_LETTER)

        assert [e.id for e in await store.query_by_status(SyncStatus.DEAD_LETTER)] == [dead.id]
        assert len(await store.query_by_status()) == 2

    @pytest.mark.asyncio
    async def test_count_by_status(self, store):
        await store.create({})
        await store.create({}, status=SyncStatus.SYNCED)

        counts = await store.count_by_status()
        assert counts["PENDING"] == 1
        assert counts["SYNCED"] == 1
        assert counts["DEAD_LETTER"] == 0

    @pytest.mark.asyncio
    async def test_count_stuck(self, store, clock):
        await store.create({})
        clock.advance(120)
        assert await store.count_stuck(SyncStatus.PENDING, clock() - timedelta(seconds=60)) == 1
        assert await store.count_stuck(SyncStatus.PENDING, T0) == 0


class TestReconciliationQueries:
    """Tests for keyset paging and audit records."""

    @pytest.mark.asyncio
    async def test_keyset_pages(self, store):
        """Pages are ordered by id and cover every correlated entity once."""
        for i in range(5):
            await store.create({}, entity_id=f"e{i}", external_id=f"r-{i}")
        await store.create({}, entity_id="e9")  # not correlated

        pages = [
            [e.id for e in page]
            async for page in store.query_for_reconciliation(ReconciliationFilter(page_size=2))
        ]
        assert pages == [["e0", "e1"], ["e2", "e3"], ["e4"]]

    @pytest.mark.asyncio
    async def test_resume_after_id(self, store):
        for i in range(4):
            await store.create({}, entity_id=f"e{i}", external_id=f"r-{i}")

        filt = ReconciliationFilter(after_id="e1", page_size=10)
        ids = [e.id async for page in store.query_for_reconciliation(filt) for e in page]
        assert ids == ["e2", "e3"]

    @pytest.mark.asyncio
    async def test_modified_since(self, store, clock):
        await store.create({}, entity_id="old", external_id="r-1")
        clock.advance(60)
        await store.create({}, entity_id="new", external_id="r-2")

        filt = ReconciliationFilter(modified_since=clock())
        ids = [e.id async for page in store.query_for_reconciliation(filt) for e in page]
        assert ids == ["new"]

    @pytest.mark.asyncio
    async def test_records_append_and_resolve(self, store):
        record = await store.append_reconciliation_record(ReconciliationRecord(
            entity_id="e1",
            external_id="r-1",
            discrepancy_type=DiscrepancyType.DATA_MISMATCH,
            details={"fields": {"name": {"local": "a", "remote": "b"}}},
            detected_at=T0,
            run_id="run1",
        ))
        assert record.id is not None

        open_records = await store.list_reconciliation_records(unresolved_only=True)
        assert [r.id for r in open_records] == [record.id]
        assert open_records[0].details["fields"]["name"]["remote"] == "b"

        assert await store.resolve_reconciliation_record(record.id) is True
        # Resolution is stamped once
        assert await store.resolve_reconciliation_record(record.id) is False
        assert await store.list_reconciliation_records(unresolved_only=True) == []
        assert len(await store.list_reconciliation_records(run_id="run1")) == 1

    @pytest.mark.asyncio
    async def test_checkpoint(self, store):
        assert await store.get_checkpoint("last_reconciliation") is None
        await store.set_checkpoint("last_reconciliation", T0)
        assert await store.get_checkpoint("last_reconciliation") == T0

        later = T0 + timedelta(hours=1)
        await store.set_checkpoint("last_reconciliation", later)
        assert await store.get_checkpoint("last_reconciliation") == later

    @pytest.mark.asyncio
    async def test_stats(self, store):
        await store.create({})
        stats = await store.get_stats()
        assert stats == {"entities": 1, "open_reconciliation_records": 0}
