"""
Unit tests for column usage counters.
"""

import asyncio
import os
import tempfile

import pytest

from dbaas.eavdb_server.config import StorageConfig
from dbaas.eavdb_server.store.database import Database
from dbaas.eavdb_server.store.usage import FILTER, ORDER_COLS, WHERE_COLS, UsageTracker


class TestUsageTracker:
    """Tests for UsageTracker."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    async def db(self, data_dir):
        db = Database(StorageConfig(path=os.path.join(data_dir, "eav.sqlite3")))
        await db.initialize()
        return db

    @pytest.fixture
    def usage(self, db):
        return UsageTracker(db)

    @pytest.mark.asyncio
    async def test_push_and_flush(self, usage):
        """Pushed keys are counted after a flush."""
        usage.push("User", WHERE_COLS, ["v_0", "v_3"])
        usage.push("User", WHERE_COLS, ["v_0"])
        usage.push("User", FILTER, ["age"])

        assert await usage.counts_of("User") == {WHERE_COLS: {}, ORDER_COLS: {}, FILTER: {}}
        assert await usage.flush() == 2

        counts = await usage.counts_of("User")
        assert counts[WHERE_COLS] == {"v_0": 2, "v_3": 1}
        assert counts[FILTER] == {"age": 1}
        assert usage.pending == 0

    @pytest.mark.asyncio
    async def test_flushes_accumulate(self, usage):
        """Counts of successive flushes are summed."""
        usage.push("User", ORDER_COLS, ["v_1"])
        await usage.flush()
        usage.push("User", ORDER_COLS, ["v_1", "v_2"])
        await usage.flush()

        assert (await usage.counts_of("User"))[ORDER_COLS] == {"v_1": 2, "v_2": 1}

    @pytest.mark.asyncio
    async def test_flush_without_pending(self, usage):
        """An empty flush does nothing."""
        assert await usage.flush() == 0

    @pytest.mark.asyncio
    async def test_top_columns(self, usage):
        """Most used where/order slots come first."""
        usage.push("User", WHERE_COLS, ["v_0", "v_1", "v_1"])
        usage.push("User", ORDER_COLS, ["v_2", "v_1"])
        usage.push("User", FILTER, ["v_9", "v_9", "v_9", "v_9"])
        await usage.flush()

        assert await usage.top_columns("User", 2) == ["v_1", "v_0"]
        assert await usage.top_columns("User", 0) == []
        assert await usage.top_columns("Other", 3) == []

    @pytest.mark.asyncio
    async def test_disabled(self, db):
        """A disabled tracker records nothing."""
        usage = UsageTracker(db, enabled=False)
        usage.push("User", WHERE_COLS, ["v_0"])
        assert usage.pending == 0

    def test_unknown_kind(self, usage):
        """Only known kinds are accepted."""
        with pytest.raises(ValueError):
            usage.push("User", "selectCols", ["v_0"])

    @pytest.mark.asyncio
    async def test_flush_failure_is_swallowed(self, usage, db, monkeypatch, caplog):
        """A failed flush logs a warning and drops the batch."""

        async def broken_write(fn):
            raise RuntimeError("disk on fire")

        usage.push("User", WHERE_COLS, ["v_0"])
        monkeypatch.setattr(db, "write", broken_write)

        assert await usage.flush() == 0
        assert usage.pending == 0
        assert "Failed to flush usage counters" in caplog.text

    @pytest.mark.asyncio
    async def test_clear(self, usage):
        """clear() forgets persisted and pending counts."""
        usage.push("User", WHERE_COLS, ["v_0"])
        await usage.flush()
        usage.push("User", WHERE_COLS, ["v_1"])

        await usage.clear("User")
        await usage.flush()

        assert (await usage.counts_of("User"))[WHERE_COLS] == {}

    def test_built_outside_event_loop(self, data_dir):
        """A tracker built before the loop starts serializes flushes inside it."""
        db = Database(StorageConfig(path=os.path.join(data_dir, "outside.sqlite3")))
        usage = UsageTracker(db)

        async def run():
            await db.initialize()
            usage.push("User", WHERE_COLS, ["v_0"])
            return await asyncio.gather(usage.flush(), usage.flush())

        assert sorted(asyncio.run(run())) == [0, 1]
