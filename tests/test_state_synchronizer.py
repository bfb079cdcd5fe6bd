"""Tests for StateSynchronizer.

Tests cover:
    - Conflict resolution strategies (prefer newer, prefer older, merge, custom)
    - Watchers and cross-key subscriptions
    - Persisting to and loading from an ImmutableState
    - Remote synchronization, including timeouts and remote failures
"""
import asyncio

import pytest

from murmur.exceptions import InvalidConfigurationError, StateSynchronizationError
from murmur.state import (
    ConflictResolutionStrategy,
    ImmutableState,
    StateSynchronizer,
    deep_merge,
)


@pytest.fixture
def sync():
    return StateSynchronizer()


# ============================================
# Conflict Resolution Tests
# ============================================

class TestConflictResolution:
    """Test how updates combine with stored maps."""

    CURRENT = {"status": "idle", "devices": {"SN1": "ok", "SN2": "ok"}}
    INCOMING = {"status": "busy", "devices": {"SN2": "failed"}}

    async def _apply(self, strategy, **kwargs):
        sync = StateSynchronizer(strategy=strategy, **kwargs)
        await sync.update_state("fleet", self.CURRENT)
        return await sync.update_state("fleet", self.INCOMING, source_agent="scanner")

    @pytest.mark.asyncio
    async def test_prefer_newer(self):
        merged = await self._apply(ConflictResolutionStrategy.PREFER_NEWER)
        assert merged == {"status": "busy", "devices": {"SN2": "failed"}}

    @pytest.mark.asyncio
    async def test_prefer_older(self):
        merged = await self._apply(ConflictResolutionStrategy.PREFER_OLDER)
        assert merged == self.CURRENT

    @pytest.mark.asyncio
    async def test_merge(self):
        merged = await self._apply(ConflictResolutionStrategy.MERGE)
        assert merged == {"status": "busy", "devices": {"SN1": "ok", "SN2": "failed"}}

    @pytest.mark.asyncio
    async def test_custom(self):
        calls = []

        async def keep_status(key, current, incoming, source_agent):
            calls.append((key, source_agent))
            return {**incoming, "status": current["status"]}

        merged = await self._apply(ConflictResolutionStrategy.CUSTOM, custom_merge=keep_status)

        assert merged == {"status": "idle", "devices": {"SN2": "failed"}}
        assert calls == [("fleet", "scanner")]

    def test_custom_requires_merge_function(self):
        with pytest.raises(InvalidConfigurationError) as exc_info:
            StateSynchronizer(strategy=ConflictResolutionStrategy.CUSTOM)
        assert exc_info.value.details["missing_keys"] == ["custom_merge"]

    def test_strategy_from_string(self):
        assert StateSynchronizer(strategy="merge").strategy is ConflictResolutionStrategy.MERGE

    @pytest.mark.asyncio
    async def test_empty_update_keeps_current(self, sync):
        await sync.update_state("fleet", {"a": 1})
        assert await sync.update_state("fleet", {}) == {"a": 1}

    @pytest.mark.asyncio
    async def test_returned_state_is_a_copy(self, sync):
        await sync.update_state("fleet", {"devices": {"SN1": "ok"}})

        snapshot = sync.get_state("fleet")
        snapshot["devices"]["SN1"] = "changed"

        assert sync.get_state("fleet") == {"devices": {"SN1": "ok"}}
        assert sync.get_state("unknown") == {}
        assert sync.state_keys == {"fleet"}

    def test_deep_merge_does_not_mutate(self):
        base = {"a": {"b": 1}}
        merged = deep_merge(base, {"a": {"c": 2}, "d": 3})

        assert merged == {"a": {"b": 1, "c": 2}, "d": 3}
        assert base == {"a": {"b": 1}}


# ============================================
# Watcher Tests
# ============================================

class TestWatchers:
    """Test change notification."""

    @pytest.mark.asyncio
    async def test_watcher_receives_updates(self, sync):
        watcher = sync.watch_state("fleet")

        await sync.update_state("fleet", {"a": 1}, source_agent="scanner")
        await sync.update_state("fleet", {"b": 2})

        first = await watcher.next_update(timeout=1)
        second = await watcher.next_update(timeout=1)
        assert first.state == {"a": 1}
        assert first.source_agent == "scanner"
        assert second.state == {"a": 1, "b": 2}

    @pytest.mark.asyncio
    async def test_subscriber_watchers_notified(self, sync):
        await sync.update_state("report", {"summary": "pending"})
        watcher = sync.watch_state("report")
        sync.subscribe("report", "fleet")

        await sync.update_state("fleet", {"a": 1}, source_agent="scanner")

        update = await watcher.next_update(timeout=1)
        assert update.key == "report"
        assert update.source_key == "fleet"
        assert update.state == {"summary": "pending"}

    @pytest.mark.asyncio
    async def test_unsubscribe(self, sync):
        watcher = sync.watch_state("report")
        sync.subscribe("report", "fleet")
        sync.subscribe("report", "alerts")
        sync.unsubscribe("report", "fleet")

        await sync.update_state("fleet", {"a": 1})
        await sync.update_state("alerts", {"b": 1})
        sync.unsubscribe("report")
        await sync.update_state("alerts", {"c": 1})
        watcher.close()

        received = [update.source_key async for update in watcher]
        assert received == ["alerts"]

    @pytest.mark.asyncio
    async def test_clear_closes_watchers(self, sync):
        watcher = sync.watch_state("fleet")
        await sync.update_state("fleet", {"a": 1})

        sync.clear()

        received = [update.state async for update in watcher]
        assert received == [{"a": 1}]
        assert watcher.closed
        assert sync.state_keys == set()


# ============================================
# Persistence Tests
# ============================================

class TestPersistence:
    """Test storing maps in an ImmutableState."""

    @pytest.mark.asyncio
    async def test_persist_and_load(self):
        sync = StateSynchronizer(initial_state=ImmutableState({"other": 1}))
        await sync.update_state("fleet", {"devices": ["SN1"]})

        snapshot = sync.persist_state("fleet")

        assert snapshot.get("fleet", str) == '{"devices": ["SN1"]}'
        assert snapshot.get("other") == 1

        restored = StateSynchronizer(initial_state=snapshot)
        assert restored.load_state("fleet") is True
        assert restored.get_state("fleet") == {"devices": ["SN1"]}

    def test_persist_unknown_key(self, sync):
        assert sync.persist_state("missing") is sync.global_state

    def test_load_missing_key(self, sync):
        assert sync.load_state("missing") is False

    def test_load_invalid_json(self):
        sync = StateSynchronizer(initial_state=ImmutableState({"fleet": "{broken"}))
        with pytest.raises(StateSynchronizationError) as exc_info:
            sync.load_state("fleet")
        assert exc_info.value.key == "fleet"


# ============================================
# Remote Synchronization Tests
# ============================================

class TestSynchronize:
    """Test reconciling with a remote copy."""

    @pytest.mark.asyncio
    async def test_merges_and_writes_back(self):
        sync = StateSynchronizer(strategy=ConflictResolutionStrategy.MERGE)
        await sync.update_state("fleet", {"devices": {"SN1": "ok"}})
        watcher = sync.watch_state("fleet")
        written = []

        async def fetch():
            return {"devices": {"SN2": "ok"}}

        async def update(state):
            written.append(state)

        merged = await sync.synchronize("fleet", fetch, update)

        expected = {"devices": {"SN1": "ok", "SN2": "ok"}}
        assert merged == expected
        assert written == [expected]
        assert sync.get_state("fleet") == expected
        assert (await watcher.next_update(timeout=1)).state == expected

    @pytest.mark.asyncio
    async def test_in_sync_skips_write(self, sync):
        await sync.update_state("fleet", {"a": 1})
        written = []

        async def fetch():
            return {"a": 1}

        async def update(state):
            written.append(state)

        await sync.synchronize("fleet", fetch, update)
        assert written == []

        await sync.synchronize("fleet", fetch, update, force=True)
        assert written == [{"a": 1}]

    @pytest.mark.asyncio
    async def test_timeout(self):
        sync = StateSynchronizer(sync_timeout=0.05)

        async def fetch():
            await asyncio.sleep(10)
            return {}

        async def update(state):
            pass

        with pytest.raises(StateSynchronizationError) as exc_info:
            await sync.synchronize("fleet", fetch, update)

        assert "timed out" in exc_info.value.message
        assert exc_info.value.recoverable

    @pytest.mark.asyncio
    async def test_remote_failure_wrapped(self, sync):
        await sync.update_state("fleet", {"a": 1})

        async def fetch():
            return {"a": 2}

        async def update(state):
            raise ConnectionError("remote down")

        with pytest.raises(StateSynchronizationError) as exc_info:
            await sync.synchronize("fleet", fetch, update)

        assert isinstance(exc_info.value.__cause__, ConnectionError)
        assert sync.get_state("fleet") == {"a": 1}

    def test_sync_timeout_must_be_positive(self):
        with pytest.raises(InvalidConfigurationError):
            StateSynchronizer(sync_timeout=0)
