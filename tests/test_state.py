"""Tests for dataforge.state — durable incremental cursors."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from dataforge.exceptions import BusError, StoreError
from dataforge.models import IncrementalState
from dataforge.state import IncrementalStateStore, initial_state, state_key

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class TestStateKey:
    def test_key_per_pipeline_and_source(self):
        assert state_key(7, 3) == "7-source-3-state"


class TestIncrementalStateStore:
    def test_first_run_uses_lookback(self, kv):
        store = IncrementalStateStore(kv, lookback_hours=24)
        state = store.load(7, 3, now=NOW)
        assert state.last_sync_time == NOW - timedelta(hours=24)

    def test_default_lookback_is_10000_hours(self, state_store):
        assert state_store.load(1, 1, now=NOW) == initial_state(NOW, 10000)

    def test_save_then_load(self, state_store, kv):
        state_store.save(7, 3, IncrementalState(last_sync_time=NOW))

        assert state_store.load(7, 3).last_sync_time == NOW
        assert b"last_sync_time" in kv.get("7-source-3-state")

    def test_cursor_is_per_source(self, state_store):
        state_store.save(7, 3, IncrementalState(last_sync_time=NOW))
        assert state_store.load(7, 4, now=NOW).last_sync_time < NOW

    def test_malformed_state_falls_back_to_default(self, state_store, kv):
        kv.put("7-source-3-state", b"garbage")
        state = state_store.load(7, 3, now=NOW)
        assert state.last_sync_time == NOW - timedelta(hours=10000)

    def test_store_errors_wrapped(self):
        kv = MagicMock()
        kv.get.side_effect = BusError("down")
        with pytest.raises(StoreError, match="incremental state"):
            IncrementalStateStore(kv).load(1, 1)
