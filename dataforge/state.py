"""Incremental state (cursor) persistence per pipeline and source."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from pydantic import ValidationError

from dataforge.bus import KeyValueStore
from dataforge.exceptions import BusError, StoreError
from dataforge.logging_utils import get_logger
from dataforge.models import IncrementalState

logger = get_logger(__name__)

DEFAULT_LOOKBACK_HOURS = 10000


def state_key(pipeline_id: int, source_id: int) -> str:
    return f"{int(pipeline_id)}-source-{int(source_id)}-state"


def initial_state(now: datetime, lookback_hours: int = DEFAULT_LOOKBACK_HOURS) -> IncrementalState:
    return IncrementalState(last_sync_time=now - timedelta(hours=lookback_hours))


class IncrementalStateStore:
    """Durable cursors kept next to the pipeline bindings."""

    def __init__(self, kv: KeyValueStore, lookback_hours: int = DEFAULT_LOOKBACK_HOURS):
        self.kv = kv
        self.lookback_hours = lookback_hours

    def load(self, pipeline_id: int, source_id: int, now: datetime | None = None) -> IncrementalState:
        """Return the stored cursor, or the look-back default on first run."""
        now = now or datetime.now(timezone.utc)
        key = state_key(pipeline_id, source_id)
        try:
            raw = self.kv.get(key)
        except BusError as e:
            raise StoreError(f"Failed to read incremental state {key!r}", details=e.details) from e

        if raw is None:
            state = initial_state(now, self.lookback_hours)
            logger.info(
                "No incremental state found; using look-back default",
                extra={"key": key, "last_sync_time": state.last_sync_time},
            )
            return state

        try:
            return IncrementalState.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("Malformed incremental state; using look-back default", extra={"key": key, "error": str(e)})
            return initial_state(now, self.lookback_hours)

    def save(self, pipeline_id: int, source_id: int, state: IncrementalState) -> None:
        key = state_key(pipeline_id, source_id)
        try:
            self.kv.put(key, state.model_dump_json().encode("utf-8"))
        except BusError as e:
            raise StoreError(f"Failed to write incremental state {key!r}", details=e.details) from e
        logger.info("Incremental state advanced", extra={"key": key, "last_sync_time": state.last_sync_time})
