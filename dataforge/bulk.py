"""Byte-size batched bulk writer with per-item callbacks."""

from __future__ import annotations

import json
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any

from elasticsearch import ApiError, Elasticsearch, SerializationError, TransportError
from elasticsearch.helpers import streaming_bulk

from dataforge.exceptions import SinkError
from dataforge.logging_utils import get_logger

logger = get_logger(__name__)

DEFAULT_FLUSH_BYTES = 5_000_000
DEFAULT_NUM_WORKERS = 10


@dataclass
class BulkItem:
    """One document handed to the writer.

    ``on_success(item, response)`` or ``on_failure(item, response, error)`` is
    called exactly once per item, from a flush worker thread.
    """

    body: bytes
    action: str = "index"
    document_id: str | None = None
    on_success: Callable[["BulkItem", dict], None] | None = None
    on_failure: Callable[["BulkItem", dict | None, Exception | None], None] | None = None


@dataclass
class BulkStats:
    added: int = 0
    flushed: int = 0
    failed: int = 0
    requests: int = 0
    request_errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "added": self.added,
            "flushed": self.flushed,
            "failed": self.failed,
            "requests": self.requests,
            "request_errors": self.request_errors,
        }


@dataclass
class _Pending:
    item: BulkItem
    action: dict[str, Any] = field(default_factory=dict)


class BulkWriter:
    """Buffers items and flushes them with ``streaming_bulk`` on a worker pool.

    A flush is triggered once the buffered bodies reach ``flush_bytes``;
    :meth:`close` flushes the remainder and waits for every worker.
    """

    def __init__(
        self,
        client: Elasticsearch,
        index: str,
        flush_bytes: int = DEFAULT_FLUSH_BYTES,
        num_workers: int = DEFAULT_NUM_WORKERS,
        chunk_size: int = 500,
    ):
        if flush_bytes < 1:
            raise ValueError("flush_bytes must be >= 1")
        self.client = client
        self.index = index
        self.flush_bytes = flush_bytes
        self.chunk_size = chunk_size
        self.stats = BulkStats()

        self._buffer: list[_Pending] = []
        self._buffer_bytes = 0
        self._futures: list[Future] = []
        self._lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._closed = False
        self._executor = ThreadPoolExecutor(max_workers=num_workers, thread_name_prefix="bulk-flush")

    def add(self, item: BulkItem) -> None:
        if self._closed:
            raise SinkError("Bulk writer is closed", details={"index": self.index})

        with self._stats_lock:
            self.stats.added += 1

        action: dict[str, Any] = {"_op_type": item.action, "_index": self.index}
        if item.document_id is not None:
            action["_id"] = item.document_id
        if item.action != "delete":
            try:
                action["_source"] = json.loads(item.body)
            except (ValueError, UnicodeDecodeError) as e:
                self._fail(item, None, e)
                return

        batch = None
        with self._lock:
            self._buffer.append(_Pending(item=item, action=action))
            self._buffer_bytes += len(item.body)
            if self._buffer_bytes >= self.flush_bytes:
                batch = self._take()
        if batch:
            self._submit(batch)

    def flush(self) -> None:
        """Hand the current buffer to a worker without waiting for it."""
        with self._lock:
            batch = self._take()
        if batch:
            self._submit(batch)

    def close(self) -> BulkStats:
        """Flush the remainder and drain every in-flight flush."""
        if self._closed:
            return self.stats
        self.flush()
        self._closed = True

        with self._lock:
            futures = list(self._futures)
        wait(futures)
        self._executor.shutdown(wait=True)

        errors = [f.exception() for f in futures if f.exception() is not None]
        if errors:
            raise SinkError(
                f"{len(errors)} bulk flush(es) failed unexpectedly: {errors[0]}",
                details={"index": self.index},
            ) from errors[0]

        logger.debug("Bulk writer drained", extra=self.stats.to_dict())
        return self.stats

    def __enter__(self) -> "BulkWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _take(self) -> list[_Pending]:
        batch, self._buffer = self._buffer, []
        self._buffer_bytes = 0
        return batch

    def _submit(self, batch: list[_Pending]) -> None:
        future = self._executor.submit(self._flush, batch)
        with self._lock:
            self._futures.append(future)

    def _flush(self, batch: list[_Pending]) -> None:
        with self._stats_lock:
            self.stats.requests += 1

        completed = 0
        try:
            results = streaming_bulk(
                self.client,
                [pending.action for pending in batch],
                chunk_size=self.chunk_size,
                raise_on_error=False,
                raise_on_exception=False,
            )
            # Results come back in request order.
            for pending, (ok, info) in zip(batch, results):
                completed += 1
                response = next(iter(info.values()), {}) if isinstance(info, dict) else {}
                if ok:
                    with self._stats_lock:
                        self.stats.flushed += 1
                    if pending.item.on_success:
                        pending.item.on_success(pending.item, response)
                else:
                    if response.get("exception") is not None or response.get("status") == "N/A":
                        with self._stats_lock:
                            self.stats.request_errors += 1
                    self._fail(pending.item, response, None)
        except (ApiError, TransportError, SerializationError) as e:
            logger.error(f"Bulk request failed: {e}", extra={"index": self.index, "items": len(batch)})
            with self._stats_lock:
                self.stats.request_errors += 1
            for pending in batch[completed:]:
                self._fail(pending.item, None, e)

    def _fail(self, item: BulkItem, response: dict | None, error: Exception | None) -> None:
        with self._stats_lock:
            self.stats.failed += 1
        if item.on_failure:
            item.on_failure(item, response, error)
