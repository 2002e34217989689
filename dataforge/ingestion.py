"""Ingestion engine: batch publishing, flush policy, pagination and pipeline runs."""

from __future__ import annotations

import json
import threading
import uuid
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from time import perf_counter
from typing import Any

from dataforge.binding import PipelineRouter
from dataforge.bus import MessageBus
from dataforge.connectors.registry import ConnectorRegistry
from dataforge.exceptions import DataforgeError, ExtractionError, RunCancelledError
from dataforge.logging_utils import get_logger, log_context, log_operation
from dataforge.metadata import MetadataStore
from dataforge.models import DestinationRecord, IncrementalState, PublishAck, RunMetrics, RunStatus
from dataforge.state import IncrementalStateStore

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 100


def serialize_record(record: Any) -> bytes:
    """Encode one upstream record as the JSON bytes carried on the bus."""
    return json.dumps(record, default=str).encode("utf-8")


class BatchPublisher:
    """Wraps records with their pipeline id and publishes them on the output subject."""

    def __init__(self, bus: MessageBus, subject: str = "OUTPUT"):
        self.bus = bus
        self.subject = subject

    def publish(self, pipeline_id: int, records: Sequence[bytes]) -> PublishAck:
        record = DestinationRecord(pipeline_id=pipeline_id, records=tuple(records))
        ack = self.bus.publish(self.subject, record.to_bytes())
        logger.info(
            f"Message published to {self.subject} subject",
            extra={"stream": ack.stream, "sequence": ack.sequence, "record_count": len(record)},
        )
        return ack


@dataclass
class RunContext:
    """Everything a source needs during one run."""

    pipeline_id: int
    source_id: int
    publisher: BatchPublisher
    state_store: IncrementalStateStore
    cancel_event: threading.Event = field(default_factory=threading.Event)
    metrics: RunMetrics = field(default_factory=RunMetrics)

    def check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise RunCancelledError(f"Run of pipeline {self.pipeline_id} was cancelled")

    def wait(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless cancelled first."""
        if self.cancel_event.wait(timeout=seconds):
            self.check_cancelled()

    def publish(self, records: Sequence[bytes]) -> PublishAck | None:
        if not records:
            return None
        ack = self.publisher.publish(self.pipeline_id, records)
        self.metrics.batches_published += 1
        self.metrics.records_published += len(records)
        return ack

    def load_state(self, now: datetime | None = None) -> IncrementalState:
        return self.state_store.load(self.pipeline_id, self.source_id, now=now)

    def save_state(self, state: IncrementalState) -> None:
        self.state_store.save(self.pipeline_id, self.source_id, state)


class BatchAccumulator:
    """Fixed-size batching: flush exactly at ``size`` and once more at close.

    Used as a context manager the remainder is flushed only when the block
    exits without an exception.
    """

    def __init__(self, flush: Callable[[list[bytes]], Any], size: int = DEFAULT_BATCH_SIZE):
        if size < 1:
            raise ValueError("batch size must be >= 1")
        self._flush = flush
        self.size = size
        self._batch: list[bytes] = []
        self.flushed_batches = 0
        self.flushed_records = 0

    def __len__(self) -> int:
        return len(self._batch)

    def add(self, record: bytes) -> bool:
        """Buffer one record; return True when this call triggered a flush."""
        self._batch.append(record)
        if len(self._batch) >= self.size:
            self.flush()
            return True
        return False

    def flush(self) -> None:
        if not self._batch:
            return
        batch, self._batch = self._batch, []
        self._flush(batch)
        self.flushed_batches += 1
        self.flushed_records += len(batch)

    def __enter__(self) -> "BatchAccumulator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.flush()


def drain_pages(
    fetch_page: Callable[[int], list],
    context: RunContext,
    resource: str,
) -> int:
    """Publish one batch per page, pages 1, 2, ... until an empty page.

    Cancellation is checked before every page request.
    """
    page_number = 1
    total = 0
    while True:
        context.check_cancelled()
        results = fetch_page(page_number)
        if not results:
            logger.info(
                "Received empty page - pagination complete",
                extra={"resource": resource, "pages": page_number - 1, "total_rows": total},
            )
            break

        context.publish([serialize_record(r) for r in results])
        total += len(results)
        logger.debug(f"Fetched page {page_number}", extra={"resource": resource, "records_in_page": len(results)})
        page_number += 1
    return total


@dataclass
class RunHandle:
    """Handle to a pipeline run executing in the background."""

    run_id: str
    pipeline_id: int
    future: Future
    cancel_event: threading.Event

    def cancel(self) -> None:
        self.cancel_event.set()

    def done(self) -> bool:
        return self.future.done()

    def result(self, timeout: float | None = None) -> RunMetrics:
        return self.future.result(timeout=timeout)


class PipelineRunner:
    """Starts source runs for pipelines on a background thread pool."""

    def __init__(
        self,
        router: PipelineRouter,
        metadata: MetadataStore,
        registry: ConnectorRegistry,
        publisher: BatchPublisher,
        state_store: IncrementalStateStore,
        max_workers: int = 4,
    ):
        self.router = router
        self.metadata = metadata
        self.registry = registry
        self.publisher = publisher
        self.state_store = state_store
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pipeline-run")
        self._handles: dict[str, RunHandle] = {}
        self._lock = threading.Lock()

    def start(self, pipeline_id: int) -> RunHandle:
        """Schedule a run and return immediately."""
        run_id = str(uuid.uuid4())
        cancel_event = threading.Event()
        future = self._executor.submit(self.run, pipeline_id, cancel_event, run_id)
        handle = RunHandle(run_id=run_id, pipeline_id=pipeline_id, future=future, cancel_event=cancel_event)
        with self._lock:
            self._handles[run_id] = handle
        future.add_done_callback(lambda _f: self._forget(run_id))
        logger.info("Pipeline run scheduled", extra={"pipeline_id": pipeline_id, "run_id": run_id})
        return handle

    def active_runs(self) -> list[RunHandle]:
        with self._lock:
            return list(self._handles.values())

    def _forget(self, run_id: str) -> None:
        with self._lock:
            self._handles.pop(run_id, None)

    def run(
        self,
        pipeline_id: int,
        cancel_event: threading.Event | None = None,
        run_id: str | None = None,
    ) -> RunMetrics:
        """Run the pipeline's source to completion on the calling thread.

        Returns the run metrics; a cancelled run returns with status
        ``CANCELLED``. Failures raise after the metrics are logged.
        """
        start = perf_counter()
        cancel_event = cancel_event or threading.Event()
        metrics = RunMetrics(run_id=run_id or str(uuid.uuid4()), pipeline_id=pipeline_id)

        with log_context(pipeline_id=pipeline_id, run_id=metrics.run_id):
            try:
                source_id = self.router.resolve_source(pipeline_id)
                entity = self.metadata.get_source_by_id(source_id)
                metrics.source_id = source_id
                metrics.source_type = entity.type

                source = self.registry.create_source(entity.type)
                source.initialize(entity.config)

                context = RunContext(
                    pipeline_id=pipeline_id,
                    source_id=source_id,
                    publisher=self.publisher,
                    state_store=self.state_store,
                    cancel_event=cancel_event,
                    metrics=metrics,
                )
                with log_context(connector=source.identifier()):
                    with log_operation(logger, "source_run", source_type=entity.type, source_id=source_id):
                        source.run(context)

                metrics.status = RunStatus.SUCCEEDED.value
                logger.info("Pipeline run completed", extra=metrics.to_dict())

            except RunCancelledError as e:
                metrics.status = RunStatus.CANCELLED.value
                metrics.error_message = str(e)
                metrics.error_type = type(e).__name__
                logger.warning("Pipeline run cancelled", extra=metrics.to_dict())

            except DataforgeError as e:
                metrics.status = RunStatus.FAILED.value
                metrics.error_message = str(e)
                metrics.error_type = type(e).__name__
                logger.error(f"Pipeline run failed: {e}", extra=metrics.to_dict())
                raise

            except Exception as e:
                metrics.status = RunStatus.FAILED.value
                metrics.error_message = str(e)
                metrics.error_type = type(e).__name__
                logger.error(f"Unexpected error: {e}", extra=metrics.to_dict(), exc_info=True)
                raise ExtractionError(f"Unexpected error: {e}", details={"pipeline_id": pipeline_id}) from e

            finally:
                metrics.end_time = datetime.now(timezone.utc)
                metrics.duration_seconds = perf_counter() - start

        return metrics

    def shutdown(self, wait: bool = True, cancel_running: bool = False) -> None:
        if cancel_running:
            for handle in self.active_runs():
                handle.cancel()
        self._executor.shutdown(wait=wait)
