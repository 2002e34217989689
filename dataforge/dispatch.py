"""Dispatch consumer: routes each published batch to its pipeline's destination.

Deliveries are acknowledged only after the batch was written or moved to the
dead-letter subject; entries left unacknowledged by a crash are re-read from
the consumer's pending list at the next start.
"""

from __future__ import annotations

import base64
import json
import logging
import threading

from tenacity import Retrying, before_sleep_log, retry_if_exception, stop_after_attempt, wait_exponential

from dataforge.binding import PipelineRouter
from dataforge.bus import Delivery, MessageBus
from dataforge.connectors.registry import ConnectorRegistry
from dataforge.exceptions import (
    BindingNotFoundError,
    BusError,
    ConfigurationError,
    DataforgeError,
    EntityNotFoundError,
    RecordDecodeError,
)
from dataforge.logging_utils import get_logger, log_context
from dataforge.metadata import MetadataStore
from dataforge.models import DestinationRecord, SinkResult

logger = get_logger(__name__)

NON_RETRYABLE_ERRORS = (RecordDecodeError, ConfigurationError, BindingNotFoundError, EntityNotFoundError)


def is_retryable(exc: BaseException) -> bool:
    """Transport, store and sink failures may succeed on another attempt; bad input never does."""
    return isinstance(exc, DataforgeError) and not isinstance(exc, NON_RETRYABLE_ERRORS)


def dead_letter_payload(delivery: Delivery, error: BaseException) -> bytes:
    return json.dumps(
        {
            "subject": delivery.subject,
            "message_id": delivery.message_id,
            "error_type": type(error).__name__,
            "error": str(error),
            "payload": base64.b64encode(delivery.data).decode("ascii"),
        }
    ).encode("utf-8")


class Dispatcher:
    def __init__(
        self,
        bus: MessageBus,
        router: PipelineRouter,
        metadata: MetadataStore,
        registry: ConnectorRegistry,
        subject: str = "OUTPUT",
        dead_letter_subject: str = "OUTPUT.DLQ",
        group: str = "CONS",
        consumer: str = "dispatch",
        max_attempts: int = 3,
        read_count: int = 10,
        block_ms: int | None = 5000,
        backoff_min: float = 1,
        backoff_max: float = 30,
    ):
        self.bus = bus
        self.router = router
        self.metadata = metadata
        self.registry = registry
        self.subject = subject
        self.dead_letter_subject = dead_letter_subject
        self.group = group
        self.consumer = consumer
        self.max_attempts = max_attempts
        self.read_count = read_count
        self.block_ms = block_ms or None
        self.backoff_min = backoff_min
        self.backoff_max = backoff_max

    def handle(self, payload: bytes) -> SinkResult:
        """Decode one batch and run it through a fresh destination connector."""
        record = DestinationRecord.from_bytes(payload)
        with log_context(pipeline_id=record.pipeline_id):
            destination_id = self.router.resolve_destination(record.pipeline_id)
            entity = self.metadata.get_destination_by_id(destination_id)

            destination = self.registry.create_destination(entity.type)
            destination.initialize(entity.config)
            with log_context(connector=destination.identifier()):
                result = destination.run(record)

            logger.info(
                "Batch delivered",
                extra={"destination_id": destination_id, "destination_type": entity.type, **result.to_dict()},
            )
            return result

    def _handle_with_retry(self, payload: bytes) -> SinkResult:
        retrying = Retrying(
            retry=retry_if_exception(is_retryable),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, min=self.backoff_min, max=self.backoff_max),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retrying(self.handle, payload)

    def process_delivery(self, delivery: Delivery) -> SinkResult | None:
        """Handle, dead-letter on failure, then acknowledge.

        Returns ``None`` when the delivery was dead-lettered.
        """
        result = None
        try:
            result = self._handle_with_retry(delivery.data)
        except DataforgeError as e:
            logger.error(f"Delivery failed: {e}", extra={"message_id": delivery.message_id})
            self.dead_letter(delivery, e)
        except Exception as e:
            logger.error(f"Unexpected error handling delivery: {e}", extra={"message_id": delivery.message_id}, exc_info=True)
            self.dead_letter(delivery, e)

        self.bus.ack(delivery.subject, self.group, delivery.message_id)
        return result

    def dead_letter(self, delivery: Delivery, error: BaseException) -> None:
        ack = self.bus.publish(self.dead_letter_subject, dead_letter_payload(delivery, error))
        logger.warning(
            f"Message moved to {self.dead_letter_subject} subject",
            extra={"message_id": delivery.message_id, "error_type": type(error).__name__, "sequence": ack.sequence},
        )

    def run_once(self, pending: bool = False) -> int:
        """Fetch one read's worth of deliveries and process them; returns how many."""
        deliveries = self.bus.fetch(
            self.subject,
            self.group,
            self.consumer,
            count=self.read_count,
            block_ms=self.block_ms,
            pending=pending,
        )
        for delivery in deliveries:
            self.process_delivery(delivery)
        return len(deliveries)

    def recover_pending(self, stop_event: threading.Event | None = None, poll_interval: float = 1.0) -> int:
        """Re-process entries delivered to this consumer but never acknowledged."""
        stop_event = stop_event or threading.Event()
        recovered = 0
        while not stop_event.is_set():
            try:
                processed = self.run_once(pending=True)
                if not processed and not self.bus.has_pending(self.subject, self.group, self.consumer):
                    break
            except BusError as e:
                logger.error(f"Pending recovery failed: {e}")
                stop_event.wait(poll_interval)
                continue
            recovered += processed
        if recovered:
            logger.info("Recovered pending deliveries", extra={"count": recovered})
        return recovered

    def consume(self, stop_event: threading.Event | None = None, poll_interval: float = 1.0) -> int:
        """Consume until ``stop_event`` is set; returns the number of deliveries processed.

        Without a blocking read an idle consumer sleeps ``poll_interval``
        between empty reads.
        """
        stop_event = stop_event or threading.Event()
        self.bus.ensure_consumer(self.subject, self.group)
        logger.info(
            "Dispatch consumer started",
            extra={"subject": self.subject, "group": self.group, "consumer": self.consumer},
        )

        processed = self.recover_pending(stop_event, poll_interval)
        while not stop_event.is_set():
            try:
                count = self.run_once()
            except BusError as e:
                logger.error(f"Bus read failed: {e}")
                stop_event.wait(poll_interval)
                continue
            processed += count
            if not count and self.block_ms is None:
                stop_event.wait(poll_interval)

        logger.info("Dispatch consumer stopped", extra={"processed": processed})
        return processed
