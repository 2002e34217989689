"""Elasticsearch destination: bulk indexing of each batch through the Bulk Writer."""

from __future__ import annotations

import threading
from functools import partial

from elasticsearch import ApiError, BadRequestError, Elasticsearch, TransportError
from pydantic import Field, model_validator

from dataforge.bulk import DEFAULT_FLUSH_BYTES, DEFAULT_NUM_WORKERS, BulkItem, BulkWriter
from dataforge.connectors.base import ConnectorConfig, Destination
from dataforge.exceptions import SinkError
from dataforge.logging_utils import get_logger
from dataforge.models import DestinationRecord, SinkResult

logger = get_logger(__name__)

ELASTICSEARCH_ID = "elasticsearch"

# (endpoint, index) pairs confirmed to exist in this process.
_known_indices: set[tuple[str, str]] = set()
_known_indices_lock = threading.Lock()


class ElasticsearchConfig(ConnectorConfig):
    cloud_id: str | None = None
    hosts: list[str] | None = None
    api_key: str = Field(..., min_length=1)
    index: str = Field(..., min_length=1)
    flush_bytes: int = Field(default=DEFAULT_FLUSH_BYTES, ge=1)
    num_workers: int = Field(default=DEFAULT_NUM_WORKERS, ge=1, le=64)
    request_timeout: int = Field(default=30, ge=1)
    verify_certs: bool = True

    @model_validator(mode="after")
    def require_endpoint(self) -> "ElasticsearchConfig":
        if not self.cloud_id and not self.hosts:
            raise ValueError("either cloud_id or hosts is required")
        return self


class ElasticsearchDestination(Destination[ElasticsearchConfig]):
    TYPE = ELASTICSEARCH_ID
    config_model = ElasticsearchConfig

    def __init__(self) -> None:
        super().__init__()
        self.client: Elasticsearch | None = None

    def setup(self, config: ElasticsearchConfig) -> None:
        if config.cloud_id:
            self.client = Elasticsearch(
                cloud_id=config.cloud_id,
                api_key=config.api_key,
                request_timeout=config.request_timeout,
                verify_certs=config.verify_certs,
            )
        else:
            self.client = Elasticsearch(
                config.hosts,
                api_key=config.api_key,
                request_timeout=config.request_timeout,
                verify_certs=config.verify_certs,
            )
        self.ensure_index()

    def ensure_index(self) -> None:
        """Create the index unless this process already saw it exist."""
        index = self.config.index
        key = (self.config.cloud_id or ",".join(self.config.hosts or ()), index)
        with _known_indices_lock:
            if key in _known_indices:
                return

        try:
            if not self.client.indices.exists(index=index):
                self.client.indices.create(index=index)
                logger.info(f"Created index: {index}")
        except BadRequestError as e:
            if e.error != "resource_already_exists_exception":
                raise SinkError(f"Could not create index {index}: {e}", details={"index": index}) from e
        except (ApiError, TransportError) as e:
            raise SinkError(f"Could not reach Elasticsearch: {e}", details={"index": index}) from e

        with _known_indices_lock:
            _known_indices.add(key)

    def run(self, record: DestinationRecord) -> SinkResult:
        if self.client is None:
            raise SinkError("Elasticsearch destination used before initialize()")

        result = SinkResult(pipeline_id=record.pipeline_id, total=len(record))
        lock = threading.Lock()

        def on_success(item: BulkItem, response: dict) -> None:
            with lock:
                result.record_success()

        def on_failure(position: int, item: BulkItem, response: dict | None, error: Exception | None) -> None:
            reason = str(error) if error is not None else _error_reason(response)
            logger.warning(
                f"Elasticsearch error for pipeline {record.pipeline_id}: {reason}",
                extra={"index": self.config.index},
            )
            with lock:
                result.record_failure(position, reason)

        writer = BulkWriter(
            self.client,
            self.config.index,
            flush_bytes=self.config.flush_bytes,
            num_workers=self.config.num_workers,
        )
        try:
            for position, body in enumerate(record.records):
                writer.add(BulkItem(body=body, on_success=on_success, on_failure=partial(on_failure, position)))
        finally:
            stats = writer.close()

        logger.info("Batch indexed", extra={"index": self.config.index, **result.to_dict(), **stats.to_dict()})
        if result.total and result.succeeded == 0 and stats.request_errors:
            raise SinkError(
                f"Every bulk request for pipeline {record.pipeline_id} failed",
                details={"index": self.config.index, "failed": result.failed},
            )
        return result


def _error_reason(response: dict | None) -> str:
    if not response:
        return "unknown error"
    error = response.get("error")
    if isinstance(error, dict):
        return f"{error.get('type', 'error')}: {error.get('reason', '')}"
    return str(error or response.get("status", "unknown error"))
