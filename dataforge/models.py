"""Data models for the connector pipeline."""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_serializer, field_validator

from dataforge.exceptions import RecordDecodeError


class DestinationRecord(BaseModel):
    """One batch of raw records owned by a pipeline; the only unit on the bus.

    On the wire the records are base64 strings inside a JSON object:
    ``{"pipeline_id": 7, "records": ["eyJhIjogMX0=", ...]}``.
    """

    model_config = ConfigDict(frozen=True)

    pipeline_id: int = Field(..., description="Owning pipeline id")
    records: tuple[bytes, ...] = Field(default=(), description="Opaque record payloads")

    @field_validator("records", mode="before")
    @classmethod
    def decode_records(cls, v: Any) -> Any:
        if v is None:
            return ()
        if not isinstance(v, (list, tuple)):
            raise ValueError(f"records must be a list, got {type(v).__name__}")
        decoded = []
        for item in v:
            if isinstance(item, (bytes, bytearray)):
                decoded.append(bytes(item))
            elif isinstance(item, str):
                try:
                    decoded.append(base64.b64decode(item, validate=True))
                except (binascii.Error, ValueError):
                    raise ValueError("records must be base64-encoded strings")
            else:
                raise ValueError(f"record must be bytes or base64 string, got {type(item).__name__}")
        return tuple(decoded)

    @field_serializer("records")
    def encode_records(self, records: tuple[bytes, ...]) -> list[str]:
        return [base64.b64encode(r).decode("ascii") for r in records]

    def __len__(self) -> int:
        return len(self.records)

    def to_bytes(self) -> bytes:
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def from_bytes(cls, payload: bytes) -> "DestinationRecord":
        try:
            data = json.loads(payload)
        except (ValueError, UnicodeDecodeError) as e:
            raise RecordDecodeError("Payload is not valid JSON", details={"error": str(e)}) from e
        if not isinstance(data, dict):
            raise RecordDecodeError(f"Payload must be a JSON object, got {type(data).__name__}")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise RecordDecodeError(
                "Payload is not a valid destination record",
                details={"errors": e.errors(include_url=False, include_input=False)},
            ) from e

    def iter_json(self):
        """Yield ``(index, document, error)`` for each record parsed as JSON."""
        for index, raw in enumerate(self.records):
            try:
                yield index, json.loads(raw), None
            except (ValueError, UnicodeDecodeError) as e:
                yield index, None, e


@dataclass(frozen=True)
class Binding:
    """Durable pipeline routing: which source feeds it, which destination it feeds."""

    pipeline_id: int
    source_id: int
    destination_id: int


@dataclass(frozen=True)
class EntityRecord:
    """A source or destination row from the metadata store."""

    id: int
    type: str
    config: dict[str, Any] = field(default_factory=dict)


class IncrementalState(BaseModel):
    """Cursor of a (pipeline, source) pair."""

    last_sync_time: datetime

    @field_validator("last_sync_time")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)


@dataclass(frozen=True)
class AuthToken:
    """A bearer token and the moment it stops being usable."""

    value: str
    expires_at: datetime

    def is_valid(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now < self.expires_at


@dataclass(frozen=True)
class PublishAck:
    """Bus acknowledgement of a published message."""

    stream: str
    sequence: str


class RunStatus(str, Enum):
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


@dataclass
class RunMetrics:
    """Metrics collected during one source run."""

    run_id: str = ""
    pipeline_id: int = 0
    source_id: int = 0
    source_type: str = ""
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: datetime | None = None
    duration_seconds: float = 0.0

    status: str = RunStatus.RUNNING.value
    batches_published: int = 0
    records_published: int = 0

    error_message: str = ""
    error_type: str = ""

    @property
    def success(self) -> bool:
        return self.status == RunStatus.SUCCEEDED.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "pipeline_id": self.pipeline_id,
            "source_id": self.source_id,
            "source_type": self.source_type,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": round(self.duration_seconds, 2),
            "status": self.status,
            "batches_published": self.batches_published,
            "records_published": self.records_published,
            "error_message": self.error_message,
            "error_type": self.error_type,
        }


@dataclass
class SinkResult:
    """Outcome of one destination run over one batch."""

    pipeline_id: int
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    sample_errors: list[dict] = field(default_factory=list)

    MAX_SAMPLE_ERRORS = 5

    def record_success(self) -> None:
        self.succeeded += 1

    def record_failure(self, index: int, error: str) -> None:
        self.failed += 1
        if len(self.sample_errors) < self.MAX_SAMPLE_ERRORS:
            self.sample_errors.append({"index": index, "error": error})

    def to_dict(self) -> dict[str, Any]:
        return {
            "pipeline_id": self.pipeline_id,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "sample_errors": self.sample_errors,
        }
