"""Read-only access to source/destination metadata kept by the management API."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any

import pyodbc

from dataforge.exceptions import ConfigurationError, EntityNotFoundError, MetadataError
from dataforge.logging_utils import get_logger
from dataforge.models import EntityRecord

logger = get_logger(__name__)


class MetadataStore(ABC):
    """Lookup of sources and destinations by id."""

    @abstractmethod
    def get_source_by_id(self, source_id: int) -> EntityRecord:
        ...

    @abstractmethod
    def get_destination_by_id(self, destination_id: int) -> EntityRecord:
        ...


def parse_config_blob(blob: Any) -> dict[str, Any]:
    """Decode a stored configuration blob into a mapping."""
    if blob is None:
        return {}
    if isinstance(blob, dict):
        return blob
    if isinstance(blob, (bytes, bytearray)):
        blob = blob.decode("utf-8")
    try:
        value = json.loads(blob)
    except (TypeError, ValueError) as e:
        raise MetadataError("Stored configuration is not valid JSON", details={"error": str(e)}) from e
    if not isinstance(value, dict):
        raise MetadataError(f"Stored configuration must be a JSON object, got {type(value).__name__}")
    return value


class SqlMetadataStore(MetadataStore):
    """ODBC adapter over the ``sources`` and ``destinations`` tables."""

    _QUERIES = {
        "source": "SELECT id, source_type, config FROM sources WHERE id = ?",
        "destination": "SELECT id, destination_type, config FROM destinations WHERE id = ?",
    }

    def __init__(self, connection_string: str | None, timeout: int = 30):
        if not connection_string:
            raise ConfigurationError("METADATA_DSN must be set to read sources and destinations")
        self.connection_string = connection_string
        self.timeout = timeout

    def _connect(self) -> pyodbc.Connection:
        return pyodbc.connect(self.connection_string, timeout=self.timeout)

    def _fetch(self, kind: str, entity_id: int) -> EntityRecord:
        try:
            with self._connect() as conn:
                cursor = conn.cursor()
                cursor.execute(self._QUERIES[kind], entity_id)
                row = cursor.fetchone()
        except pyodbc.Error as e:
            raise MetadataError(
                f"Failed to read {kind} {entity_id} from metadata store",
                details={"error": str(e)},
            ) from e

        if row is None:
            raise EntityNotFoundError(f"{kind.capitalize()} {entity_id} not found", details={"id": entity_id})

        return EntityRecord(id=int(row[0]), type=str(row[1]), config=parse_config_blob(row[2]))

    def get_source_by_id(self, source_id: int) -> EntityRecord:
        return self._fetch("source", source_id)

    def get_destination_by_id(self, destination_id: int) -> EntityRecord:
        return self._fetch("destination", destination_id)
