"""Shared test fixtures for the connector pipeline."""

import fakeredis
import pytest

from dataforge.binding import PipelineRouter
from dataforge.bus import KeyValueStore, MessageBus
from dataforge.config import DataforgeConfig
from dataforge.connectors.base import ConnectorConfig, Destination
from dataforge.connectors.registry import ConnectorRegistry
from dataforge.exceptions import EntityNotFoundError
from dataforge.ingestion import BatchPublisher
from dataforge.metadata import MetadataStore
from dataforge.models import EntityRecord, SinkResult
from dataforge.state import IncrementalStateStore


@pytest.fixture
def sample_config():
    """Minimal DataforgeConfig for testing (no env file, no real Redis)."""
    return DataforgeConfig(
        _env_file=None,
        redis_url="redis://localhost:6379/15",
        kv_bucket="test",
        consumer_name="test-consumer",
        metadata_dsn="Driver={ODBC Driver 18 for SQL Server};Server=test",
    )


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis()


@pytest.fixture
def bus(redis_client):
    return MessageBus(redis_client)


@pytest.fixture
def kv(redis_client):
    return KeyValueStore(redis_client, bucket="test")


@pytest.fixture
def router(kv):
    return PipelineRouter(kv)


@pytest.fixture
def state_store(kv):
    return IncrementalStateStore(kv)


@pytest.fixture
def publisher(bus):
    return BatchPublisher(bus, subject="OUTPUT")


class InMemoryMetadataStore(MetadataStore):
    """Metadata store backed by two dicts of EntityRecord."""

    def __init__(self, sources=None, destinations=None):
        self.sources = dict(sources or {})
        self.destinations = dict(destinations or {})

    def get_source_by_id(self, source_id):
        try:
            return self.sources[source_id]
        except KeyError:
            raise EntityNotFoundError(f"Source {source_id} not found")

    def get_destination_by_id(self, destination_id):
        try:
            return self.destinations[destination_id]
        except KeyError:
            raise EntityNotFoundError(f"Destination {destination_id} not found")


class CollectingConfig(ConnectorConfig):
    label: str = "default"


class CollectingDestination(Destination[CollectingConfig]):
    """Destination recording every batch it receives into a shared list."""

    TYPE = "collecting"
    config_model = CollectingConfig

    def __init__(self, received):
        super().__init__()
        self.received = received

    def setup(self, config):
        pass

    def run(self, record):
        self.received.append(record)
        result = SinkResult(pipeline_id=record.pipeline_id, total=len(record))
        for _ in record.records:
            result.record_success()
        return result


@pytest.fixture
def metadata():
    return InMemoryMetadataStore(
        destinations={9: EntityRecord(id=9, type="collecting", config={"label": "sink"})},
    )


@pytest.fixture
def received():
    return []


@pytest.fixture
def registry(received):
    registry = ConnectorRegistry()
    registry.register_destination("collecting", lambda: CollectingDestination(received))
    return registry


@pytest.fixture
def make_metadata():
    """Build an in-memory metadata store from source/destination dicts."""
    return InMemoryMetadataStore
