"""Tests for dataforge.connectors — typed configuration and the registry."""

from unittest.mock import patch

import pytest
from pydantic import Field

from dataforge.connectors.base import ConnectorConfig, Destination, Source, parse_connector_config
from dataforge.connectors.registry import ConnectorRegistry, default_registry, lazy_factory
from dataforge.exceptions import ConfigurationError, UnknownConnectorError
from dataforge.models import SinkResult


class _Config(ConnectorConfig):
    host: str = Field(..., min_length=1)
    port: int = 443
    index_name: str = Field(..., alias="indexName")


class _Source(Source[_Config]):
    TYPE = "dummy"
    config_model = _Config

    def setup(self, config):
        self.ready = True

    def run(self, context):
        pass


class _Destination(Destination[_Config]):
    TYPE = "dummy"
    config_model = _Config

    def setup(self, config):
        pass

    def run(self, record):
        return SinkResult(pipeline_id=record.pipeline_id)


class TestParseConnectorConfig:
    def test_valid_config(self):
        config = parse_connector_config(_Config, {"host": " h ", "indexName": "idx"}, "dummy")
        assert config.host == "h"
        assert config.port == 443
        assert config.index_name == "idx"

    def test_all_errors_reported_at_once(self):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_connector_config(_Config, {"port": "not-a-port"}, "dummy")

        fields = {e["field"] for e in exc_info.value.details["errors"]}
        assert fields == {"host", "port", "indexName"}
        assert exc_info.value.details["connector"] == "dummy"

    def test_unknown_keys_ignored(self):
        config = parse_connector_config(_Config, {"host": "h", "indexName": "i", "extra": 1}, "dummy")
        assert not hasattr(config, "extra")

    def test_non_mapping_rejected(self):
        with pytest.raises(ConfigurationError, match="expected a mapping"):
            parse_connector_config(_Config, ["host"], "dummy")

    def test_initialize_validates_before_setup(self):
        source = _Source()
        with patch.object(_Source, "setup") as setup:
            with pytest.raises(ConfigurationError):
                source.initialize({})
        setup.assert_not_called()
        assert source.config is None


class TestConnectorRegistry:
    def test_create_returns_fresh_instances(self):
        registry = ConnectorRegistry()
        registry.register_source("Dummy", _Source)

        first = registry.create_source("dummy")
        second = registry.create_source("DUMMY")
        assert isinstance(first, _Source)
        assert first is not second

    def test_unknown_type_lists_supported(self):
        registry = ConnectorRegistry()
        registry.register_destination("dummy", _Destination)
        with pytest.raises(UnknownConnectorError) as exc_info:
            registry.create_destination("nope")
        assert exc_info.value.details["supported"] == ["dummy"]

    def test_kind_mismatch_rejected(self):
        registry = ConnectorRegistry()
        registry.register_source("dummy", _Destination)
        with pytest.raises(ConfigurationError, match="not a source"):
            registry.create_source("dummy")

    def test_default_registry_tags(self):
        registry = default_registry()
        assert registry.source_types() == ["mongodb", "snowflake"]
        assert registry.destination_types() == ["algolia", "elasticsearch", "salesforce"]

    def test_lazy_factory_import_failure(self):
        factory = lazy_factory("dataforge.connectors.nonexistent", "Missing")
        with pytest.raises(ConfigurationError, match="could not be imported"):
            factory()

    def test_default_registry_builds_each_connector(self):
        registry = default_registry()
        for tag in registry.source_types():
            assert registry.create_source(tag).identifier() == tag
        for tag in registry.destination_types():
            assert registry.create_destination(tag).identifier() == tag
