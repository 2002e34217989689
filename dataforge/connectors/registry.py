"""Connector registry: type tag -> factory producing a fresh connector."""

from __future__ import annotations

import importlib
from typing import Callable

from dataforge.connectors.base import Connector, Destination, Source
from dataforge.exceptions import ConfigurationError, UnknownConnectorError
from dataforge.logging_utils import get_logger

logger = get_logger(__name__)

ConnectorFactory = Callable[[], Connector]

_BUILTIN_SOURCES: dict[str, tuple[str, str]] = {
    "mongodb": ("dataforge.connectors.sources.mongodb", "MongoDBSource"),
    "snowflake": ("dataforge.connectors.sources.snowflake", "SnowflakeSource"),
}

_BUILTIN_DESTINATIONS: dict[str, tuple[str, str]] = {
    "algolia": ("dataforge.connectors.destinations.algolia", "AlgoliaDestination"),
    "elasticsearch": ("dataforge.connectors.destinations.elasticsearch", "ElasticsearchDestination"),
    "salesforce": ("dataforge.connectors.destinations.salesforce", "SalesforceDestination"),
}


def _normalize(type_tag: str) -> str:
    return type_tag.lower().strip()


def lazy_factory(module_path: str, class_name: str) -> ConnectorFactory:
    """Factory importing the connector module on first use.

    Client libraries of unused connectors are never imported.
    """

    def factory() -> Connector:
        try:
            module = importlib.import_module(module_path)
        except ImportError as e:
            raise ConfigurationError(
                f"Connector module {module_path} could not be imported. Missing dependency? {e}",
                details={"module": module_path},
            ) from e
        return getattr(module, class_name)()

    return factory


class ConnectorRegistry:
    """Maps type tags to connector factories.

    Populated once at process start; every ``create_*`` call returns a new,
    uninitialized instance so concurrent runs never share client state.
    """

    def __init__(self) -> None:
        self._sources: dict[str, ConnectorFactory] = {}
        self._destinations: dict[str, ConnectorFactory] = {}

    def register_source(self, type_tag: str, factory: ConnectorFactory) -> None:
        self._sources[_normalize(type_tag)] = factory

    def register_destination(self, type_tag: str, factory: ConnectorFactory) -> None:
        self._destinations[_normalize(type_tag)] = factory

    def source_types(self) -> list[str]:
        return sorted(self._sources)

    def destination_types(self) -> list[str]:
        return sorted(self._destinations)

    def create_source(self, type_tag: str) -> Source:
        connector = self._create(self._sources, type_tag, "source")
        if not isinstance(connector, Source):
            raise ConfigurationError(f"Connector {type_tag!r} is not a source")
        return connector

    def create_destination(self, type_tag: str) -> Destination:
        connector = self._create(self._destinations, type_tag, "destination")
        if not isinstance(connector, Destination):
            raise ConfigurationError(f"Connector {type_tag!r} is not a destination")
        return connector

    @staticmethod
    def _create(factories: dict[str, ConnectorFactory], type_tag: str, kind: str) -> Connector:
        tag = _normalize(type_tag or "")
        factory = factories.get(tag)
        if factory is None:
            raise UnknownConnectorError(
                f"No {kind} connector registered for type {type_tag!r}",
                details={"supported": sorted(factories)},
            )
        return factory()


def default_registry() -> ConnectorRegistry:
    """Registry holding every built-in connector."""
    registry = ConnectorRegistry()
    for tag, (module_path, class_name) in _BUILTIN_SOURCES.items():
        registry.register_source(tag, lazy_factory(module_path, class_name))
    for tag, (module_path, class_name) in _BUILTIN_DESTINATIONS.items():
        registry.register_destination(tag, lazy_factory(module_path, class_name))
    return registry
