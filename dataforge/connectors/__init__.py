"""Connector contracts and the type-tag registry."""

from dataforge.connectors.base import ConnectorConfig, Destination, Source
from dataforge.connectors.registry import ConnectorRegistry, default_registry

__all__ = ["ConnectorConfig", "Destination", "Source", "ConnectorRegistry", "default_registry"]
