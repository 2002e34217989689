"""Source and destination connector contracts."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, ClassVar, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError

from dataforge.exceptions import ConfigurationError
from dataforge.models import DestinationRecord, SinkResult

if TYPE_CHECKING:
    from dataforge.ingestion import RunContext


class ConnectorConfig(BaseModel):
    """Base of every connector's typed configuration."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True, str_strip_whitespace=True)


ConfigT = TypeVar("ConfigT", bound=ConnectorConfig)


def parse_connector_config(model: type[ConfigT], raw: Mapping[str, Any] | None, connector: str) -> ConfigT:
    """Validate a raw configuration mapping, reporting every problem at once."""
    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        raise ConfigurationError(
            f"Invalid {connector} configuration: expected a mapping, got {type(raw).__name__}",
            details={"connector": connector},
        )
    try:
        return model.model_validate(dict(raw))
    except ValidationError as e:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]) or "<root>", "error": err["msg"]}
            for err in e.errors(include_url=False, include_input=False)
        ]
        fields = ", ".join(err["field"] for err in errors)
        raise ConfigurationError(
            f"Invalid {connector} configuration: {fields}",
            details={"connector": connector, "errors": errors},
        ) from e


class Connector(ABC, Generic[ConfigT]):
    """Shared lifecycle: construct, ``initialize(config)``, then ``run``."""

    TYPE: ClassVar[str] = ""
    config_model: ClassVar[type[ConnectorConfig]] = ConnectorConfig

    def __init__(self) -> None:
        self.config: ConfigT | None = None

    def identifier(self) -> str:
        return self.TYPE

    def initialize(self, config: Mapping[str, Any] | None) -> None:
        """Validate configuration and build clients. No network I/O happens before validation passes."""
        parsed = parse_connector_config(self.config_model, config, self.TYPE)
        self.config = parsed
        self.setup(parsed)

    @abstractmethod
    def setup(self, config: ConfigT) -> None:
        """Build clients from a validated configuration."""


class Source(Connector[ConfigT]):
    """Pulls records from an upstream system and publishes them in batches."""

    @abstractmethod
    def run(self, context: "RunContext") -> None:
        """Drive extraction to completion, publishing through ``context``."""


class Destination(Connector[ConfigT]):
    """Writes one batch of records to a downstream system."""

    @abstractmethod
    def run(self, record: DestinationRecord) -> SinkResult:
        """Consume one batch; per-item failures are counted, not raised."""
