"""Connector pipeline: sources publish batches on a bus, dispatch writes them to destinations."""

from dataforge.config import DataforgeConfig, get_config
from dataforge.exceptions import ConfigurationError, DataforgeError
from dataforge.models import Binding, DestinationRecord, RunMetrics, RunStatus, SinkResult
from dataforge.ingestion import PipelineRunner
from dataforge.dispatch import Dispatcher
from dataforge.cli import main

__all__ = [
    "DataforgeConfig",
    "get_config",
    "DataforgeError",
    "ConfigurationError",
    "Binding",
    "DestinationRecord",
    "RunMetrics",
    "RunStatus",
    "SinkResult",
    "PipelineRunner",
    "Dispatcher",
    "main",
]
