"""Pipeline binding: durable pipeline -> source/destination routing."""

from __future__ import annotations

from dataforge.bus import KeyValueStore
from dataforge.exceptions import BindingError, BindingNotFoundError, BusError
from dataforge.logging_utils import get_logger
from dataforge.models import Binding

logger = get_logger(__name__)

SOURCE_ROLE = "source"
DESTINATION_ROLE = "destination"


def binding_key(pipeline_id: int, role: str) -> str:
    return f"{int(pipeline_id)}-{role}"


def encode_id(entity_id: int) -> bytes:
    return str(int(entity_id)).encode("ascii")


def decode_id(value: bytes, key: str) -> int:
    try:
        return int(value.decode("ascii"), 10)
    except (UnicodeDecodeError, ValueError) as e:
        raise BindingError(
            f"Binding {key!r} does not hold a decimal id",
            details={"key": key, "value": value[:32]},
        ) from e


class PipelineRouter:
    """Resolve which source feeds a pipeline and which destination it feeds.

    Bindings are written once, when a pipeline is created, and must exist
    before the pipeline is started. Both roles use the decimal string form
    of the entity id.
    """

    def __init__(self, kv: KeyValueStore):
        self.kv = kv

    def bind(self, pipeline_id: int, source_id: int, destination_id: int) -> Binding:
        # Destination first: once "-source" exists the pipeline can be started.
        self._put(pipeline_id, DESTINATION_ROLE, destination_id)
        self._put(pipeline_id, SOURCE_ROLE, source_id)
        logger.info(
            "Pipeline bound",
            extra={"pipeline_id": pipeline_id, "source_id": source_id, "destination_id": destination_id},
        )
        return Binding(pipeline_id=pipeline_id, source_id=source_id, destination_id=destination_id)

    def resolve_source(self, pipeline_id: int) -> int:
        return self._get(pipeline_id, SOURCE_ROLE)

    def resolve_destination(self, pipeline_id: int) -> int:
        return self._get(pipeline_id, DESTINATION_ROLE)

    def resolve(self, pipeline_id: int) -> Binding:
        return Binding(
            pipeline_id=pipeline_id,
            source_id=self.resolve_source(pipeline_id),
            destination_id=self.resolve_destination(pipeline_id),
        )

    def _put(self, pipeline_id: int, role: str, entity_id: int) -> None:
        key = binding_key(pipeline_id, role)
        try:
            self.kv.put(key, encode_id(entity_id))
        except BusError as e:
            raise BindingError(f"Failed to write binding {key!r}", details=e.details) from e

    def _get(self, pipeline_id: int, role: str) -> int:
        key = binding_key(pipeline_id, role)
        try:
            value = self.kv.get(key)
        except BusError as e:
            raise BindingError(f"Failed to read binding {key!r}", details=e.details) from e
        if value is None:
            raise BindingNotFoundError(
                f"Pipeline {pipeline_id} has no {role} binding",
                details={"pipeline_id": pipeline_id, "key": key},
            )
        return decode_id(value, key)
