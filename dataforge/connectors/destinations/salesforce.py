"""Salesforce destination: bulk upsert of each batch on an external id field."""

from __future__ import annotations

from typing import Any

from pydantic import Field
from requests.exceptions import RequestException
from simple_salesforce import Salesforce
from simple_salesforce.exceptions import SalesforceAuthenticationFailed, SalesforceError

from dataforge.connectors.base import ConnectorConfig, Destination
from dataforge.exceptions import AuthenticationError, SinkError
from dataforge.logging_utils import get_logger, log_operation
from dataforge.models import DestinationRecord, SinkResult

logger = get_logger(__name__)

SALESFORCE_ID = "salesforce"


class SalesforceConfig(ConnectorConfig):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)
    security_token: str = Field(..., min_length=1)
    domain: str = Field(default="login", pattern="^(login|test)$")
    object_name: str = Field(..., min_length=1)
    external_id_field: str = Field(..., min_length=1)
    field_mapping: dict[str, str] = Field(
        default_factory=dict,
        description="Record key -> Salesforce field; unmapped keys are sent unchanged",
    )
    batch_size: int = Field(default=10000, ge=1, le=10000)


def map_record(document: dict[str, Any], field_mapping: dict[str, str]) -> dict[str, Any]:
    return {field_mapping.get(key, key): value for key, value in document.items()}


class SalesforceDestination(Destination[SalesforceConfig]):
    TYPE = SALESFORCE_ID
    config_model = SalesforceConfig

    def __init__(self) -> None:
        super().__init__()
        self.sf: Salesforce | None = None

    def setup(self, config: SalesforceConfig) -> None:
        try:
            self.sf = Salesforce(
                username=config.username,
                password=config.password,
                security_token=config.security_token,
                domain=config.domain,
            )
        except SalesforceAuthenticationFailed as e:
            raise AuthenticationError(f"Salesforce login failed: {e}", details={"username": config.username}) from e

    def run(self, record: DestinationRecord) -> SinkResult:
        if self.sf is None:
            raise SinkError("Salesforce destination used before initialize()")

        result = SinkResult(pipeline_id=record.pipeline_id, total=len(record))
        positions: list[int] = []
        sf_records: list[dict[str, Any]] = []

        for position, document, error in record.iter_json():
            if error is not None or not isinstance(document, dict):
                result.record_failure(position, str(error) if error is not None else "record is not a JSON object")
                continue
            mapped = map_record(document, self.config.field_mapping)
            if mapped.get(self.config.external_id_field) in (None, ""):
                result.record_failure(position, f"missing external id {self.config.external_id_field}")
                continue
            positions.append(position)
            sf_records.append(mapped)

        if not sf_records:
            logger.info("No valid records to upsert", extra=result.to_dict())
            return result

        with log_operation(logger, "salesforce_bulk_upsert", record_count=len(sf_records)):
            try:
                response = self.sf.bulk.__getattr__(self.config.object_name).upsert(
                    sf_records,
                    self.config.external_id_field,
                    batch_size=self.config.batch_size,
                )
            except (SalesforceError, RequestException) as e:
                raise SinkError(
                    f"Salesforce bulk upsert failed: {e}",
                    details={"object": self.config.object_name, "records": len(sf_records)},
                ) from e

        for position, outcome in zip(positions, response):
            if outcome.get("success"):
                result.record_success()
            else:
                result.record_failure(position, str(outcome.get("errors") or "upsert rejected"))

        if result.failed:
            logger.warning("Salesforce upsert errors (sample)", extra={"errors": result.sample_errors})
        logger.info("Salesforce sync complete", extra=result.to_dict())
        return result
