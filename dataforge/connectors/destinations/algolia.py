"""Algolia destination: saves each record of a batch as an index object."""

from __future__ import annotations

import hashlib
import json
from urllib.parse import quote

from pydantic import Field, model_validator

from dataforge.auth import StaticKeyAuthenticator, TokenAuthenticator
from dataforge.connectors.base import ConnectorConfig, Destination
from dataforge.exceptions import APIConnectionError, APIError, APITimeoutError, AuthenticationError, SinkError
from dataforge.http import create_http_session, request_json
from dataforge.logging_utils import get_logger
from dataforge.models import DestinationRecord, SinkResult

logger = get_logger(__name__)

ALGOLIA_ID = "algolia"
API_KEY_HEADER = "X-Algolia-API-Key"
APPLICATION_ID_HEADER = "X-Algolia-Application-Id"


class AlgoliaConfig(ConnectorConfig):
    app_id: str = Field(..., min_length=1)
    index_name: str = Field(..., alias="indexName", min_length=1)
    api_key: str | None = None
    token_url: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    host: str | None = None
    timeout_seconds: int = Field(default=10, ge=1, le=300)
    max_retries: int = Field(default=3, ge=0, le=10)

    @model_validator(mode="after")
    def require_credentials(self) -> "AlgoliaConfig":
        if self.api_key:
            return self
        if not (self.token_url and self.client_id and self.client_secret):
            raise ValueError("api_key or token_url, client_id and client_secret are required")
        return self

    @property
    def base_url(self) -> str:
        return (self.host or f"https://{self.app_id}.algolia.net").rstrip("/")


def default_object_id(pipeline_id: int, document: dict) -> str:
    """Stable object id for documents that carry none: same content, same object."""
    digest = hashlib.sha1(json.dumps(document, sort_keys=True, default=str).encode("utf-8")).hexdigest()
    return f"{ALGOLIA_ID}-{pipeline_id}-{digest[:16]}"


class AlgoliaDestination(Destination[AlgoliaConfig]):
    TYPE = ALGOLIA_ID
    config_model = AlgoliaConfig

    def __init__(self) -> None:
        super().__init__()
        self.session = None

    def setup(self, config: AlgoliaConfig) -> None:
        if config.api_key:
            auth = StaticKeyAuthenticator(config.api_key, header_name=API_KEY_HEADER)
        else:
            auth = TokenAuthenticator(
                token_url=config.token_url,
                client_id=config.client_id,
                client_secret=config.client_secret,
                timeout=config.timeout_seconds,
                header_name=API_KEY_HEADER,
                scheme=None,
            )
        self.session = create_http_session(
            max_retries=config.max_retries,
            auth=auth,
            allowed_methods=("GET", "PUT"),
        )
        self.session.headers[APPLICATION_ID_HEADER] = config.app_id

    def object_url(self, object_id: str) -> str:
        return (
            f"{self.config.base_url}/1/indexes/{quote(self.config.index_name, safe='')}"
            f"/{quote(object_id, safe='')}"
        )

    def save_object(self, document: dict) -> dict | list:
        return request_json(
            self.session,
            "PUT",
            self.object_url(str(document["objectID"])),
            timeout=self.config.timeout_seconds,
            json_body=document,
        )

    def run(self, record: DestinationRecord) -> SinkResult:
        if self.session is None:
            raise SinkError("Algolia destination used before initialize()")

        logger.info(f"Processing record with PipelineID: {record.pipeline_id}")
        result = SinkResult(pipeline_id=record.pipeline_id, total=len(record))
        transport_failures = 0

        for position, document, error in record.iter_json():
            if error is not None or not isinstance(document, dict):
                reason = str(error) if error is not None else "record is not a JSON object"
                logger.warning(f"Failed to unmarshal record: {reason}", extra={"position": position})
                result.record_failure(position, reason)
                continue

            document.setdefault("objectID", default_object_id(record.pipeline_id, document))
            try:
                self.save_object(document)
            except AuthenticationError as e:
                raise SinkError(f"Algolia authentication failed: {e}", details={"app_id": self.config.app_id}) from e
            except APIError as e:
                if isinstance(e, (APIConnectionError, APITimeoutError)):
                    transport_failures += 1
                logger.warning(
                    f"Failed to index document in Algolia: {e}",
                    extra={"object_id": document["objectID"], "position": position},
                )
                result.record_failure(position, str(e))
                continue

            result.record_success()
            logger.debug("Indexed document in Algolia", extra={"object_id": document["objectID"]})

        logger.info("Algolia batch complete", extra=result.to_dict())
        if result.total and result.succeeded == 0 and transport_failures:
            raise SinkError(
                f"Algolia unreachable for pipeline {record.pipeline_id}",
                details={"index": self.config.index_name, "failed": result.failed},
            )
        return result
