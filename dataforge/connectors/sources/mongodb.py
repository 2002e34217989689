"""MongoDB Atlas source: incremental pull of project events from the Admin API."""

from __future__ import annotations

from datetime import datetime, timezone

import requests
from pydantic import Field, field_validator

from dataforge.auth import TokenAuthenticator
from dataforge.connectors.base import ConnectorConfig, Source
from dataforge.exceptions import APIResponseError, ExtractionError
from dataforge.http import create_http_session, fetch_page
from dataforge.ingestion import RunContext, drain_pages
from dataforge.logging_utils import get_logger, log_operation
from dataforge.models import IncrementalState

logger = get_logger(__name__)

MONGODB_ID = "mongodb"
BASE_URL = "https://cloud.mongodb.com/api/atlas/v2"
TOKEN_URL = "https://cloud.mongodb.com/api/oauth/token"
PROJECTS_PATH = "/groups"
PROJECT_EVENTS_PATH = "/groups/{project_id}/events"
ATLAS_ACCEPT = "application/vnd.atlas.2024-08-05+json"


class MongoDBConfig(ConnectorConfig):
    client_id: str = Field(..., min_length=1)
    client_secret: str = Field(..., min_length=1)
    base_url: str = Field(default=BASE_URL)
    token_url: str = Field(default=TOKEN_URL)
    timeout_seconds: int = Field(default=10, ge=1, le=300)
    max_retries: int = Field(default=3, ge=0, le=10)

    @field_validator("base_url", "token_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        v = v.rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError("must start with http:// or https://")
        return v


class AtlasClient:
    """Thin Atlas Admin API client; authentication comes from the session."""

    def __init__(self, session: requests.Session, base_url: str = BASE_URL, timeout: int = 10):
        self.session = session
        self.base_url = base_url
        self.timeout = timeout
        self.headers = {"Content-Type": "application/json", "Accept": ATLAS_ACCEPT}

    def _results(self, url: str, params: dict) -> list:
        body = fetch_page(self.session, url, params=params, headers=self.headers, timeout=self.timeout)
        if not isinstance(body, dict):
            raise APIResponseError(f"Unexpected response type: {type(body).__name__}", details={"url": url})
        results = body.get("results") or []
        if not isinstance(results, list):
            raise APIResponseError(f"results is not a list (got {type(results).__name__})", details={"url": url})
        return results

    def get_project_ids(self) -> list[str]:
        results = self._results(f"{self.base_url}{PROJECTS_PATH}", params={})
        return [str(project["id"]) for project in results if project.get("id")]

    def get_project_events_page(self, project_id: str, min_date: datetime, page_number: int) -> list[dict]:
        url = f"{self.base_url}{PROJECT_EVENTS_PATH.format(project_id=project_id)}"
        params = {
            "minDate": min_date.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "pageNum": page_number,
        }
        return self._results(url, params=params)


class MongoDBSource(Source[MongoDBConfig]):
    """Pages through every project's events newer than the stored cursor."""

    TYPE = MONGODB_ID
    config_model = MongoDBConfig

    def __init__(self) -> None:
        super().__init__()
        self.client: AtlasClient | None = None

    def setup(self, config: MongoDBConfig) -> None:
        authenticator = TokenAuthenticator(
            token_url=config.token_url,
            client_id=config.client_id,
            client_secret=config.client_secret,
            timeout=config.timeout_seconds,
        )
        session = create_http_session(max_retries=config.max_retries, auth=authenticator)
        self.client = AtlasClient(session, base_url=config.base_url, timeout=config.timeout_seconds)

    def run(self, context: RunContext) -> None:
        if self.client is None:
            raise ExtractionError("MongoDB source used before initialize()")

        # Next run starts from the moment this one started, not when it finished.
        current_sync_time = datetime.now(timezone.utc)
        state = context.load_state(now=current_sync_time)

        project_ids = self.client.get_project_ids()
        logger.info(
            "Fetched Atlas projects",
            extra={"project_count": len(project_ids), "min_date": state.last_sync_time},
        )

        for project_id in project_ids:
            with log_operation(logger, "project_events_pull", project_id=project_id):
                drain_pages(
                    lambda page: self.client.get_project_events_page(project_id, state.last_sync_time, page),
                    context,
                    resource=project_id,
                )

        context.save_state(IncrementalState(last_sync_time=current_sync_time))
