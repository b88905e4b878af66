"""Client for the Mysolution recruitment CRM job API."""

from datetime import datetime
from typing import Any, Callable

import requests
import structlog
from requests.exceptions import ConnectionError, RequestException, Timeout

from jobsync.clients.base import SourceClient
from jobsync.errors import NotFoundError, SourceError, TransientNetworkError
from jobsync.models.config import SourceConfig
from jobsync.models.records import SourceRecord
from jobsync.utils.retry import linear_backoff_retry
from jobsync.utils.timestamps import format_timestamp

log = structlog.stdlib.get_logger()

JOBS_PATH = "/services/apexrest/msf/api/job/Get"

# The API documents none of these; each is tried since deployments differ.
CHANGED_SINCE_PARAMS = ("lastModifiedDate", "modifiedSince", "modifiedAfter", "updatedSince")

TokenProvider = Callable[[], str]


class MysolutionClient(SourceClient):
    """Reads job vacancies from the CRM REST API."""

    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider,
        timeout_seconds: float = 30.0,
        retry_attempts: int = 3,
        retry_delay_seconds: float = 1.0,
        session: requests.Session | None = None,
    ):
        """
        Initialize the CRM client.

        Args:
            base_url: Base URL of the CRM instance
            token_provider: Callable returning a valid bearer token
            timeout_seconds: Timeout for each HTTP call
            retry_attempts: Attempts for timeouts and connection errors
            retry_delay_seconds: Linear backoff step
            session: Optional requests session (for connection reuse and tests)
        """
        self._base_url = base_url.rstrip("/")
        self._token_provider = token_provider
        self._timeout = timeout_seconds
        self._retry_attempts = retry_attempts
        self._retry_delay = retry_delay_seconds
        self._session = session or requests.Session()

        log.info("mysolution_client_initialized", base_url=self._base_url)

    @classmethod
    def from_config(cls, config: SourceConfig, session: requests.Session | None = None):
        token = config.auth_token
        return cls(
            base_url=str(config.api_url),
            token_provider=lambda: token,
            timeout_seconds=config.timeout_seconds,
            retry_attempts=config.retry_attempts,
            retry_delay_seconds=config.retry_delay_seconds,
            session=session,
        )

    def fetch_all(self) -> list[SourceRecord]:
        log.info("fetching_source_jobs")
        records = self._convert(self._get_jobs())
        log.info("source_jobs_fetched", count=len(records))
        return records

    def fetch_changed_since(self, since: datetime) -> list[SourceRecord]:
        formatted = format_timestamp(since)
        params = {name: formatted for name in CHANGED_SINCE_PARAMS}

        log.info("fetching_changed_source_jobs", since=formatted)
        records = self._convert(self._get_jobs(params))
        log.info("changed_source_jobs_fetched", since=formatted, count=len(records))
        return records

    def fetch_by_id(self, record_id: str) -> SourceRecord:
        """
        Fetch a single vacancy.

        The API has no lookup by id, so the full list is fetched and searched.

        Raises:
            NotFoundError: If no vacancy has the given id
        """
        for raw in self._get_jobs():
            if raw.get("Id") == record_id:
                return SourceRecord.from_source(raw)

        log.info("source_job_not_found", source_id=record_id)
        raise NotFoundError(f"Job {record_id} not found in source")

    def _get_jobs(self, params: dict[str, str] | None = None) -> list[dict[str, Any]]:
        fetch = linear_backoff_retry(
            max_attempts=self._retry_attempts,
            delay=self._retry_delay,
            exceptions=(TransientNetworkError,),
        )(self._request_jobs)
        try:
            return fetch(params)
        except TransientNetworkError as e:
            raise SourceError(f"CRM unreachable after {self._retry_attempts} attempts: {e}") from e

    def _request_jobs(self, params: dict[str, str] | None) -> list[dict[str, Any]]:
        url = f"{self._base_url}{JOBS_PATH}"
        try:
            response = self._session.get(
                url,
                params=params,
                headers={
                    "Authorization": f"Bearer {self._token_provider()}",
                    "Accept": "application/json",
                },
                timeout=self._timeout,
            )
        except (Timeout, ConnectionError) as e:
            raise TransientNetworkError(f"CRM request failed: {e}") from e
        except RequestException as e:
            log.error("source_request_failed", url=url, error=str(e))
            raise SourceError(f"CRM request failed: {e}") from e

        if response.status_code >= 500:
            raise TransientNetworkError(f"CRM returned HTTP {response.status_code}")
        if not response.ok:
            log.error(
                "source_request_rejected",
                url=url,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise SourceError(f"CRM returned HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as e:
            raise SourceError("CRM returned a non-JSON response") from e

        if not isinstance(payload, list):
            raise SourceError(f"Unexpected CRM response type: {type(payload).__name__}")
        return payload

    def _convert(self, payload: list[dict[str, Any]]) -> list[SourceRecord]:
        records = []
        for raw in payload:
            try:
                records.append(SourceRecord.from_source(raw))
            except ValueError as e:
                log.warning("failed_to_convert_job", source_id=raw.get("Id"), error=str(e))
                continue
        return records
