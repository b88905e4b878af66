"""Client for the Webflow CMS v2 collections API."""

import re
import threading
import time
from typing import Any, Callable

import requests
import structlog
from requests.exceptions import ConnectionError, RequestException, Timeout

from jobsync.clients.base import TargetClient
from jobsync.errors import (
    NotFoundError,
    RateLimitError,
    TargetError,
    TargetValidationError,
    TransientNetworkError,
)
from jobsync.models.config import TargetConfig
from jobsync.models.records import PublishResult, TargetRecord, UpsertResult
from jobsync.sync.gateway import GatewayResponse, RateLimitedGateway
from jobsync.utils.retry import linear_backoff_retry
from jobsync.utils.timestamps import utc_now

log = structlog.stdlib.get_logger()

PAGE_SIZE = 100
SECTOR_CACHE_TTL_SECONDS = 3600.0


def normalize_name(name: str) -> str:
    """Case- and whitespace-insensitive key for display names."""
    return re.sub(r"\s+", " ", name).strip().lower()


class WebflowClient(TargetClient):
    """
    Mirrors records into a Webflow collection.

    Every HTTP call goes through the rate-limited gateway; timeouts and
    connection errors are retried here with linear backoff.
    """

    def __init__(
        self,
        api_url: str,
        api_token: str,
        site_id: str,
        jobs_collection_id: str,
        gateway: RateLimitedGateway,
        sectors_collection_id: str | None = None,
        timeout_seconds: float = 30.0,
        retry_attempts: int = 3,
        retry_delay_seconds: float = 1.0,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the CMS client.

        Args:
            api_url: Base URL of the CMS API
            api_token: Bearer token for the CMS API
            site_id: Site that is published
            jobs_collection_id: Collection mirroring the vacancies
            gateway: Rate-limited gateway every call goes through
            sectors_collection_id: Collection holding sector items, if any
            timeout_seconds: Timeout for each HTTP call
            retry_attempts: Attempts for timeouts, connection errors and 5xx
            retry_delay_seconds: Linear backoff step
            session: Optional requests session (for connection reuse and tests)
            clock: Monotonic clock for the sector cache
        """
        self._api_url = api_url.rstrip("/")
        self._site_id = site_id
        self._jobs_collection_id = jobs_collection_id
        self._sectors_collection_id = sectors_collection_id
        self._gateway = gateway
        self._timeout = timeout_seconds
        self._retry_attempts = retry_attempts
        self._retry_delay = retry_delay_seconds
        self._clock = clock

        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {api_token}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            }
        )

        self._sector_lock = threading.Lock()
        self._sector_cache: dict[str, str] = {}
        self._sector_cache_loaded_at: float | None = None

        log.info(
            "webflow_client_initialized",
            api_url=self._api_url,
            site_id=site_id,
            jobs_collection_id=jobs_collection_id,
        )

    @classmethod
    def from_config(
        cls,
        config: TargetConfig,
        gateway: RateLimitedGateway | None = None,
        session: requests.Session | None = None,
    ) -> "WebflowClient":
        """Build a client from config; a gateway is created unless one is given."""
        return cls(
            api_url=str(config.api_url),
            api_token=config.api_token,
            site_id=config.site_id,
            jobs_collection_id=config.jobs_collection_id,
            sectors_collection_id=config.sectors_collection_id,
            gateway=gateway or RateLimitedGateway(capacity=config.rate_limit_per_minute),
            timeout_seconds=config.timeout_seconds,
            retry_attempts=config.retry_attempts,
            retry_delay_seconds=config.retry_delay_seconds,
            session=session,
        )

    def fetch_all_mirrored(self) -> list[TargetRecord]:
        """
        Fetch every item of the jobs collection, archived ones included.

        Items that cannot be converted are logged and skipped.

        Returns:
            All mirrored items
        """
        items = self._fetch_all_items(self._jobs_collection_id)
        records = []
        for raw in items:
            try:
                records.append(TargetRecord.from_target(raw))
            except (KeyError, ValueError) as e:
                log.warning("failed_to_convert_item", item_id=raw.get("id"), error=str(e))
        log.info("target_items_fetched", count=len(records))
        return records

    def upsert(
        self, source_id: str, payload: dict[str, Any], target_id: str | None = None
    ) -> UpsertResult:
        """
        Create an item, or update and unarchive an existing one.

        Args:
            source_id: Source id the payload was built from
            payload: Field data of the item
            target_id: Existing item to update; None creates a new item

        Returns:
            Id of the item and whether it was created or updated

        Raises:
            NotFoundError: If ``target_id`` no longer exists
            TargetValidationError: If the CMS rejects the field data
            TargetError: If the CMS refuses the call otherwise
        """
        path = f"/collections/{self._jobs_collection_id}/items"
        if target_id:
            body = {"fieldData": payload, "isDraft": False, "isArchived": False}
            response = self._request("PATCH", f"{path}/{target_id}", json=body)
            return UpsertResult(id=str(response.get("id") or target_id), action="updated")

        body = {"fieldData": payload, "isDraft": False}
        response = self._request("POST", path, json=body)
        item_id = response.get("id")
        if not item_id:
            raise TargetError(f"Create for {source_id} returned no item id")
        return UpsertResult(id=str(item_id), action="created")

    def archive(self, target_id: str) -> None:
        """Soft-delete an item by setting its archived flag.

        Raises:
            NotFoundError: If the item no longer exists
        """
        self._request(
            "PATCH",
            f"/collections/{self._jobs_collection_id}/items/{target_id}",
            json={"isArchived": True},
        )

    def publish(self, reason: str) -> PublishResult:
        """
        Publish the site.

        Args:
            reason: Why the publish was requested, echoed in the result

        Returns:
            Time of the publish and its reason
        """
        # Only the webflow.io subdomain; custom domains are published by hand.
        self._request(
            "POST",
            f"/sites/{self._site_id}/publish",
            json={"publishToWebflowSubdomain": True},
        )
        return PublishResult(published_at=utc_now(), reason=reason)

    def resolve_reference(self, collection: str, name: str) -> str | None:
        """Resolve a sector name to its item id, using an hourly refreshed cache."""
        if collection != "sectors" or not self._sectors_collection_id or not name:
            return None

        with self._sector_lock:
            now = self._clock()
            stale = (
                self._sector_cache_loaded_at is None
                or now - self._sector_cache_loaded_at > SECTOR_CACHE_TTL_SECONDS
            )
            if stale:
                items = self._fetch_all_items(self._sectors_collection_id)
                self._sector_cache = {}
                for item in items:
                    item_name = (item.get("fieldData") or {}).get("name")
                    if item_name and item.get("id"):
                        self._sector_cache[normalize_name(item_name)] = str(item["id"])
                self._sector_cache_loaded_at = now
                log.info("sector_cache_refreshed", count=len(self._sector_cache))

            return self._sector_cache.get(normalize_name(name))

    def _fetch_all_items(self, collection_id: str) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        offset = 0
        while True:
            page = self._request(
                "GET",
                f"/collections/{collection_id}/items",
                params={"limit": PAGE_SIZE, "offset": offset},
            )
            batch = page.get("items") or []
            items.extend(batch)

            total = (page.get("pagination") or {}).get("total")
            offset += len(batch)
            if not batch or len(batch) < PAGE_SIZE or (total is not None and offset >= total):
                break

        log.debug("collection_items_fetched", collection_id=collection_id, count=len(items))
        return items

    def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        call = linear_backoff_retry(
            max_attempts=self._retry_attempts,
            delay=self._retry_delay,
            exceptions=(TransientNetworkError,),
        )(self._gateway.call)
        return call(lambda: self._send(method, path, **kwargs))

    def _send(self, method: str, path: str, **kwargs) -> GatewayResponse:
        url = f"{self._api_url}{path}"
        try:
            response = self._session.request(method, url, timeout=self._timeout, **kwargs)
        except (Timeout, ConnectionError) as e:
            raise TransientNetworkError(f"{method} {path} failed: {e}") from e
        except RequestException as e:
            raise TargetError(f"{method} {path} failed: {e}") from e

        remaining = _int_header(response, "x-ratelimit-remaining")
        reset_after = _reset_after(response)

        if response.status_code == 429:
            log.warning("target_rate_limited", method=method, path=path, reset_after=reset_after)
            raise RateLimitError(f"Rate limited on {method} {path}", reset_after=reset_after)
        if response.status_code == 404:
            raise NotFoundError(f"{method} {path} returned 404")
        if response.status_code in (400, 422):
            detail = _error_detail(response)
            raise TargetValidationError(f"{method} {path} rejected", detail=detail)
        if response.status_code in (401, 403):
            raise TargetError(f"{method} {path} not authorized (HTTP {response.status_code})")
        if response.status_code >= 500:
            raise TransientNetworkError(f"{method} {path} returned HTTP {response.status_code}")
        if not response.ok:
            raise TargetError(f"{method} {path} returned HTTP {response.status_code}")

        body: dict[str, Any] = {}
        if response.content:
            try:
                body = response.json()
            except ValueError as e:
                raise TargetError(f"{method} {path} returned a non-JSON response") from e

        return GatewayResponse(value=body, remaining=remaining, reset_after=reset_after)


def _int_header(response: requests.Response, name: str) -> int | None:
    value = response.headers.get(name)
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None


def _reset_after(response: requests.Response) -> float | None:
    """Seconds until the quota resets; the header carries an epoch timestamp."""
    reset = _int_header(response, "x-ratelimit-reset")
    if reset is None:
        return None
    return max(reset - time.time(), 0.0)


def _error_detail(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:500]
