"""Authenticated, paginated HTTP fetches with retry and backoff."""

from __future__ import annotations

import asyncio
import logging
import math
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, Any

import httpx

from edunav.connectors.config import ApiConfig, Connector, PaginationType
from edunav.connectors.credentials import CredentialStore
from edunav.connectors.envelope import extract_records, find_next_cursor
from edunav.connectors.exceptions import InvalidResponseError, TransportError
from edunav.connectors.settings import SyncSettings

if TYPE_CHECKING:
    from edunav.connectors.storage.base import SyncStorage

logger = logging.getLogger(__name__)

# Connect timeout for API requests (in seconds); read timeout comes from settings
CONNECT_TIMEOUT = 10.0

# Characters of a failed response body kept in error messages
ERROR_BODY_LIMIT = 500
INVALID_JSON_SNIPPET_LIMIT = 200

# Transport failures caused by the request itself; every other
# httpx.TransportError (timeouts, dropped connections) is retried
NON_RETRYABLE_REQUEST_ERRORS = (httpx.UnsupportedProtocol, httpx.LocalProtocolError)


def is_retryable_status(status_code: int) -> bool:
    """Return True for statuses worth retrying (429 and 5xx)."""
    return status_code == 429 or status_code >= 500


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Parse a Retry-After header into seconds.

    Accepts delta-seconds (``"5"``) or an HTTP date. Dates in the past
    yield 0.0. Unparsable or non-finite values yield None.
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None

    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        if not math.isfinite(seconds):
            return None
        return max(seconds, 0.0)

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    now = now or datetime.now(UTC)
    return max((when - now).total_seconds(), 0.0)


@dataclass
class RetryPolicy:
    """Bounded exponential backoff.

    Attributes:
        max_attempts: Total attempts per request, including the first.
        base_delay: Backoff base in seconds.
        max_delay: Upper bound on computed backoff delays in seconds.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
        )

    def backoff_delay(self, attempt: int, jitter: bool = True) -> float:
        """Delay before retrying after the given zero-based attempt.

        ``base * 2^attempt`` plus up to half a base of jitter, capped at
        ``max_delay``.
        """
        delay = self.base_delay * (2**attempt)
        if jitter:
            delay += random.uniform(0, self.base_delay * 0.5)
        return min(delay, self.max_delay)

    def delay_for_response(self, attempt: int, response: httpx.Response) -> float:
        """Delay before retrying a retryable response.

        A 429 with a usable Retry-After header waits exactly as long as the
        server asked; everything else falls back to backoff.
        """
        if response.status_code == 429:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            if retry_after is not None:
                return retry_after
        return self.backoff_delay(attempt)


@dataclass(frozen=True)
class PageState:
    """Position in a paginated result set."""

    cursor: str | None = None
    offset: int = 0
    page: int = 1

    def advance(
        self,
        pagination_type: PaginationType,
        records_fetched: int,
        next_cursor: str | None = None,
    ) -> PageState:
        """Return the state for the following page."""
        if pagination_type == PaginationType.OFFSET:
            return replace(self, offset=self.offset + records_fetched)
        if pagination_type == PaginationType.CURSOR:
            return replace(self, cursor=next_cursor)
        if pagination_type == PaginationType.PAGE:
            return replace(self, page=self.page + 1)
        return self


@dataclass
class FetchResult:
    """One fetched page."""

    records: list[Any] = field(default_factory=list)
    raw_body: str = ""
    has_more: bool = False
    next_page: PageState | None = None
    next_cursor: str | None = None
    status_code: int | None = None


def build_request_url(
    base_url: str,
    pagination_type: PaginationType,
    page_state: PageState,
    page_size: int,
) -> str:
    """Merge pagination query parameters into the base URL."""
    url = httpx.URL(base_url)
    params: dict[str, Any]
    if pagination_type == PaginationType.OFFSET:
        params = {"limit": page_size, "offset": page_state.offset}
    elif pagination_type == PaginationType.CURSOR:
        params = {"limit": page_size}
        if page_state.cursor:
            params["cursor"] = page_state.cursor
    elif pagination_type == PaginationType.PAGE:
        params = {"page": page_state.page, "per_page": page_size}
    else:
        return str(url)
    return str(url.copy_merge_params(params))


def build_headers(config: ApiConfig) -> dict[str, str]:
    """Request headers: JSON accept, custom headers, then bearer auth."""
    headers = {"Accept": "application/json", **config.headers}
    token = config.api_key or (config.oauth.access_token if config.oauth else None)
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


class ApiClient:
    """Fetches pages from a connector's configured REST API.

    Retries 429, 5xx and network failures with bounded backoff; every
    retry is logged with its attempt count and delay. Other HTTP errors,
    invalid JSON and OAuth refresh failures are raised immediately.

    Example:
        >>> async with ApiClient(storage) as api:
        ...     page = await api.fetch(connector, PageState())
        ...     print(len(page.records), page.has_more)
    """

    def __init__(
        self,
        storage: SyncStorage,
        settings: SyncSettings | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        credentials: CredentialStore | None = None,
    ):
        """Initialize the API client.

        Args:
            storage: Storage used to persist refreshed OAuth tokens.
            settings: Retry and timeout settings. Defaults to SyncSettings().
            client: Optional HTTP client. Created (and owned) if not provided.
            sleep: Awaitable used between retries. Defaults to asyncio.sleep.
            credentials: Optional credential store. Created if not provided.
        """
        self.settings = settings or SyncSettings()
        self.retry_policy = RetryPolicy.from_settings(self.settings)
        self.timeout = httpx.Timeout(self.settings.request_timeout, connect=CONNECT_TIMEOUT)
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
        self._sleep = sleep or asyncio.sleep
        self.credentials = credentials or CredentialStore(storage, self.client)

    async def __aenter__(self) -> ApiClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self.client.aclose()

    async def fetch(
        self,
        connector: Connector,
        page_state: PageState | None = None,
        page_size: int | None = None,
    ) -> FetchResult:
        """Fetch one page of records.

        Args:
            connector: Connector to fetch from. Its OAuth credentials are
                refreshed in place when about to expire.
            page_state: Pagination position. Defaults to the first page.
            page_size: Page size override. Defaults to the connector's.

        Returns:
            FetchResult with records, the raw body and the next page state.

        Raises:
            OAuthRefreshError: If the OAuth token could not be refreshed.
            TransportError: If the request failed or retries were exhausted.
            InvalidResponseError: If the body is not valid JSON.
        """
        config = connector.config
        page_state = page_state or PageState()
        page_size = page_size or config.page_size

        if config.uses_oauth:
            await self.credentials.ensure_fresh(connector)

        url = build_request_url(config.base_url, config.pagination_type, page_state, page_size)
        response = await self._get_with_retries(url, build_headers(config))

        raw_body = response.text
        try:
            body = response.json()
        except ValueError as e:
            snippet = raw_body[:INVALID_JSON_SNIPPET_LIMIT]
            raise InvalidResponseError(
                f"Invalid JSON response from {url}: {snippet}",
                snippet=snippet,
                status_code=response.status_code,
            ) from e

        records = extract_records(body, config.data_path)
        next_cursor = find_next_cursor(body)
        has_more = (
            config.pagination_type != PaginationType.NONE and len(records) >= page_size
        )
        if config.pagination_type == PaginationType.CURSOR and not next_cursor:
            has_more = False

        next_page = None
        if has_more:
            next_page = page_state.advance(config.pagination_type, len(records), next_cursor)

        return FetchResult(
            records=records,
            raw_body=raw_body,
            has_more=has_more,
            next_page=next_page,
            next_cursor=next_cursor,
            status_code=response.status_code,
        )

    async def _get_with_retries(self, url: str, headers: dict[str, str]) -> httpx.Response:
        max_attempts = max(self.retry_policy.max_attempts, 1)
        last_error: TransportError | None = None

        for attempt in range(max_attempts):
            try:
                response = await self.client.get(url, headers=headers, timeout=self.timeout)
            except NON_RETRYABLE_REQUEST_ERRORS as e:
                raise TransportError(
                    f"Request to {url} failed: {type(e).__name__}: {e}",
                    attempts=attempt + 1,
                ) from e
            except httpx.TransportError as e:
                last_error = TransportError(
                    f"Request to {url} failed: {type(e).__name__}: {e}",
                    retryable=True,
                    attempts=attempt + 1,
                )
                last_error.__cause__ = e
                reason = type(e).__name__
                delay = self.retry_policy.backoff_delay(attempt)
            except httpx.HTTPError as e:
                raise TransportError(
                    f"Request to {url} failed: {type(e).__name__}: {e}",
                    attempts=attempt + 1,
                ) from e
            else:
                if response.is_success:
                    if attempt > 0:
                        logger.info(f"Request to {url} succeeded on attempt {attempt + 1}")
                    return response

                message = (
                    f"API request failed ({response.status_code}): "
                    f"{response.text[:ERROR_BODY_LIMIT]}"
                )
                if not is_retryable_status(response.status_code):
                    raise TransportError(
                        message, status_code=response.status_code, attempts=attempt + 1
                    )
                last_error = TransportError(
                    message,
                    status_code=response.status_code,
                    retryable=True,
                    attempts=attempt + 1,
                )
                reason = f"HTTP {response.status_code}"
                delay = self.retry_policy.delay_for_response(attempt, response)

            if attempt + 1 >= max_attempts:
                break
            logger.warning(
                f"Request to {url} failed with {reason} "
                f"(attempt {attempt + 1}/{max_attempts}), retrying in {delay:.2f}s"
            )
            await self._sleep(delay)

        logger.error(f"Request to {url} failed after {max_attempts} attempts")
        raise last_error
