"""Pytest fixtures for shared-connectors tests."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest
from edunav.connectors.config import (
    ApiConfig,
    Connector,
    ConnectorMapping,
    IntegrationType,
    PaginationType,
)
from edunav.connectors.settings import SyncSettings
from edunav.connectors.storage.memory import InMemorySyncStorage
from edunav.connectors.transport import ApiClient

BASE_URL = "https://api.example.com/v1/contacts"


class RecordingHandler:
    """httpx.MockTransport handler that replays queued responses.

    Each queued item is an httpx.Response, an exception to raise, or a
    callable taking the request. Requests are recorded for assertions.
    """

    def __init__(self, *responses: Any):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def queue(self, *responses: Any) -> None:
        self.responses.extend(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.responses:
            raise AssertionError(f"Unexpected request: {request.method} {request.url}")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(request)
        return item


def make_connector(
    connector_id: str = "c-crm",
    integration_type: IntegrationType = IntegrationType.CRM,
    **config: Any,
) -> Connector:
    """Build a connector with an API-key configuration."""
    config.setdefault("base_url", BASE_URL)
    config.setdefault("api_key", "test-key")
    return Connector(
        id=connector_id,
        name=f"Test {integration_type.value} connector",
        type=integration_type,
        config=ApiConfig(**config),
    )


@pytest.fixture
def storage() -> InMemorySyncStorage:
    """Empty in-memory storage."""
    return InMemorySyncStorage()


@pytest.fixture
def settings() -> SyncSettings:
    """Settings with small backoff values."""
    return SyncSettings(max_attempts=3, base_delay=0.01, max_delay=0.05)


@pytest.fixture
def offset_connector() -> Connector:
    """CRM connector paginating by offset with two records per page."""
    return make_connector(pagination_type=PaginationType.OFFSET, page_size=2)


@pytest.fixture
def seeded_storage(
    storage: InMemorySyncStorage, offset_connector: Connector
) -> InMemorySyncStorage:
    """Storage holding the offset connector and a name -> full_name mapping."""
    storage.add_connector(offset_connector)
    storage.add_mapping(ConnectorMapping(offset_connector.id, "name", "full_name"))
    return storage


@pytest.fixture
def make_api_client(
    settings: SyncSettings,
) -> Callable[..., ApiClient]:
    """Factory for ApiClient instances backed by httpx.MockTransport."""

    def _make(
        storage: InMemorySyncStorage,
        handler: Callable[[httpx.Request], httpx.Response],
        sleep: AsyncMock | None = None,
    ) -> ApiClient:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return ApiClient(storage, settings, client=client, sleep=sleep or AsyncMock())

    return _make


@pytest.fixture
def connector_factory() -> Callable[..., Connector]:
    """Factory for connectors with an API-key configuration."""
    return make_connector


@pytest.fixture
def handler_factory() -> type[RecordingHandler]:
    """Factory for recording MockTransport handlers."""
    return RecordingHandler
