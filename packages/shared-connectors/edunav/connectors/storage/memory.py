"""In-process storage backend."""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

from edunav.connectors.config import (
    ApiConfig,
    Connector,
    ConnectorMapping,
    NormalizedRecord,
    OAuthCredentials,
    RawIngestFile,
    SyncRun,
    TargetEntity,
)
from edunav.connectors.storage.base import SyncStorage

logger = logging.getLogger(__name__)

_SYNC_RUN_FIELDS = {
    "status",
    "started_at",
    "finished_at",
    "records_in",
    "records_out",
    "error",
}


class InMemorySyncStorage(SyncStorage):
    """Dictionary-backed storage.

    Suitable for tests, dry runs and local development. All state lives in
    the instance; objects are copied on the way in and out so callers never
    share mutable state with the store.

    Example:
        >>> storage = InMemorySyncStorage()
        >>> storage.add_connector(connector)
        >>> storage.add_mapping(ConnectorMapping("c1", "name", "full_name"))
    """

    def __init__(self) -> None:
        self._connectors: dict[str, Connector] = {}
        self._mappings: dict[str, list[ConnectorMapping]] = {}
        self._runs: dict[str, SyncRun] = {}
        self._raw_files: dict[str, RawIngestFile] = {}
        self._records: dict[TargetEntity, dict[tuple[str, str], NormalizedRecord]] = {
            entity: {} for entity in TargetEntity
        }
        self._lock = asyncio.Lock()

    # Seeding helpers

    def add_connector(self, connector: Connector) -> Connector:
        """Store a connector."""
        now = datetime.now(UTC)
        stored = copy.deepcopy(connector)
        stored.created_at = stored.created_at or now
        stored.updated_at = stored.updated_at or now
        self._connectors[stored.id] = stored
        return copy.deepcopy(stored)

    def add_mapping(self, mapping: ConnectorMapping) -> ConnectorMapping:
        """Store a mapping, assigning an id if needed."""
        stored = replace(mapping, id=mapping.id or str(uuid.uuid4()))
        self._mappings.setdefault(stored.connector_id, []).append(stored)
        return stored

    # Connectors

    async def get_connector(self, connector_id: str) -> Connector | None:
        connector = self._connectors.get(connector_id)
        return copy.deepcopy(connector) if connector else None

    async def update_connector(
        self,
        connector_id: str,
        *,
        config: ApiConfig | None = None,
        is_active: bool | None = None,
    ) -> Connector | None:
        async with self._lock:
            connector = self._connectors.get(connector_id)
            if connector is None:
                return None
            if config is not None:
                connector.config = copy.deepcopy(config)
            if is_active is not None:
                connector.is_active = is_active
            connector.updated_at = datetime.now(UTC)
            return copy.deepcopy(connector)

    async def swap_oauth_credentials(
        self,
        connector_id: str,
        expected_generation: int,
        oauth: OAuthCredentials,
    ) -> bool:
        async with self._lock:
            connector = self._connectors.get(connector_id)
            if connector is None:
                return False
            current = connector.config.oauth
            current_generation = current.generation if current else 0
            if current_generation != expected_generation:
                return False
            connector.config.oauth = copy.deepcopy(oauth)
            connector.updated_at = datetime.now(UTC)
            return True

    async def acquire_run_slot(
        self,
        connector_id: str,
        owner_id: str,
        stale_before: datetime | None = None,
    ) -> bool:
        async with self._lock:
            connector = self._connectors.get(connector_id)
            if connector is None:
                return False
            if connector.active_run_id is not None:
                held_since = connector.active_run_started_at
                is_stale = (
                    stale_before is not None
                    and held_since is not None
                    and held_since < stale_before
                )
                if not is_stale:
                    return False
                logger.warning(
                    f"Taking over stale run slot on connector {connector_id} "
                    f"held by {connector.active_run_id} since {held_since.isoformat()}"
                )
            connector.active_run_id = owner_id
            connector.active_run_started_at = datetime.now(UTC)
            return True

    async def renew_run_slot(self, connector_id: str, owner_id: str) -> bool:
        async with self._lock:
            connector = self._connectors.get(connector_id)
            if connector is None or connector.active_run_id != owner_id:
                return False
            connector.active_run_started_at = datetime.now(UTC)
            return True

    async def release_run_slot(self, connector_id: str, owner_id: str) -> None:
        async with self._lock:
            connector = self._connectors.get(connector_id)
            if connector is not None and connector.active_run_id == owner_id:
                connector.active_run_id = None
                connector.active_run_started_at = None

    async def get_connector_mappings(self, connector_id: str) -> list[ConnectorMapping]:
        return [
            copy.deepcopy(mapping)
            for mapping in self._mappings.get(connector_id, [])
            if mapping.is_active
        ]

    # Sync runs

    async def get_sync_run(self, run_id: str) -> SyncRun | None:
        run = self._runs.get(run_id)
        return copy.deepcopy(run) if run else None

    async def list_sync_runs(self, connector_id: str, limit: int = 20) -> list[SyncRun]:
        runs = [run for run in self._runs.values() if run.connector_id == connector_id]
        runs.sort(key=lambda run: run.created_at or datetime.min.replace(tzinfo=UTC), reverse=True)
        return [copy.deepcopy(run) for run in runs[:limit]]

    async def create_sync_run(self, run: SyncRun) -> SyncRun:
        stored = copy.deepcopy(run)
        stored.created_at = stored.created_at or datetime.now(UTC)
        self._runs[stored.id] = stored
        return copy.deepcopy(stored)

    async def update_sync_run(self, run_id: str, **fields: Any) -> SyncRun | None:
        unknown = set(fields) - _SYNC_RUN_FIELDS
        if unknown:
            raise ValueError(f"Unknown sync run fields: {', '.join(sorted(unknown))}")
        run = self._runs.get(run_id)
        if run is None:
            return None
        for name, value in fields.items():
            setattr(run, name, copy.deepcopy(value))
        return copy.deepcopy(run)

    # Raw ingest files

    async def create_raw_ingest_file(self, raw_file: RawIngestFile) -> RawIngestFile:
        if raw_file.id in self._raw_files:
            raise ValueError(f"Raw ingest file already exists: {raw_file.id}")
        stored = replace(raw_file, created_at=raw_file.created_at or datetime.now(UTC))
        self._raw_files[stored.id] = stored
        return stored

    async def get_raw_ingest_file(self, file_id: str) -> RawIngestFile | None:
        return self._raw_files.get(file_id)

    async def list_raw_ingest_files(self, connector_id: str) -> list[RawIngestFile]:
        return [f for f in self._raw_files.values() if f.connector_id == connector_id]

    # Normalized records

    async def upsert_record(
        self, entity: TargetEntity, record: NormalizedRecord
    ) -> NormalizedRecord:
        now = datetime.now(UTC)
        records = self._records[entity]
        existing = records.get(record.key)
        if existing is None:
            stored = replace(
                record,
                id=record.id or str(uuid.uuid4()),
                payload=copy.deepcopy(record.payload),
                created_at=now,
                updated_at=now,
            )
        else:
            stored = replace(
                existing,
                payload=copy.deepcopy(record.payload),
                school_id=record.school_id,
                updated_at=now,
            )
        records[record.key] = stored
        return copy.deepcopy(stored)

    async def list_records(
        self, entity: TargetEntity, connector_id: str
    ) -> list[NormalizedRecord]:
        return [
            copy.deepcopy(record)
            for key, record in self._records[entity].items()
            if key[0] == connector_id
        ]
