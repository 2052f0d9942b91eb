"""Storage collaborator interface for the sync pipeline."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
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


class SyncStorage(ABC):
    """Persistence operations the sync pipeline depends on.

    Implementations must make ``acquire_run_slot`` and
    ``swap_oauth_credentials`` atomic: they are the conditional writes that
    keep runs for one connector exclusive and token refreshes race-free.

    Upserts are keyed by ``(source_connector_id, source_id)``; writing the
    same key twice updates the existing record.
    """

    # Connectors

    @abstractmethod
    async def get_connector(self, connector_id: str) -> Connector | None:
        """Return a connector by id, or None."""
        pass  # pragma: no cover

    @abstractmethod
    async def update_connector(
        self,
        connector_id: str,
        *,
        config: ApiConfig | None = None,
        is_active: bool | None = None,
    ) -> Connector | None:
        """Update connector fields. Returns the updated connector, or None."""
        pass  # pragma: no cover

    @abstractmethod
    async def swap_oauth_credentials(
        self,
        connector_id: str,
        expected_generation: int,
        oauth: OAuthCredentials,
    ) -> bool:
        """Replace the stored OAuth token set if its generation is unchanged.

        Returns:
            True if written, False if another writer got there first.
        """
        pass  # pragma: no cover

    @abstractmethod
    async def acquire_run_slot(
        self,
        connector_id: str,
        owner_id: str,
        stale_before: datetime | None = None,
    ) -> bool:
        """Mark ``owner_id`` as the connector's active run.

        Succeeds when no run holds the connector, or when the holder
        acquired it before ``stale_before``.

        Returns:
            True if acquired.
        """
        pass  # pragma: no cover

    @abstractmethod
    async def renew_run_slot(self, connector_id: str, owner_id: str) -> bool:
        """Reset the slot's acquisition time if ``owner_id`` still holds it.

        Returns:
            False if the slot was released or taken over.
        """
        pass  # pragma: no cover

    @abstractmethod
    async def release_run_slot(self, connector_id: str, owner_id: str) -> None:
        """Clear the active run if ``owner_id`` still holds it."""
        pass  # pragma: no cover

    @abstractmethod
    async def get_connector_mappings(self, connector_id: str) -> list[ConnectorMapping]:
        """Return the connector's active mappings."""
        pass  # pragma: no cover

    # Sync runs

    @abstractmethod
    async def get_sync_run(self, run_id: str) -> SyncRun | None:
        """Return a sync run by id, or None."""
        pass  # pragma: no cover

    @abstractmethod
    async def list_sync_runs(self, connector_id: str, limit: int = 20) -> list[SyncRun]:
        """Return the connector's most recent runs, newest first."""
        pass  # pragma: no cover

    @abstractmethod
    async def create_sync_run(self, run: SyncRun) -> SyncRun:
        """Persist a new sync run."""
        pass  # pragma: no cover

    @abstractmethod
    async def update_sync_run(self, run_id: str, **fields: Any) -> SyncRun | None:
        """Update fields of a sync run. Returns the updated run, or None."""
        pass  # pragma: no cover

    # Raw ingest files

    @abstractmethod
    async def create_raw_ingest_file(self, raw_file: RawIngestFile) -> RawIngestFile:
        """Persist a raw ingest file. Files are never modified afterwards."""
        pass  # pragma: no cover

    @abstractmethod
    async def get_raw_ingest_file(self, file_id: str) -> RawIngestFile | None:
        """Return a raw ingest file by id, or None."""
        pass  # pragma: no cover

    @abstractmethod
    async def list_raw_ingest_files(self, connector_id: str) -> list[RawIngestFile]:
        """Return the connector's raw ingest files, oldest first."""
        pass  # pragma: no cover

    # Normalized records

    @abstractmethod
    async def upsert_record(
        self, entity: TargetEntity, record: NormalizedRecord
    ) -> NormalizedRecord:
        """Insert or update a record keyed by (source_connector_id, source_id)."""
        pass  # pragma: no cover

    @abstractmethod
    async def list_records(
        self, entity: TargetEntity, connector_id: str
    ) -> list[NormalizedRecord]:
        """Return all records a connector wrote to a collection."""
        pass  # pragma: no cover

    async def upsert_lead(self, record: NormalizedRecord) -> NormalizedRecord:
        """Upsert a lead."""
        return await self.upsert_record(TargetEntity.LEADS, record)

    async def upsert_payment(self, record: NormalizedRecord) -> NormalizedRecord:
        """Upsert a payment."""
        return await self.upsert_record(TargetEntity.PAYMENTS, record)

    async def upsert_enrollment(self, record: NormalizedRecord) -> NormalizedRecord:
        """Upsert an enrollment."""
        return await self.upsert_record(TargetEntity.ENROLLMENTS, record)
