"""Sync orchestration: pages in, normalized records and an audited run out."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
import uuid
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Any

from edunav.connectors.config import (
    Connector,
    ConnectorMapping,
    NormalizedRecord,
    RawIngestFile,
    RecordError,
    RecordErrorType,
    SyncOptions,
    SyncResult,
    SyncRun,
    SyncStatus,
)
from edunav.connectors.envelope import extract_records
from edunav.connectors.exceptions import (
    ConfigurationError,
    ConnectorError,
    ConnectorNotFoundError,
    SyncConflictError,
    SyncError,
)
from edunav.connectors.identity import extract_source_id
from edunav.connectors.mapping import apply_mappings
from edunav.connectors.settings import SyncSettings
from edunav.connectors.storage.base import SyncStorage
from edunav.connectors.transport import ApiClient, PageState

logger = logging.getLogger(__name__)

# Errors kept in a finished run's error payload
MAX_STORED_ERRORS = 50

# Messages kept in the per-page progress payload
PROGRESS_ERROR_MESSAGES = 5


def raw_file_name(connector_id: str, page: int, timestamp_ms: int | None = None) -> str:
    """File name for a raw page snapshot."""
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return f"sync_{connector_id}_page_{page}_{timestamp_ms}.json"


class SyncOrchestrator:
    """Runs connectors end to end.

    A run holds the connector's run slot from before the Sync Run is
    created until the run is finalized, so at most one run per connector
    is ever active. Pages are fetched sequentially; each record is resolved
    to a source id, mapped and upserted. Per-record failures are collected
    on the run; fetch failures end it.

    Example:
        >>> storage = InMemorySyncStorage()
        >>> async with ApiClient(storage) as api:
        ...     orchestrator = SyncOrchestrator(storage, api)
        ...     result = await orchestrator.run_connector("c-123", SyncOptions(max_pages=10))
        >>> result.status
        <SyncStatus.SUCCESS: 'success'>
    """

    def __init__(
        self,
        storage: SyncStorage,
        api_client: ApiClient | None = None,
        settings: SyncSettings | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            storage: Storage collaborator for connectors, runs and records.
            api_client: Client used for fetches. Created if not provided.
            settings: Pipeline settings. Defaults to the API client's settings.
        """
        self.storage = storage
        self.settings = settings or (api_client.settings if api_client else SyncSettings())
        self.api_client = api_client or ApiClient(storage, self.settings)

    async def run_connector(
        self, connector_id: str, options: SyncOptions | None = None
    ) -> SyncResult:
        """Run one sync for a connector.

        Args:
            connector_id: Connector to sync.
            options: Run options. Defaults to SyncOptions().

        Returns:
            SyncResult. ``status`` is FAILED when a fetch or other fatal
            error ended the run early; records upserted before that remain.

        Raises:
            ConnectorNotFoundError: If the connector does not exist.
            ConfigurationError: If the connector is inactive, has no active
                mappings or has an invalid configuration.
            SyncError: If ``run_id`` does not name a pending run of this
                connector.
            SyncConflictError: If another run holds the connector.
            asyncio.CancelledError: If cancelled; the run is marked failed first.
        """
        options = options or SyncOptions()
        if options.store_raw is None:
            options = replace(options, store_raw=self.settings.store_raw)
        connector, mappings = await self._load(connector_id)

        if options.batch_size is not None and options.batch_size < 1:
            raise ConfigurationError(f"batch_size must be positive, got {options.batch_size}")

        if options.dry_run:
            return await self._dry_run(connector, mappings, options)

        pending_run = None
        if options.run_id:
            pending_run = await self._pending_run(connector_id, options.run_id)

        owner_id = pending_run.id if pending_run else str(uuid.uuid4())
        await self._acquire_slot(connector, owner_id)
        try:
            started_at = datetime.now(UTC)
            if pending_run:
                await self.storage.update_sync_run(
                    pending_run.id, status=SyncStatus.RUNNING, started_at=started_at
                )
            else:
                await self.storage.create_sync_run(
                    SyncRun(
                        id=owner_id,
                        connector_id=connector_id,
                        status=SyncStatus.RUNNING,
                        started_at=started_at,
                    )
                )

            result = SyncResult(
                connector_id=connector_id,
                status=SyncStatus.RUNNING,
                started_at=started_at,
                run_id=owner_id,
            )
            logger.info(
                f"Starting sync run {owner_id} for connector {connector.name} ({connector_id})"
            )
            await self._execute(
                result,
                options,
                self._fetch_pages(connector, mappings, options, result, owner_id),
            )
            return result
        finally:
            await self.storage.release_run_slot(connector_id, owner_id)

    async def replay_raw_file(self, raw_file_id: str) -> SyncResult:
        """Re-process a stored raw page without any network I/O.

        The replay is recorded as its own Sync Run and holds the connector's
        run slot like any other run.

        Raises:
            SyncError: If the raw file does not exist or has no stored content.
            ConnectorNotFoundError: If its connector no longer exists.
            ConfigurationError: If the connector is inactive or has no mappings.
            SyncConflictError: If another run holds the connector.
        """
        raw_file = await self.storage.get_raw_ingest_file(raw_file_id)
        if raw_file is None:
            raise SyncError(f"Raw ingest file {raw_file_id} not found")
        if raw_file.content is None:
            raise SyncError(f"Raw ingest file {raw_file_id} has no stored content")

        connector, mappings = await self._load(raw_file.connector_id)
        owner_id = str(uuid.uuid4())
        await self._acquire_slot(connector, owner_id)
        try:
            started_at = datetime.now(UTC)
            await self.storage.create_sync_run(
                SyncRun(
                    id=owner_id,
                    connector_id=connector.id,
                    status=SyncStatus.RUNNING,
                    started_at=started_at,
                )
            )
            result = SyncResult(
                connector_id=connector.id,
                status=SyncStatus.RUNNING,
                started_at=started_at,
                run_id=owner_id,
            )
            logger.info(f"Replaying raw file {raw_file_id} as sync run {owner_id}")
            await self._execute(
                result, SyncOptions(), self._replay_page(connector, mappings, raw_file, result)
            )
            return result
        finally:
            await self.storage.release_run_slot(connector.id, owner_id)

    async def _load(self, connector_id: str) -> tuple[Connector, list[ConnectorMapping]]:
        connector = await self.storage.get_connector(connector_id)
        if connector is None:
            raise ConnectorNotFoundError(f"Connector {connector_id} not found")
        if not connector.is_active:
            raise ConfigurationError(f"Connector {connector_id} is not active")
        connector.config.validate()

        mappings = await self.storage.get_connector_mappings(connector_id)
        if not mappings:
            raise ConfigurationError(
                f"No mappings configured for connector {connector_id}. "
                f"Configure field mappings before running sync."
            )
        return connector, mappings

    async def _pending_run(self, connector_id: str, run_id: str) -> SyncRun:
        run = await self.storage.get_sync_run(run_id)
        if run is None:
            raise SyncError(f"Sync run {run_id} not found")
        if run.connector_id != connector_id:
            raise SyncError(f"Sync run {run_id} belongs to connector {run.connector_id}")
        if run.status != SyncStatus.PENDING:
            raise SyncError(f"Sync run {run_id} is {run.status.value}, expected pending")
        return run

    async def _acquire_slot(self, connector: Connector, owner_id: str) -> None:
        stale_before = datetime.now(UTC) - timedelta(seconds=self.settings.run_lock_ttl)
        if not await self.storage.acquire_run_slot(connector.id, owner_id, stale_before):
            current = await self.storage.get_connector(connector.id)
            holder = current.active_run_id if current else None
            raise SyncConflictError(
                f"Connector {connector.id} already has an active sync run ({holder})"
            )

    async def _execute(self, result: SyncResult, options: SyncOptions, work: Any) -> None:
        """Await the run's work and finalize the run exactly once."""
        try:
            async with asyncio.timeout(options.timeout):
                await work
        except asyncio.CancelledError:
            result.errors.append(
                RecordError(RecordErrorType.CANCELLED, "Sync run cancelled")
            )
            await self._finalize(result, SyncStatus.FAILED, "Sync run cancelled")
            raise
        except TimeoutError:
            message = f"Sync run exceeded its {options.timeout}s deadline"
            result.errors.append(RecordError(RecordErrorType.CANCELLED, message))
            await self._finalize(result, SyncStatus.FAILED, message)
        except ConnectorError as e:
            message = f"Page {result.pages + 1}: {e}"
            result.errors.append(RecordError(RecordErrorType.FETCH, message, page=result.pages + 1))
            await self._finalize(result, SyncStatus.FAILED, message)
        except Exception as e:
            logger.exception(f"Sync run {result.run_id} failed unexpectedly")
            result.errors.append(RecordError(RecordErrorType.GENERAL, str(e)))
            await self._finalize(result, SyncStatus.FAILED, str(e))
        else:
            await self._finalize(result, SyncStatus.SUCCESS)

    async def _fetch_pages(
        self,
        connector: Connector,
        mappings: list[ConnectorMapping],
        options: SyncOptions,
        result: SyncResult,
        owner_id: str,
    ) -> None:
        max_pages = options.max_pages or self.settings.default_max_pages
        page_state: PageState | None = PageState()

        while page_state is not None:
            if result.pages and not await self.storage.renew_run_slot(connector.id, owner_id):
                raise SyncConflictError(
                    f"Connector {connector.id} run slot was taken over by another run"
                )
            page = await self.api_client.fetch(connector, page_state, page_size=options.batch_size)
            result.pages += 1

            if options.store_raw and not options.dry_run:
                await self._store_raw_page(connector.id, result.run_id, result.pages, page.raw_body)

            await self._process_records(
                connector, mappings, page.records, result.pages, result, write=not options.dry_run
            )
            if not options.dry_run:
                await self._report_progress(result)

            page_state = page.next_page if page.has_more else None
            if page_state is not None and result.pages >= max_pages:
                logger.info(
                    f"Stopping connector {connector.id} after {result.pages} pages "
                    f"(max_pages={max_pages}); more pages are available"
                )
                page_state = None

    async def _replay_page(
        self,
        connector: Connector,
        mappings: list[ConnectorMapping],
        raw_file: RawIngestFile,
        result: SyncResult,
    ) -> None:
        body = json.loads(raw_file.content or "null")
        records = extract_records(body, connector.config.data_path)
        result.pages = 1
        await self._process_records(connector, mappings, records, 1, result, write=True)

    async def _process_records(
        self,
        connector: Connector,
        mappings: list[ConnectorMapping],
        records: list[Any],
        page: int,
        result: SyncResult,
        write: bool,
    ) -> None:
        config = connector.config
        entity = connector.target_entity

        for index, raw_record in enumerate(records):
            result.records_in += 1

            source_id = extract_source_id(raw_record, config.source_id_field)
            if source_id is None:
                result.records_skipped += 1
                result.errors.append(
                    RecordError(
                        RecordErrorType.IDENTITY,
                        f"Record {index} on page {page} has no source ID "
                        f"(field: {config.source_id_field})",
                        page=page,
                        record_index=index,
                    )
                )
                continue

            transformed = apply_mappings(raw_record, mappings)
            for field_name in transformed.unmapped_fields:
                if field_name not in result.unmapped_fields:
                    result.unmapped_fields.append(field_name)
            for message in transformed.errors:
                result.errors.append(
                    RecordError(
                        RecordErrorType.TRANSFORM,
                        message,
                        page=page,
                        record_index=index,
                        source_id=source_id,
                    )
                )

            if not write:
                result.records_out += 1
                continue

            school_id = transformed.payload.get("school_id") or config.school_id
            try:
                await self.storage.upsert_record(
                    entity,
                    NormalizedRecord(
                        source_connector_id=connector.id,
                        source_id=source_id,
                        payload=transformed.payload,
                        school_id=str(school_id) if school_id else None,
                    ),
                )
            except Exception as e:
                logger.warning(f"Failed to upsert {entity.value} record {source_id}: {e}")
                result.errors.append(
                    RecordError(
                        RecordErrorType.UPSERT,
                        f"Failed to upsert {source_id}: {e}",
                        page=page,
                        record_index=index,
                        source_id=source_id,
                    )
                )
                continue
            result.records_out += 1

    async def _store_raw_page(
        self, connector_id: str, run_id: str | None, page: int, raw_body: str
    ) -> RawIngestFile:
        content = raw_body.encode("utf-8")
        file_name = raw_file_name(connector_id, page)
        return await self.storage.create_raw_ingest_file(
            RawIngestFile(
                id=str(uuid.uuid4()),
                connector_id=connector_id,
                run_id=run_id,
                bucket_path=f"raw/{connector_id}/{file_name}",
                file_name=file_name,
                file_size=len(content),
                checksum=hashlib.sha256(content).hexdigest(),
                content=raw_body,
            )
        )

    async def _report_progress(self, result: SyncResult) -> None:
        error = None
        if result.errors:
            error = {
                "count": len(result.errors),
                "latest": [e.message for e in result.errors[-PROGRESS_ERROR_MESSAGES:]],
            }
        await self.storage.update_sync_run(
            result.run_id,
            records_in=result.records_in,
            records_out=result.records_out,
            error=error,
        )

    async def _finalize(
        self, result: SyncResult, status: SyncStatus, fatal_error: str | None = None
    ) -> None:
        result.status = status
        result.finished_at = datetime.now(UTC)

        error: dict[str, Any] | None = None
        if result.errors or fatal_error:
            error = {
                "count": len(result.errors),
                "errors": [e.to_dict() for e in result.errors[:MAX_STORED_ERRORS]],
                "unmapped_fields": list(result.unmapped_fields),
                "records_skipped": result.records_skipped,
            }
            if fatal_error:
                error["fatal_error"] = fatal_error

        if result.run_id is not None:
            await self.storage.update_sync_run(
                result.run_id,
                status=status,
                finished_at=result.finished_at,
                records_in=result.records_in,
                records_out=result.records_out,
                error=error,
            )

        log = logger.info if status == SyncStatus.SUCCESS else logger.error
        log(
            f"Sync run {result.run_id} for connector {result.connector_id}: {status.value} - "
            f"{result.records_in} in, {result.records_out} out, "
            f"{result.records_skipped} skipped, {len(result.errors)} errors, "
            f"{result.pages} pages, {result.duration_seconds:.2f}s"
        )

    async def _dry_run(
        self,
        connector: Connector,
        mappings: list[ConnectorMapping],
        options: SyncOptions,
    ) -> SyncResult:
        """Fetch and map without writing records, raw files or a Sync Run."""
        owner_id = f"dry-run-{uuid.uuid4()}"
        await self._acquire_slot(connector, owner_id)
        try:
            result = SyncResult(
                connector_id=connector.id,
                status=SyncStatus.RUNNING,
                started_at=datetime.now(UTC),
                dry_run=True,
            )
            logger.info(f"Starting dry run for connector {connector.name} ({connector.id})")
            await self._execute(
                result,
                options,
                self._fetch_pages(connector, mappings, options, result, owner_id),
            )
            return result
        finally:
            await self.storage.release_run_slot(connector.id, owner_id)


async def run_connector(
    storage: SyncStorage,
    connector_id: str,
    options: SyncOptions | None = None,
    settings: SyncSettings | None = None,
) -> SyncResult:
    """Run one sync with a short-lived API client.

    Convenience wrapper around SyncOrchestrator for one-off runs.
    """
    async with ApiClient(storage, settings) as api_client:
        orchestrator = SyncOrchestrator(storage, api_client, settings)
        return await orchestrator.run_connector(connector_id, options)
