"""Tests for edunav.connectors.sync."""

from __future__ import annotations

import asyncio
import hashlib
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from edunav.connectors.config import (
    ConnectorMapping,
    IntegrationType,
    RecordErrorType,
    SyncOptions,
    SyncRun,
    SyncStatus,
    TargetEntity,
)
from edunav.connectors.exceptions import (
    ConfigurationError,
    ConnectorNotFoundError,
    SyncConflictError,
    SyncError,
)
from edunav.connectors.mapping import TransformOp
from edunav.connectors.settings import SyncSettings
from edunav.connectors.sync import SyncOrchestrator, raw_file_name, run_connector

CONNECTOR_ID = "c-crm"

PAGE_ONE = [{"id": 1, "name": "Ana"}, {"id": 2, "name": "Bea"}]
PAGE_TWO = [{"id": 3, "name": "Caio"}]


def _pages(*bodies) -> list[httpx.Response]:
    return [httpx.Response(200, json=body) for body in bodies]


@pytest.fixture
def orchestrator_factory(seeded_storage, make_api_client, handler_factory):
    """Build an orchestrator over seeded storage replaying the given responses."""

    def _make(*responses, sleep=None):
        handler = handler_factory(*responses)
        api = make_api_client(seeded_storage, handler, sleep=sleep)
        return SyncOrchestrator(seeded_storage, api), handler

    return _make


async def _block_forever(*args, **kwargs):
    await asyncio.Event().wait()


class TestRunConnector:
    """End-to-end tests for SyncOrchestrator.run_connector."""

    @pytest.mark.asyncio
    async def test_offset_pagination(self, seeded_storage, orchestrator_factory) -> None:
        """Test a paginated sync writes every record and audits the run."""
        orchestrator, handler = orchestrator_factory(*_pages(PAGE_ONE, PAGE_TWO))

        result = await orchestrator.run_connector(CONNECTOR_ID, SyncOptions(max_pages=10))

        assert result.status == SyncStatus.SUCCESS
        assert result.success
        assert result.records_in == 3
        assert result.records_out == 3
        assert result.records_skipped == 0
        assert result.pages == 2
        assert result.errors == []
        assert result.unmapped_fields == ["id"]
        assert [r.url.params["offset"] for r in handler.requests] == ["0", "2"]

        leads = await seeded_storage.list_records(TargetEntity.LEADS, CONNECTOR_ID)
        assert sorted(lead.payload["full_name"] for lead in leads) == ["Ana", "Bea", "Caio"]
        assert sorted(lead.source_id for lead in leads) == ["1", "2", "3"]

        run = await seeded_storage.get_sync_run(result.run_id)
        assert run.status == SyncStatus.SUCCESS
        assert run.records_in == 3
        assert run.records_out == 3
        assert run.error is None
        assert run.started_at is not None
        assert run.finished_at >= run.started_at

        connector = await seeded_storage.get_connector(CONNECTOR_ID)
        assert connector.active_run_id is None

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, seeded_storage, orchestrator_factory) -> None:
        """Test running twice over the same data creates no duplicates."""
        orchestrator, _ = orchestrator_factory(
            *_pages(PAGE_ONE, PAGE_TWO, PAGE_ONE, [{"id": 3, "name": "Caio Silva"}])
        )

        first = await orchestrator.run_connector(CONNECTOR_ID, SyncOptions(max_pages=10))
        second = await orchestrator.run_connector(CONNECTOR_ID, SyncOptions(max_pages=10))

        assert first.run_id != second.run_id
        leads = await seeded_storage.list_records(TargetEntity.LEADS, CONNECTOR_ID)
        assert len(leads) == 3
        assert {lead.source_id: lead.payload["full_name"] for lead in leads}["3"] == "Caio Silva"
        assert len(await seeded_storage.list_sync_runs(CONNECTOR_ID)) == 2

    @pytest.mark.asyncio
    async def test_single_page_by_default(self, orchestrator_factory) -> None:
        """Test one page is fetched when max_pages is not set."""
        orchestrator, handler = orchestrator_factory(*_pages(PAGE_ONE))

        result = await orchestrator.run_connector(CONNECTOR_ID)

        assert result.pages == 1
        assert result.records_out == 2
        assert len(handler.requests) == 1

    @pytest.mark.asyncio
    async def test_batch_size_overrides_page_size(self, orchestrator_factory) -> None:
        """Test batch_size changes the requested page size for the run."""
        orchestrator, handler = orchestrator_factory(*_pages(PAGE_ONE))

        result = await orchestrator.run_connector(
            CONNECTOR_ID, SyncOptions(batch_size=5, max_pages=10)
        )

        assert handler.requests[0].url.params["limit"] == "5"
        assert result.pages == 1

    @pytest.mark.asyncio
    async def test_progress_reported_per_page(self, seeded_storage, orchestrator_factory) -> None:
        """Test counters are persisted after every page."""
        orchestrator, _ = orchestrator_factory(*_pages(PAGE_ONE, PAGE_TWO))
        update = AsyncMock(wraps=seeded_storage.update_sync_run)

        with patch.object(seeded_storage, "update_sync_run", update):
            await orchestrator.run_connector(CONNECTOR_ID, SyncOptions(max_pages=10))

        progress = [c.kwargs for c in update.call_args_list if "status" not in c.kwargs]
        assert [(p["records_in"], p["records_out"]) for p in progress] == [(2, 2), (3, 3)]
        final = update.call_args_list[-1].kwargs
        assert final["status"] == SyncStatus.SUCCESS


class TestRunConnectorPreflight:
    """Tests for errors raised before a run starts."""

    @pytest.mark.asyncio
    async def test_connector_not_found(self, orchestrator_factory) -> None:
        """Test unknown connectors are rejected."""
        orchestrator, handler = orchestrator_factory()

        with pytest.raises(ConnectorNotFoundError, match="missing"):
            await orchestrator.run_connector("missing")
        assert handler.requests == []

    @pytest.mark.asyncio
    async def test_inactive_connector(self, seeded_storage, orchestrator_factory) -> None:
        """Test inactive connectors are rejected."""
        await seeded_storage.update_connector(CONNECTOR_ID, is_active=False)
        orchestrator, _ = orchestrator_factory()

        with pytest.raises(ConfigurationError, match="is not active"):
            await orchestrator.run_connector(CONNECTOR_ID)

    @pytest.mark.asyncio
    async def test_no_mappings(self, storage, connector_factory, make_api_client, handler_factory):
        """Test connectors without mappings are rejected."""
        storage.add_connector(connector_factory())
        api = make_api_client(storage, handler_factory())
        orchestrator = SyncOrchestrator(storage, api)

        with pytest.raises(ConfigurationError, match="No mappings configured"):
            await orchestrator.run_connector(CONNECTOR_ID)
        assert await storage.list_sync_runs(CONNECTOR_ID) == []

    @pytest.mark.asyncio
    async def test_invalid_batch_size(self, orchestrator_factory) -> None:
        """Test non-positive batch sizes are rejected."""
        orchestrator, _ = orchestrator_factory()

        with pytest.raises(ConfigurationError, match="batch_size"):
            await orchestrator.run_connector(CONNECTOR_ID, SyncOptions(batch_size=0))


class TestRunSlot:
    """Tests for per-connector run exclusivity."""

    @pytest.mark.asyncio
    async def test_conflict_when_slot_held(self, seeded_storage, orchestrator_factory) -> None:
        """Test a held slot rejects the run without any request or run record."""
        await seeded_storage.acquire_run_slot(CONNECTOR_ID, "other-run")
        orchestrator, handler = orchestrator_factory()

        with pytest.raises(SyncConflictError, match="other-run"):
            await orchestrator.run_connector(CONNECTOR_ID)

        assert handler.requests == []
        assert await seeded_storage.list_sync_runs(CONNECTOR_ID) == []
        connector = await seeded_storage.get_connector(CONNECTOR_ID)
        assert connector.active_run_id == "other-run"

    @pytest.mark.asyncio
    async def test_concurrent_run_conflicts(self, seeded_storage, orchestrator_factory) -> None:
        """Test a second run on a busy connector fails while the first is in flight."""
        orchestrator, _ = orchestrator_factory(*_pages(PAGE_ONE))
        original_fetch = orchestrator.api_client.fetch
        fetching = asyncio.Event()
        release = asyncio.Event()

        async def slow_fetch(*args, **kwargs):
            fetching.set()
            await release.wait()
            return await original_fetch(*args, **kwargs)

        orchestrator.api_client.fetch = slow_fetch

        first = asyncio.create_task(orchestrator.run_connector(CONNECTOR_ID))
        await fetching.wait()

        with pytest.raises(SyncConflictError):
            await orchestrator.run_connector(CONNECTOR_ID)

        release.set()
        result = await first
        assert result.status == SyncStatus.SUCCESS
        assert len(await seeded_storage.list_sync_runs(CONNECTOR_ID)) == 1

    @pytest.mark.asyncio
    async def test_stale_slot_taken_over(self, seeded_storage, orchestrator_factory) -> None:
        """Test a slot held past the lock TTL does not block new runs."""
        await seeded_storage.acquire_run_slot(CONNECTOR_ID, "crashed-run")
        seeded_storage._connectors[CONNECTOR_ID].active_run_started_at = datetime.now(
            UTC
        ) - timedelta(hours=2)
        orchestrator, _ = orchestrator_factory(*_pages(PAGE_ONE))

        result = await orchestrator.run_connector(CONNECTOR_ID)

        assert result.status == SyncStatus.SUCCESS
        connector = await seeded_storage.get_connector(CONNECTOR_ID)
        assert connector.active_run_id is None

    @pytest.mark.asyncio
    async def test_slot_renewed_between_pages(self, seeded_storage, orchestrator_factory) -> None:
        """Test a multi-page run refreshes its slot before each further page."""
        orchestrator, _ = orchestrator_factory(*_pages(PAGE_ONE, PAGE_TWO))
        renew = AsyncMock(wraps=seeded_storage.renew_run_slot)

        with patch.object(seeded_storage, "renew_run_slot", renew):
            result = await orchestrator.run_connector(CONNECTOR_ID, SyncOptions(max_pages=10))

        assert result.status == SyncStatus.SUCCESS
        renew.assert_awaited_once_with(CONNECTOR_ID, result.run_id)

    @pytest.mark.asyncio
    async def test_slot_taken_over_mid_run(self, seeded_storage, orchestrator_factory) -> None:
        """Test a run stops fetching once another run has taken its slot."""
        orchestrator, handler = orchestrator_factory(*_pages(PAGE_ONE, PAGE_TWO))
        original_fetch = orchestrator.api_client.fetch

        async def fetch_then_lose_slot(*args, **kwargs):
            page = await original_fetch(*args, **kwargs)
            seeded_storage._connectors[CONNECTOR_ID].active_run_id = "other-run"
            return page

        orchestrator.api_client.fetch = fetch_then_lose_slot

        result = await orchestrator.run_connector(CONNECTOR_ID, SyncOptions(max_pages=10))

        assert result.status == SyncStatus.FAILED
        assert result.pages == 1
        assert result.records_out == 2
        assert len(handler.requests) == 1
        assert result.errors[-1].message == (
            "Page 2: Connector c-crm run slot was taken over by another run"
        )
        connector = await seeded_storage.get_connector(CONNECTOR_ID)
        assert connector.active_run_id == "other-run"

    @pytest.mark.asyncio
    async def test_different_connectors_run_concurrently(
        self, storage, connector_factory, make_api_client
    ) -> None:
        """Test runs on different connectors do not block each other."""
        for connector_id, path in (("c-a", "a"), ("c-b", "b")):
            storage.add_connector(
                connector_factory(connector_id, base_url=f"https://api.example.com/{path}")
            )
            storage.add_mapping(ConnectorMapping(connector_id, "name", "full_name"))

        def handler(request: httpx.Request) -> httpx.Response:
            name = "Ana" if request.url.path == "/a" else "Bea"
            return httpx.Response(200, json=[{"id": 1, "name": name}])

        orchestrator = SyncOrchestrator(storage, make_api_client(storage, handler))

        results = await asyncio.gather(
            orchestrator.run_connector("c-a"), orchestrator.run_connector("c-b")
        )

        assert [r.status for r in results] == [SyncStatus.SUCCESS, SyncStatus.SUCCESS]
        a_leads = await storage.list_records(TargetEntity.LEADS, "c-a")
        b_leads = await storage.list_records(TargetEntity.LEADS, "c-b")
        assert a_leads[0].payload == {"full_name": "Ana"}
        assert b_leads[0].payload == {"full_name": "Bea"}


class TestPendingRuns:
    """Tests for executing a pre-created run."""

    @pytest.mark.asyncio
    async def test_pending_run_is_used(self, seeded_storage, orchestrator_factory) -> None:
        """Test a supplied pending run is executed instead of creating one."""
        await seeded_storage.create_sync_run(SyncRun(id="run-queued", connector_id=CONNECTOR_ID))
        orchestrator, _ = orchestrator_factory(*_pages(PAGE_ONE))

        result = await orchestrator.run_connector(CONNECTOR_ID, SyncOptions(run_id="run-queued"))

        assert result.run_id == "run-queued"
        runs = await seeded_storage.list_sync_runs(CONNECTOR_ID)
        assert [run.id for run in runs] == ["run-queued"]
        assert runs[0].status == SyncStatus.SUCCESS
        assert runs[0].started_at is not None

    @pytest.mark.asyncio
    async def test_unknown_run_id(self, orchestrator_factory) -> None:
        """Test unknown run ids are rejected."""
        orchestrator, _ = orchestrator_factory()

        with pytest.raises(SyncError, match="not found"):
            await orchestrator.run_connector(CONNECTOR_ID, SyncOptions(run_id="missing"))

    @pytest.mark.asyncio
    async def test_run_not_pending(self, seeded_storage, orchestrator_factory) -> None:
        """Test finished runs cannot be executed again."""
        await seeded_storage.create_sync_run(
            SyncRun(id="run-done", connector_id=CONNECTOR_ID, status=SyncStatus.SUCCESS)
        )
        orchestrator, _ = orchestrator_factory()

        with pytest.raises(SyncError, match="expected pending"):
            await orchestrator.run_connector(CONNECTOR_ID, SyncOptions(run_id="run-done"))

    @pytest.mark.asyncio
    async def test_run_of_other_connector(self, seeded_storage, orchestrator_factory) -> None:
        """Test runs belonging to another connector are rejected."""
        await seeded_storage.create_sync_run(SyncRun(id="run-x", connector_id="c-other"))
        orchestrator, _ = orchestrator_factory()

        with pytest.raises(SyncError, match="belongs to connector c-other"):
            await orchestrator.run_connector(CONNECTOR_ID, SyncOptions(run_id="run-x"))


class TestDryRun:
    """Tests for dry runs."""

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, seeded_storage, orchestrator_factory) -> None:
        """Test dry runs fetch and map without persisting anything."""
        orchestrator, handler = orchestrator_factory(*_pages(PAGE_ONE, PAGE_TWO))

        result = await orchestrator.run_connector(
            CONNECTOR_ID, SyncOptions(dry_run=True, max_pages=10)
        )

        assert result.dry_run
        assert result.run_id is None
        assert result.status == SyncStatus.SUCCESS
        assert result.records_in == 3
        assert result.records_out == 3
        assert len(handler.requests) == 2
        assert await seeded_storage.list_records(TargetEntity.LEADS, CONNECTOR_ID) == []
        assert await seeded_storage.list_raw_ingest_files(CONNECTOR_ID) == []
        assert await seeded_storage.list_sync_runs(CONNECTOR_ID) == []
        connector = await seeded_storage.get_connector(CONNECTOR_ID)
        assert connector.active_run_id is None

    @pytest.mark.asyncio
    async def test_dry_run_respects_slot(self, seeded_storage, orchestrator_factory) -> None:
        """Test dry runs do not overlap a live run."""
        await seeded_storage.acquire_run_slot(CONNECTOR_ID, "live-run")
        orchestrator, _ = orchestrator_factory()

        with pytest.raises(SyncConflictError):
            await orchestrator.run_connector(CONNECTOR_ID, SyncOptions(dry_run=True))


class TestRecordErrors:
    """Tests for per-record errors that do not abort a run."""

    @pytest.mark.asyncio
    async def test_records_without_id_are_skipped(
        self, seeded_storage, orchestrator_factory
    ) -> None:
        """Test records missing a source id are skipped and reported."""
        orchestrator, _ = orchestrator_factory(
            *_pages([{"name": "Nobody"}, {"id": 5, "name": "Eve"}])
        )

        result = await orchestrator.run_connector(CONNECTOR_ID)

        assert result.status == SyncStatus.SUCCESS
        assert result.records_in == 2
        assert result.records_out == 1
        assert result.records_skipped == 1
        assert result.errors[0].type == RecordErrorType.IDENTITY
        assert result.errors[0].message == "Record 0 on page 1 has no source ID (field: id)"

        run = await seeded_storage.get_sync_run(result.run_id)
        assert run.status == SyncStatus.SUCCESS
        assert run.error["count"] == 1
        assert run.error["records_skipped"] == 1
        assert run.error["errors"][0]["type"] == "identity"
        assert "fatal_error" not in run.error

    @pytest.mark.asyncio
    async def test_transform_errors_keep_record(
        self, seeded_storage, orchestrator_factory
    ) -> None:
        """Test a failing mapping leaves its field unset but still writes the record."""
        seeded_storage.add_mapping(
            ConnectorMapping(
                CONNECTOR_ID,
                "phone",
                "phone",
                transforms=[TransformOp.from_dict({"op": "regex_extract", "pattern": "("})],
            )
        )
        orchestrator, _ = orchestrator_factory(
            *_pages([{"id": 1, "name": "Ana", "phone": "555-1234"}])
        )

        result = await orchestrator.run_connector(CONNECTOR_ID)

        assert result.status == SyncStatus.SUCCESS
        assert result.records_out == 1
        assert result.errors[0].type == RecordErrorType.TRANSFORM
        assert result.errors[0].source_id == "1"
        assert result.errors[0].message.startswith("phone -> phone:")
        leads = await seeded_storage.list_records(TargetEntity.LEADS, CONNECTOR_ID)
        assert leads[0].payload == {"full_name": "Ana"}

    @pytest.mark.asyncio
    async def test_upsert_failure_is_per_record(
        self, seeded_storage, orchestrator_factory
    ) -> None:
        """Test a failed write is recorded and the run continues."""
        original_upsert = seeded_storage.upsert_record

        async def flaky_upsert(entity, record):
            if record.source_id == "1":
                raise RuntimeError("db down")
            return await original_upsert(entity, record)

        orchestrator, _ = orchestrator_factory(*_pages(PAGE_ONE))

        with patch.object(seeded_storage, "upsert_record", flaky_upsert):
            result = await orchestrator.run_connector(CONNECTOR_ID)

        assert result.status == SyncStatus.SUCCESS
        assert result.records_in == 2
        assert result.records_out == 1
        assert result.errors[0].type == RecordErrorType.UPSERT
        assert result.errors[0].message == "Failed to upsert 1: db down"

    @pytest.mark.asyncio
    async def test_school_id_from_payload_or_config(
        self, storage, connector_factory, make_api_client, handler_factory
    ) -> None:
        """Test school_id comes from the payload, falling back to the connector."""
        storage.add_connector(
            connector_factory("c-fin", IntegrationType.FINANCE, school_id="school-default")
        )
        storage.add_mapping(ConnectorMapping("c-fin", "amount", "amount"))
        storage.add_mapping(ConnectorMapping("c-fin", "campus", "school_id"))
        handler = handler_factory(
            httpx.Response(200, json=[{"id": "p1", "amount": 10}, {"id": "p2", "campus": "north"}])
        )
        orchestrator = SyncOrchestrator(storage, make_api_client(storage, handler))

        await orchestrator.run_connector("c-fin")

        payments = await storage.list_records(TargetEntity.PAYMENTS, "c-fin")
        by_id = {p.source_id: p.school_id for p in payments}
        assert by_id == {"p1": "school-default", "p2": "north"}


class TestFatalErrors:
    """Tests for errors that end a run."""

    @pytest.mark.asyncio
    async def test_fetch_failure_keeps_earlier_pages(
        self, seeded_storage, orchestrator_factory
    ) -> None:
        """Test a fatal fetch error fails the run but keeps written records."""
        orchestrator, _ = orchestrator_factory(
            httpx.Response(200, json=PAGE_ONE), httpx.Response(404, text="gone")
        )

        result = await orchestrator.run_connector(CONNECTOR_ID, SyncOptions(max_pages=10))

        assert result.status == SyncStatus.FAILED
        assert not result.success
        assert result.records_out == 2
        assert result.pages == 1
        assert result.errors[-1].type == RecordErrorType.FETCH
        assert result.errors[-1].page == 2

        run = await seeded_storage.get_sync_run(result.run_id)
        assert run.status == SyncStatus.FAILED
        assert run.error["fatal_error"] == "Page 2: API request failed (404): gone"
        assert len(await seeded_storage.list_records(TargetEntity.LEADS, CONNECTOR_ID)) == 2
        connector = await seeded_storage.get_connector(CONNECTOR_ID)
        assert connector.active_run_id is None

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, seeded_storage, orchestrator_factory) -> None:
        """Test exhausted retries fail the run after backing off."""
        sleep = AsyncMock()
        orchestrator, handler = orchestrator_factory(
            *[httpx.Response(503, text="busy") for _ in range(3)], sleep=sleep
        )

        result = await orchestrator.run_connector(CONNECTOR_ID)

        assert result.status == SyncStatus.FAILED
        assert result.pages == 0
        assert len(handler.requests) == 3
        assert sleep.await_count == 2
        run = await seeded_storage.get_sync_run(result.run_id)
        assert run.error["fatal_error"].startswith("Page 1: API request failed (503)")

    @pytest.mark.asyncio
    async def test_cancellation_marks_run_failed(
        self, seeded_storage, orchestrator_factory
    ) -> None:
        """Test a cancelled run is finalized and the cancellation propagates."""
        orchestrator, _ = orchestrator_factory()
        started = asyncio.Event()

        async def hanging_fetch(*args, **kwargs):
            started.set()
            await asyncio.Event().wait()

        orchestrator.api_client.fetch = hanging_fetch
        task = asyncio.create_task(orchestrator.run_connector(CONNECTOR_ID))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        runs = await seeded_storage.list_sync_runs(CONNECTOR_ID)
        assert runs[0].status == SyncStatus.FAILED
        assert runs[0].finished_at is not None
        assert runs[0].error["fatal_error"] == "Sync run cancelled"
        connector = await seeded_storage.get_connector(CONNECTOR_ID)
        assert connector.active_run_id is None

    @pytest.mark.asyncio
    async def test_timeout_marks_run_failed(self, seeded_storage, orchestrator_factory) -> None:
        """Test a run past its deadline is finalized as failed."""
        orchestrator, _ = orchestrator_factory()
        orchestrator.api_client.fetch = _block_forever

        result = await orchestrator.run_connector(CONNECTOR_ID, SyncOptions(timeout=0.05))

        assert result.status == SyncStatus.FAILED
        assert result.errors[0].type == RecordErrorType.CANCELLED
        run = await seeded_storage.get_sync_run(result.run_id)
        assert run.error["fatal_error"] == "Sync run exceeded its 0.05s deadline"
        connector = await seeded_storage.get_connector(CONNECTOR_ID)
        assert connector.active_run_id is None

    @pytest.mark.asyncio
    async def test_invalid_json_fails_run(self, orchestrator_factory) -> None:
        """Test an unparsable body is a fatal fetch error."""
        orchestrator, _ = orchestrator_factory(httpx.Response(200, text="<html>"))

        result = await orchestrator.run_connector(CONNECTOR_ID)

        assert result.status == SyncStatus.FAILED
        assert "Invalid JSON response" in result.errors[0].message


class TestRawFiles:
    """Tests for raw ingest files and replay."""

    def test_raw_file_name(self) -> None:
        """Test raw file names carry connector, page and timestamp."""
        assert raw_file_name("c-1", 3, 1700000000000) == "sync_c-1_page_3_1700000000000.json"

    @pytest.mark.asyncio
    async def test_raw_page_stored_per_fetch(self, seeded_storage, orchestrator_factory) -> None:
        """Test each fetched page is stored with size and checksum."""
        orchestrator, _ = orchestrator_factory(*_pages(PAGE_ONE, PAGE_TWO))

        result = await orchestrator.run_connector(CONNECTOR_ID, SyncOptions(max_pages=10))

        files = await seeded_storage.list_raw_ingest_files(CONNECTOR_ID)
        assert len(files) == 2
        raw = await seeded_storage.get_raw_ingest_file(files[0].id)
        content = raw.content.encode("utf-8")
        assert raw.run_id == result.run_id
        assert raw.file_size == len(content)
        assert raw.checksum == hashlib.sha256(content).hexdigest()
        assert raw.file_name.startswith("sync_c-crm_page_1_")
        assert raw.bucket_path == f"raw/c-crm/{raw.file_name}"

    @pytest.mark.asyncio
    async def test_store_raw_disabled(self, seeded_storage, orchestrator_factory) -> None:
        """Test raw storage can be turned off per run."""
        orchestrator, _ = orchestrator_factory(*_pages(PAGE_ONE))

        await orchestrator.run_connector(CONNECTOR_ID, SyncOptions(store_raw=False))

        assert await seeded_storage.list_raw_ingest_files(CONNECTOR_ID) == []

    @pytest.mark.asyncio
    async def test_store_raw_follows_settings(
        self, seeded_storage, make_api_client, handler_factory
    ) -> None:
        """Test options that leave store_raw unset use the settings default."""
        handler = handler_factory(*_pages(PAGE_ONE), *_pages(PAGE_ONE))
        api = make_api_client(seeded_storage, handler)
        orchestrator = SyncOrchestrator(seeded_storage, api, SyncSettings(store_raw=False))

        await orchestrator.run_connector(CONNECTOR_ID, SyncOptions(max_pages=1))
        assert await seeded_storage.list_raw_ingest_files(CONNECTOR_ID) == []

        await orchestrator.run_connector(CONNECTOR_ID, SyncOptions(store_raw=True))
        assert len(await seeded_storage.list_raw_ingest_files(CONNECTOR_ID)) == 1

    @pytest.mark.asyncio
    async def test_replay_without_network(self, seeded_storage, orchestrator_factory) -> None:
        """Test replaying a raw file re-processes it as a new run."""
        orchestrator, handler = orchestrator_factory(*_pages(PAGE_ONE))
        first = await orchestrator.run_connector(CONNECTOR_ID)
        raw_file = (await seeded_storage.list_raw_ingest_files(CONNECTOR_ID))[0]

        replay = await orchestrator.replay_raw_file(raw_file.id)

        assert len(handler.requests) == 1
        assert replay.status == SyncStatus.SUCCESS
        assert replay.run_id != first.run_id
        assert replay.records_in == 2
        assert replay.records_out == 2
        assert replay.pages == 1
        assert len(await seeded_storage.list_records(TargetEntity.LEADS, CONNECTOR_ID)) == 2
        assert len(await seeded_storage.list_sync_runs(CONNECTOR_ID)) == 2

    @pytest.mark.asyncio
    async def test_replay_missing_file(self, orchestrator_factory) -> None:
        """Test replaying an unknown file fails."""
        orchestrator, _ = orchestrator_factory()

        with pytest.raises(SyncError, match="not found"):
            await orchestrator.replay_raw_file("missing")


class TestRunConnectorFunction:
    """Tests for the module-level run_connector helper."""

    @pytest.mark.asyncio
    async def test_missing_connector(self, storage) -> None:
        """Test the helper surfaces pre-flight errors."""
        with pytest.raises(ConnectorNotFoundError):
            await run_connector(storage, "missing")
