"""Sync storage in BigQuery.

Connectors, mappings, sync runs, raw ingest files and the normalized
collections live in one dataset. Conditional writes (run slot, OAuth
compare-and-swap) are single DML statements whose affected row count tells
the caller whether the write won.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from edunav.connectors.config import (
    ApiConfig,
    Connector,
    ConnectorMapping,
    IntegrationType,
    NormalizedRecord,
    OAuthCredentials,
    RawIngestFile,
    SyncRun,
    SyncStatus,
    TargetEntity,
)
from edunav.connectors.storage.base import SyncStorage

if TYPE_CHECKING:
    from google.cloud import bigquery

logger = logging.getLogger(__name__)

CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS `{dataset}.connectors` (
    connector_id STRING NOT NULL,
    name STRING NOT NULL,
    type STRING NOT NULL,
    owner_id STRING,
    config JSON,
    oauth_generation INT64 DEFAULT 0,
    schedule_cron STRING,
    is_active BOOL DEFAULT TRUE,
    active_run_id STRING,
    active_run_started_at TIMESTAMP,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP(),
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP()
);
CREATE TABLE IF NOT EXISTS `{dataset}.connector_mappings` (
    mapping_id STRING NOT NULL,
    connector_id STRING NOT NULL,
    source_path STRING NOT NULL,
    target_field STRING NOT NULL,
    transform JSON,
    is_active BOOL DEFAULT TRUE,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP()
);
CREATE TABLE IF NOT EXISTS `{dataset}.sync_runs` (
    run_id STRING NOT NULL,
    connector_id STRING NOT NULL,
    status STRING NOT NULL,
    started_at TIMESTAMP,
    finished_at TIMESTAMP,
    records_in INT64 DEFAULT 0,
    records_out INT64 DEFAULT 0,
    error JSON,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP()
);
CREATE TABLE IF NOT EXISTS `{dataset}.raw_ingest_files` (
    file_id STRING NOT NULL,
    connector_id STRING NOT NULL,
    run_id STRING,
    bucket_path STRING NOT NULL,
    file_name STRING NOT NULL,
    file_size INT64,
    checksum STRING,
    content STRING,
    processed BOOL DEFAULT FALSE,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP()
);
"""

CREATE_RECORDS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS `{dataset}.{table}` (
    record_id STRING NOT NULL,
    source_connector_id STRING NOT NULL,
    source_id STRING NOT NULL,
    payload JSON NOT NULL,
    school_id STRING,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP(),
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP()
)
"""

# Column name -> BigQuery parameter type for sync run updates
_SYNC_RUN_COLUMNS = {
    "status": "STRING",
    "started_at": "TIMESTAMP",
    "finished_at": "TIMESTAMP",
    "records_in": "INT64",
    "records_out": "INT64",
    "error": "JSON",
}


def _parse_json_column(value: Any, column: str) -> Any:
    """Decode a JSON column that may arrive as text or already parsed."""
    if isinstance(value, str):
        return json.loads(value)
    if value is None or isinstance(value, (dict, list)):
        return value
    raise TypeError(
        f"Unexpected type for {column}: {type(value).__name__}. "
        f"Expected str, dict, list, or None."
    )


class BigQuerySyncStorage(SyncStorage):
    """Storage for the sync pipeline in BigQuery.

    Blocking client calls run in a worker thread so the event loop stays
    free while queries execute.

    Example:
        >>> storage = BigQuerySyncStorage(project_id="my-project")
        >>> storage.ensure_tables_exist()
        >>> connector = await storage.get_connector("c-123")
    """

    def __init__(
        self,
        project_id: str,
        dataset: str = "edunav_sync",
        client: bigquery.Client | None = None,
    ):
        """Initialize BigQuery storage.

        Args:
            project_id: GCP project ID containing the dataset.
            dataset: Dataset holding the sync tables.
            client: Optional BigQuery client. Will be created if not provided.
        """
        self.project_id = project_id
        self.dataset = dataset
        self._client = client

    @property
    def client(self) -> bigquery.Client:
        """Lazy-initialize BigQuery client."""
        if self._client is None:
            from google.cloud import bigquery

            self._client = bigquery.Client(project=self.project_id)
        return self._client

    @property
    def dataset_id(self) -> str:
        """Fully qualified dataset ID."""
        return f"{self.project_id}.{self.dataset}"

    def table_id(self, table: str) -> str:
        """Fully qualified table ID."""
        return f"{self.dataset_id}.{table}"

    def ensure_tables_exist(self) -> None:
        """Create the sync tables if they don't exist."""
        self.client.query(CREATE_TABLES_SQL.format(dataset=self.dataset_id)).result()
        for entity in TargetEntity:
            sql = CREATE_RECORDS_TABLE_SQL.format(dataset=self.dataset_id, table=entity.value)
            self.client.query(sql).result()
        logger.info(f"Ensured sync tables exist in {self.dataset_id}")

    def _execute(self, sql: str, parameters: list[Any]) -> Any:
        """Run a parameterized query and wait for its result."""
        from google.cloud import bigquery

        job_config = bigquery.QueryJobConfig(query_parameters=parameters)
        return self.client.query(sql, job_config=job_config).result()

    async def _run(self, sql: str, parameters: list[Any]) -> Any:
        return await asyncio.to_thread(self._execute, sql, parameters)

    # Connectors

    async def get_connector(self, connector_id: str) -> Connector | None:
        from google.cloud import bigquery

        sql = f"""
        SELECT *
        FROM `{self.table_id("connectors")}`
        WHERE connector_id = @connector_id
        """
        result = await self._run(
            sql, [bigquery.ScalarQueryParameter("connector_id", "STRING", connector_id)]
        )
        rows = list(result)
        if not rows:
            return None
        return self._row_to_connector(rows[0])

    async def update_connector(
        self,
        connector_id: str,
        *,
        config: ApiConfig | None = None,
        is_active: bool | None = None,
    ) -> Connector | None:
        from google.cloud import bigquery

        assignments = ["updated_at = @updated_at"]
        parameters = [
            bigquery.ScalarQueryParameter("connector_id", "STRING", connector_id),
            bigquery.ScalarQueryParameter("updated_at", "TIMESTAMP", datetime.now(UTC)),
        ]
        if config is not None:
            assignments.append("config = PARSE_JSON(@config)")
            assignments.append("oauth_generation = @oauth_generation")
            parameters.append(
                bigquery.ScalarQueryParameter("config", "STRING", json.dumps(config.to_dict()))
            )
            parameters.append(
                bigquery.ScalarQueryParameter(
                    "oauth_generation", "INT64", config.oauth.generation if config.oauth else 0
                )
            )
        if is_active is not None:
            assignments.append("is_active = @is_active")
            parameters.append(bigquery.ScalarQueryParameter("is_active", "BOOL", is_active))

        sql = f"""
        UPDATE `{self.table_id("connectors")}`
        SET {", ".join(assignments)}
        WHERE connector_id = @connector_id
        """
        result = await self._run(sql, parameters)
        if (result.num_dml_affected_rows or 0) == 0:
            return None
        return await self.get_connector(connector_id)

    async def swap_oauth_credentials(
        self,
        connector_id: str,
        expected_generation: int,
        oauth: OAuthCredentials,
    ) -> bool:
        from google.cloud import bigquery

        sql = f"""
        UPDATE `{self.table_id("connectors")}`
        SET
            config = JSON_SET(config, '$.oauth', PARSE_JSON(@oauth)),
            oauth_generation = @new_generation,
            updated_at = @updated_at
        WHERE connector_id = @connector_id
            AND IFNULL(oauth_generation, 0) = @expected_generation
        """
        result = await self._run(
            sql,
            [
                bigquery.ScalarQueryParameter("connector_id", "STRING", connector_id),
                bigquery.ScalarQueryParameter("oauth", "STRING", json.dumps(oauth.to_dict())),
                bigquery.ScalarQueryParameter("new_generation", "INT64", oauth.generation),
                bigquery.ScalarQueryParameter("expected_generation", "INT64", expected_generation),
                bigquery.ScalarQueryParameter("updated_at", "TIMESTAMP", datetime.now(UTC)),
            ],
        )
        swapped = (result.num_dml_affected_rows or 0) > 0
        if swapped:
            logger.info(f"Stored refreshed OAuth tokens for connector {connector_id}")
        return swapped

    async def acquire_run_slot(
        self,
        connector_id: str,
        owner_id: str,
        stale_before: datetime | None = None,
    ) -> bool:
        from google.cloud import bigquery

        sql = f"""
        UPDATE `{self.table_id("connectors")}`
        SET active_run_id = @owner_id, active_run_started_at = @now
        WHERE connector_id = @connector_id
            AND (
                active_run_id IS NULL
                OR (@stale_before IS NOT NULL AND active_run_started_at < @stale_before)
            )
        """
        result = await self._run(
            sql,
            [
                bigquery.ScalarQueryParameter("connector_id", "STRING", connector_id),
                bigquery.ScalarQueryParameter("owner_id", "STRING", owner_id),
                bigquery.ScalarQueryParameter("now", "TIMESTAMP", datetime.now(UTC)),
                bigquery.ScalarQueryParameter("stale_before", "TIMESTAMP", stale_before),
            ],
        )
        return (result.num_dml_affected_rows or 0) > 0

    async def renew_run_slot(self, connector_id: str, owner_id: str) -> bool:
        from google.cloud import bigquery

        sql = f"""
        UPDATE `{self.table_id("connectors")}`
        SET active_run_started_at = @now
        WHERE connector_id = @connector_id AND active_run_id = @owner_id
        """
        result = await self._run(
            sql,
            [
                bigquery.ScalarQueryParameter("connector_id", "STRING", connector_id),
                bigquery.ScalarQueryParameter("owner_id", "STRING", owner_id),
                bigquery.ScalarQueryParameter("now", "TIMESTAMP", datetime.now(UTC)),
            ],
        )
        return (result.num_dml_affected_rows or 0) > 0

    async def release_run_slot(self, connector_id: str, owner_id: str) -> None:
        from google.cloud import bigquery

        sql = f"""
        UPDATE `{self.table_id("connectors")}`
        SET active_run_id = NULL, active_run_started_at = NULL
        WHERE connector_id = @connector_id AND active_run_id = @owner_id
        """
        await self._run(
            sql,
            [
                bigquery.ScalarQueryParameter("connector_id", "STRING", connector_id),
                bigquery.ScalarQueryParameter("owner_id", "STRING", owner_id),
            ],
        )

    async def get_connector_mappings(self, connector_id: str) -> list[ConnectorMapping]:
        from google.cloud import bigquery

        sql = f"""
        SELECT *
        FROM `{self.table_id("connector_mappings")}`
        WHERE connector_id = @connector_id AND is_active = TRUE
        ORDER BY created_at
        """
        result = await self._run(
            sql, [bigquery.ScalarQueryParameter("connector_id", "STRING", connector_id)]
        )
        return [
            ConnectorMapping.from_dict(
                {
                    "id": row["mapping_id"],
                    "connector_id": row["connector_id"],
                    "source_path": row["source_path"],
                    "target_field": row["target_field"],
                    "transform": _parse_json_column(row.get("transform"), "transform"),
                    "is_active": row.get("is_active", True),
                }
            )
            for row in result
        ]

    # Sync runs

    async def get_sync_run(self, run_id: str) -> SyncRun | None:
        from google.cloud import bigquery

        sql = f"""
        SELECT *
        FROM `{self.table_id("sync_runs")}`
        WHERE run_id = @run_id
        """
        result = await self._run(sql, [bigquery.ScalarQueryParameter("run_id", "STRING", run_id)])
        rows = list(result)
        if not rows:
            return None
        return self._row_to_sync_run(rows[0])

    async def list_sync_runs(self, connector_id: str, limit: int = 20) -> list[SyncRun]:
        from google.cloud import bigquery

        sql = f"""
        SELECT *
        FROM `{self.table_id("sync_runs")}`
        WHERE connector_id = @connector_id
        ORDER BY created_at DESC
        LIMIT @limit
        """
        result = await self._run(
            sql,
            [
                bigquery.ScalarQueryParameter("connector_id", "STRING", connector_id),
                bigquery.ScalarQueryParameter("limit", "INT64", limit),
            ],
        )
        return [self._row_to_sync_run(row) for row in result]

    async def create_sync_run(self, run: SyncRun) -> SyncRun:
        from google.cloud import bigquery

        created_at = run.created_at or datetime.now(UTC)
        sql = f"""
        INSERT INTO `{self.table_id("sync_runs")}` (
            run_id, connector_id, status, started_at, finished_at,
            records_in, records_out, error, created_at
        )
        VALUES (
            @run_id, @connector_id, @status, @started_at, @finished_at,
            @records_in, @records_out, PARSE_JSON(@error), @created_at
        )
        """
        await self._run(
            sql,
            [
                bigquery.ScalarQueryParameter("run_id", "STRING", run.id),
                bigquery.ScalarQueryParameter("connector_id", "STRING", run.connector_id),
                bigquery.ScalarQueryParameter("status", "STRING", run.status.value),
                bigquery.ScalarQueryParameter("started_at", "TIMESTAMP", run.started_at),
                bigquery.ScalarQueryParameter("finished_at", "TIMESTAMP", run.finished_at),
                bigquery.ScalarQueryParameter("records_in", "INT64", run.records_in),
                bigquery.ScalarQueryParameter("records_out", "INT64", run.records_out),
                bigquery.ScalarQueryParameter(
                    "error", "STRING", json.dumps(run.error) if run.error is not None else None
                ),
                bigquery.ScalarQueryParameter("created_at", "TIMESTAMP", created_at),
            ],
        )
        logger.debug(f"Created sync run {run.id} for connector {run.connector_id}")
        run.created_at = created_at
        return run

    async def update_sync_run(self, run_id: str, **fields: Any) -> SyncRun | None:
        from google.cloud import bigquery

        unknown = set(fields) - set(_SYNC_RUN_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown sync run fields: {', '.join(sorted(unknown))}")

        assignments = []
        parameters = [bigquery.ScalarQueryParameter("run_id", "STRING", run_id)]
        for column, value in fields.items():
            column_type = _SYNC_RUN_COLUMNS[column]
            if column_type == "JSON":
                assignments.append(f"{column} = PARSE_JSON(@{column})")
                value = json.dumps(value) if value is not None else None
                column_type = "STRING"
            else:
                assignments.append(f"{column} = @{column}")
                if isinstance(value, SyncStatus):
                    value = value.value
            parameters.append(bigquery.ScalarQueryParameter(column, column_type, value))

        if not assignments:
            return await self.get_sync_run(run_id)

        sql = f"""
        UPDATE `{self.table_id("sync_runs")}`
        SET {", ".join(assignments)}
        WHERE run_id = @run_id
        """
        result = await self._run(sql, parameters)
        if (result.num_dml_affected_rows or 0) == 0:
            return None
        return await self.get_sync_run(run_id)

    # Raw ingest files

    async def create_raw_ingest_file(self, raw_file: RawIngestFile) -> RawIngestFile:
        from google.cloud import bigquery

        sql = f"""
        INSERT INTO `{self.table_id("raw_ingest_files")}` (
            file_id, connector_id, run_id, bucket_path, file_name,
            file_size, checksum, content, processed, created_at
        )
        VALUES (
            @file_id, @connector_id, @run_id, @bucket_path, @file_name,
            @file_size, @checksum, @content, @processed, @created_at
        )
        """
        created_at = raw_file.created_at or datetime.now(UTC)
        await self._run(
            sql,
            [
                bigquery.ScalarQueryParameter("file_id", "STRING", raw_file.id),
                bigquery.ScalarQueryParameter("connector_id", "STRING", raw_file.connector_id),
                bigquery.ScalarQueryParameter("run_id", "STRING", raw_file.run_id),
                bigquery.ScalarQueryParameter("bucket_path", "STRING", raw_file.bucket_path),
                bigquery.ScalarQueryParameter("file_name", "STRING", raw_file.file_name),
                bigquery.ScalarQueryParameter("file_size", "INT64", raw_file.file_size),
                bigquery.ScalarQueryParameter("checksum", "STRING", raw_file.checksum),
                bigquery.ScalarQueryParameter("content", "STRING", raw_file.content),
                bigquery.ScalarQueryParameter("processed", "BOOL", raw_file.processed),
                bigquery.ScalarQueryParameter("created_at", "TIMESTAMP", created_at),
            ],
        )
        return RawIngestFile(
            id=raw_file.id,
            connector_id=raw_file.connector_id,
            run_id=raw_file.run_id,
            bucket_path=raw_file.bucket_path,
            file_name=raw_file.file_name,
            file_size=raw_file.file_size,
            checksum=raw_file.checksum,
            content=raw_file.content,
            processed=raw_file.processed,
            created_at=created_at,
        )

    async def get_raw_ingest_file(self, file_id: str) -> RawIngestFile | None:
        from google.cloud import bigquery

        sql = f"""
        SELECT *
        FROM `{self.table_id("raw_ingest_files")}`
        WHERE file_id = @file_id
        """
        result = await self._run(sql, [bigquery.ScalarQueryParameter("file_id", "STRING", file_id)])
        rows = list(result)
        if not rows:
            return None
        return self._row_to_raw_file(rows[0])

    async def list_raw_ingest_files(self, connector_id: str) -> list[RawIngestFile]:
        from google.cloud import bigquery

        sql = f"""
        SELECT * EXCEPT (content)
        FROM `{self.table_id("raw_ingest_files")}`
        WHERE connector_id = @connector_id
        ORDER BY created_at
        """
        result = await self._run(
            sql, [bigquery.ScalarQueryParameter("connector_id", "STRING", connector_id)]
        )
        return [self._row_to_raw_file(row) for row in result]

    # Normalized records

    async def upsert_record(
        self, entity: TargetEntity, record: NormalizedRecord
    ) -> NormalizedRecord:
        from google.cloud import bigquery

        now = datetime.now(UTC)
        sql = f"""
        MERGE `{self.table_id(entity.value)}` AS target
        USING (
            SELECT @source_connector_id AS source_connector_id, @source_id AS source_id
        ) AS source
        ON target.source_connector_id = source.source_connector_id
            AND target.source_id = source.source_id
        WHEN MATCHED THEN
            UPDATE SET
                payload = PARSE_JSON(@payload),
                school_id = @school_id,
                updated_at = @now
        WHEN NOT MATCHED THEN
            INSERT (
                record_id, source_connector_id, source_id, payload,
                school_id, created_at, updated_at
            )
            VALUES (
                @record_id, @source_connector_id, @source_id, PARSE_JSON(@payload),
                @school_id, @now, @now
            )
        """
        await self._run(
            sql,
            [
                bigquery.ScalarQueryParameter(
                    "record_id", "STRING", record.id or str(uuid.uuid4())
                ),
                bigquery.ScalarQueryParameter(
                    "source_connector_id", "STRING", record.source_connector_id
                ),
                bigquery.ScalarQueryParameter("source_id", "STRING", record.source_id),
                bigquery.ScalarQueryParameter(
                    "payload", "STRING", json.dumps(record.payload, default=str)
                ),
                bigquery.ScalarQueryParameter("school_id", "STRING", record.school_id),
                bigquery.ScalarQueryParameter("now", "TIMESTAMP", now),
            ],
        )
        return record

    async def list_records(
        self, entity: TargetEntity, connector_id: str
    ) -> list[NormalizedRecord]:
        from google.cloud import bigquery

        sql = f"""
        SELECT *
        FROM `{self.table_id(entity.value)}`
        WHERE source_connector_id = @connector_id
        """
        result = await self._run(
            sql, [bigquery.ScalarQueryParameter("connector_id", "STRING", connector_id)]
        )
        return [
            NormalizedRecord(
                id=row["record_id"],
                source_connector_id=row["source_connector_id"],
                source_id=row["source_id"],
                payload=_parse_json_column(row.get("payload"), "payload") or {},
                school_id=row.get("school_id"),
                created_at=row.get("created_at"),
                updated_at=row.get("updated_at"),
            )
            for row in result
        ]

    # Row conversion

    def _row_to_connector(self, row: Any) -> Connector:
        """Convert a BigQuery row to Connector.

        Raises:
            TypeError: If the config column has an unexpected type.
        """
        config_data = _parse_json_column(row.get("config"), "config") or {}
        if not isinstance(config_data, dict):
            raise TypeError(
                f"Unexpected type for config: {type(config_data).__name__}. Expected object."
            )
        config = ApiConfig.from_dict(config_data)
        if config.oauth is not None and row.get("oauth_generation") is not None:
            config.oauth.generation = row["oauth_generation"]

        return Connector(
            id=row["connector_id"],
            name=row["name"],
            type=IntegrationType(row["type"]),
            owner_id=row.get("owner_id"),
            config=config,
            is_active=row.get("is_active", True),
            schedule_cron=row.get("schedule_cron"),
            active_run_id=row.get("active_run_id"),
            active_run_started_at=row.get("active_run_started_at"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def _row_to_sync_run(self, row: Any) -> SyncRun:
        return SyncRun(
            id=row["run_id"],
            connector_id=row["connector_id"],
            status=SyncStatus(row["status"]),
            started_at=row.get("started_at"),
            finished_at=row.get("finished_at"),
            records_in=row.get("records_in") or 0,
            records_out=row.get("records_out") or 0,
            error=_parse_json_column(row.get("error"), "error"),
            created_at=row.get("created_at"),
        )

    def _row_to_raw_file(self, row: Any) -> RawIngestFile:
        return RawIngestFile(
            id=row["file_id"],
            connector_id=row["connector_id"],
            run_id=row.get("run_id"),
            bucket_path=row["bucket_path"],
            file_name=row["file_name"],
            file_size=row.get("file_size") or 0,
            checksum=row.get("checksum") or "",
            content=row.get("content"),
            processed=row.get("processed", False),
            created_at=row.get("created_at"),
        )
