"""
EduNav MCP Server - Main entry point.

MCP server exposing the connector synchronization pipeline:
- Run a connector sync (or a dry run) and report the Sync Run
- Replay a stored raw ingest file without network I/O
- Inspect a connector's run history
- List the transform operations available to field mappings
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any

from fastmcp import FastMCP

if TYPE_CHECKING:
    from edunav.connectors import SyncOrchestrator, SyncResult, SyncRun

logger = logging.getLogger(__name__)

# Initialize server
mcp = FastMCP("EduNav Connector Sync")

# Constants for validation
_MAX_RUN_HISTORY = 100
_MIN_RUN_HISTORY = 1

# Parameters accepted by each transform operation
_TRANSFORM_PARAMETERS: dict[str, list[str]] = {
    "cast_string": [],
    "cast_number": [],
    "cast_int": [],
    "cast_boolean": [],
    "date_parse": ["format"],
    "lowercase": [],
    "uppercase": [],
    "trim": [],
    "default_value": ["default"],
    "concat": ["fields", "separator"],
    "map_values": ["mapping", "default"],
    "regex_extract": ["pattern", "group"],
    "split": ["delimiter", "index"],
    "template": ["template"],
}

_SECRET_PATTERN = re.compile(
    r"(password|token|api[_-]key|secret)[\"']?\s*[:=]\s*[\"']?[^\s\"',}]+",
    re.IGNORECASE,
)
_BEARER_PATTERN = re.compile(r"Bearer\s+[^\s\"',}]+", re.IGNORECASE)

_orchestrator: SyncOrchestrator | None = None


def _sanitize_error(message: str) -> str:
    """Redact credentials from an error message before returning it to a client."""

    def _redact(match: re.Match[str]) -> str:
        key = match.group(1).lower().replace("-", "_")
        return f"{key}=***"

    message = _SECRET_PATTERN.sub(_redact, message)
    return _BEARER_PATTERN.sub("Bearer ***", message)


def _get_orchestrator() -> SyncOrchestrator:
    """Return the process-wide orchestrator backed by BigQuery storage."""
    global _orchestrator
    if _orchestrator is None:
        from edunav.connectors import (
            ApiClient,
            BigQuerySyncStorage,
            SyncOrchestrator,
            SyncSettings,
        )

        settings = SyncSettings.from_env()
        storage = BigQuerySyncStorage(
            project_id=settings.require_project_id(),
            dataset=settings.dataset,
        )
        _orchestrator = SyncOrchestrator(storage, ApiClient(storage, settings), settings)
    return _orchestrator


def _result_to_dict(result: SyncResult) -> dict[str, Any]:
    response = {"success": result.success, **result.to_dict()}
    response["errors"] = [
        {**error, "message": _sanitize_error(error["message"])} for error in response["errors"]
    ]
    return response


def _run_to_dict(run: SyncRun) -> dict[str, Any]:
    return {
        "run_id": run.id,
        "connector_id": run.connector_id,
        "status": run.status.value,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
        "records_in": run.records_in,
        "records_out": run.records_out,
        "duration_seconds": run.duration_seconds,
        "error": run.error,
    }


# =============================================================================
# Sync Tools
# =============================================================================


async def run_connector(
    connector_id: str,
    batch_size: int | None = None,
    max_pages: int | None = None,
    dry_run: bool = False,
    run_id: str | None = None,
    timeout: float | None = None,
) -> dict:
    """
    Run a sync for a connector.

    Fetches pages from the connector's API, maps every record through the
    connector's field mappings and upserts the results. The run is recorded
    as a Sync Run unless dry_run is set.

    Args:
        connector_id: Connector identifier
        batch_size: Page size for this run only (overrides the connector's)
        max_pages: Maximum pages to fetch (default 1)
        dry_run: Fetch and map without writing anything
        run_id: Pre-created pending Sync Run to execute
        timeout: Deadline in seconds for the whole run

    Returns:
        Sync result with counts, errors and unmapped fields.
    """
    from edunav.connectors import ConnectorError, SyncOptions

    logger.info(
        "Starting connector sync",
        extra={"connector_id": connector_id, "dry_run": dry_run, "run_id": run_id},
    )

    try:
        orchestrator = _get_orchestrator()
        options = SyncOptions(
            batch_size=batch_size,
            max_pages=max_pages,
            dry_run=dry_run,
            run_id=run_id,
            timeout=timeout,
        )
        result = await orchestrator.run_connector(connector_id, options)
    except ConnectorError as e:
        logger.warning(
            "Connector sync rejected",
            extra={"connector_id": connector_id, "error_type": type(e).__name__},
        )
        return {
            "success": False,
            "error": _sanitize_error(str(e)),
            "error_type": type(e).__name__,
        }
    except Exception as e:
        logger.exception("Connector sync failed", extra={"connector_id": connector_id})
        return {"success": False, "error": _sanitize_error(str(e))}

    logger.info(
        "Connector sync completed",
        extra={
            "connector_id": connector_id,
            "run_id": result.run_id,
            "status": result.status.value,
            "records_in": result.records_in,
            "records_out": result.records_out,
            "duration_seconds": result.duration_seconds,
        },
    )
    return _result_to_dict(result)


async def replay_raw_file(raw_file_id: str) -> dict:
    """
    Re-process a stored raw ingest file without calling the remote API.

    The replay is recorded as its own Sync Run.

    Args:
        raw_file_id: Raw ingest file identifier

    Returns:
        Sync result for the replay run.
    """
    from edunav.connectors import ConnectorError

    logger.info("Replaying raw ingest file", extra={"raw_file_id": raw_file_id})

    try:
        result = await _get_orchestrator().replay_raw_file(raw_file_id)
    except ConnectorError as e:
        return {
            "success": False,
            "error": _sanitize_error(str(e)),
            "error_type": type(e).__name__,
        }
    except Exception as e:
        logger.exception("Raw file replay failed", extra={"raw_file_id": raw_file_id})
        return {"success": False, "error": _sanitize_error(str(e))}

    return _result_to_dict(result)


async def list_sync_runs(connector_id: str, limit: int = 20) -> dict:
    """
    List a connector's most recent Sync Runs, newest first.

    Args:
        connector_id: Connector identifier
        limit: Maximum runs to return (1-100, default 20)

    Returns:
        Runs with status, counts and error payloads.
    """
    if not _MIN_RUN_HISTORY <= limit <= _MAX_RUN_HISTORY:
        return {
            "success": False,
            "error": f"limit must be between {_MIN_RUN_HISTORY} and {_MAX_RUN_HISTORY}",
        }

    try:
        runs = await _get_orchestrator().storage.list_sync_runs(connector_id, limit=limit)
    except Exception as e:
        logger.exception("Listing sync runs failed", extra={"connector_id": connector_id})
        return {"success": False, "error": _sanitize_error(str(e))}

    return {"success": True, "runs": [_run_to_dict(run) for run in runs]}


def list_transform_operations() -> list[dict]:
    """
    List the transform operations available to field mappings.

    Returns:
        Operation names with the parameters each accepts.
    """
    from edunav.connectors import TransformKind

    return [
        {"op": kind.value, "parameters": _TRANSFORM_PARAMETERS.get(kind.value, [])}
        for kind in TransformKind
    ]


for _tool in (run_connector, replay_raw_file, list_sync_runs, list_transform_operations):
    mcp.tool()(_tool)


# =============================================================================
# Resources
# =============================================================================


@mcp.resource("transforms://list")
def transforms_resource() -> str:
    """List transform operations as a resource."""
    return "\n".join(
        f"- {op['op']}({', '.join(op['parameters'])})" for op in list_transform_operations()
    )


# =============================================================================
# Entry Point
# =============================================================================


def main():
    """Run the MCP server."""
    mcp.run()


if __name__ == "__main__":
    main()
