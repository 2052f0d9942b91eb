"""EduNav Connector Synchronization.

Pulls records from third-party REST APIs (CRM, finance and academic
systems), normalizes them through declarative field mappings and upserts
them as leads, payments or enrollments keyed by (connector id, source id).
Every run is audited as a Sync Run; raw response pages can be kept for
replay.

Example:
    from edunav.connectors import (
        InMemorySyncStorage,
        SyncOptions,
        run_connector,
    )

    storage = InMemorySyncStorage()
    storage.add_connector(connector)
    storage.add_mapping(ConnectorMapping("c-123", "name", "full_name"))

    result = await run_connector(storage, "c-123", SyncOptions(max_pages=10))
    print(f"Synced {result.records_out} of {result.records_in} records")
"""

from edunav.connectors.config import (
    ApiConfig,
    Connector,
    ConnectorMapping,
    IntegrationType,
    NormalizedRecord,
    OAuthCredentials,
    PaginationType,
    RawIngestFile,
    RecordError,
    RecordErrorType,
    SyncOptions,
    SyncResult,
    SyncRun,
    SyncStatus,
    TargetEntity,
)
from edunav.connectors.credentials import CredentialStore
from edunav.connectors.envelope import extract_records
from edunav.connectors.exceptions import (
    AuthenticationError,
    ConfigurationError,
    ConnectorError,
    ConnectorNotFoundError,
    InvalidResponseError,
    OAuthRefreshError,
    SyncConflictError,
    SyncError,
    TransformError,
    TransportError,
)
from edunav.connectors.identity import extract_source_id
from edunav.connectors.mapping import TransformKind, TransformOp, apply_mappings
from edunav.connectors.settings import SyncSettings
from edunav.connectors.storage import (
    BigQuerySyncStorage,
    InMemorySyncStorage,
    SyncStorage,
)
from edunav.connectors.sync import SyncOrchestrator, run_connector
from edunav.connectors.transport import ApiClient, FetchResult, PageState, RetryPolicy

__all__ = [
    # Config
    "ApiConfig",
    "Connector",
    "ConnectorMapping",
    "IntegrationType",
    "NormalizedRecord",
    "OAuthCredentials",
    "PaginationType",
    "RawIngestFile",
    "RecordError",
    "RecordErrorType",
    "SyncOptions",
    "SyncResult",
    "SyncRun",
    "SyncSettings",
    "SyncStatus",
    "TargetEntity",
    # Exceptions
    "AuthenticationError",
    "ConfigurationError",
    "ConnectorError",
    "ConnectorNotFoundError",
    "InvalidResponseError",
    "OAuthRefreshError",
    "SyncConflictError",
    "SyncError",
    "TransformError",
    "TransportError",
    # Pipeline
    "ApiClient",
    "CredentialStore",
    "FetchResult",
    "PageState",
    "RetryPolicy",
    "SyncOrchestrator",
    "TransformKind",
    "TransformOp",
    "apply_mappings",
    "extract_records",
    "extract_source_id",
    "run_connector",
    # Storage
    "BigQuerySyncStorage",
    "InMemorySyncStorage",
    "SyncStorage",
]
