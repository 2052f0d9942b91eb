"""Configuration and record models for connector synchronization."""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from edunav.connectors.exceptions import ConfigurationError
from edunav.connectors.mapping.transforms import TransformOp, parse_transforms

# Refresh OAuth tokens this many seconds before they expire
TOKEN_REFRESH_SKEW_SECONDS = 60

DEFAULT_PAGE_SIZE = 100
DEFAULT_SOURCE_ID_FIELD = "id"


class IntegrationType(str, Enum):
    """Kind of system a connector integrates with."""

    CRM = "crm"
    FINANCE = "finance"
    ACADEMIC = "academic"


class PaginationType(str, Enum):
    """Strategy for iterating a remote API's result set."""

    NONE = "none"  # Single request
    OFFSET = "offset"  # limit/offset
    CURSOR = "cursor"  # cursor/limit, cursor read from the response body
    PAGE = "page"  # page/per_page, 1-based


class SyncStatus(str, Enum):
    """Sync run lifecycle state."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Return True for states a run never leaves."""
        return self in (SyncStatus.SUCCESS, SyncStatus.FAILED)


class TargetEntity(str, Enum):
    """Normalized collections written by the pipeline."""

    LEADS = "leads"
    PAYMENTS = "payments"
    ENROLLMENTS = "enrollments"

    @classmethod
    def for_integration(cls, integration_type: IntegrationType) -> TargetEntity:
        """Return the collection a connector of this type writes to."""
        return _TARGETS_BY_INTEGRATION[integration_type]


_TARGETS_BY_INTEGRATION = {
    IntegrationType.CRM: TargetEntity.LEADS,
    IntegrationType.FINANCE: TargetEntity.PAYMENTS,
    IntegrationType.ACADEMIC: TargetEntity.ENROLLMENTS,
}


class RecordErrorType(str, Enum):
    """Category of an error collected during a run."""

    FETCH = "fetch"
    TRANSFORM = "transform"
    IDENTITY = "identity"
    UPSERT = "upsert"
    GENERAL = "general"
    CANCELLED = "cancelled"


@dataclass
class OAuthCredentials:
    """OAuth token set stored on a connector.

    ``generation`` increases by one on every refresh and guards write-back
    so that a refresh based on a stale token set never overwrites a newer one.
    """

    access_token: str
    refresh_token: str | None = field(default=None, repr=False)
    token_endpoint: str | None = None
    client_id: str | None = None
    client_secret: str | None = field(default=None, repr=False)
    expires_at: float | None = None  # Epoch seconds
    generation: int = 0

    def needs_refresh(
        self,
        now: float | None = None,
        skew: float = TOKEN_REFRESH_SKEW_SECONDS,
    ) -> bool:
        """Return True when the access token expires within ``skew`` seconds."""
        if self.expires_at is None:
            return False
        now = time.time() if now is None else now
        return self.expires_at < now + skew

    def rotated(
        self,
        access_token: str,
        refresh_token: str | None,
        expires_at: float,
    ) -> OAuthCredentials:
        """Return the next generation of this token set."""
        return replace(
            self,
            access_token=access_token,
            refresh_token=refresh_token or self.refresh_token,
            expires_at=expires_at,
            generation=self.generation + 1,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OAuthCredentials:
        """Build credentials from the persisted config blob."""
        return cls(
            access_token=data.get("access_token", ""),
            refresh_token=data.get("refresh_token"),
            token_endpoint=data.get("token_endpoint"),
            client_id=data.get("client_id"),
            client_secret=data.get("client_secret"),
            expires_at=data.get("expires_at"),
            generation=int(data.get("generation", 0)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the persisted form, including secrets."""
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_endpoint": self.token_endpoint,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "expires_at": self.expires_at,
            "generation": self.generation,
        }


@dataclass
class ApiConfig:
    """Remote API configuration for a connector.

    Exactly one credential is effective at fetch time: ``api_key`` when set,
    otherwise the OAuth access token.
    """

    base_url: str
    api_key: str | None = field(default=None, repr=False)
    oauth: OAuthCredentials | None = None
    headers: dict[str, str] = field(default_factory=dict)
    data_path: str | None = None
    pagination_type: PaginationType = PaginationType.NONE
    page_size: int = DEFAULT_PAGE_SIZE
    source_id_field: str = DEFAULT_SOURCE_ID_FIELD
    school_id: str | None = None

    @property
    def auth_source(self) -> str | None:
        """Return which credential is effective: "api_key", "oauth" or None."""
        if self.api_key:
            return "api_key"
        if self.oauth is not None and self.oauth.access_token:
            return "oauth"
        return None

    @property
    def uses_oauth(self) -> bool:
        """Return True when OAuth tokens back the requests."""
        return not self.api_key and self.oauth is not None

    def validate(self) -> None:
        """Check the configuration is usable.

        Raises:
            ConfigurationError: If base_url is missing or page_size is invalid.
        """
        if not self.base_url:
            raise ConfigurationError("Connector config missing base_url")
        if self.page_size < 1:
            raise ConfigurationError(f"page_size must be positive, got {self.page_size}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ApiConfig:
        """Build configuration from the persisted config blob.

        Raises:
            ConfigurationError: If pagination_type is not a known mode.
        """
        oauth = data.get("oauth")
        try:
            pagination_type = PaginationType(data.get("pagination_type") or "none")
        except ValueError:
            raise ConfigurationError(
                f"Unknown pagination_type: {data.get('pagination_type')!r}"
            ) from None

        return cls(
            base_url=data.get("base_url", ""),
            api_key=data.get("api_key"),
            oauth=OAuthCredentials.from_dict(oauth) if oauth else None,
            headers=dict(data.get("headers") or {}),
            data_path=data.get("data_path"),
            pagination_type=pagination_type,
            page_size=int(data.get("page_size") or DEFAULT_PAGE_SIZE),
            source_id_field=data.get("source_id_field") or DEFAULT_SOURCE_ID_FIELD,
            school_id=data.get("school_id"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the persisted form, including secrets."""
        return {
            "base_url": self.base_url,
            "api_key": self.api_key,
            "oauth": self.oauth.to_dict() if self.oauth else None,
            "headers": dict(self.headers),
            "data_path": self.data_path,
            "pagination_type": self.pagination_type.value,
            "page_size": self.page_size,
            "source_id_field": self.source_id_field,
            "school_id": self.school_id,
        }


@dataclass
class Connector:
    """A configured integration to one external data source.

    ``active_run_id`` and ``active_run_started_at`` record which run
    currently holds the connector; at most one run holds it at a time.
    """

    id: str
    name: str
    type: IntegrationType
    config: ApiConfig
    owner_id: str | None = None
    is_active: bool = True
    schedule_cron: str | None = None  # Informational only
    active_run_id: str | None = None
    active_run_started_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def target_entity(self) -> TargetEntity:
        """Normalized collection this connector writes to."""
        return TargetEntity.for_integration(self.type)


@dataclass
class ConnectorMapping:
    """Rule converting one source field into one normalized field."""

    connector_id: str
    source_path: str
    target_field: str
    transforms: list[TransformOp] = field(default_factory=list)
    id: str | None = None
    is_active: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConnectorMapping:
        """Build a mapping from a stored row.

        The ``transform`` column may hold one operation object or a list.
        """
        return cls(
            id=data.get("id"),
            connector_id=data["connector_id"],
            source_path=data["source_path"],
            target_field=data["target_field"],
            transforms=parse_transforms(data.get("transform")),
            is_active=data.get("is_active", True),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the stored row form."""
        return {
            "id": self.id,
            "connector_id": self.connector_id,
            "source_path": self.source_path,
            "target_field": self.target_field,
            "transform": [op.to_dict() for op in self.transforms],
            "is_active": self.is_active,
        }


@dataclass
class SyncRun:
    """One audited execution of the pipeline for a connector."""

    id: str
    connector_id: str
    status: SyncStatus = SyncStatus.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    records_in: int = 0
    records_out: int = 0
    error: dict[str, Any] | None = None
    created_at: datetime | None = None

    @property
    def duration_seconds(self) -> float | None:
        """Return run duration in seconds."""
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None


@dataclass(frozen=True)
class RawIngestFile:
    """Append-only snapshot of one fetched response page."""

    id: str
    connector_id: str
    bucket_path: str
    file_name: str
    file_size: int
    checksum: str
    run_id: str | None = None
    content: str | None = field(default=None, repr=False)
    processed: bool = False
    created_at: datetime | None = None


@dataclass
class NormalizedRecord:
    """Lead, payment or enrollment keyed by (source_connector_id, source_id)."""

    source_connector_id: str
    source_id: str
    payload: dict[str, Any]
    school_id: str | None = None
    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def key(self) -> tuple[str, str]:
        """Idempotency key."""
        return (self.source_connector_id, self.source_id)


@dataclass
class SyncOptions:
    """Caller options for a single run.

    Attributes:
        batch_size: Page size override for this run only.
        max_pages: Upper bound on pages fetched. Defaults to a single page.
        dry_run: Fetch and map without writing records, raw files or runs.
        run_id: Pre-created pending run to execute instead of creating one.
        store_raw: Persist a raw ingest file per fetched page. None uses
            the orchestrator settings.
        timeout: Deadline in seconds for the whole run.
    """

    batch_size: int | None = None
    max_pages: int | None = None
    dry_run: bool = False
    run_id: str | None = None
    store_raw: bool | None = None
    timeout: float | None = None


@dataclass
class RecordError:
    """An error collected during a run without aborting it."""

    type: RecordErrorType
    message: str
    page: int | None = None
    record_index: int | None = None
    source_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form stored in the run's error payload."""
        data: dict[str, Any] = {"type": self.type.value, "message": self.message}
        if self.page is not None:
            data["page"] = self.page
        if self.record_index is not None:
            data["record_index"] = self.record_index
        if self.source_id is not None:
            data["source_id"] = self.source_id
        return data


@dataclass
class SyncResult:
    """Result of a connector run."""

    connector_id: str
    status: SyncStatus
    started_at: datetime
    run_id: str | None = None
    finished_at: datetime | None = None

    records_in: int = 0
    records_out: int = 0
    records_skipped: int = 0
    pages: int = 0

    errors: list[RecordError] = field(default_factory=list)
    unmapped_fields: list[str] = field(default_factory=list)
    dry_run: bool = False

    @property
    def success(self) -> bool:
        """Return True when the run completed without a fatal error."""
        return self.status == SyncStatus.SUCCESS

    @property
    def duration_seconds(self) -> float | None:
        """Return run duration in seconds."""
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable summary."""
        return {
            "run_id": self.run_id,
            "connector_id": self.connector_id,
            "status": self.status.value,
            "records_in": self.records_in,
            "records_out": self.records_out,
            "records_skipped": self.records_skipped,
            "pages": self.pages,
            "errors": [error.to_dict() for error in self.errors],
            "unmapped_fields": list(self.unmapped_fields),
            "dry_run": self.dry_run,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration_seconds,
        }
