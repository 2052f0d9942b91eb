"""Pipeline-wide settings read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass

from edunav.connectors.exceptions import ConfigurationError

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in _TRUE_VALUES


@dataclass
class SyncSettings:
    """Settings for the sync pipeline.

    Attributes:
        max_attempts: Total attempts per request, including the first.
        base_delay: Backoff base in seconds.
        max_delay: Backoff cap in seconds.
        request_timeout: Per-request timeout in seconds.
        default_max_pages: Page bound when a run does not set one.
        run_lock_ttl: Seconds after which a held run slot counts as stale.
        store_raw: Persist raw ingest files by default.
        project_id: GCP project for the BigQuery backend.
        dataset: BigQuery dataset holding the sync tables.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    request_timeout: float = 30.0
    default_max_pages: int = 1
    run_lock_ttl: float = 3600.0
    store_raw: bool = True
    project_id: str | None = None
    dataset: str = "edunav_sync"

    @classmethod
    def from_env(cls) -> SyncSettings:
        """Create settings from environment variables.

        Uses EDUNAV_SYNC_* variables for pipeline tuning and GCP_PROJECT_ID
        or EDUNAV_PROJECT_ID plus EDUNAV_DATASET for storage.

        Returns:
            SyncSettings instance.

        Raises:
            ConfigurationError: If a numeric variable cannot be parsed.
        """
        return cls(
            max_attempts=_env_int("EDUNAV_SYNC_MAX_ATTEMPTS", 3),
            base_delay=_env_float("EDUNAV_SYNC_BASE_DELAY", 1.0),
            max_delay=_env_float("EDUNAV_SYNC_MAX_DELAY", 30.0),
            request_timeout=_env_float("EDUNAV_SYNC_REQUEST_TIMEOUT", 30.0),
            default_max_pages=_env_int("EDUNAV_SYNC_DEFAULT_MAX_PAGES", 1),
            run_lock_ttl=_env_float("EDUNAV_SYNC_RUN_LOCK_TTL", 3600.0),
            store_raw=_env_bool("EDUNAV_SYNC_STORE_RAW", True),
            project_id=os.getenv("GCP_PROJECT_ID") or os.getenv("EDUNAV_PROJECT_ID"),
            dataset=os.getenv("EDUNAV_DATASET", "edunav_sync"),
        )

    def require_project_id(self) -> str:
        """Return the GCP project id.

        Raises:
            ConfigurationError: If no project id is configured.
        """
        if not self.project_id:
            raise ConfigurationError(
                "GCP_PROJECT_ID or EDUNAV_PROJECT_ID environment variable required"
            )
        return self.project_id
