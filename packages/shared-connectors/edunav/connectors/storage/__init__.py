"""Storage backends for the sync pipeline.

``InMemorySyncStorage`` has no dependencies beyond the standard library.
``BigQuerySyncStorage`` imports google-cloud-bigquery lazily on first use.
"""

from edunav.connectors.storage.base import SyncStorage
from edunav.connectors.storage.bigquery import BigQuerySyncStorage
from edunav.connectors.storage.memory import InMemorySyncStorage

__all__ = [
    "BigQuerySyncStorage",
    "InMemorySyncStorage",
    "SyncStorage",
]
