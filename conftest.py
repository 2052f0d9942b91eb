"""Shared pytest fixtures for EduNav packages."""

import pytest
from unittest.mock import MagicMock, patch


@pytest.fixture
def mock_bigquery_client():
    """Mock google.cloud.bigquery.Client for testing."""
    with patch("google.cloud.bigquery.Client") as mock:
        client = MagicMock()
        mock.return_value = client
        yield client


@pytest.fixture
def sample_crm_records():
    """Sample CRM contacts as returned by a connector API."""
    return [
        {
            "id": "L-001",
            "name": "  Ana Souza ",
            "email": "ANA@EXAMPLE.COM",
            "created_at": "2025-01-15T10:30:00Z",
            "campus": "north",
        },
        {
            "id": "L-002",
            "name": "Bea Lima",
            "email": "bea@example.com",
            "created_at": "2025-01-15T11:45:00Z",
            "campus": "south",
        },
    ]
