"""Pytest configuration and fixtures."""

import os
from unittest.mock import MagicMock

import pytest

from docflow.core.config import get_settings


@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Set up test environment variables."""
    os.environ["SUPABASE_URL"] = "https://test.supabase.co"
    os.environ["SUPABASE_SERVICE_ROLE_KEY"] = "test-key"
    os.environ["OPENAI_API_KEY"] = "test-openai-key"
    os.environ["DOCFLOW_ENV"] = "test"
    os.environ["RAG_EMBED_PACING_SECONDS"] = "0"
    get_settings.cache_clear()


def mock_supabase_response(data):
    """Chained Supabase mock whose every terminal ``execute()`` returns ``data``."""
    response = MagicMock()
    response.data = data

    supabase = MagicMock()
    query = MagicMock()
    for method in ("select", "insert", "update", "upsert", "delete", "eq", "neq", "in_", "order", "limit"):
        getattr(query, method).return_value = query
    query.execute.return_value = response
    supabase.table.return_value = query
    supabase.rpc.return_value = query
    return supabase
