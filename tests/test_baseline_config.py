"""Tests for versioned baseline extraction configs."""

from unittest.mock import patch

import pytest

from docflow.core.baseline_config import (
    DEFAULT_BASELINE_FIELDS,
    BaselineConfig,
    activate,
    enabled_fields,
    get_active,
    save,
)
from docflow.core.errors import NotFoundError, PolicyValidationError
from docflow.db.baseline_configs import get_latest_version, insert_config
from tests.conftest import mock_supabase_response


def _row(config_id: str = "cfg-1", version: int = 1, is_active: bool = True, fields=None) -> dict:
    return {
        "id": config_id,
        "user_id": "user-1",
        "version": version,
        "context": None,
        "fields": fields if fields is not None else [{"key": "po_number", "description": "PO"}],
        "is_active": is_active,
        "created_at": "2025-01-01T00:00:00Z",
    }


# =============================================================================
# Active config
# =============================================================================


class TestActiveConfig:
    def test_defaults_without_active_config(self):
        with patch("docflow.core.baseline_config.get_active_config", return_value=None):
            config = get_active("user-1")

        assert config is None
        assert [f.key for f in enabled_fields(config)] == [f.key for f in DEFAULT_BASELINE_FIELDS]

    def test_store_failure_falls_back(self):
        with patch("docflow.core.baseline_config.get_active_config", side_effect=Exception("db down")):
            assert get_active("user-1") is None

    def test_disabled_fields_excluded(self):
        config = BaselineConfig.from_row(
            _row(fields=[{"key": "po_number"}, {"key": "internal", "enabled": False}])
        )
        assert [f.key for f in enabled_fields(config)] == ["po_number"]


# =============================================================================
# Versioning
# =============================================================================


class TestSaveAndActivate:
    def test_save_creates_next_version_and_activates(self):
        with (
            patch("docflow.core.baseline_config.get_latest_version", return_value=3),
            patch("docflow.core.baseline_config.deactivate_all") as mock_deactivate,
            patch("docflow.core.baseline_config.insert_config", return_value=_row(version=4)) as mock_insert,
        ):
            config = save("user-1", {"context": "Freelancer", "fields": [{"key": "po_number"}]}, activate=True)

        assert config.version == 4
        mock_deactivate.assert_called_once_with("user-1")
        kwargs = mock_insert.call_args.kwargs
        assert kwargs["version"] == 4
        assert kwargs["is_active"] is True
        assert kwargs["context"] == "Freelancer"

    def test_save_inactive_leaves_current_active(self):
        with (
            patch("docflow.core.baseline_config.get_latest_version", return_value=0),
            patch("docflow.core.baseline_config.deactivate_all") as mock_deactivate,
            patch("docflow.core.baseline_config.insert_config", return_value=_row(is_active=False)),
        ):
            save("user-1", {"fields": []}, activate=False)

        mock_deactivate.assert_not_called()

    def test_duplicate_keys_rejected(self):
        with patch("docflow.core.baseline_config.insert_config") as mock_insert:
            with pytest.raises(PolicyValidationError) as exc:
                save("user-1", {"fields": [{"key": "a"}, {"key": "a"}]}, activate=True)

        assert exc.value.problems == ["a"]
        mock_insert.assert_not_called()

    def test_missing_fields_rejected(self):
        with pytest.raises(PolicyValidationError):
            save("user-1", {"context": "x"}, activate=True)

    def test_activate_unknown_version(self):
        with patch("docflow.core.baseline_config.list_configs", return_value=[_row("cfg-1")]):
            with pytest.raises(NotFoundError):
                activate("user-1", "cfg-9")

    def test_activate_switches_active(self):
        with (
            patch("docflow.core.baseline_config.list_configs", return_value=[_row("cfg-1"), _row("cfg-2", 2, False)]),
            patch("docflow.core.baseline_config.deactivate_all") as mock_deactivate,
            patch("docflow.core.baseline_config.set_active", return_value=_row("cfg-2", 2, True)),
        ):
            config = activate("user-1", "cfg-2")

        mock_deactivate.assert_called_once_with("user-1")
        assert config.id == "cfg-2"
        assert config.is_active


# =============================================================================
# Database layer
# =============================================================================


class TestBaselineConfigsDb:
    def test_latest_version_zero_when_empty(self):
        with patch("docflow.db.baseline_configs.get_supabase", return_value=mock_supabase_response([])):
            assert get_latest_version("user-1") == 0

    def test_latest_version(self):
        supabase = mock_supabase_response([{"version": 7}])
        with patch("docflow.db.baseline_configs.get_supabase", return_value=supabase):
            assert get_latest_version("user-1") == 7
        supabase.table.assert_called_once_with("baseline_configs")

    def test_insert_requires_row(self):
        with patch("docflow.db.baseline_configs.get_supabase", return_value=mock_supabase_response([])):
            with pytest.raises(ValueError):
                insert_config("user-1", 1, None, [], True)
