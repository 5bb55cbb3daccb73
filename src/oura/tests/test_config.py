"""Tests for sync_config.yaml loading and validation."""

from __future__ import annotations

from datetime import date

import pytest

from src.oura.config_loader import ConfigValidationError, RetryPolicy, load_sync_config


def test_bundled_config_loads(sync_config):
    assert sync_config.data_types == ("daily_sleep", "daily_readiness", "daily_activity")
    assert sync_config.backfill_start == date(2015, 1, 1)
    assert sync_config.retry.max_retries == 5
    assert sync_config.webhooks.delete_resync_days == 14
    assert sync_config.webhooks.renewal_threshold_days == 3
    assert sync_config.error_summary_max_chars == 2000


def test_subscription_matrix_has_nine_pairs(sync_config):
    matrix = sync_config.subscription_matrix()
    assert len(matrix) == 9
    assert len(set(matrix)) == 9
    assert ("delete", "daily_activity") in matrix


def test_family_columns(sync_config):
    family = sync_config.family_for("daily_readiness")
    assert family.columns == (
        "readiness_score",
        "readiness_contributors_json",
        "readiness_timestamp",
    )
    assert sync_config.family_for("workout") is None


def test_backoff_without_jitter():
    policy = RetryPolicy(base_delay_ms=500, max_jitter_ms=0)
    assert [policy.backoff_ms(a) for a in range(3)] == [500, 1000, 2000]


def test_invalid_yaml(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("metric_families: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigValidationError):
        load_sync_config(path)


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_sync_config(tmp_path / "missing.yaml")


def test_all_problems_reported(tmp_path):
    path = tmp_path / "sync.yaml"
    path.write_text(
        "metric_families:\n"
        "  - data_type: daily_sleep\n"
        "    column_prefix: naps\n"
        "webhooks:\n"
        "  event_types: [create, rename]\n"
        "retry:\n"
        "  max_retries: -1\n",
        encoding="utf-8",
    )
    with pytest.raises(ConfigValidationError) as exc_info:
        load_sync_config(path)

    message = str(exc_info.value)
    assert "naps" in message
    assert "rename" in message
    assert "retry.max_retries" in message


def test_empty_families(tmp_path):
    path = tmp_path / "sync.yaml"
    path.write_text("version: '2'\n", encoding="utf-8")
    with pytest.raises(ConfigValidationError, match="metric_families"):
        load_sync_config(path)
