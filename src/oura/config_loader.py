"""Load and validate the Ringlink sync engine configuration.

The config lives in ``sync_config.yaml`` alongside this module.  It is loaded
once at startup and handed to every engine component explicitly, so tests can
build their own ``SyncConfig`` without touching the global singleton.

Usage::

    from src.oura.config_loader import get_sync_config

    config = get_sync_config()
    family = config.family_for("daily_sleep")     # MetricFamily(..., column_prefix="sleep")
    delay = config.retry.backoff_ms(attempt=2)     # 2000 + jitter
"""

from __future__ import annotations

import logging
import random
import threading
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("ringlink.oura.config")

_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"

_VALID_EVENT_TYPES = frozenset({"create", "update", "delete"})


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MetricFamily:
    """One Oura daily collection and the score columns it owns."""

    data_type: str
    column_prefix: str

    @property
    def score_column(self) -> str:
        return f"{self.column_prefix}_score"

    @property
    def contributors_column(self) -> str:
        return f"{self.column_prefix}_contributors_json"

    @property
    def timestamp_column(self) -> str:
        return f"{self.column_prefix}_timestamp"

    @property
    def columns(self) -> tuple[str, str, str]:
        return (self.score_column, self.contributors_column, self.timestamp_column)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff settings for transient (429 / 5xx) provider responses."""

    max_retries: int = 5
    base_delay_ms: int = 500
    max_jitter_ms: int = 250

    def backoff_ms(self, attempt: int) -> int:
        """Return ``base * 2**attempt`` plus a random jitter in ``[0, max_jitter_ms]``."""
        jitter = random.randint(0, self.max_jitter_ms) if self.max_jitter_ms > 0 else 0
        return self.base_delay_ms * (2**attempt) + jitter


@dataclass(frozen=True)
class WebhookConfig:
    event_types: tuple[str, ...]
    renewal_threshold_days: int = 3
    delete_resync_days: int = 14


@dataclass(frozen=True)
class OAuthConfig:
    scopes: tuple[str, ...] = ("daily", "personal")
    state_ttl_minutes: int = 10


@dataclass(frozen=True)
class SyncConfig:
    """Complete, validated engine configuration.

    Attributes:
        version:                 Config schema version string.
        metric_families:         Daily collections synced, in sync order.
        webhooks:                Subscription matrix and webhook timings.
        retry:                   Provider backoff policy.
        oauth:                   Scopes and state nonce lifetime.
        backfill_start:          First day requested by an initial backfill.
        default_window_days:     Range used by manual syncs and score reads.
        error_summary_max_chars: Truncation applied to stored run errors.
        abandoned_after_minutes: Age after which a ``running`` run is reclaimed.
        maintenance_interval_minutes: Period of the subscription maintenance job.
    """

    version: str
    metric_families: tuple[MetricFamily, ...]
    webhooks: WebhookConfig
    retry: RetryPolicy
    oauth: OAuthConfig
    backfill_start: date
    default_window_days: int = 30
    error_summary_max_chars: int = 2000
    abandoned_after_minutes: int = 60
    maintenance_interval_minutes: int = 360

    def family_for(self, data_type: str) -> MetricFamily | None:
        """Return the metric family for an Oura data type, or None if unsupported."""
        for family in self.metric_families:
            if family.data_type == data_type:
                return family
        return None

    @property
    def data_types(self) -> tuple[str, ...]:
        return tuple(f.data_type for f in self.metric_families)

    def subscription_matrix(self) -> list[tuple[str, str]]:
        """Every required (event_type, data_type) webhook pair."""
        return [
            (event_type, family.data_type)
            for event_type in self.webhooks.event_types
            for family in self.metric_families
        ]


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _positive_int(section: dict, key: str, default: int, where: str, errors: list[str]) -> int:
    value = section.get(key, default)
    try:
        number = int(value)
    except (TypeError, ValueError):
        errors.append(f"{where}.{key} must be an integer, got {value!r}")
        return default
    if number < 0:
        errors.append(f"{where}.{key} must be >= 0, got {number}")
    return number


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Raises:
        ConfigValidationError: listing every problem found.
    """
    errors: list[str] = []

    version = str(raw.get("version", "1.0"))

    # ── Metric families ──
    families: list[MetricFamily] = []
    seen_types: set[str] = set()
    seen_prefixes: set[str] = set()
    for i, item in enumerate(raw.get("metric_families") or []):
        if not isinstance(item, dict):
            errors.append(f"metric_families[{i}] must be a mapping")
            continue
        data_type = item.get("data_type")
        prefix = item.get("column_prefix")
        if not data_type or not prefix:
            errors.append(f"metric_families[{i}] needs both 'data_type' and 'column_prefix'")
            continue
        if prefix not in ("sleep", "readiness", "activity"):
            errors.append(
                f"metric_families[{i}].column_prefix '{prefix}' has no columns in oura_daily_scores"
            )
        if data_type in seen_types or prefix in seen_prefixes:
            errors.append(f"metric_families[{i}] duplicates '{data_type}' / '{prefix}'")
        seen_types.add(data_type)
        seen_prefixes.add(prefix)
        families.append(MetricFamily(data_type=str(data_type), column_prefix=str(prefix)))
    if not families:
        errors.append("'metric_families' section is missing or empty")

    # ── Webhooks ──
    wh_raw: dict[str, Any] = raw.get("webhooks") or {}
    event_types = tuple(wh_raw.get("event_types") or ("create", "update"))
    for et in event_types:
        if et not in _VALID_EVENT_TYPES:
            errors.append(f"webhooks.event_types contains unknown event type {et!r}")
    webhooks = WebhookConfig(
        event_types=event_types,
        renewal_threshold_days=_positive_int(wh_raw, "renewal_threshold_days", 3, "webhooks", errors),
        delete_resync_days=_positive_int(wh_raw, "delete_resync_days", 14, "webhooks", errors),
    )

    # ── Retry ──
    rt_raw: dict[str, Any] = raw.get("retry") or {}
    retry = RetryPolicy(
        max_retries=_positive_int(rt_raw, "max_retries", 5, "retry", errors),
        base_delay_ms=_positive_int(rt_raw, "base_delay_ms", 500, "retry", errors),
        max_jitter_ms=_positive_int(rt_raw, "max_jitter_ms", 250, "retry", errors),
    )

    # ── OAuth ──
    oa_raw: dict[str, Any] = raw.get("oauth") or {}
    oauth = OAuthConfig(
        scopes=tuple(oa_raw.get("scopes") or ("daily", "personal")),
        state_ttl_minutes=_positive_int(oa_raw, "state_ttl_minutes", 10, "oauth", errors),
    )

    # ── Backfill ──
    bf_raw: dict[str, Any] = raw.get("backfill") or {}
    start_raw = bf_raw.get("start_date", "2015-01-01")
    try:
        backfill_start = start_raw if isinstance(start_raw, date) else date.fromisoformat(str(start_raw))
    except ValueError:
        errors.append(f"backfill.start_date must be YYYY-MM-DD, got {start_raw!r}")
        backfill_start = date(2015, 1, 1)

    runs_raw: dict[str, Any] = raw.get("sync_runs") or {}
    mt_raw: dict[str, Any] = raw.get("maintenance") or {}

    config = SyncConfig(
        version=version,
        metric_families=tuple(families),
        webhooks=webhooks,
        retry=retry,
        oauth=oauth,
        backfill_start=backfill_start,
        default_window_days=_positive_int(bf_raw, "default_window_days", 30, "backfill", errors),
        error_summary_max_chars=_positive_int(
            runs_raw, "error_summary_max_chars", 2000, "sync_runs", errors
        ),
        abandoned_after_minutes=_positive_int(
            runs_raw, "abandoned_after_minutes", 60, "sync_runs", errors
        ),
        maintenance_interval_minutes=_positive_int(
            mt_raw, "interval_minutes", 360, "maintenance", errors
        ),
    )

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )
    return config


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    config = _validate_and_build(_load_yaml(target))
    logger.info("Loaded sync config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton
# ---------------------------------------------------------------------------

_config: SyncConfig | None = None
_config_lock = threading.Lock()


def get_sync_config() -> SyncConfig:
    """Return the global SyncConfig, loading it on first call. Thread-safe."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:
                _config = load_sync_config()
    return _config
