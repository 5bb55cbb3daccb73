"""Upsert normalization of Oura daily documents.

Raw provider JSON is decoded once into :class:`DailyDocument`; a document
without a usable ``day`` is skipped here and nowhere else.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from src.oura.base import utc_now
from src.oura.config_loader import MetricFamily
from src.oura.store import EngineStore, SnapshotStore, snapshot_key

logger = logging.getLogger("ringlink.oura.normalize")


@dataclass(frozen=True)
class DailyDocument:
    """One daily-collection document with every field optional but ``day``.

    ``contributors`` is kept as opaque structured data; ``raw`` is the exact
    document received, stored unchanged as the snapshot.
    """

    day: date
    id: str | None = None
    score: float | None = None
    timestamp: str | None = None
    contributors: dict[str, Any] | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_raw(cls, raw: Any) -> DailyDocument | None:
        """Decode a provider document; None when ``day`` is missing or invalid."""
        if not isinstance(raw, dict):
            return None
        day_value = raw.get("day")
        if not isinstance(day_value, str) or not day_value:
            return None
        try:
            day = date.fromisoformat(day_value)
        except ValueError:
            return None

        score = raw.get("score")
        # bool is an int subclass and never a score
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            score = None

        timestamp = raw.get("timestamp")
        contributors = raw.get("contributors")
        doc_id = raw.get("id")
        return cls(
            day=day,
            id=str(doc_id) if doc_id is not None else None,
            score=float(score) if score is not None else None,
            timestamp=timestamp if isinstance(timestamp, str) else None,
            contributors=contributors if isinstance(contributors, dict) else None,
            raw=raw,
        )

    @property
    def contributors_json(self) -> str | None:
        if self.contributors is None:
            return None
        return json.dumps(self.contributors, separators=(",", ":"), sort_keys=True)


async def upsert_daily_document(
    store: EngineStore,
    snapshots: SnapshotStore,
    install_id: str,
    family: MetricFamily,
    raw: Any,
    now: datetime | None = None,
) -> bool:
    """Write one document's family columns and its raw snapshot.

    Returns:
        True if a row was written, False if the document was skipped.
    """
    doc = DailyDocument.from_raw(raw)
    if doc is None:
        logger.debug("Skipping %s document without a valid day for install %s", family.data_type, install_id)
        return False

    await store.upsert_daily_family(
        install_id,
        doc.day,
        family,
        score=doc.score,
        contributors_json=doc.contributors_json,
        timestamp=doc.timestamp,
        updated_at=now or utc_now(),
    )
    await snapshots.put(
        snapshot_key(install_id, doc.day, family.data_type),
        json.dumps(doc.raw).encode("utf-8"),
    )
    return True
