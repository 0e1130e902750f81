"""rugsim.core.models

Journal record model.

Settlements, breaches and exposure snapshots are written once and never edited.
"""

from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from rugsim.core.events import EventType, canonical_json


class JournalEvent(BaseModel):
    """Immutable journal entry."""

    id: str
    type: EventType
    ts: datetime
    source: str | None = None
    dedupe_key: str | None = None
    payload: dict[str, Any]
    prev_hash: str | None = None
    hash: str

    model_config = {"frozen": True}


def compute_event_hash(
    *,
    prev_hash: str | None,
    event_id: str,
    event_type: EventType,
    ts: datetime,
    payload: dict[str, Any],
    source: str | None = None,
    dedupe_key: str | None = None,
) -> str:
    """sha256(prev_hash | ts | id | type | source | dedupe_key | canonical_payload).

    Commits to the header, not just the payload, so a reordered or re-sourced
    entry breaks the chain.
    """

    header_parts = [
        prev_hash or "",
        ts.isoformat(),
        event_id,
        str(event_type),
        source or "",
        dedupe_key or "",
    ]
    data = "|".join(header_parts) + "|" + canonical_json(payload)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()
