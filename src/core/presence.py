"""Presence tracking for counterparties.

Each event fully replaces the identity's record; no history is kept.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable

from core.models import PresenceRecord, PresenceStatus

LOGGER = logging.getLogger(__name__)


class PresenceTracker:
    def __init__(self) -> None:
        self._records: Dict[str, PresenceRecord] = {}

    def apply(self, record: PresenceRecord) -> None:
        if record.status is PresenceStatus.ONLINE and record.last_seen_at is not None:
            # lastSeenAt is only meaningful while offline.
            record = PresenceRecord(record.identity_id, record.status)
        LOGGER.debug("Presence %s -> %s", record.identity_id, record.status.value)
        self._records[record.identity_id] = record

    def apply_many(self, records: Iterable[PresenceRecord]) -> None:
        for record in records:
            self.apply(record)

    def status(self, identity_id: str) -> PresenceRecord:
        """Return the last known record, offline with no lastSeen if unknown."""

        record = self._records.get(identity_id)
        if record is None:
            return PresenceRecord(identity_id, PresenceStatus.OFFLINE)
        return record

    def is_online(self, identity_id: str) -> bool:
        return self.status(identity_id).is_online

    def snapshot(self) -> Dict[str, PresenceRecord]:
        return dict(self._records)
