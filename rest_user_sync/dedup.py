"""
Record deduplication before orchestration.
"""

import logging
from typing import Iterable, List, Optional

from rest_user_sync.models import RemoteRecord, SyncResult

logger = logging.getLogger(__name__)


class Deduplicator:
    """
    Removes null and colliding records.

    First-seen wins per key: a record survives only if neither its email nor
    its username was seen on an earlier record. The email check runs first,
    so a record dropped on email never claims its username.
    """

    def clean(self, records: Iterable[Optional[RemoteRecord]], result: SyncResult) -> List[RemoteRecord]:
        """
        Filter the fetched records.

        Args:
            records: Fetched records, possibly containing None
            result: Accumulator; every dropped record counts as failed

        Returns:
            Surviving records ordered by username
        """
        seen_emails = set()
        seen_usernames = set()
        kept = []

        for record in records:
            if record is None:
                continue

            # Incomplete records are rejected by the orchestrator
            if not record.is_eligible():
                kept.append(record)
                continue

            if record.email in seen_emails:
                self._drop(record, result)
                continue
            seen_emails.add(record.email)

            if record.username in seen_usernames:
                self._drop(record, result)
                continue
            seen_usernames.add(record.username)

            kept.append(record)

        return sorted(kept, key=lambda r: r.username or '')

    def _drop(self, record: RemoteRecord, result: SyncResult):
        logger.warning(f"Ignored user: name->{record.username} email->{record.email}")
        result.increase_failed()
