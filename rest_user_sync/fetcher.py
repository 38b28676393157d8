"""
Paginated fetch of the remote user directory.

The PageFetcher requests page 1, reads the paging headers and walks the
remaining pages sequentially, merging every page into one record set.
"""

import json
import logging
from typing import List, Optional

from rest_user_sync.models import PageEnvelope, RemoteRecord, SyncMode
from rest_user_sync.directory.base import DirectoryPort, DirectoryAPIError, TransportFailure

logger = logging.getLogger(__name__)

# Bounds the payload of a single request
PER_PAGE = 400


class MalformedPaging(ValueError):
    """Raised when page-control headers cannot be parsed."""
    pass


def total_pages_to_fetch(envelope: Optional[PageEnvelope]) -> int:
    """
    Number of pages announced by the first response.

    Returns 0 unless both headers are integers and the total exceeds the
    current page index.

    Raises:
        MalformedPaging: If a header is present but not an integer
    """
    if envelope is None or envelope.total_pages is None or envelope.page_index is None:
        return 0
    try:
        total_pages = int(envelope.total_pages)
        page_index = int(envelope.page_index)
    except (TypeError, ValueError):
        raise MalformedPaging(
            f"Paging header not well formed: page={envelope.page_index!r} total={envelope.total_pages!r}"
        )
    return total_pages if total_pages > page_index else 0


def parse_records(body: str) -> List[RemoteRecord]:
    """
    Deserialize one page body.

    Raises:
        TransportFailure: If the body is not a JSON array of objects
    """
    if not body or not body.strip():
        return []
    try:
        payload = json.loads(body)
    except json.JSONDecodeError as e:
        raise TransportFailure(f"Invalid JSON response: {e}")

    if not isinstance(payload, list):
        raise TransportFailure(f"Expected a JSON array of users, got {type(payload).__name__}")

    records = []
    for item in payload:
        if item is None:
            records.append(None)
        elif isinstance(item, dict):
            records.append(RemoteRecord.from_dict(item))
        else:
            raise TransportFailure(f"Expected a JSON object per user, got {type(item).__name__}")
    return records


class PageFetcher:
    """Aggregates all pages of the remote directory into one result set."""

    def __init__(self, directory: DirectoryPort):
        self.directory = directory

    def fetch_all(self, mode: SyncMode) -> List[Optional[RemoteRecord]]:
        """
        Fetch every page for the given mode.

        Transport failures are logged and end the fetch: whatever was
        aggregated so far is returned, which is empty if page 1 failed.
        An empty result therefore means "nothing fetched", never "the
        remote directory has no users".

        Args:
            mode: Full fetch or updated-since fetch

        Returns:
            Records in first-seen order, identical records merged
        """
        aggregated = {}

        try:
            first = self.directory.fetch_page(mode, 1, PER_PAGE)
            self._merge(aggregated, parse_records(first.body))

            try:
                total_pages = total_pages_to_fetch(first)
            except MalformedPaging as e:
                logger.warning(str(e))
                total_pages = 0

            for page in range(2, total_pages + 1):
                envelope = self.directory.fetch_page(mode, page, PER_PAGE)
                added = parse_records(envelope.body)
                logger.debug(f"Process page:{page} and adding {len(added)} elements.")
                self._merge(aggregated, added)

        except DirectoryAPIError as e:
            logger.warning(f"Received a non OK answer from upstream user directory ({mode!r}): {e}")

        records = list(aggregated.keys())
        logger.debug(f"Fetched {len(records)} records from remote directory ({mode!r})")
        return records

    def _merge(self, aggregated: dict, records: List[Optional[RemoteRecord]]):
        for record in records:
            if record not in aggregated:
                aggregated[record] = None
