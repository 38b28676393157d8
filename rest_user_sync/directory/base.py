"""
Base remote directory interface.

This module defines the abstract fetch port that all remote directory clients
must implement, along with the errors they raise.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone

from rest_user_sync.models import PageEnvelope, SyncMode

logger = logging.getLogger(__name__)

PAGE_HEADER = 'X-Page'
TOTAL_PAGES_HEADER = 'X-Total-Pages'
PER_PAGE_HEADER = 'X-Per-Page'

# yyyy-MM-dd'T'HH:mm'Z' in UTC
TIMESTAMP_FORMAT = '%Y-%m-%dT%H:%MZ'


def format_timestamp(value: datetime) -> str:
    """Format a timestamp for the updated-users endpoint; naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


class DirectoryAPIError(Exception):
    """Base exception for remote directory errors."""
    pass


class DirectoryAuthenticationError(DirectoryAPIError):
    """Raised when the remote directory rejects our credentials."""
    pass


class TransportFailure(DirectoryAPIError):
    """Raised when a page request fails or returns a non-success status."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class DirectoryPort(ABC):
    """
    Abstract fetch port for the remote user directory.

    Implementations issue one page-bounded query per call; aggregation across
    pages is left to the PageFetcher.
    """

    @abstractmethod
    def fetch_page(self, mode: SyncMode, page: int, per_page: int) -> PageEnvelope:
        """
        Fetch one page of users.

        Args:
            mode: Full fetch or fetch of users updated since a timestamp
            page: 1-based page index
            per_page: Page size

        Returns:
            PageEnvelope with the raw body and paging headers

        Raises:
            TransportFailure: If the request fails
        """
        pass

    def close(self):
        """Release any connection held by the client."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
