"""
Source adapter contract.

An adapter turns one provider's raw records into normalized conversations.
It never touches the store: it reads the cursor fragment it is given and
returns the fragment to persist, and the orchestrator decides when (and
whether) that fragment is written.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

from lorekeep.models.db import Provider, SourceKind
from lorekeep.models.normalized import FetchResult, WorkUnit, _NotModified


class SourceAdapter(ABC):
    """
    Abstract base class for source adapters.

    Implementations raise TransientError, PermanentError or
    SessionExpiredError (lorekeep.exceptions) on failure, and must not
    return a partially advanced fragment.
    """

    provider: Provider
    source_kind: SourceKind

    @abstractmethod
    def discover(self) -> list[WorkUnit]:
        """
        Enumerate units of work (files, remote conversations).

        Returns:
            Work units in processing order
        """
        ...

    @abstractmethod
    def fetch(
        self, unit: WorkUnit, fragment: Optional[dict[str, Any]]
    ) -> FetchResult | _NotModified:
        """
        Read one unit of work.

        Args:
            unit: A unit returned by discover()
            fragment: The fragment stored after the last committed fetch, or None

        Returns:
            FetchResult with normalized conversations and the new fragment,
            or NOT_MODIFIED when there is nothing new
        """
        ...

    def close(self) -> None:
        """Release resources (HTTP clients). No-op by default."""
        return None
