"""
Sync cursor repository.

Cursor fragments are opaque to the store. Only the sync orchestrator calls
set_fragment(), and only after the matching upserts have committed.
"""

from typing import Any, Optional

from sqlalchemy.orm import Session

from lorekeep.db.repositories.base import BaseRepository
from lorekeep.models.db import SyncCursor


class SyncCursorRepository(BaseRepository[SyncCursor]):
    """Repository for SyncCursor model."""

    def __init__(self, session: Session):
        super().__init__(SyncCursor, session)

    def _get_row(self, provider: str, descriptor_key: str) -> Optional[SyncCursor]:
        return (
            self.session.query(SyncCursor)
            .filter(
                SyncCursor.provider == provider,
                SyncCursor.descriptor_key == descriptor_key,
            )
            .first()
        )

    def get_fragment(self, provider: str, descriptor_key: str) -> Optional[dict[str, Any]]:
        row = self._get_row(provider, descriptor_key)
        return dict(row.fragment) if row else None

    def get_fragments(self, provider: str) -> dict[str, dict[str, Any]]:
        """All fragments for a provider keyed by descriptor."""
        rows = self.session.query(SyncCursor).filter(SyncCursor.provider == provider).all()
        return {row.descriptor_key: dict(row.fragment) for row in rows}

    def set_fragment(
        self, provider: str, descriptor_key: str, fragment: dict[str, Any]
    ) -> SyncCursor:
        row = self._get_row(provider, descriptor_key)
        if row is None:
            return self.create(
                provider=provider, descriptor_key=descriptor_key, fragment=dict(fragment)
            )
        # Assign a new dict so the JSON column is flagged dirty
        row.fragment = dict(fragment)
        self.session.flush()
        return row

    def clear(self, provider: str) -> int:
        """Delete every cursor for a provider. Returns the number removed."""
        return (
            self.session.query(SyncCursor)
            .filter(SyncCursor.provider == provider)
            .delete(synchronize_session=False)
        )
