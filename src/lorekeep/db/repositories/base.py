"""
Base repository with common CRUD operations.
"""

import uuid
from typing import Any, Generic, Optional, Type, TypeVar

from sqlalchemy import func
from sqlalchemy.orm import Session

from lorekeep.models.db import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseRepository(Generic[ModelType]):
    """
    Generic repository for a single model.

    Operations flush but never commit; the caller owns the transaction.
    """

    def __init__(self, model: Type[ModelType], session: Session):
        self.model = model
        self.session = session

    def get(self, id: uuid.UUID | int) -> Optional[ModelType]:
        """Get a row by primary key."""
        return self.session.get(self.model, id)

    def get_all(self, limit: Optional[int] = None, offset: int = 0) -> list[ModelType]:
        """Get all rows, optionally paginated."""
        query = self.session.query(self.model).offset(offset)
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def create(self, **kwargs: Any) -> ModelType:
        """Create and flush a new row."""
        instance = self.model(**kwargs)
        self.session.add(instance)
        self.session.flush()
        return instance

    def update(self, id: uuid.UUID | int, **kwargs: Any) -> Optional[ModelType]:
        """Update fields of an existing row. Returns None if it does not exist."""
        instance = self.get(id)
        if instance is None:
            return None
        for key, value in kwargs.items():
            setattr(instance, key, value)
        self.session.flush()
        return instance

    def delete(self, id: uuid.UUID | int) -> bool:
        """Delete a row by primary key. Returns True if a row was deleted."""
        instance = self.get(id)
        if instance is None:
            return False
        self.session.delete(instance)
        self.session.flush()
        return True

    def count(self) -> int:
        return self.session.query(func.count()).select_from(self.model).scalar() or 0
