"""
Model-side helpers.

SoftDeletes declares the soft-delete capability (a nullable deleted_at
column). HasRepository adds class methods that forward to the repository the
active registry holds for the model.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SoftDeletes(SQLModel):
    """Inherit to make delete() set deleted_at instead of removing the row."""

    deleted_at: Optional[datetime] = Field(default=None, nullable=True, index=True)

    @property
    def trashed(self) -> bool:
        return self.deleted_at is not None


def supports_soft_deletes(model) -> bool:
    return isinstance(model, type) and issubclass(model, SoftDeletes)


class HasRepository:
    """Static pass-throughs to the model's repository in the active registry."""

    @classmethod
    def get_repository(cls):
        from .registry import RepositoryRegistry
        return RepositoryRegistry.current().repository(cls)

    @classmethod
    async def get_all(cls) -> List[Any]:
        return await cls.get_repository().all()

    @classmethod
    async def get_paginated(cls, per_page: Optional[int] = None):
        return await cls.get_repository().paginate(per_page)

    @classmethod
    async def find_by_id(cls, id: Any):
        return await cls.get_repository().find(id)

    @classmethod
    async def find_by_column(cls, column: str, value: Any):
        return await cls.get_repository().find_by(column, value)

    @classmethod
    async def create_record(cls, data: Dict[str, Any]):
        return await cls.get_repository().create(data)

    @classmethod
    async def update_record(cls, id: Any, data: Dict[str, Any]) -> bool:
        return await cls.get_repository().update(id, data)

    @classmethod
    async def delete_record(cls, id: Any) -> bool:
        return await cls.get_repository().delete(id)

    @classmethod
    async def get_where(cls, conditions: Dict[str, Any]) -> List[Any]:
        return await cls.get_repository().where(conditions)

    @classmethod
    def get_query(cls):
        return cls.get_repository().query()
