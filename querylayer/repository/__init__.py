"""
Repository pattern: data access abstraction over SQLModel tables.
"""

from .base import BaseRepository, IRepository
from .mixins import HasRepository, SoftDeletes
from .registry import RepositoryRegistry, repository_for
from .scope import QueryScope, TrashedState
from .unit_of_work import UnitOfWork

__all__ = [
    "BaseRepository",
    "IRepository",
    "HasRepository",
    "SoftDeletes",
    "RepositoryRegistry",
    "repository_for",
    "QueryScope",
    "TrashedState",
    "UnitOfWork",
]
