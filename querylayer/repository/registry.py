"""
Repository registry: one repository per model, owned by the application.
"""

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Dict, Optional, Type

from querylayer.exceptions.handler import ConfigurationError
from querylayer.logging.logger import get_logger
from .base import BaseRepository, is_table_model

logger = get_logger("repository_registry")

_active_registry: ContextVar[Optional["RepositoryRegistry"]] = ContextVar("active_registry", default=None)


def repository_for(manager, model, registry=None) -> BaseRepository:
    """Generic repository bound to model (no custom queries)."""
    return BaseRepository(manager, model, registry=registry)


class RepositoryRegistry:
    """
    Maps model classes to their single repository instance.

    Built once at startup with the application's DatabaseManager and handed to
    consumers (FastAPI keeps it on app.state). Models without a registered
    custom repository get a generic one on first lookup.
    """

    def __init__(self, manager):
        self.manager = manager
        self._classes: Dict[type, Type[BaseRepository]] = {}
        self._repositories: Dict[type, BaseRepository] = {}

    def register(self, repository_class: Type[BaseRepository]) -> Type[BaseRepository]:
        """Use repository_class for its model; usable as a class decorator."""
        model = repository_class.model
        if not is_table_model(model):
            raise ConfigurationError(f"{repository_class.__name__}.model is not a SQLModel table model")
        if model in self._repositories and type(self._repositories[model]) is not repository_class:
            raise ConfigurationError(
                f"{model.__name__} already has a {type(self._repositories[model]).__name__} instance"
            )
        self._classes[model] = repository_class
        return repository_class

    def repository(self, target) -> BaseRepository:
        """Repository for a model class, or the instance of a registered repository class."""
        model = target
        if isinstance(target, type) and issubclass(target, BaseRepository):
            if target.model not in self._classes:
                self.register(target)
            model = target.model

        repository = self._repositories.get(model)
        if repository is None:
            repository_class = self._classes.get(model)
            if repository_class is None:
                repository = repository_for(self.manager, model, registry=self)
            else:
                repository = repository_class(self.manager, model, registry=self)
            self._repositories[model] = repository
            logger.debug(f"Created {type(repository).__name__} for {model.__name__}")
        return repository

    def __contains__(self, model) -> bool:
        return model in self._repositories

    @contextmanager
    def activated(self):
        """Make this registry the one HasRepository models resolve in this context."""
        token = _active_registry.set(self)
        try:
            yield self
        finally:
            _active_registry.reset(token)

    def activate(self):
        """Set as active without a with-block; returns the token for deactivate()."""
        return _active_registry.set(self)

    @staticmethod
    def deactivate(token) -> None:
        _active_registry.reset(token)

    @staticmethod
    def current() -> "RepositoryRegistry":
        registry = _active_registry.get()
        if registry is None:
            raise ConfigurationError("No repository registry is active in this context")
        return registry
