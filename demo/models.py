"""
Model and repository registration: import every table model here so metadata.create_all()
sees it, and register the custom repositories the application serves.
"""
from demo.blog.models import Comment, Post, User
from demo.blog.repository import REPOSITORIES
from querylayer.repository.registry import RepositoryRegistry

__all__ = ["User", "Post", "Comment", "build_registry"]


def build_registry(manager) -> RepositoryRegistry:
    registry = RepositoryRegistry(manager)
    for repository_class in REPOSITORIES:
        registry.register(repository_class)
    return registry
