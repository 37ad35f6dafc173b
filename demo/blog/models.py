from datetime import datetime, timedelta
from typing import List, Optional
from sqlmodel import Field, Relationship, col
from querylayer.repository.mixins import HasRepository, SoftDeletes, utcnow


class User(HasRepository, SoftDeletes, table=True):
    """Blog author."""
    __tablename__ = "users"
    __fillable__ = ("name", "email", "is_active", "role")

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(max_length=255)
    email: str = Field(unique=True, index=True, max_length=255)
    is_active: bool = Field(default=True)
    role: str = Field(default="user", index=True, max_length=50)  # admin, user
    created_at: datetime = Field(default_factory=utcnow)

    posts: List["Post"] = Relationship(back_populates="user")
    comments: List["Comment"] = Relationship(back_populates="user")

    @classmethod
    def scope_active(cls):
        return col(cls.is_active) == True  # noqa: E712

    @classmethod
    def scope_role(cls, role: str):
        return col(cls.role) == role


class Post(HasRepository, SoftDeletes, table=True):
    """Blog post; PostRepository stamps published_at when a post is saved as published without one."""
    __tablename__ = "posts"
    __fillable__ = ("user_id", "title", "content", "is_published", "published_at")

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", index=True)
    title: str = Field(max_length=255)
    content: str = Field(default="")
    is_published: bool = Field(default=False, index=True)
    published_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)

    user: Optional[User] = Relationship(back_populates="posts")
    comments: List["Comment"] = Relationship(back_populates="post")

    @classmethod
    def scope_published(cls):
        return col(cls.is_published) == True  # noqa: E712

    @classmethod
    def scope_recent(cls, days: int = 7):
        return col(cls.published_at) >= utcnow() - timedelta(days=days)


class Comment(HasRepository, SoftDeletes, table=True):
    __tablename__ = "comments"
    __fillable__ = ("user_id", "post_id", "content", "is_approved")

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", index=True)
    post_id: int = Field(foreign_key="posts.id", index=True)
    content: str
    is_approved: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow)

    user: Optional[User] = Relationship(back_populates="comments")
    post: Optional[Post] = Relationship(back_populates="comments")

    @classmethod
    def scope_approved(cls):
        return col(cls.is_approved) == True  # noqa: E712
