"""Blog repositories: generic CRUD from BaseRepository plus blog-specific queries."""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import case, desc, exists, func, or_, select, update

from querylayer.pagination import Page
from querylayer.repository.base import BaseRepository
from querylayer.repository.mixins import utcnow
from .models import Comment, Post, User


class UserRepository(BaseRepository[User]):
    """User repository."""

    model = User

    async def get_active_users(self, per_page: Optional[int] = None) -> Page:
        statement = self.scope("active").query().order_by(User.name)
        return await self.paginate_query(statement, per_page)

    async def get_users_by_role_with_posts(self, role: str) -> List[User]:
        """Users of a role with their (non-trashed) posts loaded."""
        statement = self.with_("posts").scope("role", role).query().order_by(User.name)
        return await self.fetch(statement)

    async def get_admins_with_relations(self, per_page: Optional[int] = None) -> Page:
        statement = (
            self.with_(["posts", "comments"]).scope("role", "admin").scope("active")
            .query().order_by(User.name)
        )
        return await self.paginate_query(statement, per_page)

    async def create_user_with_post(self, user_data: Dict[str, Any], post_data: Dict[str, Any]) -> User:
        """
        Create a user and their first post in one transaction.

        Returns the user with posts loaded. If either insert fails nothing is
        written and the error propagates.
        """
        posts = self.sibling(Post)

        async def _create():
            user = await self.create(user_data)
            await posts.create({**post_data, "user_id": user.id})
            return await self.with_("posts").find(user.id)

        return await self.transaction(_create)

    async def restore_with_posts(self, user_id: int) -> bool:
        """Restore a trashed user and every trashed post of theirs."""
        posts = self.sibling(Post)

        async def _restore() -> bool:
            if not await self.restore(user_id):
                return False
            for post in await posts.only_trashed().where({"user_id": user_id}):
                await posts.restore(post.id)
            return True

        return await self.transaction(_restore)

    async def count_users_by_role(self) -> List[Dict[str, Any]]:
        """[{"role": ..., "count": ...}] for live users, largest group first."""
        users = self.table()
        statement = (
            select(users.c.role, func.count().label("count"))
            .where(users.c.deleted_at.is_(None))
            .group_by(users.c.role)
            .order_by(desc("count"), users.c.role)
        )
        return [dict(row) for row in await self.fetch_rows(statement)]

    async def find_users_without_posts(self) -> List[User]:
        has_posts = exists().where(Post.user_id == User.id, Post.deleted_at.is_(None))
        statement = self.query().where(~has_posts).order_by(User.id)
        return await self.fetch(statement)

    async def search_users(self, filters: Dict[str, Any]) -> List[User]:
        """Filter by partial name/email match, role and is_active; unknown keys are ignored."""
        statement = self.query()
        if filters.get("name"):
            statement = statement.where(User.name.like(f"%{filters['name']}%"))
        if filters.get("email"):
            statement = statement.where(User.email.like(f"%{filters['email']}%"))
        if filters.get("role"):
            statement = statement.where(User.role == filters["role"])
        if filters.get("is_active") is not None:
            statement = statement.where(User.is_active == bool(filters["is_active"]))
        return await self.fetch(statement.order_by(User.name))


class PostRepository(BaseRepository[Post]):
    """Post repository."""

    model = Post

    def saving(self, record: Post) -> None:
        if record.is_published and record.published_at is None:
            record.published_at = utcnow()

    async def get_published_posts(self, per_page: Optional[int] = None, page: Optional[int] = None) -> Page:
        statement = self.scope("published").query().order_by(Post.published_at.desc(), Post.id.desc())
        return await self.paginate_query(statement, per_page, page)

    def _with_comment_counts(self):
        posts = self.table()
        comments = Comment.__table__
        comments_count = func.count(comments.c.id).label("comments_count")
        statement = (
            select(posts, comments_count)
            .select_from(
                posts.outerjoin(
                    comments,
                    (comments.c.post_id == posts.c.id) & comments.c.deleted_at.is_(None),
                )
            )
            .where(posts.c.deleted_at.is_(None))
            .group_by(posts.c.id)
        )
        return statement, comments_count

    async def get_recent_posts_with_comments_count(self, days: int = 7) -> List[Dict[str, Any]]:
        """Published posts of the last `days` days with a comments_count column."""
        posts = self.table()
        statement, _ = self._with_comment_counts()
        statement = statement.where(
            posts.c.is_published.is_(True),
            posts.c.published_at >= utcnow() - timedelta(days=days),
        ).order_by(posts.c.published_at.desc())
        return [dict(row) for row in await self.fetch_rows(statement)]

    async def get_most_commented_posts(self, limit: int = 10) -> List[Dict[str, Any]]:
        statement, comments_count = self._with_comment_counts()
        statement = (
            statement.having(comments_count > 0)
            .order_by(comments_count.desc(), self.table().c.id)
            .limit(limit)
        )
        return [dict(row) for row in await self.fetch_rows(statement)]

    async def advanced_search(self, filters: Dict[str, Any]) -> List[Post]:
        """
        Filter posts by any of: user_id, title (partial), date_from, date_to
        (on published_at), has_comments. Only published posts unless
        include_unpublished is truthy. Author is loaded.
        """
        statement = self.with_("user").query()
        if not filters.get("include_unpublished"):
            statement = statement.where(Post.is_published == True)  # noqa: E712
        if filters.get("user_id") is not None:
            statement = statement.where(Post.user_id == filters["user_id"])
        if filters.get("title"):
            statement = statement.where(Post.title.like(f"%{filters['title']}%"))
        if isinstance(filters.get("date_from"), datetime):
            statement = statement.where(Post.published_at >= filters["date_from"])
        if isinstance(filters.get("date_to"), datetime):
            statement = statement.where(Post.published_at <= filters["date_to"])
        if filters.get("has_comments") is not None:
            commented = exists().where(Comment.post_id == Post.id, Comment.deleted_at.is_(None))
            statement = statement.where(commented if filters["has_comments"] else ~commented)
        return await self.fetch(statement.order_by(Post.published_at.desc(), Post.id.desc()))


class CommentRepository(BaseRepository[Comment]):
    """Comment repository."""

    model = Comment

    async def get_approved_comments_for_post(self, post_id: int, per_page: Optional[int] = None) -> Page:
        statement = (
            self.with_("user").scope("approved").where_condition({"post_id": post_id})
            .order_by("created_at", "desc").query()
        )
        return await self.paginate_query(statement, per_page)

    def _with_author_and_post(self):
        comments = self.table()
        users = User.__table__
        posts = Post.__table__
        return (
            select(comments, users.c.name.label("user_name"), posts.c.title.label("post_title"))
            .select_from(
                comments.join(users, comments.c.user_id == users.c.id)
                .join(posts, comments.c.post_id == posts.c.id)
            )
            .where(comments.c.deleted_at.is_(None))
        )

    async def get_recent_comments(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Newest approved comments with user_name and post_title."""
        comments = self.table()
        statement = (
            self._with_author_and_post()
            .where(comments.c.is_approved.is_(True))
            .order_by(comments.c.created_at.desc(), comments.c.id.desc())
            .limit(limit)
        )
        return [dict(row) for row in await self.fetch_rows(statement)]

    async def get_pending_comments(self) -> List[Dict[str, Any]]:
        """Comments awaiting approval, oldest first."""
        comments = self.table()
        statement = (
            self._with_author_and_post()
            .where(comments.c.is_approved.is_(False))
            .order_by(comments.c.created_at.asc(), comments.c.id.asc())
        )
        return [dict(row) for row in await self.fetch_rows(statement)]

    async def get_comment_stats_by_user(self) -> List[Dict[str, Any]]:
        """Per user: total_comments, approved_comments and approval_rate (0..1, None without comments)."""
        comments = self.table()
        users = User.__table__
        approved = case((comments.c.is_approved.is_(True), 1), else_=0)
        total = func.count(comments.c.id).label("total_comments")
        statement = (
            select(
                users.c.id.label("user_id"),
                users.c.name,
                total,
                func.coalesce(func.sum(approved), 0).label("approved_comments"),
                func.avg(case((comments.c.id.is_(None), None), else_=approved)).label("approval_rate"),
            )
            .select_from(
                users.outerjoin(
                    comments,
                    (comments.c.user_id == users.c.id) & comments.c.deleted_at.is_(None),
                )
            )
            .where(users.c.deleted_at.is_(None))
            .group_by(users.c.id, users.c.name)
            .order_by(total.desc(), users.c.id)
        )
        return [dict(row) for row in await self.fetch_rows(statement)]

    async def find_comments_by_keywords(self, keywords: Sequence[str]) -> List[Dict[str, Any]]:
        """Comments whose content contains any keyword; no keywords, no results."""
        keywords = [keyword for keyword in keywords if keyword]
        if not keywords:
            return []
        comments = self.table()
        statement = (
            self._with_author_and_post()
            .where(or_(*[comments.c.content.like(f"%{keyword}%") for keyword in keywords]))
            .order_by(comments.c.created_at.desc(), comments.c.id.desc())
        )
        return [dict(row) for row in await self.fetch_rows(statement)]

    async def approve_comments_bulk(self, comment_ids: Sequence[int]) -> int:
        """Approve the given comments in one UPDATE; returns affected rows."""
        if not comment_ids:
            return 0
        statement = (
            update(Comment)
            .where(Comment.id.in_(list(comment_ids)), Comment.deleted_at.is_(None))
            .values(is_approved=True)
            .execution_options(synchronize_session=False)
        )
        result = await self.execute(statement)
        await self.forget_cache()
        return result.rowcount


REPOSITORIES = (UserRepository, PostRepository, CommentRepository)
