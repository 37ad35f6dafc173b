from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from querylayer.exceptions.handler import RecordNotFoundError
from querylayer.repository.registry import RepositoryRegistry
from querylayer.response import ResponseModel
from ..models import Post
from ..repository import PostRepository, UserRepository

router = APIRouter()


class PostCreate(BaseModel):
    user_id: int
    title: str = Field(min_length=1, max_length=255)
    content: str = ""
    is_published: bool = False
    published_at: Optional[datetime] = None


class PostUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    content: Optional[str] = None
    is_published: Optional[bool] = None
    published_at: Optional[datetime] = None


def get_registry(request: Request) -> RepositoryRegistry:
    """Dependency: registry built at startup."""
    return request.app.state.registry


def get_post_repository(registry: RepositoryRegistry = Depends(get_registry)) -> PostRepository:
    return registry.repository(PostRepository)


def get_user_repository(registry: RepositoryRegistry = Depends(get_registry)) -> UserRepository:
    return registry.repository(UserRepository)


def dump_post(post: Post) -> dict:
    data = post.model_dump(mode="json")
    if "user" in post.__dict__ and post.user is not None:
        data["user"] = post.user.model_dump(mode="json")
    return data


@router.get("/posts")
async def list_posts(posts: PostRepository = Depends(get_post_repository)):
    """Published posts, newest first; honours ?page= and ?per_page=."""
    page = await posts.get_published_posts()
    return ResponseModel.paginated(page, serialize=dump_post)


@router.get("/posts/{post_id}")
async def show_post(post_id: int, posts: PostRepository = Depends(get_post_repository)):
    post = await posts.with_("user").find(post_id)
    if post is None:
        raise RecordNotFoundError(f"Post {post_id} not found", detail={"id": post_id})
    return ResponseModel.success(data=dump_post(post))


@router.post("/posts", status_code=201)
async def create_post(payload: PostCreate, posts: PostRepository = Depends(get_post_repository)):
    post = await posts.create_or_fail(payload)
    return ResponseModel.success(data=dump_post(post))


@router.patch("/posts/{post_id}")
async def update_post(
    post_id: int,
    payload: PostUpdate,
    posts: PostRepository = Depends(get_post_repository)
):
    """Partial update; only fields present in the body are written."""
    await posts.update_or_fail(post_id, payload)
    post = await posts.find(post_id)
    return ResponseModel.success(data=dump_post(post))


@router.delete("/posts/{post_id}")
async def delete_post(post_id: int, posts: PostRepository = Depends(get_post_repository)):
    """Soft delete; the post can be brought back with /restore."""
    if not await posts.delete(post_id):
        raise RecordNotFoundError(f"Post {post_id} not found", detail={"id": post_id})
    return ResponseModel.success(data={"id": post_id, "deleted": True})


@router.post("/posts/{post_id}/restore")
async def restore_post(post_id: int, posts: PostRepository = Depends(get_post_repository)):
    if not await posts.restore(post_id):
        raise RecordNotFoundError(f"Post {post_id} not found", detail={"id": post_id})
    post = await posts.find(post_id)
    return ResponseModel.success(data=dump_post(post))


@router.get("/users/roles")
async def users_by_role(users: UserRepository = Depends(get_user_repository)):
    """Live user count per role."""
    return ResponseModel.success(data=await users.count_users_by_role())
