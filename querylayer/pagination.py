"""
Pagination container and page-size resolution.

per_page is taken from, in order: the explicit argument, the `per_page`
query parameter of the request being served, QUERYLAYER_PAGINATION_DEFAULT.
"""

import math
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict

from querylayer.config import Settings
from querylayer.logging.logger import current_request


class Page(BaseModel):
    """One page of results plus the numbers a client needs to navigate."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    items: List[Any]
    total: int
    per_page: int
    current_page: int
    last_page: int

    @classmethod
    def build(cls, items: List[Any], total: int, per_page: int, current_page: int) -> "Page":
        last_page = max(math.ceil(total / per_page), 1)
        return cls(
            items=list(items),
            total=total,
            per_page=per_page,
            current_page=current_page,
            last_page=last_page,
        )

    @property
    def has_more_pages(self) -> bool:
        return self.current_page < self.last_page

    def __len__(self) -> int:
        return len(self.items)


def _request_int(name: str) -> Optional[int]:
    request = current_request()
    if request is None:
        return None
    raw = request.query_params.get(name)
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value > 0 else None


def resolve_per_page(per_page: Optional[int], settings: Settings) -> int:
    if per_page is None:
        per_page = _request_int("per_page") or settings.QUERYLAYER_PAGINATION_DEFAULT
    if per_page < 1:
        raise ValueError(f"per_page must be positive, got {per_page}")
    return per_page


def resolve_page(page: Optional[int]) -> int:
    if page is None:
        page = _request_int("page") or 1
    if page < 1:
        raise ValueError(f"page must be positive, got {page}")
    return page
