"""
Pending query scope: eager loads, trashed state, cache flag and conditions
accumulated by builder calls and consumed by the next terminal call.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Optional, Tuple


class TrashedState(str, Enum):
    """Which soft-deleted rows a query sees."""
    NONE = "none"
    WITH = "with"
    ONLY = "only"


@dataclass(frozen=True)
class QueryScope:
    """Immutable scope value; builder calls produce a new one."""

    relations: Tuple[str, ...] = ()
    trashed: TrashedState = TrashedState.NONE
    use_cache: bool = False
    cache_ttl: Optional[int] = None
    # SQL boolean expressions, AND-ed when applied
    conditions: Tuple[Any, ...] = ()
    orderings: Tuple[Any, ...] = ()

    def with_relations(self, relations) -> "QueryScope":
        if isinstance(relations, str):
            relations = [relations]
        return replace(self, relations=tuple(relations))

    def with_trashed_state(self, state: TrashedState) -> "QueryScope":
        return replace(self, trashed=state)

    def with_cache(self, enabled: bool, ttl: Optional[int] = None) -> "QueryScope":
        return replace(self, use_cache=enabled, cache_ttl=ttl if enabled else None)

    def add_condition(self, condition) -> "QueryScope":
        return replace(self, conditions=self.conditions + (condition,))

    def replace_conditions(self, *conditions) -> "QueryScope":
        return replace(self, conditions=tuple(conditions))

    def add_ordering(self, ordering) -> "QueryScope":
        return replace(self, orderings=self.orderings + (ordering,))

    def fingerprint(self) -> dict:
        """Parts of the scope that change a result, for cache keys."""
        return {
            "relations": list(self.relations),
            "trashed": self.trashed.value,
            "conditions": [_describe(c) for c in self.conditions],
            "orderings": [_describe(o) for o in self.orderings],
        }


def _describe(clause) -> list:
    # Bound values are not part of str(clause), so they are listed next to it
    compiled = clause.compile()
    params = sorted((name, repr(value)) for name, value in compiled.params.items())
    return [str(compiled), params]


DEFAULT_SCOPE = QueryScope()
