"""
Repository abstract base class and generic implementation.

A repository wraps one SQLModel table and exposes CRUD, pagination, soft
deletes, eager loading, transactions, read caching, bulk writes and chunked
iteration. Builder calls (with_, with_trashed, where_condition, cache, ...)
accumulate a pending QueryScope; the next terminal call consumes it, so the
scope never leaks into the call after.

The pending scope lives in a ContextVar owned by the repository. Repositories
are shared singletons, but every asyncio task (every request) builds its own
chain. A child task starts from a copy of its parent's chain, and consuming it
there does not clear the parent's: finish a chain in the task that built it,
or call reset() in the parent.
"""

import hashlib
import inspect
import json
from abc import ABC, abstractmethod
from contextvars import ContextVar
from dataclasses import replace
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel
from sqlalchemy import and_, or_, func, text, update, delete, inspect as sa_inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload
from sqlmodel import SQLModel, select, col

from querylayer.exceptions.handler import ConfigurationError, RecordNotFoundError, ValidationError
from querylayer.logging.logger import get_logger
from querylayer.pagination import Page, resolve_page, resolve_per_page
from .mixins import supports_soft_deletes, utcnow
from .scope import DEFAULT_SCOPE, QueryScope, TrashedState
from .unit_of_work import UnitOfWork

T = TypeVar("T", bound=SQLModel)

logger = get_logger("repository")


def is_table_model(model: Any) -> bool:
    return (
        isinstance(model, type)
        and issubclass(model, SQLModel)
        and getattr(model, "__table__", None) is not None
    )


async def _resolve(value):
    if inspect.isawaitable(value):
        return await value
    return value


class IRepository(ABC, Generic[T]):
    """Repository interface; defines standard data access API."""

    @abstractmethod
    async def all(self) -> List[T]:
        """Get all entities under the pending scope."""
        pass

    @abstractmethod
    async def find(self, id: Any) -> Optional[T]:
        """Get entity by primary key."""
        pass

    @abstractmethod
    async def find_by(self, column: str, value: Any) -> Optional[T]:
        """Get first entity whose column equals value."""
        pass

    @abstractmethod
    async def where(self, conditions: Dict[str, Any]) -> List[T]:
        """Get entities matching every column=value pair."""
        pass

    @abstractmethod
    async def create(self, data: Dict[str, Any]) -> T:
        """Create entity."""
        pass

    @abstractmethod
    async def update(self, id: Any, data: Dict[str, Any]) -> bool:
        """Update entity."""
        pass

    @abstractmethod
    async def delete(self, id: Any) -> bool:
        """Delete entity."""
        pass

    @abstractmethod
    async def paginate(self, per_page: Optional[int] = None, page: Optional[int] = None) -> Page:
        """Get one page of entities."""
        pass


class BaseRepository(IRepository[T]):
    """Generic repository over one SQLModel table; subclasses set `model` and add custom queries."""

    model: Type[T] = None

    def __init__(self, manager, model: Optional[Type[T]] = None, registry=None):
        """Initialize repository with the application's DatabaseManager and a table model."""
        model = model or type(self).model
        if not is_table_model(model):
            raise ConfigurationError(
                f"{getattr(model, '__name__', model)!r} is not a SQLModel table model "
                f"and cannot back {type(self).__name__}"
            )
        self.model = model
        self.manager = manager
        self.registry = registry

        primary_key = list(model.__table__.primary_key.columns)
        if len(primary_key) != 1:
            raise ConfigurationError(f"{model.__name__} must have exactly one primary key column")
        self.primary_key: str = primary_key[0].name

        self._scope: ContextVar[QueryScope] = ContextVar(
            f"querylayer_scope_{model.__table__.name}_{id(self)}", default=DEFAULT_SCOPE
        )

    @property
    def settings(self):
        return self.manager.settings

    @property
    def table_name(self) -> str:
        return self.model.__table__.name

    def sibling(self, target) -> "BaseRepository":
        """Repository for another model (or repository class) from the same registry."""
        if self.registry is None:
            raise ConfigurationError(f"{type(self).__name__} was not created by a RepositoryRegistry")
        return self.registry.repository(target)

    # ------------------------------------------------------------------
    # Scope builders (non-terminal, chainable)
    # ------------------------------------------------------------------

    def current_scope(self) -> QueryScope:
        """Scope the next terminal call in this context will use."""
        return self._scope.get()

    def _set_scope(self, scope: QueryScope) -> "BaseRepository[T]":
        self._scope.set(scope)
        return self

    def _consume_scope(self) -> QueryScope:
        # Resets only this context's copy: a chain built in a parent task and
        # finished in a child task (gather, create_task) stays pending in the parent.
        scope = self._scope.get()
        self._scope.set(DEFAULT_SCOPE)
        return scope

    def reset(self) -> "BaseRepository[T]":
        """Discard the pending scope."""
        return self._set_scope(DEFAULT_SCOPE)

    def with_(self, relations: Union[str, Iterable[str]]) -> "BaseRepository[T]":
        """Eager load relations (replaces any previous list). Dotted names load nested relations."""
        return self._set_scope(self.current_scope().with_relations(relations))

    def with_trashed(self) -> "BaseRepository[T]":
        return self._set_scope(self.current_scope().with_trashed_state(TrashedState.WITH))

    def only_trashed(self) -> "BaseRepository[T]":
        return self._set_scope(self.current_scope().with_trashed_state(TrashedState.ONLY))

    def cache(self, ttl: Optional[int] = None) -> "BaseRepository[T]":
        """Memoise the next read for ttl seconds (CACHE_TTL when omitted; 0 stores nothing)."""
        ttl = ttl if ttl is not None else self.settings.CACHE_TTL
        return self._set_scope(self.current_scope().with_cache(True, ttl))

    def without_cache(self) -> "BaseRepository[T]":
        return self._set_scope(self.current_scope().with_cache(False))

    def where_condition(self, conditions: Dict[str, Any]) -> "BaseRepository[T]":
        """AND the given column=value pairs onto the pending conditions."""
        clauses = self._equalities(conditions)
        if not clauses:
            return self
        return self._set_scope(self.current_scope().add_condition(and_(*clauses)))

    def or_where(self, conditions: Dict[str, Any]) -> "BaseRepository[T]":
        """(everything so far) OR (column=value AND ...)."""
        clauses = self._equalities(conditions)
        if not clauses:
            return self
        scope = self.current_scope()
        alternative = and_(*clauses)
        if not scope.conditions:
            return self._set_scope(scope.add_condition(alternative))
        return self._set_scope(scope.replace_conditions(or_(and_(*scope.conditions), alternative)))

    def where_nested(self, callback: Callable[[Type[T]], Any]) -> "BaseRepository[T]":
        """callback(model) returns a boolean SQL expression, added as one grouped term."""
        return self._set_scope(self.current_scope().add_condition(callback(self.model)))

    def where_raw(self, sql: str, bindings: Optional[Dict[str, Any]] = None) -> "BaseRepository[T]":
        """Textual predicate with :named parameters."""
        clause = text(sql)
        if bindings:
            clause = clause.bindparams(**bindings)
        return self._set_scope(self.current_scope().add_condition(clause))

    def scope(self, name: str, *args, **kwargs) -> "BaseRepository[T]":
        """Apply the model's scope_<name>(*args) condition."""
        method = getattr(self.model, f"scope_{name}", None)
        if not callable(method):
            raise ConfigurationError(f"Scope '{name}' is not defined on {self.model.__name__}")
        return self._set_scope(self.current_scope().add_condition(method(*args, **kwargs)))

    def order_by(self, column: str, direction: str = "asc") -> "BaseRepository[T]":
        direction = direction.lower()
        if direction not in ("asc", "desc"):
            raise ValueError(f"Order direction must be 'asc' or 'desc', got {direction!r}")
        attribute = self._column(column)
        ordering = attribute.desc() if direction == "desc" else attribute.asc()
        return self._set_scope(self.current_scope().add_ordering(ordering))

    # ------------------------------------------------------------------
    # Statement building
    # ------------------------------------------------------------------

    def _column(self, name: str):
        if name not in self.model.__table__.columns:
            raise ValidationError(
                f"Unknown column '{name}' on {self.model.__name__}",
                detail={"fields": [name]},
            )
        return getattr(self.model, name)

    def _equalities(self, conditions: Dict[str, Any]) -> list:
        return [self._column(name) == value for name, value in conditions.items()]

    @property
    def _pk(self):
        return getattr(self.model, self.primary_key)

    def _trashed_clause(self, state: TrashedState):
        # Capability is looked up on every apply
        if not supports_soft_deletes(self.model):
            return None
        deleted_at = col(self.model.deleted_at)
        if state is TrashedState.NONE:
            return deleted_at.is_(None)
        if state is TrashedState.ONLY:
            return deleted_at.is_not(None)
        return None

    def _criteria(self, scope: QueryScope, *extra) -> list:
        criteria = []
        trashed = self._trashed_clause(scope.trashed)
        if trashed is not None:
            criteria.append(trashed)
        criteria.extend(scope.conditions)
        criteria.extend(extra)
        return criteria

    def _filtered(self, scope: QueryScope, *extra):
        statement = select(self.model)
        criteria = self._criteria(scope, *extra)
        if criteria:
            statement = statement.where(*criteria)
        return statement

    def _loader(self, path: str):
        model = self.model
        loader = None
        for name in path.split("."):
            mapper = sa_inspect(model)
            if name not in mapper.relationships:
                raise ConfigurationError(f"Relation '{name}' is not defined on {model.__name__}")
            target = mapper.relationships[name].mapper.class_
            attribute = getattr(model, name)
            # Related soft-deleted rows stay hidden, as they do for direct queries
            if supports_soft_deletes(target):
                attribute = attribute.and_(col(target.deleted_at).is_(None))
            loader = selectinload(attribute) if loader is None else loader.selectinload(attribute)
            model = target
        return loader

    def _with_loaders(self, scope: QueryScope, statement):
        if scope.relations:
            statement = statement.options(*(self._loader(path) for path in scope.relations))
        return statement

    def _loaded(self, scope: QueryScope, statement):
        statement = self._with_loaders(scope, statement)
        if scope.orderings:
            statement = statement.order_by(*scope.orderings)
        return statement

    def query(self):
        """Consume the pending scope and return it as a Select for custom queries."""
        scope = self._consume_scope()
        return self._loaded(scope, self._filtered(scope))

    def table(self):
        """The model's Table, for core selects with joins and aggregates."""
        return self.model.__table__

    # ------------------------------------------------------------------
    # Execution helpers
    # ------------------------------------------------------------------

    async def fetch(self, statement) -> List[Any]:
        """Run an entity select and return every row."""
        async with self.manager.sql.session() as session:
            result = await session.exec(statement)
            return list(result.all())

    async def fetch_one(self, statement) -> Optional[Any]:
        async with self.manager.sql.session() as session:
            result = await session.exec(statement.limit(1))
            return result.first()

    async def fetch_rows(self, statement) -> List[Any]:
        """Run a core select (joins, aggregates) and return row mappings."""
        async with self.manager.sql.session() as session:
            result = await session.execute(statement)
            return list(result.mappings().all())

    async def execute(self, statement):
        """Run a write statement; the caller should forget_cache() afterwards."""
        async with self.manager.sql.session() as session:
            return await session.execute(statement)

    async def paginate_query(self, statement, per_page: Optional[int] = None, page: Optional[int] = None) -> Page:
        per_page = resolve_per_page(per_page, self.settings)
        page = resolve_page(page)
        count_statement = select(func.count()).select_from(statement.order_by(None).subquery())
        items_statement = statement.offset((page - 1) * per_page).limit(per_page)

        async with self.manager.sql.session() as session:
            total = (await session.exec(count_statement)).one()
            items = list((await session.exec(items_statement)).all())

        return Page.build(items, total, per_page, page)

    # ------------------------------------------------------------------
    # Caching
    # ------------------------------------------------------------------

    @property
    def cache_prefix(self) -> str:
        return f"{self.settings.CACHE_PREFIX}repository_{self.table_name}_"

    def cache_key(self, method: str, params: Dict[str, Any], scope: QueryScope) -> str:
        payload = json.dumps(
            {"params": params, "scope": scope.fingerprint()}, sort_keys=True, default=str
        )
        return f"{self.cache_prefix}{method}_{hashlib.md5(payload.encode()).hexdigest()}"

    async def _remember(self, scope: QueryScope, method: str, params: Dict[str, Any], loader):
        # Reads inside a unit of work may see uncommitted rows, so they bypass the cache
        if not scope.use_cache or self.manager.sql.current_session() is not None:
            return await loader()
        ttl = scope.cache_ttl if scope.cache_ttl is not None else self.settings.CACHE_TTL
        return await self.manager.cache.remember(self.cache_key(method, params, scope), ttl, loader)

    async def forget_cache(self) -> int:
        """
        Drop every cached read of this table. Inside a unit of work this is
        queued and runs once the outermost unit has committed or rolled back;
        the return value is then 0.
        """
        if self.manager.sql.defer(f"forget_cache:{self.cache_prefix}", self._forget_cache_now):
            return 0
        return await self._forget_cache_now()

    async def _forget_cache_now(self) -> int:
        removed = await self.manager.cache.forget_prefix(self.cache_prefix)
        if removed:
            logger.debug(f"Invalidated {removed} cached read(s) for {self.table_name}")
        return removed

    # ------------------------------------------------------------------
    # Reads (terminal)
    # ------------------------------------------------------------------

    async def _fetch_scoped(self, scope: QueryScope, *extra) -> List[T]:
        return await self.fetch(self._loaded(scope, self._filtered(scope, *extra)))

    async def _first_scoped(self, scope: QueryScope, *extra) -> Optional[T]:
        return await self.fetch_one(self._loaded(scope, self._filtered(scope, *extra)))

    async def all(self) -> List[T]:
        scope = self._consume_scope()
        return await self._remember(scope, "all", {}, lambda: self._fetch_scoped(scope))

    async def get(self) -> List[T]:
        """Run the chained conditions."""
        scope = self._consume_scope()
        return await self._remember(scope, "get", {}, lambda: self._fetch_scoped(scope))

    async def first(self) -> Optional[T]:
        scope = self._consume_scope()
        return await self._remember(scope, "first", {}, lambda: self._first_scoped(scope))

    async def count(self) -> int:
        scope = self._consume_scope()
        statement = select(func.count()).select_from(self._filtered(scope).subquery())
        async with self.manager.sql.session() as session:
            return (await session.exec(statement)).one()

    async def find(self, id: Any) -> Optional[T]:
        scope = self._consume_scope()
        return await self._remember(
            scope, "find", {"id": id}, lambda: self._first_scoped(scope, self._pk == id)
        )

    async def find_by(self, column: str, value: Any) -> Optional[T]:
        scope = self._consume_scope()
        criterion = self._column(column) == value
        return await self._remember(
            scope, "find_by", {"column": column, "value": value},
            lambda: self._first_scoped(scope, criterion),
        )

    async def where(self, conditions: Dict[str, Any]) -> List[T]:
        scope = self._consume_scope()
        criteria = self._equalities(conditions)
        return await self._remember(
            scope, "where", {"conditions": conditions},
            lambda: self._fetch_scoped(scope, *criteria),
        )

    async def paginate(self, per_page: Optional[int] = None, page: Optional[int] = None) -> Page:
        scope = self._consume_scope()
        per_page = resolve_per_page(per_page, self.settings)
        page = resolve_page(page)
        statement = self._loaded(scope, self._filtered(scope))
        return await self._remember(
            scope, "paginate", {"per_page": per_page, "page": page},
            lambda: self.paginate_query(statement, per_page, page),
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def saving(self, record: T) -> None:
        """Called with each record just before create(), update() or insert() writes it."""

    def fillable(self) -> tuple:
        """Mass-assignable fields: __fillable__ when declared, else every non-key column."""
        declared = getattr(self.model, "__fillable__", None)
        if declared is not None:
            return tuple(declared)
        return tuple(
            column.name for column in self.model.__table__.columns
            if column.name != self.primary_key
        )

    def _assignable(self, data) -> Dict[str, Any]:
        if isinstance(data, BaseModel):
            data = data.model_dump(exclude_unset=True)
        allowed = set(self.fillable())
        rejected = sorted(name for name in data if name not in allowed)
        if rejected:
            raise ValidationError(
                f"Field(s) not assignable on {self.model.__name__}: {', '.join(rejected)}",
                detail={"fields": rejected},
            )
        return dict(data)

    async def _locate(self, session, scope: QueryScope, id: Any) -> Optional[T]:
        statement = self._filtered(scope, self._pk == id).limit(1)
        result = await session.exec(statement)
        return result.first()

    async def create(self, data: Dict[str, Any]) -> T:
        payload = self._assignable(data)
        async with self.manager.sql.session() as session:
            record = self.model(**payload)
            self.saving(record)
            session.add(record)
            await session.flush()
            await session.refresh(record)
        await self.forget_cache()
        logger.debug(f"Created {self.model.__name__}#{getattr(record, self.primary_key)}")
        return record

    async def update(self, id: Any, data: Dict[str, Any]) -> bool:
        """Partial update of the record the pending scope can see; False when there is none."""
        scope = self._consume_scope()
        payload = self._assignable(data)
        async with self.manager.sql.session() as session:
            record = await self._locate(session, scope, id)
            if record is None:
                return False
            for field, value in payload.items():
                setattr(record, field, value)
            self.saving(record)
            session.add(record)
            await session.flush()
        await self.forget_cache()
        return True

    async def delete(self, id: Any) -> bool:
        """Soft delete when the model supports it, else remove the row."""
        scope = self._consume_scope()
        async with self.manager.sql.session() as session:
            record = await self._locate(session, scope, id)
            if record is None:
                return False
            if supports_soft_deletes(self.model):
                record.deleted_at = utcnow()
                session.add(record)
            else:
                await session.delete(record)
            await session.flush()
        await self.forget_cache()
        return True

    async def restore(self, id: Any) -> bool:
        scope = self._consume_scope()
        if not supports_soft_deletes(self.model):
            return False
        async with self.manager.sql.session() as session:
            record = await self._locate(session, replace(scope, trashed=TrashedState.WITH), id)
            if record is None:
                return False
            record.deleted_at = None
            session.add(record)
            await session.flush()
        await self.forget_cache()
        return True

    async def force_delete(self, id: Any) -> bool:
        scope = self._consume_scope()
        if not supports_soft_deletes(self.model):
            return False
        async with self.manager.sql.session() as session:
            record = await self._locate(session, replace(scope, trashed=TrashedState.WITH), id)
            if record is None:
                return False
            await session.delete(record)
            await session.flush()
        await self.forget_cache()
        return True

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def unit_of_work(self) -> UnitOfWork:
        return UnitOfWork(self.manager.sql)

    async def transaction(self, callback: Callable[[], Any]) -> Any:
        """Run callback in one transaction; errors roll back and propagate. No retry."""
        async with self.unit_of_work():
            return await _resolve(callback())

    async def create_or_fail(self, data: Dict[str, Any]) -> T:
        return await self.transaction(lambda: self.create(data))

    async def update_or_fail(self, id: Any, data: Dict[str, Any]) -> bool:
        async def _update() -> bool:
            if not await self.update(id, data):
                raise RecordNotFoundError(f"Failed to update record with ID {id}", detail={"id": id})
            return True

        return await self.transaction(_update)

    # ------------------------------------------------------------------
    # Bulk operations and iteration
    # ------------------------------------------------------------------

    async def insert_get_ids(self, records: Iterable[Dict[str, Any]]) -> List[Any]:
        """Insert records one by one in one transaction; ids in input order. Errors roll back and propagate."""
        ids = []
        async with self.unit_of_work() as uow:
            for data in records:
                record = self.model(**self._assignable(data))
                self.saving(record)
                uow.session.add(record)
                await uow.flush()
                ids.append(getattr(record, self.primary_key))
        await self.forget_cache()
        return ids

    async def insert(self, records: Iterable[Dict[str, Any]]) -> bool:
        """All-or-nothing insert; False (after rollback) when any record fails."""
        try:
            await self.insert_get_ids(records)
        except (ValidationError, SQLAlchemyError) as e:
            logger.warning(f"Bulk insert into {self.table_name} rolled back: {e}")
            return False
        return True

    async def update_where(self, values: Dict[str, Any], conditions: Dict[str, Any]) -> int:
        """Single UPDATE over rows matching conditions and the pending scope; returns affected rows."""
        scope = self._consume_scope()
        for name in values:
            self._column(name)
        statement = update(self.model)
        criteria = self._criteria(scope, *self._equalities(conditions))
        if criteria:
            statement = statement.where(*criteria)
        statement = statement.values(**values).execution_options(synchronize_session=False)

        result = await self.execute(statement)
        await self.forget_cache()
        return result.rowcount

    async def delete_where(self, conditions: Dict[str, Any]) -> int:
        """Single statement delete (soft when supported); empty conditions match every row."""
        scope = self._consume_scope()
        criteria = self._criteria(scope, *self._equalities(conditions))
        if supports_soft_deletes(self.model):
            statement = update(self.model).values(deleted_at=utcnow())
        else:
            statement = delete(self.model)
        if criteria:
            statement = statement.where(*criteria)
        statement = statement.execution_options(synchronize_session=False)

        result = await self.execute(statement)
        await self.forget_cache()
        return result.rowcount

    async def chunk(self, size: int, callback: Callable[[List[T]], Any]) -> bool:
        """
        Feed matching records to callback in batches of `size` using OFFSET paging,
        ordered by the chained order or the primary key. Returns False if the
        callback returned False to stop early.
        """
        scope = self._consume_scope()
        if size < 1:
            raise ValueError(f"Chunk size must be positive, got {size}")
        statement = self._with_loaders(scope, self._filtered(scope))
        orderings = scope.orderings or (self._pk.asc(),)

        offset = 0
        while True:
            batch = await self.fetch(statement.order_by(*orderings).offset(offset).limit(size))
            if not batch:
                break
            if await _resolve(callback(batch)) is False:
                return False
            if len(batch) < size:
                break
            offset += size
        return True

    async def chunk_by_id(self, size: int, callback: Callable[[List[T]], Any]) -> bool:
        """Like chunk() but pages by primary key (pk > last seen), so rows changing mid-iteration are not skipped."""
        scope = self._consume_scope()
        if size < 1:
            raise ValueError(f"Chunk size must be positive, got {size}")
        statement = self._with_loaders(scope, self._filtered(scope))

        last_id = None
        while True:
            page = statement
            if last_id is not None:
                page = page.where(self._pk > last_id)
            batch = await self.fetch(page.order_by(self._pk.asc()).limit(size))
            if not batch:
                break
            last_id = getattr(batch[-1], self.primary_key)
            if await _resolve(callback(batch)) is False:
                return False
            if len(batch) < size:
                break
        return True
