import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core import models, schemas
from app.core.config import settings
from app.core.database import AsyncSessionLocal, create_redis_client, engine
from app.core.errors import (
    ConflictError,
    DuplicateQueryNameError,
    FilterDimensionNotFoundError,
    InvalidTransitionError,
    QueryNotFoundError,
)
from app.core.queries.backends import BackendRouter, create_router
from app.core.queries.cache import CacheStore, CacheWrite
from app.core.queries.catalogue import CatalogueRepository
from app.core.queries.filters import (
    ALL_FILTERS_HASH,
    cache_key,
    filter_options_key,
    normalize_filters,
    query_key_pattern,
)

# -----------------------------------------------------------------------------
# SERVICE MODULE - Orchestration
# Purpose: resolve a validated query, serve it from cache or run it, keep both
# cache tiers and the catalogue consistent.
# Flow: identifier -> catalogue -> default filters -> cache key -> Redis
#       -> (miss) render + route -> Redis + durable snapshot -> caller
# -----------------------------------------------------------------------------

logger = logging.getLogger(__name__)

OPTION_CONTROLS = ("select", "multiselect")

# Allowed status moves; staying put is always allowed
TRANSITIONS = {
    "draft": {"active", "deactivated"},
    "active": {"deactivated"},
    "deactivated": set(),
}


@dataclass(frozen=True)
class QueryInfo:
    """Detached copy of the catalogue fields execution needs."""

    id: str
    name: str
    scope: str
    chart_hint: str
    sql_text: str
    backend: str

    @classmethod
    def from_model(cls, query: models.ValidatedQuery) -> "QueryInfo":
        return cls(
            id=query.id,
            name=query.name,
            scope=query.scope,
            chart_hint=query.chart_hint,
            sql_text=query.sql_text,
            backend=query.backend,
        )


@dataclass
class ExecutionResult:
    query: QueryInfo
    data: List[Dict[str, Any]]
    cached: bool
    filters: Dict[str, Any]
    backend: Optional[str] = None
    cache_write: Optional[CacheWrite] = None
    snapshot_write: Optional[CacheWrite] = None


class ValidatedQueryService:
    """
    Engine behind the validated-query API and the chat-agent contract.

    Args:
        router: Picks and runs the backend for each rendered template
        cache: Ephemeral tier (Redis)
        session_factory: Sessions for durable snapshot writes, independent of
            the caller's session so a failed snapshot can't poison it
        coalesce: Share one execution between concurrent misses on a key
    """

    def __init__(
        self,
        router: BackendRouter,
        cache: CacheStore,
        session_factory: async_sessionmaker,
        query_ttl: int = settings.QUERY_CACHE_TTL,
        filter_ttl: int = settings.FILTER_CACHE_TTL,
        test_row_limit: int = settings.TEST_QUERY_ROW_LIMIT,
        window_days: int = settings.DEFAULT_DATE_WINDOW_DAYS,
        coalesce: bool = True,
    ):
        self.router = router
        self.cache = cache
        self.session_factory = session_factory
        self.query_ttl = query_ttl
        self.filter_ttl = filter_ttl
        self.test_row_limit = test_row_limit
        self.window_days = window_days
        self.coalesce = coalesce
        # Invalidation clock: a run that began before its query was last
        # invalidated returns its rows but never caches them
        self._epoch = 0
        self._invalidated_at: Dict[str, int] = {}
        self._in_flight: Dict[str, asyncio.Task] = {}

    # =========================
    # Catalogue
    # =========================
    async def list_queries(
        self, db: AsyncSession, scope: Optional[str] = None
    ) -> List[models.ValidatedQuery]:
        return await CatalogueRepository(db).list_queries(scope)

    async def get_query(
        self, db: AsyncSession, identifier: str, active_only: bool = True
    ) -> models.ValidatedQuery:
        query = await CatalogueRepository(db).get_by_id_or_name(identifier, active_only)
        if query is None:
            raise QueryNotFoundError(identifier)
        return query

    async def create_query(
        self, db: AsyncSession, data: schemas.ValidatedQueryCreate
    ) -> models.ValidatedQuery:
        repo = CatalogueRepository(db)
        payload = data.model_dump(mode="json")
        if payload["status"] == "deactivated":
            raise InvalidTransitionError("new", "deactivated")
        if payload["status"] == "active" and await repo.name_taken(payload["name"]):
            raise DuplicateQueryNameError(payload["name"])

        query = repo.add_query(payload)
        await db.commit()
        await db.refresh(query)
        logger.info(f"Created validated query {query.name} ({query.id})")
        return query

    async def update_query(
        self,
        db: AsyncSession,
        identifier: str,
        changes: schemas.ValidatedQueryUpdate,
        reason: str = "Query updated",
    ) -> models.ValidatedQuery:
        """
        Apply catalogue changes and drop every cached result of the query.

        Drafts can be addressed too, so they can be edited and activated.
        """
        repo = CatalogueRepository(db)
        query = await self.get_query(db, identifier, active_only=False)
        updates = changes.model_dump(mode="json", exclude_unset=True)

        current = query.status
        target = updates.get("status") or current
        if current == "deactivated":
            raise ConflictError("Deactivated queries cannot be edited")
        if target != current and target not in TRANSITIONS[current]:
            raise InvalidTransitionError(current, target)

        name = updates.get("name") or query.name
        if target == "active" and await repo.name_taken(name, exclude_id=query.id):
            raise DuplicateQueryNameError(name)

        if "sql_text" in updates and updates["sql_text"] != query.sql_text:
            updates["validated_at"] = datetime.now(timezone.utc)

        repo.apply_changes(query, updates)
        repo.record_invalidation(query.id, ALL_FILTERS_HASH, reason)
        await db.commit()
        await db.refresh(query)

        # After commit: runs already rendering the old template must not cache
        # or be joined, then the stored entries go
        self._mark_invalidated(query.id)
        await self.cache.invalidate_query(query.id)
        return query

    def _mark_invalidated(self, query_id: str):
        self._epoch += 1
        self._invalidated_at[query_id] = self._epoch

        prefix = query_key_pattern(query_id).rstrip("*")
        for key in [k for k in self._in_flight if k.startswith(prefix)]:
            del self._in_flight[key]

    async def deactivate_query(
        self, db: AsyncSession, identifier: str
    ) -> models.ValidatedQuery:
        return await self.update_query(
            db,
            identifier,
            schemas.ValidatedQueryUpdate(status=schemas.QueryStatus.DEACTIVATED),
            reason="Query deactivated",
        )

    # =========================
    # Execution
    # =========================
    async def execute(
        self,
        db: AsyncSession,
        identifier: str,
        filters: Optional[Dict[str, Any]] = None,
    ) -> ExecutionResult:
        """
        Serve a validated query with filters applied.

        Raises:
            QueryNotFoundError: no active query with this id or name
            QueryExecutionError: every backend able to answer failed
        """
        # Read the clock before the catalogue, so an update landing in between counts
        started = self._epoch
        info = QueryInfo.from_model(await self.get_query(db, identifier))
        final_filters = normalize_filters(filters, window_days=self.window_days)
        key = cache_key(info.id, final_filters)

        lookup = await self.cache.get(key)
        if lookup.hit:
            logger.debug(f"Cache hit: {key}")
            return ExecutionResult(
                query=info, data=lookup.rows, cached=True, filters=final_filters
            )

        if not self.coalesce:
            return await self._run_and_store(info, final_filters, key, started)

        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(
                self._run_and_store(info, final_filters, key, started)
            )
            self._in_flight[key] = task
            task.add_done_callback(lambda done: self._forget(key, done))
        else:
            logger.debug(f"Joining in-flight execution for {key}")
        # Shielded: one caller going away must not cancel the shared run
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task):
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    async def _run_and_store(
        self, info: QueryInfo, filters: Dict[str, Any], key: str, started: int
    ) -> ExecutionResult:
        routed = await self.router.execute(info.sql_text, filters, affinity=info.backend)
        logger.info(f"Executed {info.name} on {routed.backend}: {len(routed.rows)} rows")

        if self._invalidated_at.get(info.id, 0) > started:
            logger.info(f"Not caching {info.name}: the query changed while it ran")
            cache_write = CacheWrite(ok=False, skipped=True)
        else:
            cache_write = await self.cache.put(key, routed.rows, self.query_ttl)
        snapshot_write = await self._save_snapshot(info, filters, routed.rows)

        return ExecutionResult(
            query=info,
            data=routed.rows,
            cached=False,
            filters=filters,
            backend=routed.backend,
            cache_write=cache_write,
            snapshot_write=snapshot_write,
        )

    async def _save_snapshot(
        self, info: QueryInfo, filters: Dict[str, Any], rows: List[Any]
    ) -> CacheWrite:
        async with self.session_factory() as session:
            try:
                await CatalogueRepository(session).save_snapshot(info.id, filters, rows)
            except Exception as error:
                await session.rollback()
                logger.error(f"Failed to persist snapshot for {info.name}: {error}")
                return CacheWrite.failed(error)
        return CacheWrite(ok=True)

    async def test_query(
        self, sql: str, filters: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Admin escape hatch: run unsaved SQL, capped and never cached."""
        final_filters = normalize_filters(filters, window_days=self.window_days)
        try:
            routed = await self.router.execute(
                sql, final_filters, row_cap=self.test_row_limit
            )
        except Exception as error:
            logger.warning(f"Test query failed: {error}")
            return {"success": False, "error": str(error)}
        return {"success": True, "data": routed.rows}

    async def materialize_all(self, db: AsyncSession) -> List[Dict[str, Any]]:
        """Run every active query with default filters to pre-populate caches."""
        targets = [(q.id, q.name) for q in await self.list_queries(db)]
        defaults = normalize_filters({}, window_days=self.window_days)

        results = []
        for query_id, name in targets:
            try:
                outcome = await self.execute(db, query_id, defaults)
            except Exception as error:
                logger.error(f"Failed to materialize {name}: {error}")
                results.append({"query_id": query_id, "query_name": name, "error": str(error)})
                continue
            logger.info(f"Materialized {name}: {len(outcome.data)} rows")
            results.append(
                {
                    "query_id": query_id,
                    "query_name": name,
                    "rows": len(outcome.data),
                    "cached": outcome.cached,
                }
            )
        return results

    # =========================
    # Filter dimensions
    # =========================
    async def list_dimensions(self, db: AsyncSession) -> List[models.FilterDimension]:
        return await CatalogueRepository(db).list_dimensions()

    async def get_dimension(
        self, db: AsyncSession, dimension_id: str
    ) -> models.FilterDimension:
        dimension = await CatalogueRepository(db).get_dimension(dimension_id)
        if dimension is None:
            raise FilterDimensionNotFoundError(dimension_id)
        return dimension

    async def create_dimension(
        self, db: AsyncSession, data: schemas.FilterDimensionCreate
    ) -> models.FilterDimension:
        repo = CatalogueRepository(db)
        if await repo.get_dimension_by_param(data.sql_param):
            raise ConflictError(f"Filter {data.sql_param!r} already exists")

        dimension = repo.add_dimension(data.model_dump(mode="json"))
        await db.commit()
        await db.refresh(dimension)
        return dimension

    async def update_dimension(
        self,
        db: AsyncSession,
        dimension_id: str,
        changes: schemas.FilterDimensionUpdate,
    ) -> models.FilterDimension:
        dimension = await self.get_dimension(db, dimension_id)
        updates = changes.model_dump(mode="json", exclude_unset=True)
        old_param = dimension.sql_param

        # One active dimension per param, whether renamed onto it or reactivated
        new_param = updates.get("sql_param", old_param)
        if updates.get("is_active", dimension.is_active):
            holder = await CatalogueRepository(db).get_dimension_by_param(new_param)
            if holder is not None and holder.id != dimension.id:
                raise ConflictError(f"Filter {new_param!r} already exists")

        for key, value in updates.items():
            setattr(dimension, key, value)
        db.add(dimension)
        await db.commit()
        await db.refresh(dimension)

        # Options may have changed shape, or moved to another param name
        await self.cache.invalidate_filter_options(old_param)
        if dimension.sql_param != old_param:
            await self.cache.invalidate_filter_options(dimension.sql_param)
        return dimension

    async def deactivate_dimension(
        self, db: AsyncSession, dimension_id: str
    ) -> models.FilterDimension:
        return await self.update_dimension(
            db, dimension_id, schemas.FilterDimensionUpdate(is_active=False)
        )

    async def get_filter_options(self, db: AsyncSession, sql_param: str) -> List[Any]:
        """
        Legal values for one filter, read through `filter_options:{param}`.

        Unknown params and free-form dimensions have no options: `[]`,
        not cached.
        """
        key = filter_options_key(sql_param)
        lookup = await self.cache.get(key)
        if lookup.hit:
            return lookup.rows

        dimension = await CatalogueRepository(db).get_dimension_by_param(sql_param)
        if dimension is None or not dimension.values_sql:
            return []

        routed = await self.router.execute(dimension.values_sql, {})
        await self.cache.put(key, routed.rows, self.filter_ttl)
        return routed.rows

    async def warm_up_filter_cache(self, db: AsyncSession) -> Dict[str, List[str]]:
        """Force a fresh options fill for every select / multiselect filter."""
        dimensions = [
            d.sql_param
            for d in await self.list_dimensions(db)
            if d.control in OPTION_CONTROLS
        ]

        warmed, failed = [], []
        for sql_param in dimensions:
            await self.cache.invalidate_filter_options(sql_param)
            try:
                await self.get_filter_options(db, sql_param)
                warmed.append(sql_param)
            except Exception as error:
                logger.warning(f"Filter cache warm-up failed for {sql_param}: {error}")
                failed.append(sql_param)

        logger.info(f"Filter cache warm-up: {len(warmed)} warmed, {len(failed)} failed")
        return {"warmed": warmed, "failed": failed}

    async def invalidate_filter_cache(self, sql_param: Optional[str] = None) -> int:
        return await self.cache.invalidate_filter_options(sql_param)

    async def close(self):
        await self.router.dispose()
        await self.cache.close()


def create_service() -> ValidatedQueryService:
    """Wire the service from environment settings."""
    return ValidatedQueryService(
        router=create_router(engine),
        cache=CacheStore(create_redis_client(settings.REDIS_URL)),
        session_factory=AsyncSessionLocal,
    )


async def refresh_filter_cache_periodically(
    service: ValidatedQueryService,
    session_factory: async_sessionmaker = AsyncSessionLocal,
    interval: int = settings.FILTER_CACHE_REFRESH_SECONDS,
):
    """Background loop started by the app lifespan; cancelled on shutdown."""
    while True:
        await asyncio.sleep(interval)
        logger.info("Starting scheduled filter cache refresh...")
        try:
            async with session_factory() as db:
                await service.warm_up_filter_cache(db)
        except Exception as error:
            logger.warning(f"Scheduled filter cache refresh failed: {error}")


# Dependency for routes: the service instance lives on app.state
def get_query_service(request: Request) -> ValidatedQueryService:
    return request.app.state.query_service
