from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import desc, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import models

# -----------------------------------------------------------------------------
# CATALOGUE MODULE
# Purpose: persistence for validated queries, filter dimensions, snapshots and
# the invalidation log. Callers own the transaction: nothing here commits
# except the helpers that explicitly say so.
# -----------------------------------------------------------------------------

ACTIVE = "active"


class CatalogueRepository:
    """Data access for the query catalogue, bound to one session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # =========================
    # Validated queries
    # =========================
    async def list_queries(self, scope: Optional[str] = None) -> List[models.ValidatedQuery]:
        """Active queries ordered by name; a scope also matches `ALL` entries."""
        stmt = select(models.ValidatedQuery).where(
            models.ValidatedQuery.status == ACTIVE
        )
        if scope:
            stmt = stmt.where(
                or_(
                    models.ValidatedQuery.scope == scope,
                    models.ValidatedQuery.scope == "ALL",
                )
            )
        result = await self.db.execute(stmt.order_by(models.ValidatedQuery.name))
        return list(result.scalars().all())

    async def get_query(
        self, query_id: str, active_only: bool = True
    ) -> Optional[models.ValidatedQuery]:
        stmt = select(models.ValidatedQuery).where(models.ValidatedQuery.id == query_id)
        if active_only:
            stmt = stmt.where(models.ValidatedQuery.status == ACTIVE)
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def get_query_by_name(
        self, name: str, active_only: bool = True
    ) -> Optional[models.ValidatedQuery]:
        stmt = select(models.ValidatedQuery).where(models.ValidatedQuery.name == name)
        if active_only:
            stmt = stmt.where(models.ValidatedQuery.status == ACTIVE)
        else:
            # Prefer the live entry when deactivated copies share the name
            stmt = stmt.order_by(
                desc(models.ValidatedQuery.status == ACTIVE),
                desc(models.ValidatedQuery.updated_at),
            )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def get_by_id_or_name(
        self, identifier: str, active_only: bool = True
    ) -> Optional[models.ValidatedQuery]:
        """Canonical id first, human-readable name second."""
        query = await self.get_query(identifier, active_only)
        if query is None:
            query = await self.get_query_by_name(identifier, active_only)
        return query

    async def name_taken(self, name: str, exclude_id: Optional[str] = None) -> bool:
        stmt = select(models.ValidatedQuery.id).where(
            models.ValidatedQuery.name == name,
            models.ValidatedQuery.status == ACTIVE,
        )
        if exclude_id:
            stmt = stmt.where(models.ValidatedQuery.id != exclude_id)
        result = await self.db.execute(stmt.limit(1))
        return result.first() is not None

    def add_query(self, data: Dict[str, Any]) -> models.ValidatedQuery:
        query = models.ValidatedQuery(**data)
        self.db.add(query)
        return query

    def apply_changes(self, query: models.ValidatedQuery, changes: Dict[str, Any]):
        for key, value in changes.items():
            setattr(query, key, value)
        self.db.add(query)

    def record_invalidation(self, query_id: str, filter_hash: str, reason: str):
        self.db.add(
            models.CacheInvalidation(qid=query_id, filter_hash=filter_hash, reason=reason)
        )

    async def list_invalidations(self, query_id: str) -> List[models.CacheInvalidation]:
        stmt = (
            select(models.CacheInvalidation)
            .where(models.CacheInvalidation.qid == query_id)
            .order_by(models.CacheInvalidation.invalidated_at)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    # =========================
    # Filter dimensions
    # =========================
    async def list_dimensions(self) -> List[models.FilterDimension]:
        stmt = (
            select(models.FilterDimension)
            .where(models.FilterDimension.is_active == True)
            .order_by(models.FilterDimension.label)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_dimension(self, dimension_id: str) -> Optional[models.FilterDimension]:
        result = await self.db.execute(
            select(models.FilterDimension).where(models.FilterDimension.id == dimension_id)
        )
        return result.scalars().first()

    async def get_dimension_by_param(self, sql_param: str) -> Optional[models.FilterDimension]:
        stmt = select(models.FilterDimension).where(
            models.FilterDimension.sql_param == sql_param,
            models.FilterDimension.is_active == True,
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    def add_dimension(self, data: Dict[str, Any]) -> models.FilterDimension:
        dimension = models.FilterDimension(**data)
        self.db.add(dimension)
        return dimension

    # =========================
    # Durable snapshots
    # =========================
    async def save_snapshot(
        self, query_id: str, filters: Dict[str, Any], rows: List[Any]
    ) -> models.ValidatedResult:
        """Upsert one snapshot row and commit it."""
        snapshot = await self.db.merge(
            models.ValidatedResult(
                qid=query_id,
                run_stamp=datetime.now(timezone.utc),
                filter_json=filters,
                result_json=rows,
            )
        )
        await self.db.commit()
        return snapshot

    async def latest_snapshot(self, query_id: str) -> Optional[models.ValidatedResult]:
        stmt = (
            select(models.ValidatedResult)
            .where(models.ValidatedResult.qid == query_id)
            .order_by(desc(models.ValidatedResult.run_stamp))
            .limit(1)
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()
