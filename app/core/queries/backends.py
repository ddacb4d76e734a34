import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from pydantic_core import to_jsonable_python
from sqlalchemy.ext.asyncio import AsyncEngine
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    stop_after_attempt,
    wait_exponential,
)

from app.core.config import settings
from app.core.database import create_backend_engine
from app.core.errors import QueryExecutionError
from app.core.queries import templating

# -----------------------------------------------------------------------------
# BACKENDS MODULE
# Purpose: decide which database answers a rendered template, and run it.
# The warehouse is optional and flaky: it gets retries and a relational fallback.
# The primary relational store is assumed durable: its errors propagate as-is.
# -----------------------------------------------------------------------------

logger = logging.getLogger(__name__)

WAREHOUSE = "warehouse"
RELATIONAL = "relational"
AUTO = "auto"


class Backend:
    """One database reachable through a pooled SQLAlchemy async engine."""

    def __init__(self, name: str, engine: AsyncEngine):
        self.name = name
        self.engine = engine

    async def fetch_all(self, sql: str) -> List[Dict[str, Any]]:
        """
        Run concrete SQL and return JSON-safe rows.

        The statement is handed to the driver untouched: it no longer carries
        bind parameters, and `%` or `:` inside it must not be reinterpreted.
        """
        async with self.engine.connect() as conn:
            result = await conn.exec_driver_sql(
                sql, execution_options={"no_parameters": True}
            )
            rows = [dict(row) for row in result.mappings().all()]
        # Dates / decimals become strings so cached and fresh rows are identical
        return to_jsonable_python(rows)

    async def ping(self) -> bool:
        try:
            await self.fetch_all("SELECT 1")
            return True
        except Exception as error:
            logger.warning(f"Backend {self.name} ping failed: {error}")
            return False

    async def dispose(self):
        await self.engine.dispose()


@dataclass
class RoutedRows:
    rows: List[Dict[str, Any]]
    backend: str
    sql: str


class BackendRouter:
    """
    Route templates between the warehouse and the relational stores.

    Args:
        primary: Relational store holding the catalogue and operational tables
        analytics: Relational copy of the analytical tables, used when the
            warehouse is missing or keeps failing (defaults to `primary`)
        warehouse: Optional columnar warehouse
        schema: Warehouse schema for `${schema}` and bare table names
        warehouse_tables: Table names that mark a template as analytical
        markers: Dialect snippets that mark a template as analytical
        max_attempts: Warehouse attempts before falling back
        backoff_seconds: Base of the exponential wait between attempts
    """

    def __init__(
        self,
        primary: Backend,
        analytics: Optional[Backend] = None,
        warehouse: Optional[Backend] = None,
        schema: str = "public",
        warehouse_tables: Iterable[str] = ("deliveries", "businesses"),
        markers: Iterable[str] = ("TO_CHAR", "::numeric", "${schema}"),
        max_attempts: int = 2,
        backoff_seconds: float = 2.0,
    ):
        self.primary = primary
        self.analytics = analytics or primary
        self.warehouse = warehouse
        self.schema = schema
        self.warehouse_tables = tuple(warehouse_tables)
        self.markers = tuple(markers)
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds

    def is_analytical(self, sql_text: str) -> bool:
        """Substring scan of the unrendered template."""
        needles = self.warehouse_tables + self.markers
        return any(needle in sql_text for needle in needles)

    def classify(self, sql_text: str, affinity: str = AUTO) -> str:
        if affinity in (WAREHOUSE, RELATIONAL):
            return affinity
        return WAREHOUSE if self.is_analytical(sql_text) else RELATIONAL

    def render(self, sql_text: str, filters: Dict[str, Any], dialect: str) -> str:
        return templating.render(
            sql_text,
            filters,
            dialect=dialect,
            schema=self.schema,
            warehouse_tables=self.warehouse_tables,
        )

    async def execute(
        self,
        sql_text: str,
        filters: Dict[str, Any],
        affinity: str = AUTO,
        row_cap: Optional[int] = None,
    ) -> RoutedRows:
        """
        Render and run a template on the right backend.

        Raises:
            QueryExecutionError: the relational backend that had the final say failed
        """
        standard_sql = self.render(sql_text, filters, templating.STANDARD)
        if row_cap:
            standard_sql = templating.cap_rows(standard_sql, row_cap)

        if self.classify(sql_text, affinity) == RELATIONAL:
            return await self._run_relational(self.primary, standard_sql)

        if self.warehouse is None:
            logger.debug("No warehouse configured, using relational analytics store")
            return await self._run_relational(self.analytics, standard_sql)

        warehouse_sql = self.render(sql_text, filters, templating.WAREHOUSE)
        if row_cap:
            warehouse_sql = templating.cap_rows(warehouse_sql, row_cap)

        try:
            rows = await self._run_warehouse(warehouse_sql)
            return RoutedRows(rows=rows, backend=self.warehouse.name, sql=warehouse_sql)
        except Exception as error:
            logger.warning(
                f"Warehouse query failed after {self.max_attempts} attempt(s), "
                f"falling back to {self.analytics.name}: {error}"
            )
            return await self._run_relational(self.analytics, standard_sql)

    async def _run_warehouse(self, sql: str) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=30),
            before_sleep=_log_retry,
            reraise=True,
        ):
            with attempt:
                rows = await self.warehouse.fetch_all(sql)
        return rows

    async def _run_relational(self, backend: Backend, sql: str) -> RoutedRows:
        try:
            rows = await backend.fetch_all(sql)
        except Exception as error:
            logger.error(f"Query failed on {backend.name}: {error}")
            raise QueryExecutionError(str(error), backend=backend.name) from error
        return RoutedRows(rows=rows, backend=backend.name, sql=sql)

    async def dispose(self):
        # The primary engine belongs to the app, only close what we created
        for backend in (self.analytics, self.warehouse):
            if backend is not None and backend is not self.primary:
                await backend.dispose()


def _log_retry(retry_state: RetryCallState):
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        f"Warehouse attempt {retry_state.attempt_number} failed, "
        f"retrying in {retry_state.next_action.sleep:.1f}s: {error}"
    )


def create_router(primary_engine: AsyncEngine) -> BackendRouter:
    """Build the router from environment settings."""
    primary = Backend("primary", primary_engine)

    analytics = None
    if settings.ANALYTICS_DATABASE_URL:
        analytics = Backend(
            "analytics", create_backend_engine(settings.ANALYTICS_DATABASE_URL)
        )

    warehouse = None
    if settings.WAREHOUSE_DATABASE_URL:
        warehouse = Backend(
            "warehouse", create_backend_engine(settings.WAREHOUSE_DATABASE_URL)
        )
    else:
        logger.info("No warehouse configuration found, relational stores answer everything")

    return BackendRouter(
        primary=primary,
        analytics=analytics,
        warehouse=warehouse,
        schema=settings.WAREHOUSE_SCHEMA,
        warehouse_tables=settings.WAREHOUSE_TABLES,
        markers=settings.WAREHOUSE_MARKERS,
        max_attempts=settings.WAREHOUSE_MAX_ATTEMPTS,
        backoff_seconds=settings.WAREHOUSE_BACKOFF_SECONDS,
    )
