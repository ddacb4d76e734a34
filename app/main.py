import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from fastapi import FastAPI, Request
from app.core.config import settings
from app.core.database import AsyncSessionLocal, engine, Base
from app.core.queries.service import create_service, refresh_filter_cache_periodically
from app.api.router import api_router

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


async def create_tables():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# Build the query service once, refresh filter options in the background,
# and close every pool and client once everything is done
@asynccontextmanager
async def lifespan(app: FastAPI):
    await create_tables()

    service = create_service()
    app.state.query_service = service

    # A cold filter cache is not fatal, the first request fills it
    try:
        async with AsyncSessionLocal() as db:
            await service.warm_up_filter_cache(db)
    except Exception as e:
        logger.warning(f"Filter cache warm-up during startup failed: {e}")

    refresher = asyncio.create_task(refresh_filter_cache_periodically(service))

    yield

    refresher.cancel()
    with suppress(asyncio.CancelledError):
        await refresher
    await service.close()
    await engine.dispose()


app = FastAPI(title="Validated Queries API", lifespan=lifespan)

# Include the master router containing all our endpoints
app.include_router(api_router)


@app.get("/")
async def root():
    return {"message": "Welcome to the Validated Queries API"}


@app.get("/health")
async def health(request: Request):
    service = request.app.state.query_service
    database_ok = await service.router.primary.ping()
    return {
        "status": "ok" if database_ok else "degraded",
        "database": database_ok,
        "cache": await service.cache.ping(),
        "warehouse": service.router.warehouse is not None,
    }
