import logging
from typing import Any, List, Annotated
from fastapi import APIRouter, HTTPException, status, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import schemas
from app.core.database import get_db
from app.core.errors import ConflictError, NotFoundError, QueryExecutionError
from app.core.queries.service import ValidatedQueryService, get_query_service
from app.core.security import get_current_user, validate_admin_role

router = APIRouter(prefix="/validated-queries/meta/filters", tags=["Filters"])

db_dep = Annotated[AsyncSession, Depends(get_db)]
service_dep = Annotated[ValidatedQueryService, Depends(get_query_service)]
user_dep = Annotated[schemas.CurrentUser, Depends(get_current_user)]
admin_dep = Annotated[schemas.CurrentUser, Depends(validate_admin_role)]


@router.get("", response_model=List[schemas.FilterDimensionResponse])
async def list_filter_dimensions(
    current_user: user_dep,
    db: db_dep,
    service: service_dep,
):
    return await service.list_dimensions(db)


@router.get("/{sql_param}/options", response_model=List[Any])
async def get_filter_options(
    sql_param: str,
    current_user: user_dep,
    db: db_dep,
    service: service_dep,
):
    try:
        return await service.get_filter_options(db, sql_param)
    except QueryExecutionError as error:
        logging.error(f"Failed to load options for {sql_param}: {error}")
        raise HTTPException(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to load filter options"
        )


# =========================
# Cache lifecycle
# =========================
@router.post("/cache/warmup", response_model=schemas.WarmUpResponse)
async def warm_up_filter_cache(
    admin: admin_dep,
    db: db_dep,
    service: service_dep,
):
    outcome = await service.warm_up_filter_cache(db)
    return {"message": "Filter cache warmed up", **outcome}


@router.delete("/cache", response_model=schemas.MessageResponse)
async def invalidate_filter_cache(admin: admin_dep, service: service_dep):
    deleted = await service.invalidate_filter_cache()
    return {"message": f"Invalidated {deleted} filter option entries"}


@router.delete("/cache/{sql_param}", response_model=schemas.MessageResponse)
async def invalidate_filter_param_cache(
    sql_param: str, admin: admin_dep, service: service_dep
):
    deleted = await service.invalidate_filter_cache(sql_param)
    return {"message": f"Invalidated {deleted} filter option entries for {sql_param}"}


# =========================
# Dimension CRUD
# =========================
@router.post(
    "",
    response_model=schemas.FilterDimensionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_filter_dimension(
    admin: admin_dep,
    dimension: schemas.FilterDimensionCreate,
    db: db_dep,
    service: service_dep,
):
    try:
        return await service.create_dimension(db, dimension)
    except ConflictError as error:
        raise HTTPException(status.HTTP_409_CONFLICT, str(error))
    except Exception as error:
        await db.rollback()
        logging.error(f"Failed to create filter dimension: {error}")
        raise HTTPException(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to create filter dimension"
        )


@router.put("/{dimension_id}", response_model=schemas.FilterDimensionResponse)
async def update_filter_dimension(
    dimension_id: str,
    admin: admin_dep,
    changes: schemas.FilterDimensionUpdate,
    db: db_dep,
    service: service_dep,
):
    try:
        return await service.update_dimension(db, dimension_id, changes)
    except NotFoundError as error:
        raise HTTPException(status.HTTP_404_NOT_FOUND, str(error))
    except ConflictError as error:
        await db.rollback()
        raise HTTPException(status.HTTP_409_CONFLICT, str(error))
    except Exception as error:
        await db.rollback()
        logging.error(f"Failed to update filter dimension {dimension_id}: {error}")
        raise HTTPException(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to update filter dimension"
        )


@router.delete("/{dimension_id}", response_model=schemas.FilterDimensionResponse)
async def deactivate_filter_dimension(
    dimension_id: str,
    admin: admin_dep,
    db: db_dep,
    service: service_dep,
):
    try:
        return await service.deactivate_dimension(db, dimension_id)
    except NotFoundError as error:
        raise HTTPException(status.HTTP_404_NOT_FOUND, str(error))
    except Exception as error:
        await db.rollback()
        logging.error(f"Failed to deactivate filter dimension {dimension_id}: {error}")
        raise HTTPException(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Failed to deactivate filter dimension",
        )
