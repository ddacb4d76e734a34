import logging
from typing import List, Annotated, Optional
from fastapi import APIRouter, HTTPException, status, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import schemas
from app.core.database import get_db
from app.core.errors import ConflictError, NotFoundError, QueryExecutionError
from app.core.queries.service import ValidatedQueryService, get_query_service
from app.core.security import get_current_user, validate_admin_role

router = APIRouter(prefix="/validated-queries", tags=["Validated Queries"])

db_dep = Annotated[AsyncSession, Depends(get_db)]
service_dep = Annotated[ValidatedQueryService, Depends(get_query_service)]
user_dep = Annotated[schemas.CurrentUser, Depends(get_current_user)]
admin_dep = Annotated[schemas.CurrentUser, Depends(validate_admin_role)]


@router.get("", response_model=List[schemas.ValidatedQueryResponse])
async def list_validated_queries(
    current_user: user_dep,
    db: db_dep,
    service: service_dep,
    scope: Optional[schemas.QueryScope] = None,
):
    return await service.list_queries(db, scope.value if scope else None)


# Static paths first so they never resolve as a query identifier
@router.post("/test", response_model=schemas.TestQueryResponse)
async def test_query(
    admin: admin_dep,
    request: schemas.TestQueryRequest,
    service: service_dep,
):
    """
    Run unsaved SQL against the routed backend.
    Capped to a handful of rows and never cached; failures come back as data.
    """
    return await service.test_query(request.sql, request.filters)


@router.post("/materialize", response_model=schemas.MaterializeResponse)
async def materialize_validated_queries(
    admin: admin_dep,
    db: db_dep,
    service: service_dep,
):
    results = await service.materialize_all(db)
    return {"message": f"Materialized {len(results)} queries", "results": results}


@router.post(
    "",
    response_model=schemas.ValidatedQueryResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_validated_query(
    admin: admin_dep,
    query: schemas.ValidatedQueryCreate,
    db: db_dep,
    service: service_dep,
):
    try:
        return await service.create_query(db, query)
    except ConflictError as error:
        raise HTTPException(status.HTTP_409_CONFLICT, str(error))
    except Exception as error:
        await db.rollback()
        logging.error(f"Failed to create validated query: {error}")
        raise HTTPException(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to create validated query"
        )


@router.get("/{id_or_name}", response_model=schemas.ValidatedQueryResponse)
async def get_validated_query(
    id_or_name: str,
    current_user: user_dep,
    db: db_dep,
    service: service_dep,
):
    try:
        return await service.get_query(db, id_or_name)
    except NotFoundError as error:
        raise HTTPException(status.HTTP_404_NOT_FOUND, str(error))


@router.put("/{id_or_name}", response_model=schemas.ValidatedQueryResponse)
async def update_validated_query(
    id_or_name: str,
    admin: admin_dep,
    changes: schemas.ValidatedQueryUpdate,
    db: db_dep,
    service: service_dep,
):
    """Edit a catalogue entry; every cached result of the query is dropped."""
    try:
        return await service.update_query(db, id_or_name, changes)
    except NotFoundError as error:
        raise HTTPException(status.HTTP_404_NOT_FOUND, str(error))
    except ConflictError as error:
        await db.rollback()
        raise HTTPException(status.HTTP_409_CONFLICT, str(error))
    except Exception as error:
        await db.rollback()
        logging.error(f"Failed to update validated query {id_or_name}: {error}")
        raise HTTPException(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to update validated query"
        )


@router.delete("/{id_or_name}", response_model=schemas.ValidatedQueryResponse)
async def deactivate_validated_query(
    id_or_name: str,
    admin: admin_dep,
    db: db_dep,
    service: service_dep,
):
    # Soft delete: the row and its snapshots stay for auditing
    try:
        return await service.deactivate_query(db, id_or_name)
    except NotFoundError as error:
        raise HTTPException(status.HTTP_404_NOT_FOUND, str(error))
    except ConflictError as error:
        await db.rollback()
        raise HTTPException(status.HTTP_409_CONFLICT, str(error))
    except Exception as error:
        await db.rollback()
        logging.error(f"Failed to deactivate validated query {id_or_name}: {error}")
        raise HTTPException(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to deactivate validated query"
        )


@router.post("/{id_or_name}/execute", response_model=schemas.ExecuteResponse)
async def execute_validated_query(
    id_or_name: str,
    current_user: user_dep,
    request: schemas.ExecuteRequest,
    db: db_dep,
    service: service_dep,
):
    try:
        result = await service.execute(db, id_or_name, request.filters)
    except NotFoundError as error:
        raise HTTPException(status.HTTP_404_NOT_FOUND, str(error))
    except QueryExecutionError as error:
        logging.error(f"Failed to execute validated query {id_or_name}: {error}")
        raise HTTPException(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            f"Failed to execute validated query: {error}",
        )

    return {
        "data": result.data,
        "metadata": {
            "is_validated": True,
            "query_id": result.query.id,
            "query_name": result.query.name,
            "chart_hint": result.query.chart_hint,
            "scope": result.query.scope,
            "filters_applied": result.filters,
            "cached": result.cached,
        },
    }
