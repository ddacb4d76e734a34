from fastapi import APIRouter
from app.api.endpoints import filters, validated_queries

api_router = APIRouter()

# Filters first: their paths live under the query router's prefix
api_router.include_router(filters.router)
api_router.include_router(validated_queries.router)
