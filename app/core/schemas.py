from datetime import datetime
from typing import Any, Dict, List, Optional
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =========================
# Enums
# =========================
class UserRole(str, Enum):
    ADMIN = "admin"
    USER = "user"


class QueryScope(str, Enum):
    AM = "AM"
    AMM = "AMM"
    ALL = "ALL"


class QueryStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    DEACTIVATED = "deactivated"


class BackendAffinity(str, Enum):
    AUTO = "auto"
    WAREHOUSE = "warehouse"
    RELATIONAL = "relational"


class FilterControl(str, Enum):
    DATE_RANGE = "date_range"
    SELECT = "select"
    MULTISELECT = "multiselect"
    TEXT = "text"


# =========================
# AUTH
# =========================
class CurrentUser(BaseModel):
    """Caller identity decoded from the bearer token."""

    user_id: str
    role: UserRole = UserRole.USER


# =========================
# VALIDATED QUERY
# =========================
class ValidatedQueryBase(BaseModel):
    name: str = Field(min_length=1, max_length=64)
    scope: QueryScope
    sql_text: str = Field(min_length=1)
    chart_hint: str = Field(default="auto", max_length=32)
    validated_by: str = Field(min_length=1, max_length=64)
    backend: BackendAffinity = BackendAffinity.AUTO


class ValidatedQueryCreate(ValidatedQueryBase):
    # New entries start as draft or go live immediately
    status: QueryStatus = QueryStatus.ACTIVE


class ValidatedQueryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=64)
    scope: Optional[QueryScope] = None
    sql_text: Optional[str] = Field(default=None, min_length=1)
    chart_hint: Optional[str] = Field(default=None, max_length=32)
    validated_by: Optional[str] = Field(default=None, min_length=1, max_length=64)
    backend: Optional[BackendAffinity] = None
    status: Optional[QueryStatus] = None

    # Fields may be omitted, but every column is required once set
    @field_validator("*")
    @classmethod
    def reject_null(cls, value, info):
        if value is None:
            raise ValueError(f"{info.field_name} cannot be null")
        return value


class ValidatedQueryResponse(ValidatedQueryBase):
    id: str
    status: QueryStatus
    active: bool
    validated_at: datetime
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# =========================
# FILTER DIMENSION
# =========================
class FilterDimensionBase(BaseModel):
    label: str = Field(min_length=1, max_length=64)
    sql_param: str = Field(min_length=1, max_length=32, pattern=r"^[A-Za-z_]\w*$")
    control: FilterControl
    values_sql: Optional[str] = None


class FilterDimensionCreate(FilterDimensionBase):
    pass


class FilterDimensionUpdate(BaseModel):
    label: Optional[str] = Field(default=None, min_length=1, max_length=64)
    sql_param: Optional[str] = Field(
        default=None, min_length=1, max_length=32, pattern=r"^[A-Za-z_]\w*$"
    )
    control: Optional[FilterControl] = None
    values_sql: Optional[str] = None
    is_active: Optional[bool] = None

    # values_sql may be cleared; the rest may only be omitted
    @field_validator("label", "sql_param", "control", "is_active")
    @classmethod
    def reject_null(cls, value, info):
        if value is None:
            raise ValueError(f"{info.field_name} cannot be null")
        return value


class FilterDimensionResponse(FilterDimensionBase):
    id: str
    is_active: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# =========================
# EXECUTION
# =========================
class ExecuteRequest(BaseModel):
    """
    Filters keyed by SQL parameter name.
    Values are scalars, comma-joined multi-selects, lists or null.
    """

    filters: Dict[str, Any] = {}


class ExecuteMetadata(BaseModel):
    is_validated: bool = True
    query_id: str
    query_name: str
    chart_hint: str
    scope: QueryScope
    filters_applied: Dict[str, Any]
    cached: bool


class ExecuteResponse(BaseModel):
    data: List[Dict[str, Any]]
    metadata: ExecuteMetadata


class TestQueryRequest(BaseModel):
    sql: str = Field(min_length=1)
    filters: Dict[str, Any] = {}


class TestQueryResponse(BaseModel):
    success: bool
    data: Optional[List[Dict[str, Any]]] = None
    error: Optional[str] = None


# =========================
# CACHE LIFECYCLE
# =========================
class MessageResponse(BaseModel):
    message: str


class WarmUpResponse(MessageResponse):
    warmed: List[str] = []
    failed: List[str] = []


class MaterializedQuery(BaseModel):
    query_id: str
    query_name: str
    rows: Optional[int] = None
    cached: Optional[bool] = None
    error: Optional[str] = None


class MaterializeResponse(MessageResponse):
    results: List[MaterializedQuery] = []
