import uuid

from sqlalchemy import (
    Column,
    ForeignKey,
    String,
    Boolean,
    TIMESTAMP,
    Text,
    JSON,
)
from sqlalchemy.sql import func

from app.core.database import Base


def new_id() -> str:
    return str(uuid.uuid4())


# =========================
# Validated query catalogue
# =========================
class ValidatedQuery(Base):
    """
    Admin-approved SQL template.

    Rows are never deleted: deactivation moves `status` to "deactivated".
    Placeholders use the `:param` form and are bound from dashboard filters.
    """

    __tablename__ = "validated_queries"

    id = Column(String(36), primary_key=True, default=new_id)

    name = Column(String(64), nullable=False, index=True)  # AM_VOL_ZONE_DAILY
    scope = Column(String(8), nullable=False, index=True)  # AM / AMM / ALL
    sql_text = Column(Text, nullable=False)
    chart_hint = Column(String(32), nullable=False, default="auto")

    # auto = decide by scanning the template, otherwise forced backend
    backend = Column(String(16), nullable=False, default="auto")

    validated_by = Column(String(64), nullable=False)
    validated_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    status = Column(String(16), nullable=False, default="active", index=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    @property
    def active(self) -> bool:
        return self.status == "active"


# =========================
# Filter dimensions
# =========================
class FilterDimension(Base):
    __tablename__ = "filter_dimensions"

    id = Column(String(36), primary_key=True, default=new_id)

    label = Column(String(64), nullable=False)  # "Merchant", "Tier"
    sql_param = Column(String(32), nullable=False, index=True)  # merchant_id
    control = Column(String(16), nullable=False)  # date_range/select/...
    values_sql = Column(Text, nullable=True)  # enumerates legal values

    is_active = Column(Boolean, nullable=False, default=True, index=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


# =========================
# Durable result snapshots
# =========================
class ValidatedResult(Base):
    """
    One row per execution that missed the ephemeral cache.
    Independent of Redis expiry; audit and materialization trail.
    """

    __tablename__ = "validated_results"

    qid = Column(
        String(36),
        ForeignKey("validated_queries.id", ondelete="CASCADE"),
        primary_key=True,
    )
    run_stamp = Column(TIMESTAMP(timezone=True), primary_key=True)

    filter_json = Column(JSON, nullable=True)
    result_json = Column(JSON, nullable=False)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


# =========================
# Cache invalidation log (append-only)
# =========================
class CacheInvalidation(Base):
    __tablename__ = "cache_invalidations"

    id = Column(String(36), primary_key=True, default=new_id)

    qid = Column(
        String(36),
        ForeignKey("validated_queries.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    filter_hash = Column(String(64), nullable=False, index=True)
    reason = Column(String(255), nullable=True)

    invalidated_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
