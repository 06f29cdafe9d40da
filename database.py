# --- models.py (or the models section of database.py) ---

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import (
    String, Text, Integer, Numeric, DateTime, Boolean, JSON,
    ForeignKey, func, Index, CheckConstraint
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.pool import StaticPool
from sqlalchemy import text
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any
import logging, os, uuid
import json

# Load environment variables early (before reading DATABASE_URL)
from dotenv import load_dotenv
load_dotenv()

# -------------------------------------------------------------------
# Engine / Session (CockroachDB compatible)
# -------------------------------------------------------------------
DATABASE_URL = os.getenv("DATABASE_URL", "")

if DATABASE_URL:
    DATABASE_URL = DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://")
    # asyncpg uses 'ssl' in connect_args, not 'sslmode' in the URL
    if "sslmode=verify-full" in DATABASE_URL:
        DATABASE_URL = DATABASE_URL.replace("?sslmode=verify-full", "")
        DATABASE_URL = DATABASE_URL.replace("&sslmode=verify-full", "")

    engine = create_async_engine(
        DATABASE_URL,
        echo=os.getenv("NODE_ENV") == "development",
        pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
        max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "20")),
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=1800,  # Recycle connections after 30 minutes
        pool_timeout=20,
        connect_args={
            "ssl": "require",  # CockroachDB requires SSL
            "server_settings": {
                "application_name": "mystery_box_backend",
            },
            "command_timeout": 60,
            "timeout": 30,
        },
        # Each statement sees a committed point-in-time view
        execution_options={
            "isolation_level": "READ COMMITTED",
        },
    )

    from sqlalchemy.dialects.postgresql.asyncpg import PGDialect_asyncpg
    from sqlalchemy.dialects.postgresql.base import PGDialect

    # CockroachDB has no 'json' type, only 'jsonb'
    async def patched_setup_asyncpg_json_codec(self, conn):
        """Register the JSONB codec only."""
        try:
            await conn.set_type_codec(
                'jsonb',
                encoder=json.dumps,
                decoder=json.loads,
                schema='pg_catalog',
                format='text',
            )
        except Exception:
            # SQLAlchemy falls back to Python-side JSON handling
            pass

    PGDialect_asyncpg.setup_asyncpg_json_codec = patched_setup_asyncpg_json_codec

    original_get_server_version_info = PGDialect._get_server_version_info

    def patched_get_server_version_info(self, connection):
        """Report CockroachDB as PostgreSQL 13 so SQLAlchemy picks compatible features."""
        import re
        version_str = connection.scalar(text("SELECT version()"))
        if "CockroachDB" in version_str:
            match = re.search(r'v(\d+)\.(\d+)\.(\d+)', version_str)
            if match:
                return (13, 0)
        return original_get_server_version_info(self, connection)

    PGDialect._get_server_version_info = patched_get_server_version_info
else:
    DB_USER = os.getenv("DB_USER", "postgres")
    DB_NAME = os.getenv("DB_NAME", "mystery_boxes")
    SOCKET = os.getenv("INSTANCE_UNIX_SOCKET")
    if SOCKET:
        DATABASE_URL = f"postgresql+asyncpg://{DB_USER}:@/{DB_NAME}?host={SOCKET}"
        engine = create_async_engine(
            DATABASE_URL,
            echo=os.getenv("NODE_ENV") == "development",
            pool_size=10,
            max_overflow=20,
            pool_pre_ping=True,
            pool_recycle=1800,
            pool_timeout=15,
        )
    else:
        DATABASE_URL = "sqlite+aiosqlite:///:memory:"
        engine = create_async_engine(
            DATABASE_URL,
            echo=os.getenv("NODE_ENV") == "development",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )

AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

def _redact_db_url(url: str) -> str:
    try:
        if "@" in url and "://" in url:
            head, tail = url.split("://", 1)
            creds, hostpart = tail.split("@", 1)
            if ":" in creds:
                user, _pwd = creds.split(":", 1)
                return f"{head}://{user}:******@{hostpart}"
    except Exception:
        pass
    return "******"

logger = logging.getLogger(__name__)
logger.info(f"Creating SQL engine for { _redact_db_url(DATABASE_URL) }")

async def probe_db_connection():
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("DB connectivity probe: OK")
    except Exception as e:
        logger.exception(f"DB connectivity probe failed: {e}")

# JSONB on Postgres/CockroachDB, plain JSON elsewhere (SQLite in tests/dev)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# -------------------------------------------------------------------
# Base
# -------------------------------------------------------------------
class Base(DeclarativeBase):
    pass

# -------------------------------------------------------------------
# MODELS
# -------------------------------------------------------------------

class Shop(Base):
    __tablename__ = "shops"

    shop_id: Mapped[str] = mapped_column(String, primary_key=True)
    access_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    installed_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)


class CatalogItem(Base):
    __tablename__ = "catalog_items"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    # Canonical upsert key: (shop_id, external_id) where external_id is the Shopify product id
    shop_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    external_id: Mapped[str] = mapped_column(String, nullable=False)

    title: Mapped[str] = mapped_column(Text, nullable=False)
    vendor: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    product_type: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tags: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    compare_at_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    stock_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    variants: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    images: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    last_synced_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_catalog_items_price_non_negative"),
        CheckConstraint("stock_quantity >= 0", name="ck_catalog_items_stock_non_negative"),
    )


class MysteryBox(Base):
    __tablename__ = "mystery_boxes"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    shop_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    min_value: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    max_value: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    min_items: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    max_items: Mapped[int] = mapped_column(Integer, nullable=False, default=10)

    include_tags: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    exclude_tags: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    include_types: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    exclude_types: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("min_value <= max_value", name="ck_mystery_boxes_value_range"),
        CheckConstraint("min_items >= 1 AND min_items <= max_items", name="ck_mystery_boxes_item_range"),
    )


class BoxInstance(Base):
    __tablename__ = "box_instances"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    template_id: Mapped[str] = mapped_column(
        String, ForeignKey("mystery_boxes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    shop_id: Mapped[str] = mapped_column(String, nullable=False, index=True)

    selected_items: Mapped[list] = mapped_column(JSONType, nullable=False)
    total_value: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    item_count: Mapped[int] = mapped_column(Integer, nullable=False)
    savings: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    strategy: Mapped[str] = mapped_column(String, nullable=False, default="primary")

    status: Mapped[str] = mapped_column(String, nullable=False, default="draft")
    generated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)
    status_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("status IN ('draft','published','sold')", name="ck_box_instances_status"),
        CheckConstraint("savings >= 0", name="ck_box_instances_savings_non_negative"),
    )


class ShopSyncStatus(Base):
    __tablename__ = "shop_sync_status"

    shop_id: Mapped[str] = mapped_column(String, primary_key=True)
    initial_sync_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_sync_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_sync_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_report: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

# -------------------------------------------------------------------
# Indexes
# -------------------------------------------------------------------
Index('uq_catalog_items_shop_external',
      CatalogItem.shop_id, CatalogItem.external_id,
      unique=True)
Index('ix_catalog_items_shop_eligible',
      CatalogItem.shop_id, CatalogItem.is_active, CatalogItem.stock_quantity)
Index('ix_box_instances_template_generated', BoxInstance.template_id, BoxInstance.generated_at)
Index('ix_mystery_boxes_created_at', MysteryBox.created_at)
# -------------------------------------------------------------------
# Init helpers
# -------------------------------------------------------------------
async def check_db_health() -> Dict[str, Any]:
    """Run a trivial query and report latency."""
    import time
    start = time.time()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "healthy", "latency_ms": int((time.time() - start) * 1000)}
    except Exception as e:
        logger.error(f"DB health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}

async def init_db():
    """Ensure tables exist."""
    await probe_db_connection()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("DB init complete (tables ensured).")
