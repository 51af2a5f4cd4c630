from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    false,
    func,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

metadata = MetaData()

profiles = Table(
    "profiles",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("default_currency", String(3), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", String(64), ForeignKey("profiles.id", ondelete="CASCADE")),
    Column("name", String(50), nullable=False),
    Column("type", String(10), nullable=False),
    Column("is_default", Boolean, nullable=False, server_default=false()),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("owner_id", "name", "type", name="uq_categories_owner_name_type"),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("owner_id", String(64), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("type", String(10), nullable=False, server_default="expense"),
    Column("transaction_date", Date, nullable=False),
    Column("description", Text),
    Column("vendor", String(100)),
    # NULL original_amount marks a row written in the legacy signed format.
    Column("legacy_amount", Numeric(14, 4)),
    Column("original_amount", Numeric(14, 4)),
    Column("original_currency", String(3)),
    Column("converted_amount", Numeric(14, 4)),
    Column("converted_currency", String(3), nullable=False),
    Column("conversion_rate", Numeric(18, 8), nullable=False, server_default="1"),
    Column("conversion_fee", Numeric(14, 4)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)


def build_engine(database_url: str) -> Engine:
    connect_args = {}
    kwargs = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, connect_args=connect_args, **kwargs)


def init_db(engine: Engine) -> None:
    metadata.create_all(engine)
