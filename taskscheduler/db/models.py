"""
SQLAlchemy database models.
Defines the queue collection tables and the collection registry.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Table,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from taskscheduler.constants import COLLECTION_REGISTRY_TABLE


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class QueueCollection(Base):
    """
    Registry entry for a queue collection.

    A queue table is capped only while its registry entry says so. Capped
    collections evict their oldest records once the summed record size
    exceeds `size` bytes, which keeps them usable as an append-only log
    that cursors can follow.
    """

    __tablename__ = COLLECTION_REGISTRY_TABLE

    name: Mapped[str] = mapped_column(String(255), primary_key=True)
    capped: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"QueueCollection(name={self.name}, capped={self.capped}, size={self.size})"


def get_queue_table(name: str) -> Table:
    """
    Get the table for a queue collection, defining it on first use.

    Queue collections are named at runtime, so their tables are built
    with Core rather than declared as mapped classes.

    Args:
        name: The collection name.

    Returns:
        The queue table.
    """
    existing = Base.metadata.tables.get(name)
    if existing is not None:
        return existing

    return Table(
        name,
        Base.metadata,
        # Insertion order, the position followed by cursors
        Column(
            "seq",
            BigInteger().with_variant(Integer, "sqlite"),
            primary_key=True,
            autoincrement=True,
        ),
        Column("id", Uuid, nullable=False, unique=True),
        Column("job_class", String(255), nullable=False),
        Column("data", JSON().with_variant(JSONB, "postgresql"), nullable=True),
        # NULL only for the placeholder record
        Column("status", Integer, nullable=True),
        Column("at", DateTime, nullable=True),
        Column("interval", Integer, nullable=False),
        Column("retry", Integer, nullable=False),
        Column("retry_interval", Integer, nullable=False),
        Column("created", DateTime, nullable=False),
        Column("started", DateTime, nullable=True),
        Column("ended", DateTime, nullable=True),
        Column("size", Integer, nullable=False, default=0),
        Index(f"ix_{name}_status_seq", "status", "seq"),
    )
