"""Base model class for all SQLAlchemy models."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from core.utils import utcnow


class Base(DeclarativeBase):
    """Declarative base shared by every model."""

    pass


class BaseModel(Base):
    """Abstract base model with a UUID key and timestamp fields.

    All domain models inherit from this. Provides:
    - id: UUID primary key (string)
    - created_at / updated_at: naive UTC timestamps
    """

    __abstract__ = True

    id: Mapped[str] = mapped_column(primary_key=True, default=lambda: str(uuid4()))
    created_at: Mapped[datetime] = mapped_column(DateTime(), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(), default=utcnow, onupdate=utcnow
    )
