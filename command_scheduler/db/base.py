from typing import Any, Dict, List, Optional, TypeVar, Type
from datetime import datetime, timezone
from sqlalchemy import Column, DateTime, func, inspect
from sqlalchemy.orm import Session, declarative_base

# Create declarative base for SQLAlchemy models
Base = declarative_base()

# Type variables for generic model operations
T = TypeVar("T", bound="ModelMixin")


def utcnow() -> datetime:
    """Current time as a naive UTC datetime, the form every timestamp column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalise an aware datetime to naive UTC; naive values are assumed to be UTC already."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class TimestampMixin:
    """Mixin to add created_at and updated_at columns to a model."""

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)


class ModelMixin:
    """Mixin to add common lookups and serialisation to a model."""

    @classmethod
    def get_by_id(cls: Type[T], db: Session, id: int) -> Optional[T]:
        """Get a record by ID."""
        return db.query(cls).filter(cls.id == id).first()

    @classmethod
    def get_all(cls: Type[T], db: Session, skip: int = 0, limit: int = 100) -> List[T]:
        """Get all records with pagination."""
        return db.query(cls).order_by(cls.id).offset(skip).limit(limit).all()

    def to_dict(self) -> Dict[str, Any]:
        """Convert the model instance to a dictionary."""
        result = {}
        for key in inspect(self.__class__).columns.keys():
            value = getattr(self, key)
            if isinstance(value, datetime):
                result[key] = value.isoformat()
            elif hasattr(value, "value"):
                result[key] = value.value
            else:
                result[key] = value
        return result
