"""
Base schemas and mixins for all models.
"""

from pydantic import BaseModel, ConfigDict
from datetime import datetime
from typing import Optional


class BaseSchema(BaseModel):
    """
    Base for all schemas.

    Features:
        - Auto-trim whitespace from strings
        - Validate on attribute assignment
        - Allow ORM objects (from_attributes)
    """
    model_config = ConfigDict(
        from_attributes=True,
        str_strip_whitespace=True,
        validate_assignment=True
    )


class TimestampMixin(BaseModel):
    """Add timestamps to response models."""
    created_at: datetime
    updated_at: Optional[datetime] = None


class Pagination(BaseModel):
    """Offset pagination metadata."""
    page: int
    page_size: int
    total_items: int
    total_pages: int
    has_more: bool

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    @classmethod
    def create(cls, total: int, page: int, page_size: int) -> "Pagination":
        """Build pagination metadata from a total row count."""
        total_pages = (total + page_size - 1) // page_size  # Ceiling division
        return cls(
            page=page,
            page_size=page_size,
            total_items=total,
            total_pages=total_pages,
            has_more=page < total_pages
        )
