"""
Pagination Schemas

Reusable pagination wrapper for admin list endpoints.
"""

from math import ceil
from typing import Any, Dict, Generic, List, TypeVar

from pydantic import BaseModel, Field

T = TypeVar('T')


class PaginatedResponse(BaseModel, Generic[T]):
    """Generic paginated response wrapper"""
    items: List[T]
    total: int = Field(description="إجمالي العناصر")
    page: int = Field(description="الصفحة الحالية")
    limit: int = Field(description="حجم الصفحة")
    total_pages: int = Field(alias="totalPages", description="إجمالي الصفحات")
    has_next: bool = Field(alias="hasNext", description="هل يوجد صفحة تالية")

    model_config = {"populate_by_name": True}

    @classmethod
    def create(cls, items: List[T], total: int, page: int, limit: int) -> "PaginatedResponse[T]":
        """Factory method to create paginated response"""
        total_pages = ceil(total / limit) if limit > 0 else 0
        return cls(
            items=items,
            total=total,
            page=page,
            limit=limit,
            total_pages=total_pages,
            has_next=page < total_pages,
        )


def paginated(items: List[Dict[str, Any]], total: int, page: int, limit: int) -> Dict[str, Any]:
    """Plain-dict form rendered with camelCase keys"""
    return PaginatedResponse[Dict[str, Any]].create(items, total, page, limit).model_dump(by_alias=True)
