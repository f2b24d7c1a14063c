"""
Database Helper Utilities

Provides:
- Database dialect detection (PostgreSQL vs SQLite)
- Skip-locked batch selection for background sweeps
- Offloading blocking session work from the event loop
- Query pagination
"""

import asyncio
import logging
from typing import Callable, Tuple, Type, TypeVar

from sqlalchemy.orm import Session

from ..config import settings

logger = logging.getLogger(__name__)

T = TypeVar('T')


def is_postgres(db: Session) -> bool:
    """Check if the database is PostgreSQL"""
    try:
        return db.bind.dialect.name == 'postgresql'
    except AttributeError:
        return False


def get_pending_with_skip_locked(
    db: Session,
    model: Type[T],
    filter_condition,
    order_by=None,
    limit: int = 50
) -> list:
    """
    Get records with skip_locked so concurrent sweepers don't collide.

    Only PostgreSQL supports SKIP LOCKED; SQLite runs a plain select.
    """
    query = db.query(model).filter(filter_condition)

    if order_by is not None:
        query = query.order_by(order_by)

    if is_postgres(db):
        query = query.with_for_update(skip_locked=True)

    return query.limit(limit).all()


def paginate_query(query, page: int, page_size: int) -> Tuple[list, int]:
    """
    Apply pagination to a SQLAlchemy query.

    Returns:
        Tuple of (paginated_items, total_count)
    """
    total = query.count()
    offset = (page - 1) * page_size
    items = query.offset(offset).limit(page_size).all()
    return items, total


async def run_blocking(func: Callable[..., T], *args, **kwargs) -> T:
    """
    Run synchronous session work without stalling the event loop.

    With OFFLOAD_BLOCKING_IO disabled (in-memory SQLite in tests) the call
    runs inline.
    """
    if settings.offload_blocking_io:
        return await asyncio.to_thread(func, *args, **kwargs)
    return func(*args, **kwargs)
