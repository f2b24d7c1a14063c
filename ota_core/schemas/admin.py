"""
Admin Schemas

Request bodies for retention and dead-letter operations.
"""

from typing import Optional

from pydantic import BaseModel, Field


class ManualCleanupRequest(BaseModel):
    channel: Optional[str] = None
    older_than_days: Optional[int] = Field(default=None, ge=0, alias="olderThanDays")
    operation: Optional[str] = None
    limit: int = Field(default=100, ge=1, le=1000)

    model_config = {"populate_by_name": True}
