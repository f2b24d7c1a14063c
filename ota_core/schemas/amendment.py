"""
Amendment Schemas

Request bodies for amendment decisions and manual booking status changes.
"""

from typing import List, Literal, Optional

from pydantic import AliasChoices, BaseModel, Field, model_validator


class _CamelModel(BaseModel):
    model_config = {"populate_by_name": True}


class AmendmentDecisionRequest(_CamelModel):
    """approve | reject | partial (partial names the fields to apply)"""
    action: Literal["approve", "reject", "partial"]
    reason: Optional[str] = Field(
        default=None, max_length=1000, validation_alias=AliasChoices("reason", "rejectionReason")
    )
    approved_fields: Optional[List[str]] = Field(default=None, alias="approvedFields")
    bypass_validation: bool = Field(default=False, alias="bypassValidation")

    @model_validator(mode="after")
    def _partial_needs_fields(self):
        if self.action == "partial" and not self.approved_fields:
            raise ValueError("approvedFields is required for a partial approval")
        if self.action == "reject" and not (self.reason or "").strip():
            raise ValueError("reason is required when rejecting")
        return self


class BulkAmendmentRequest(_CamelModel):
    action: Literal["approve", "reject"]
    amendment_ids: List[str] = Field(alias="amendmentIds", min_length=1, max_length=100)
    reason: Optional[str] = Field(default=None, max_length=1000)
    bypass_validation: bool = Field(default=False, alias="bypassValidation")


class BookingStatusChangeRequest(_CamelModel):
    new_status: Literal["pending", "confirmed", "modified", "checked_in", "checked_out", "cancelled", "no_show"] = Field(
        alias="newStatus"
    )
    reason: Optional[str] = Field(default=None, max_length=1000)
    bypass_validation: bool = Field(default=False, alias="bypassValidation")
    notify_channels: bool = Field(default=True, alias="notifyChannels")
