# smartqueue/models/api/queue_request.py
"""
Queue API request models.
Used by routes for input validation.
"""

from datetime import date

from pydantic import BaseModel, Field


class RegisterPartyRequest(BaseModel):
    """Request for registering a party, or finding one by phone."""

    name: str = Field(..., min_length=1, max_length=200, description="Display name")
    phone: str = Field(..., min_length=3, max_length=32, description="Contact phone (unique)")
    email: str | None = Field(default=None, max_length=320, description="Contact email")
    date_of_birth: date | None = Field(default=None, description="Used to derive senior status")
    is_senior: bool = Field(default=False, description="Explicit senior flag")
    is_expectant: bool = Field(default=False, description="Expectant mother")


class GenerateTokenRequest(BaseModel):
    """Request for issuing a token."""

    party_id: int = Field(..., gt=0)
    group_id: int | None = Field(
        default=None, gt=0, description="Service group; taken from the point when omitted"
    )
    point_id: int | None = Field(
        default=None, gt=0, description="Service point; omit for a group-level token"
    )
    priority: str | None = Field(
        default=None, description="NORMAL, VIP, SENIOR, EXPECTANT or EMERGENCY"
    )
    notes: str | None = Field(default=None, max_length=1000)


class ReprioritizeRequest(BaseModel):
    """Request for changing a waiting token's priority."""

    priority: str = Field(..., description="NORMAL, VIP, SENIOR, EXPECTANT or EMERGENCY")
