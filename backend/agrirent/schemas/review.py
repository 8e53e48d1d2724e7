import uuid
from datetime import datetime

from pydantic import BaseModel, Field, field_validator


class ReviewCreateRequest(BaseModel):
    """A farmer's rating of the owner and machine after a paid job."""

    booking_id: uuid.UUID
    rating: int = Field(ge=1, le=5)
    comment: str | None = Field(None, max_length=500)

    @field_validator("comment")
    @classmethod
    def blank_comment_is_none(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        return v or None


class ReviewResponse(BaseModel):
    id: uuid.UUID
    booking_id: uuid.UUID
    machine_id: uuid.UUID
    reviewer_id: uuid.UUID
    reviewee_id: uuid.UUID
    rating: int
    comment: str | None
    created_at: datetime

    model_config = {"from_attributes": True}
