"""Pydantic request/response models for the API."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

NonEmptyStr = Annotated[str, Field(min_length=1)]


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    model_config = ConfigDict(extra="forbid")
    status: Literal["ok"]
    uptime_seconds: float
    started_at: str
    total_tasks: int
    tasks_by_state: dict[str, int]


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


class GeoPoint(BaseModel):
    model_config = ConfigDict(extra="forbid")
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class Location(BaseModel):
    model_config = ConfigDict(extra="forbid")
    address: NonEmptyStr
    point: GeoPoint
    city: NonEmptyStr
    district: str | None = None


class Schedule(BaseModel):
    model_config = ConfigDict(extra="forbid")
    starts_at: datetime
    flexibility_minutes: int = Field(default=0, ge=0)


class Pricing(BaseModel):
    model_config = ConfigDict(extra="forbid")
    model: Literal["hourly", "fixed"] | None = None
    currency: str = Field(default="EGP", min_length=3, max_length=3)
    est_min_amount: int | None = Field(default=None, ge=0)
    est_max_amount: int | None = Field(default=None, ge=0)
    est_minutes: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _range_ordered(self) -> Pricing:
        if (
            self.est_min_amount is not None
            and self.est_max_amount is not None
            and self.est_min_amount > self.est_max_amount
        ):
            msg = "est_min_amount must not exceed est_max_amount"
            raise ValueError(msg)
        return self


class TaskCreateRequest(BaseModel):
    """Body of POST /tasks."""

    model_config = ConfigDict(extra="forbid")
    category: NonEmptyStr
    subcategory: str | None = None
    description: NonEmptyStr
    location: Location
    schedule: Schedule
    pricing: Pricing = Field(default_factory=Pricing)
    structured_inputs: dict[str, Any] = Field(default_factory=dict)
    bid_mode: Literal["invite_only", "open_for_bids"] = "open_for_bids"


class TaskUpdateRequest(BaseModel):
    """Body of PATCH /tasks/{task_id}. Absent fields are left unchanged."""

    model_config = ConfigDict(extra="forbid")
    description: str | None = Field(default=None, min_length=1)
    schedule: Schedule | None = None
    structured_inputs: dict[str, Any] | None = None
    bid_mode: Literal["invite_only", "open_for_bids"] | None = None


class ReasonRequest(BaseModel):
    """Body carrying an optional free-text reason."""

    model_config = ConfigDict(extra="forbid")
    reason: str | None = Field(default=None, max_length=2000)


class Candidate(BaseModel):
    model_config = ConfigDict(extra="forbid")
    tasker_id: NonEmptyStr
    rank: int = Field(ge=1)
    score: float = 0.0


class CandidatesRequest(BaseModel):
    """Body of POST /admin/tasks/{task_id}/candidates."""

    model_config = ConfigDict(extra="forbid")
    candidates: list[Candidate] = Field(min_length=1)


# ---------------------------------------------------------------------------
# Bids and negotiation
# ---------------------------------------------------------------------------


class BidSubmitRequest(BaseModel):
    """Body of POST /bids."""

    model_config = ConfigDict(extra="forbid")
    task_id: NonEmptyStr
    amount: int = Field(gt=0)
    currency: str = Field(default="EGP", min_length=3, max_length=3)
    minimum_minutes: int = Field(default=60, ge=1)
    message: str | None = Field(default=None, max_length=2000)
    can_start_at: datetime | None = None


class QuoteRequest(BaseModel):
    """Body of POST /tasks/{task_id}/quote-requests."""

    model_config = ConfigDict(extra="forbid")
    tasker_id: NonEmptyStr
    message: str | None = Field(default=None, max_length=2000)


class MessageRequest(BaseModel):
    """Body of POST /bids/{bid_id}/messages."""

    model_config = ConfigDict(extra="forbid")
    kind: Literal["text", "voice", "image", "video"] = "text"
    text: str | None = None
    media_url: str | None = None

    @model_validator(mode="after")
    def _content_matches_kind(self) -> MessageRequest:
        if self.kind == "text":
            if self.text is None or not self.text.strip():
                msg = "text messages require non-empty text"
                raise ValueError(msg)
        elif not self.media_url:
            msg = f"{self.kind} messages require media_url"
            raise ValueError(msg)
        return self


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------


class Rate(BaseModel):
    model_config = ConfigDict(extra="forbid")
    amount: int = Field(ge=0)
    currency: str = Field(default="EGP", min_length=3, max_length=3)


class BookingCreateRequest(BaseModel):
    """Body of POST /bookings."""

    model_config = ConfigDict(extra="forbid")
    task_id: NonEmptyStr
    tasker_id: NonEmptyStr
    proposed_rate: Rate | None = None
    minimum_minutes: int = Field(default=60, ge=1)


class BookingStatusRequest(BaseModel):
    """Body of POST /bookings/{booking_id}/status."""

    model_config = ConfigDict(extra="forbid")
    status: Literal["accepted", "confirmed", "in_progress", "completed", "canceled", "disputed"]
    meta: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Disputes, reviews, admin
# ---------------------------------------------------------------------------


class DisputeCreateRequest(BaseModel):
    """Body of POST /disputes."""

    model_config = ConfigDict(extra="forbid")
    booking_id: NonEmptyStr
    reason: str = Field(min_length=1, max_length=2000)
    amount_in_question: int | None = Field(default=None, ge=0)


class EvidenceRequest(BaseModel):
    """Body of POST /disputes/{dispute_id}/evidence."""

    model_config = ConfigDict(extra="forbid")
    evidence: str = Field(min_length=1, max_length=5000)


class ResolveRequest(BaseModel):
    """Body of POST /admin/disputes/{dispute_id}/resolve."""

    model_config = ConfigDict(extra="forbid")
    resolution: str = Field(min_length=1, max_length=2000)
    refund_amount: int | None = Field(default=None, ge=0)


class AssignRequest(BaseModel):
    """Body of POST /admin/tasks/{task_id}/assign."""

    model_config = ConfigDict(extra="forbid")
    tasker_id: NonEmptyStr
    reason: str | None = Field(default=None, max_length=2000)
    proposed_rate: Rate | None = None
    minimum_minutes: int = Field(default=60, ge=1)


class ReviewCreateRequest(BaseModel):
    """Body of POST /reviews."""

    model_config = ConfigDict(extra="forbid")
    booking_id: NonEmptyStr
    rating: int = Field(ge=1, le=5)
    tags: list[str] = Field(default_factory=list)
    comment: str | None = Field(default=None, max_length=2000)
