from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator


AgeGroup = Literal["40-45", "46-50", "51-55", "56-60", "60+"]
Gender = Literal["male", "female", "other"]
MatchStatus = Literal[
    "pending",
    "user1_liked",
    "user2_liked",
    "mutual_match",
    "user1_passed",
    "user2_passed",
    "expired",
]
MatchResponse = Literal["none", "like", "pass", "super_like"]
ConversationType = Literal["match", "group", "support"]
ConversationStatus = Literal["active", "archived", "blocked", "ended"]
MessageType = Literal["text", "image", "emoji", "system", "ai_suggestion"]
AttachmentType = Literal["image", "voice", "file"]
FeedbackType = Literal["matching", "service", "meeting", "technical", "suggestion"]


class _Document(BaseModel):
    model_config = ConfigDict(extra="allow")


class GeoPoint(BaseModel):
    type: Literal["Point"] = "Point"
    coordinates: list[float] = Field(min_length=2, max_length=2)
    city: str | None = None
    district: str | None = None

    @model_validator(mode="after")
    def _check_range(self) -> GeoPoint:
        longitude, latitude = self.coordinates
        if not -180 <= longitude <= 180 or not -90 <= latitude <= 90:
            raise ValueError("coordinates must be [longitude, latitude]")
        return self


class Occupation(BaseModel):
    title: str | None = None
    income: int | None = Field(default=None, ge=0)


class ProfileCreate(_Document):
    id: str | None = None
    email: EmailStr
    name: str = Field(min_length=1, max_length=50)
    age_group: AgeGroup | None = None
    gender: Gender | None = None
    phone: str | None = None
    bio: str | None = Field(default=None, max_length=500)
    location: GeoPoint | None = None
    occupation: Occupation | None = None
    social_providers: list[str] = Field(default_factory=list)
    is_active: bool = True


class ProfileUpdate(_Document):
    email: EmailStr | None = None
    name: str | None = Field(default=None, min_length=1, max_length=50)
    age_group: AgeGroup | None = None
    gender: Gender | None = None
    phone: str | None = None
    bio: str | None = Field(default=None, max_length=500)
    location: GeoPoint | None = None
    occupation: Occupation | None = None
    social_providers: list[str] | None = None
    is_active: bool | None = None


class MatchPairCreate(_Document):
    user1_id: str = Field(min_length=1)
    user2_id: str = Field(min_length=1)
    status: MatchStatus = "pending"
    compatibility_score: float | None = Field(default=None, ge=0, le=100)
    compatibility_breakdown: dict[str, Any] | None = None
    match_reason: str | None = None
    ai_analysis: dict[str, Any] | None = None
    user1_response: MatchResponse = "none"
    user2_response: MatchResponse = "none"
    expires_at: datetime | None = None


class MatchPairUpdate(_Document):
    status: MatchStatus | None = None
    compatibility_score: float | None = Field(default=None, ge=0, le=100)
    compatibility_breakdown: dict[str, Any] | None = None
    match_reason: str | None = None
    ai_analysis: dict[str, Any] | None = None
    user1_response: MatchResponse | None = None
    user2_response: MatchResponse | None = None


class ConversationCreate(_Document):
    participant_ids: list[str] = Field(min_length=2)
    match_id: str | None = None
    type: ConversationType = "match"
    status: ConversationStatus = "active"


class ConversationUpdate(_Document):
    status: ConversationStatus | None = None
    last_message_at: datetime | None = None


class Attachment(BaseModel):
    type: AttachmentType
    url: str = Field(min_length=1)
    size: int | None = Field(default=None, ge=0)


class MessageCreate(_Document):
    conversation_id: str = Field(min_length=1)
    sender_id: str | None = None
    content: str = Field(min_length=1, max_length=2000)
    message_type: MessageType = "text"
    attachments: list[Attachment] = Field(default_factory=list)


class MessageUpdate(_Document):
    content: str | None = Field(default=None, min_length=1, max_length=2000)
    attachments: list[Attachment] | None = None


class AssessmentCreate(_Document):
    user_id: str | None = None
    answers: dict[str, Any] = Field(default_factory=dict)
    scores: dict[str, float] | None = None
    is_completed: bool = False


class AssessmentUpdate(_Document):
    answers: dict[str, Any] | None = None
    scores: dict[str, float] | None = None
    is_completed: bool | None = None


class FeedbackCreate(_Document):
    user_id: str | None = None
    type: FeedbackType
    rating: int = Field(ge=1, le=5)
    title: str = Field(min_length=1, max_length=100)
    content: str = Field(min_length=1, max_length=1000)


class FeedbackUpdate(_Document):
    rating: int | None = Field(default=None, ge=1, le=5)
    title: str | None = Field(default=None, min_length=1, max_length=100)
    content: str | None = Field(default=None, min_length=1, max_length=1000)
