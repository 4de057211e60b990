from __future__ import annotations
from pydantic import BaseModel, Field, ConfigDict, RootModel, model_validator
from typing import Literal, List, Union, Annotated
from datetime import datetime

EventType = Literal["invite", "score", "volume"]
RuntimeState = Literal["pending", "active", "completed"]

class ChallengeCreate(BaseModel):
    id: str | None = Field(default=None, min_length=1, max_length=64)
    name: str = Field(min_length=3, max_length=120)
    description: str = ""
    start_time: datetime | None = None  # default: now
    end_time: datetime | None = None    # default: start + DEFAULT_CHALLENGE_HOURS

    @model_validator(mode="after")
    def check_window(self):
        for v in (self.start_time, self.end_time):
            if v is not None and v.tzinfo is None:
                raise ValueError("start_time/end_time must be timezone-aware")
        if self.start_time and self.end_time and self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self

class ParticipantPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    invite_count: int = 0
    total_jabs: int = 0
    average_score: float = 0.0
    final_score: float = 0.0
    joined_at: datetime | None = None

class ChallengeEventPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    timestamp: datetime
    type: EventType
    user_id: str
    user_name: str
    details: str = ""
    feedback_id: str | None = None

class ChallengePublic(BaseModel):
    id: str
    name: str
    description: str
    creator_id: str
    start_time: datetime
    end_time: datetime
    runtime_state: RuntimeState
    participants: List[ParticipantPublic] = Field(default_factory=list)
    recent_events: List[ChallengeEventPublic] = Field(default_factory=list)
    completed_at: datetime | None = None

class LeaderboardRow(BaseModel):
    rank: int
    user_id: str
    name: str
    final_score: float
    total_jabs: int
    average_score: float
    invite_count: int

class FeedbackViewed(BaseModel):
    type: Literal["feedback_viewed"] = "feedback_viewed"
    feedback_id: str = Field(min_length=1, max_length=128)
    score: float = Field(ge=0, le=10)

class Invite(BaseModel):
    type: Literal["invite"] = "invite"
    user_id: str = Field(min_length=1, max_length=128)
    user_name: str = Field(min_length=1, max_length=120)

ChallengeEventIn = Annotated[Union[FeedbackViewed, Invite], Field(discriminator="type")]

class ChallengeEventBody(RootModel[ChallengeEventIn]):
    pass

class JoinRequest(BaseModel):
    referrer_id: str | None = None

class JoinLinkRequest(BaseModel):
    url: str
    timestamp: datetime | None = None  # when the link was opened on the device

class ProcessEventResult(BaseModel):
    status: Literal["recorded", "already_added", "skipped"]
    challenge: ChallengePublic | None = None
