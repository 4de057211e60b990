from __future__ import annotations
import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, Float, Text, ForeignKey, JSON, UniqueConstraint, Index, CheckConstraint
from ringside.db import Base, UTCDateTime

def new_id() -> str:
    return uuid.uuid4().hex

class Challenge(Base):
    __tablename__ = "challenges"
    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[str] = mapped_column(Text(), nullable=False, default="")
    creator_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    start_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime(), index=True, nullable=False)

class Participant(Base):
    __tablename__ = "challenge_participants"
    __table_args__ = (
        CheckConstraint("invite_count >= 0 AND total_jabs >= 0", name="ck_participant_counts_non_negative"),
    )
    challenge_id: Mapped[str] = mapped_column(String(64), ForeignKey("challenges.id", ondelete="CASCADE"), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    invite_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_jabs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    average_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    final_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)  # cached projection for ordering
    fcm_token: Mapped[str | None] = mapped_column(String(255))
    joined_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    @property
    def id(self) -> str:
        return self.user_id

class ChallengeEvent(Base):
    __tablename__ = "challenge_events"
    __table_args__ = (
        # one score event per feedback document; NULLs never collide
        UniqueConstraint("challenge_id", "feedback_id", name="uq_challenge_event_feedback"),
        Index("ix_challenge_events_challenge_ts", "challenge_id", "timestamp"),
        CheckConstraint("type IN ('invite','score','volume')", name="ck_challenge_event_type"),
    )
    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    challenge_id: Mapped[str] = mapped_column(String(64), ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)  # invite|score|volume
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    user_name: Mapped[str] = mapped_column(String(120), nullable=False)
    details: Mapped[str] = mapped_column(Text(), nullable=False, default="")
    feedback_id: Mapped[str | None] = mapped_column(String(128))

class CompletedChallenge(Base):
    __tablename__ = "completed_challenges"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    creator_id: Mapped[str] = mapped_column(String(128), nullable=False)
    start_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime(), index=True, nullable=False)
    completed_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    payload_json: Mapped[dict] = mapped_column(JSON, nullable=False)  # full challenge incl. participants + events

class CompletedChallengeMember(Base):
    __tablename__ = "completed_challenge_members"
    challenge_id: Mapped[str] = mapped_column(String(64), ForeignKey("completed_challenges.id", ondelete="CASCADE"), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), primary_key=True, index=True)
