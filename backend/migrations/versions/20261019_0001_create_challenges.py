from __future__ import annotations
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None

def upgrade() -> None:
    op.create_table(
        "challenges",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("creator_id", sa.String(length=128), nullable=False),
        sa.Column("start_time", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("end_time", sa.TIMESTAMP(timezone=True), nullable=False),
    )
    op.create_index("ix_challenges_creator_id", "challenges", ["creator_id"])
    op.create_index("ix_challenges_end_time", "challenges", ["end_time"])

    op.create_table(
        "challenge_participants",
        sa.Column("challenge_id", sa.String(length=64), sa.ForeignKey("challenges.id", ondelete="CASCADE"), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=128), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("invite_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_jabs", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("average_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("final_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("fcm_token", sa.String(length=255), nullable=True),
        sa.Column("joined_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.CheckConstraint("invite_count >= 0 AND total_jabs >= 0", name="ck_participant_counts_non_negative"),
    )
    op.create_index("ix_challenge_participants_user_id", "challenge_participants", ["user_id"])

    op.create_table(
        "challenge_events",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("challenge_id", sa.String(length=64), sa.ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False),
        sa.Column("timestamp", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("user_name", sa.String(length=120), nullable=False),
        sa.Column("details", sa.Text(), nullable=False, server_default=""),
        sa.Column("feedback_id", sa.String(length=128), nullable=True),
        sa.CheckConstraint("type IN ('invite','score','volume')", name="ck_challenge_event_type"),
    )
    op.create_index("ix_challenge_events_challenge_ts", "challenge_events", ["challenge_id", "timestamp"])
    op.create_unique_constraint("uq_challenge_event_feedback", "challenge_events", ["challenge_id", "feedback_id"])

    op.create_table(
        "completed_challenges",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("creator_id", sa.String(length=128), nullable=False),
        sa.Column("start_time", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("end_time", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("payload_json", sa.JSON(), nullable=False),
    )
    op.create_index("ix_completed_challenges_end_time", "completed_challenges", ["end_time"])

    op.create_table(
        "completed_challenge_members",
        sa.Column("challenge_id", sa.String(length=64), sa.ForeignKey("completed_challenges.id", ondelete="CASCADE"), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=128), primary_key=True, nullable=False),
    )
    op.create_index("ix_completed_challenge_members_user_id", "completed_challenge_members", ["user_id"])

def downgrade() -> None:
    op.drop_index("ix_completed_challenge_members_user_id", table_name="completed_challenge_members")
    op.drop_table("completed_challenge_members")
    op.drop_index("ix_completed_challenges_end_time", table_name="completed_challenges")
    op.drop_table("completed_challenges")
    op.drop_constraint("uq_challenge_event_feedback", "challenge_events", type_="unique")
    op.drop_index("ix_challenge_events_challenge_ts", table_name="challenge_events")
    op.drop_table("challenge_events")
    op.drop_index("ix_challenge_participants_user_id", table_name="challenge_participants")
    op.drop_table("challenge_participants")
    op.drop_index("ix_challenges_end_time", table_name="challenges")
    op.drop_index("ix_challenges_creator_id", table_name="challenges")
    op.drop_table("challenges")
