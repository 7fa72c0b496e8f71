"""create check-in tables

Revision ID: 20251001_01
Revises:
Create Date: 2025-10-01 09:00:00.000000

`assessments` is created only when missing; on the shared platform
database it already exists and just gains the opt-out columns.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "20251001_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TZ = sa.TIMESTAMP(timezone=True)


def _has_table(name: str) -> bool:
    return sa.inspect(op.get_bind()).has_table(name)


def upgrade() -> None:
    if not _has_table("assessments"):
        op.create_table(
            "assessments",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("email", sa.String()),
            sa.Column("phone_number", sa.String()),
            sa.Column("guide_type", sa.String()),
            sa.Column("initial_pain_score", sa.Integer()),
            sa.Column("payment_tier", sa.String(), nullable=False, server_default="free"),
            sa.Column("sms_opt_in", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("sms_opted_out", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("email_opted_out", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", TZ, nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", TZ),
        )
        op.create_index("ix_assessments_phone_number", "assessments", ["phone_number"])
    else:
        columns = {c["name"] for c in sa.inspect(op.get_bind()).get_columns("assessments")}
        for name in ("sms_opted_out", "email_opted_out"):
            if name not in columns:
                op.add_column(
                    "assessments",
                    sa.Column(name, sa.Boolean(), nullable=False, server_default=sa.false()),
                )

    op.create_table(
        "check_in_queue",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("assessment_id", sa.String(), nullable=False),
        sa.Column("day", sa.Integer(), nullable=False),
        sa.Column("due_at", TZ, nullable=False),
        sa.Column("template_key", sa.String(), nullable=False),
        sa.Column("channel", sa.String(), nullable=False, server_default="email"),
        sa.Column("status", sa.String(), nullable=False, server_default="queued"),
        sa.Column("sent_at", TZ),
        sa.Column("last_error", sa.Text()),
        sa.Column("suppression_reason", sa.String()),
        sa.Column("created_at", TZ, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("assessment_id", "day", name="uq_check_in_queue_assessment_day"),
    )
    op.create_index("ix_check_in_queue_status_due_at", "check_in_queue", ["status", "due_at"])

    op.create_table(
        "check_in_responses",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("assessment_id", sa.String(), nullable=False),
        sa.Column("day", sa.Integer(), nullable=False),
        sa.Column("value", sa.String(), nullable=False),
        sa.Column("pain_score", sa.Integer()),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("note", sa.Text()),
        sa.Column("created_at", TZ, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("assessment_id", "day", name="uq_check_in_responses_assessment_day"),
    )

    op.create_table(
        "alerts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("assessment_id", sa.String(), nullable=False),
        sa.Column("type", sa.String(), nullable=False, server_default="red_flag"),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("created_at", TZ, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_alerts_assessment_type", "alerts", ["assessment_id", "type"])

    op.create_table(
        "diagnosis_inserts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("diagnosis_code", sa.String(), nullable=False),
        sa.Column("day", sa.Integer(), nullable=False),
        sa.Column("branch", sa.String(), nullable=False),
        sa.Column("insert_text", sa.Text(), nullable=False),
        sa.UniqueConstraint("diagnosis_code", "day", "branch", name="uq_diagnosis_inserts_lookup"),
    )

    op.create_table(
        "message_templates",
        sa.Column("key", sa.String(), primary_key=True),
        sa.Column("subject", sa.String()),
        sa.Column("shell_text", sa.Text(), nullable=False),
        sa.Column("disclaimer_text", sa.Text()),
        sa.Column("channel", sa.String(), nullable=False, server_default="email"),
    )

    op.create_table(
        "encouragements",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("text", sa.Text(), nullable=False, unique=True),
    )

    op.create_table(
        "sms_opt_outs",
        sa.Column("phone_number", sa.String(), primary_key=True),
        sa.Column("opted_out_at", TZ, nullable=False, server_default=sa.func.now()),
        sa.Column("opt_out_source", sa.String()),
    )


def downgrade() -> None:
    op.drop_table("sms_opt_outs")
    op.drop_table("encouragements")
    op.drop_table("message_templates")
    op.drop_table("diagnosis_inserts")
    op.drop_index("ix_alerts_assessment_type", table_name="alerts")
    op.drop_table("alerts")
    op.drop_table("check_in_responses")
    op.drop_index("ix_check_in_queue_status_due_at", table_name="check_in_queue")
    op.drop_table("check_in_queue")
