"""initial ledger schema

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "20261018_0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "students",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_students_name", "students", ["name"])

    op.create_table(
        "lessons",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("student_id", sa.Integer(), nullable=False),
        sa.Column("subject_id", sa.Integer(), nullable=True),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("price_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("paid_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("payment_status", sa.String(length=16), nullable=False, server_default="unpaid"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="planned"),
        sa.Column("marked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("series_id", sa.Integer(), nullable=True),
        sa.Column("is_instance", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("original_start_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["student_id"], ["students.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("end_at > start_at", name="ck_lessons_range"),
        sa.CheckConstraint("price_cents >= 0", name="ck_lessons_price"),
    )
    op.create_index("ix_lessons_student_id", "lessons", ["student_id"])
    op.create_index("ix_lessons_start_at", "lessons", ["start_at"])
    op.create_index("ix_lessons_payment_status", "lessons", ["payment_status"])
    op.create_index("ix_lessons_series_id", "lessons", ["series_id"])
    op.create_index("ix_lessons_student_start", "lessons", ["student_id", "start_at"])
    op.create_index("ix_lessons_series_original", "lessons", ["series_id", "original_start_at"])

    op.create_table(
        "recurrence_rules",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("base_lesson_id", sa.Integer(), nullable=False),
        sa.Column("frequency", sa.String(length=32), nullable=False),
        sa.Column("interval", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("weekdays", sa.JSON(), nullable=False),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("until_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("timezone", sa.String(length=64), nullable=False, server_default="UTC"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["base_lesson_id"], ["lessons.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("interval >= 1", name="ck_recurrence_rules_interval"),
    )
    op.create_index("ix_recurrence_rules_base_lesson_id", "recurrence_rules", ["base_lesson_id"])
    op.create_index("ix_recurrence_rules_start_at", "recurrence_rules", ["start_at"])

    op.create_table(
        "recurrence_exceptions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("series_id", sa.Integer(), nullable=False),
        sa.Column("original_start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.Column("override_start_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("override_duration_minutes", sa.Integer(), nullable=True),
        sa.Column("override_note", sa.Text(), nullable=True),
        sa.Column("override_price_cents", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["series_id"], ["recurrence_rules.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("series_id", "original_start_at", name="uq_recurrence_exception_slot"),
    )
    op.create_index("ix_recurrence_exceptions_series_id", "recurrence_exceptions", ["series_id"])

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("lesson_id", sa.Integer(), nullable=True),
        sa.Column("student_id", sa.Integer(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("method", sa.String(length=32), nullable=False, server_default="manual"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="paid"),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["lesson_id"], ["lessons.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["student_id"], ["students.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_payments_lesson_id", "payments", ["lesson_id"])
    op.create_index("ix_payments_student_id", "payments", ["student_id"])
    op.create_index("ix_payments_paid_at", "payments", ["paid_at"])
    op.create_index("ix_payments_student_lesson", "payments", ["student_id", "lesson_id"])


def downgrade() -> None:
    op.drop_index("ix_payments_student_lesson", table_name="payments")
    op.drop_index("ix_payments_paid_at", table_name="payments")
    op.drop_index("ix_payments_student_id", table_name="payments")
    op.drop_index("ix_payments_lesson_id", table_name="payments")
    op.drop_table("payments")

    op.drop_index("ix_recurrence_exceptions_series_id", table_name="recurrence_exceptions")
    op.drop_table("recurrence_exceptions")

    op.drop_index("ix_recurrence_rules_start_at", table_name="recurrence_rules")
    op.drop_index("ix_recurrence_rules_base_lesson_id", table_name="recurrence_rules")
    op.drop_table("recurrence_rules")

    op.drop_index("ix_lessons_series_original", table_name="lessons")
    op.drop_index("ix_lessons_student_start", table_name="lessons")
    op.drop_index("ix_lessons_series_id", table_name="lessons")
    op.drop_index("ix_lessons_payment_status", table_name="lessons")
    op.drop_index("ix_lessons_start_at", table_name="lessons")
    op.drop_index("ix_lessons_student_id", table_name="lessons")
    op.drop_table("lessons")

    op.drop_index("ix_students_name", table_name="students")
    op.drop_table("students")
