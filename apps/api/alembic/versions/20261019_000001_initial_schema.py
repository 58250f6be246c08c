"""create initial schema

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("full_name", sa.String(), nullable=True),
        sa.Column("offers", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_users"),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)

    op.create_table(
        "user_credits",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("plan_type", sa.String(), nullable=False, server_default="one_time"),
        sa.Column("membership", sa.String(), nullable=True),
        sa.Column("subscription_id", sa.String(), nullable=True),
        sa.Column("subscription_canceled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("payment_provider", sa.String(), nullable=True),
        *_timestamps(),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("credits >= 0", name="ck_user_credits_credits_non_negative"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], name="fk_user_credits_user_id_users"),
        sa.PrimaryKeyConstraint("id", name="pk_user_credits"),
    )
    op.create_index(op.f("ix_user_credits_user_id"), "user_credits", ["user_id"], unique=False)
    op.create_index(op.f("ix_user_credits_status"), "user_credits", ["status"], unique=False)
    op.create_index(op.f("ix_user_credits_subscription_id"), "user_credits", ["subscription_id"], unique=False)
    op.create_index(op.f("ix_user_credits_created_at"), "user_credits", ["created_at"], unique=False)

    op.create_table(
        "credit_reservations",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="reserved"),
        sa.Column("operation", sa.String(), nullable=True),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("allocations_json", sa.JSON(), nullable=True),
        sa.Column("last_error", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], name="fk_credit_reservations_user_id_users"),
        sa.PrimaryKeyConstraint("id", name="pk_credit_reservations"),
    )
    op.create_index(op.f("ix_credit_reservations_user_id"), "credit_reservations", ["user_id"], unique=False)
    op.create_index(op.f("ix_credit_reservations_status"), "credit_reservations", ["status"], unique=False)
    op.create_index(op.f("ix_credit_reservations_created_at"), "credit_reservations", ["created_at"], unique=False)

    op.create_table(
        "payments",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("external_reference", sa.String(), nullable=False),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(), nullable=False, server_default="USD"),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("payment_status", sa.String(), nullable=True),
        sa.Column("payer_id", sa.String(), nullable=True),
        sa.Column("payer_name", sa.String(), nullable=True),
        sa.Column("payer_email", sa.String(), nullable=True),
        sa.Column("credit_record_id", sa.String(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], name="fk_payments_user_id_users"),
        sa.ForeignKeyConstraint(["credit_record_id"], ["user_credits.id"], name="fk_payments_credit_record_id_user_credits"),
        sa.PrimaryKeyConstraint("id", name="pk_payments"),
        sa.UniqueConstraint("provider", "external_reference", name="uq_payments_provider_reference"),
    )
    op.create_index(op.f("ix_payments_user_id"), "payments", ["user_id"], unique=False)

    op.create_table(
        "product_ideas",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("product_name", sa.String(), nullable=True),
        sa.Column("product_description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(), nullable=True),
        sa.Column("prompt", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], name="fk_product_ideas_user_id_users"),
        sa.PrimaryKeyConstraint("id", name="pk_product_ideas"),
    )
    op.create_index(op.f("ix_product_ideas_user_id"), "product_ideas", ["user_id"], unique=False)

    op.create_table(
        "product_multiview_revisions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("product_idea_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("view_type", sa.String(), nullable=False),
        sa.Column("image_url", sa.String(), nullable=False),
        sa.Column("thumbnail_url", sa.String(), nullable=True),
        sa.Column("revision_number", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(
            ["product_idea_id"], ["product_ideas.id"], name="fk_product_multiview_revisions_product_idea_id_product_ideas"
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], name="fk_product_multiview_revisions_user_id_users"),
        sa.PrimaryKeyConstraint("id", name="pk_product_multiview_revisions"),
    )
    op.create_index(
        op.f("ix_product_multiview_revisions_product_idea_id"), "product_multiview_revisions", ["product_idea_id"], unique=False
    )
    op.create_index(op.f("ix_product_multiview_revisions_user_id"), "product_multiview_revisions", ["user_id"], unique=False)

    op.create_table(
        "tech_file_collections",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("product_idea_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("collection_name", sa.String(), nullable=False),
        sa.Column("collection_type", sa.String(), nullable=False, server_default="tech_pack_v2"),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="processing"),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credits_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("generation_batch_id", sa.String(), nullable=True),
        sa.Column("file_ids_json", sa.JSON(), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["product_idea_id"], ["product_ideas.id"], name="fk_tech_file_collections_product_idea_id_product_ideas"
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], name="fk_tech_file_collections_user_id_users"),
        sa.PrimaryKeyConstraint("id", name="pk_tech_file_collections"),
    )
    op.create_index(op.f("ix_tech_file_collections_product_idea_id"), "tech_file_collections", ["product_idea_id"], unique=False)
    op.create_index(op.f("ix_tech_file_collections_user_id"), "tech_file_collections", ["user_id"], unique=False)
    op.create_index(
        op.f("ix_tech_file_collections_generation_batch_id"), "tech_file_collections", ["generation_batch_id"], unique=False
    )

    op.create_table(
        "tech_files",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("product_idea_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("revision_id", sa.String(), nullable=True),
        sa.Column("collection_id", sa.String(), nullable=True),
        sa.Column("file_type", sa.String(), nullable=False),
        sa.Column("view_type", sa.String(), nullable=True),
        sa.Column("file_category", sa.String(), nullable=True),
        sa.Column("file_url", sa.String(), nullable=True),
        sa.Column("thumbnail_url", sa.String(), nullable=True),
        sa.Column("analysis_data", sa.JSON(), nullable=True),
        sa.Column("confidence_score", sa.Float(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="completed"),
        sa.Column("generation_batch_id", sa.String(), nullable=True),
        sa.Column("credits_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["product_idea_id"], ["product_ideas.id"], name="fk_tech_files_product_idea_id_product_ideas"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], name="fk_tech_files_user_id_users"),
        sa.ForeignKeyConstraint(
            ["revision_id"], ["product_multiview_revisions.id"], name="fk_tech_files_revision_id_product_multiview_revisions"
        ),
        sa.ForeignKeyConstraint(
            ["collection_id"], ["tech_file_collections.id"], name="fk_tech_files_collection_id_tech_file_collections"
        ),
        sa.PrimaryKeyConstraint("id", name="pk_tech_files"),
    )
    op.create_index(op.f("ix_tech_files_product_idea_id"), "tech_files", ["product_idea_id"], unique=False)
    op.create_index(op.f("ix_tech_files_user_id"), "tech_files", ["user_id"], unique=False)
    op.create_index(op.f("ix_tech_files_revision_id"), "tech_files", ["revision_id"], unique=False)
    op.create_index(op.f("ix_tech_files_collection_id"), "tech_files", ["collection_id"], unique=False)
    op.create_index(op.f("ix_tech_files_file_type"), "tech_files", ["file_type"], unique=False)
    op.create_index(op.f("ix_tech_files_created_at"), "tech_files", ["created_at"], unique=False)

    op.create_table(
        "image_analysis_cache",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("image_url", sa.String(), nullable=False),
        sa.Column("image_hash", sa.String(), nullable=False),
        sa.Column("analysis_data", sa.JSON(), nullable=False),
        sa.Column("model_used", sa.String(), nullable=True),
        sa.Column("product_idea_id", sa.String(), nullable=True),
        sa.Column("revision_id", sa.String(), nullable=True),
        sa.Column("processing_time_ms", sa.Integer(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_image_analysis_cache"),
    )
    op.create_index(op.f("ix_image_analysis_cache_image_hash"), "image_analysis_cache", ["image_hash"], unique=False)
    op.create_index(op.f("ix_image_analysis_cache_product_idea_id"), "image_analysis_cache", ["product_idea_id"], unique=False)
    op.create_index(op.f("ix_image_analysis_cache_created_at"), "image_analysis_cache", ["created_at"], unique=False)

    op.create_table(
        "background_tasks",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("task_name", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("product_idea_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="scheduled"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("last_error", sa.String(), nullable=True),
        sa.Column("queue_job_id", sa.String(), nullable=True),
        *_timestamps(),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_background_tasks"),
    )
    op.create_index(op.f("ix_background_tasks_task_name"), "background_tasks", ["task_name"], unique=False)
    op.create_index(op.f("ix_background_tasks_user_id"), "background_tasks", ["user_id"], unique=False)
    op.create_index(op.f("ix_background_tasks_product_idea_id"), "background_tasks", ["product_idea_id"], unique=False)
    op.create_index(op.f("ix_background_tasks_status"), "background_tasks", ["status"], unique=False)
    op.create_index(op.f("ix_background_tasks_created_at"), "background_tasks", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_table("background_tasks")
    op.drop_table("image_analysis_cache")
    op.drop_table("tech_files")
    op.drop_table("tech_file_collections")
    op.drop_table("product_multiview_revisions")
    op.drop_table("product_ideas")
    op.drop_table("payments")
    op.drop_table("credit_reservations")
    op.drop_table("user_credits")
    op.drop_table("users")
