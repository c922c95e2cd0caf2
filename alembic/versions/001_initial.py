"""Initial schema: tenants, users, challenges, offers, payments, notifications.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSON

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id() -> sa.Column:
    return sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()"))


def _tenant_columns() -> list[sa.Column]:
    return [
        sa.Column(
            "tenant_id",
            UUID(as_uuid=True),
            sa.ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("whop_company_id", sa.String(100), nullable=False),
    ]


def _created_at(name: str = "created_at") -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now())


def _updated_at() -> sa.Column:
    return sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True)


def upgrade() -> None:
    # ── Tenancy ──────────────────────────────────────────────────────────
    op.create_table(
        "tenants",
        _id(),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("whop_company_id", sa.String(100), nullable=True),
        sa.Column("whop_handle", sa.String(100), nullable=True),
        sa.Column("whop_product_id", sa.String(100), nullable=True),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("whop_company_id", name="uq_tenants_whop_company_id"),
        sa.UniqueConstraint("id", "whop_company_id", name="uq_tenants_id_whop_company_id"),
    )

    # users and challenges reference (id, whop_company_id) so a row can
    # never carry a company id other than its tenant's.
    op.create_table(
        "users",
        _id(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("whop_company_id", sa.String(100), nullable=False),
        sa.Column("whop_user_id", sa.String(100), nullable=False),
        sa.Column("whop_experience_id", sa.String(100), nullable=True),
        sa.Column("role", sa.String(20), server_default=sa.text("'MEMBER'")),
        sa.Column("name", sa.String(200), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("tenant_id", "whop_user_id", name="uq_users_tenant_whop_user"),
        sa.ForeignKeyConstraint(
            ["tenant_id", "whop_company_id"],
            ["tenants.id", "tenants.whop_company_id"],
            name="fk_users_tenant_company",
            ondelete="RESTRICT",
        ),
    )

    # ── Challenges ───────────────────────────────────────────────────────
    op.create_table(
        "challenges",
        _id(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("whop_company_id", sa.String(100), nullable=False),
        sa.Column("whop_experience_id", sa.String(100), nullable=True),
        sa.Column("creator_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("image_url", sa.String(1000), nullable=True),
        sa.Column("category", sa.String(100), server_default=sa.text("'General'")),
        sa.Column("proof_type", sa.String(20), server_default=sa.text("'PHOTO'")),
        sa.Column("cadence", sa.String(30), server_default=sa.text("'DAILY'")),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("rules", JSON(), server_default=sa.text("'{}'::json")),
        sa.Column("entry_price_cents", sa.Integer(), server_default=sa.text("0")),
        sa.Column("currency", sa.String(10), server_default=sa.text("'usd'")),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(
            ["tenant_id", "whop_company_id"],
            ["tenants.id", "tenants.whop_company_id"],
            name="fk_challenges_tenant_company",
            ondelete="CASCADE",
        ),
    )

    op.create_table(
        "enrollments",
        _id(),
        *_tenant_columns(),
        sa.Column("challenge_id", UUID(as_uuid=True), sa.ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("source", sa.String(20), server_default=sa.text("'free'")),
        _created_at("joined_at"),
        sa.UniqueConstraint("challenge_id", "user_id", name="uq_enrollments_challenge_user"),
    )

    op.create_table(
        "checkins",
        _id(),
        *_tenant_columns(),
        sa.Column(
            "enrollment_id",
            UUID(as_uuid=True),
            sa.ForeignKey("enrollments.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("image_url", sa.String(1000), nullable=True),
        sa.Column("link_url", sa.String(1000), nullable=True),
        _created_at(),
        _updated_at(),
    )

    op.create_table(
        "proofs",
        _id(),
        *_tenant_columns(),
        sa.Column(
            "enrollment_id",
            UUID(as_uuid=True),
            sa.ForeignKey("enrollments.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("url", sa.String(1000), nullable=True),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), server_default=sa.text("1")),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true")),
        _created_at(),
        _updated_at(),
    )

    op.create_table(
        "challenge_winners",
        _id(),
        *_tenant_columns(),
        sa.Column("challenge_id", UUID(as_uuid=True), sa.ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("place", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("score", sa.Float(), server_default=sa.text("0")),
        sa.Column("selection_reason", sa.Text(), nullable=True),
        _created_at(),
        sa.UniqueConstraint("challenge_id", "place", name="uq_challenge_winners_challenge_place"),
    )

    # ── Notifications ────────────────────────────────────────────────────
    op.create_table(
        "internal_notifications",
        _id(),
        sa.Column("tenant_id", UUID(as_uuid=True), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("whop_company_id", sa.String(100), nullable=False),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("challenge_id", UUID(as_uuid=True), sa.ForeignKey("challenges.id", ondelete="SET NULL"), nullable=True),
        sa.Column("type", sa.String(40), server_default=sa.text("'general'")),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("metadata_json", JSON(), server_default=sa.text("'{}'::json")),
        sa.Column("is_read", sa.Boolean(), server_default=sa.text("false")),
        _created_at(),
    )
    op.create_index(
        "ix_internal_notifications_user_unread",
        "internal_notifications",
        ["tenant_id", "user_id", "is_read"],
    )

    # ── Offers ───────────────────────────────────────────────────────────
    op.create_table(
        "challenge_offers",
        _id(),
        *_tenant_columns(),
        sa.Column("challenge_id", UUID(as_uuid=True), sa.ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False),
        sa.Column("offer_type", sa.String(30), nullable=False),
        sa.Column("whop_plan_id", sa.String(100), nullable=False),
        sa.Column("discount_percentage", sa.Integer(), nullable=False),
        sa.Column("original_price_cents", sa.Integer(), nullable=True),
        sa.Column("min_completion_rate", sa.Integer(), nullable=True),
        sa.Column("max_completion_rate", sa.Integer(), nullable=True),
        sa.Column("custom_message", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true")),
        _created_at(),
    )

    op.create_table(
        "offer_conversions",
        _id(),
        *_tenant_columns(),
        sa.Column("offer_id", UUID(as_uuid=True), sa.ForeignKey("challenge_offers.id", ondelete="SET NULL"), nullable=True),
        sa.Column("challenge_id", UUID(as_uuid=True), sa.ForeignKey("challenges.id", ondelete="SET NULL"), nullable=True),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("conversion_type", sa.String(30), nullable=False),
        sa.Column("promo_code", sa.String(100), nullable=True),
        sa.Column("checkout_url", sa.String(1000), nullable=True),
        sa.Column("revenue_cents", sa.Integer(), nullable=True),
        sa.Column("metadata_json", JSON(), server_default=sa.text("'{}'::json")),
        _created_at(),
        sa.UniqueConstraint("offer_id", "user_id", name="uq_offer_conversions_offer_user"),
    )

    # ── Payments ─────────────────────────────────────────────────────────
    op.create_table(
        "pending_payments",
        _id(),
        *_tenant_columns(),
        sa.Column("charge_id", sa.String(100), nullable=False),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("whop_user_id", sa.String(100), nullable=False),
        sa.Column("whop_experience_id", sa.String(100), nullable=True),
        sa.Column("challenge_id", UUID(as_uuid=True), sa.ForeignKey("challenges.id", ondelete="SET NULL"), nullable=True),
        sa.Column("entity_type", sa.String(40), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(10), server_default=sa.text("'usd'")),
        sa.Column("status", sa.String(20), server_default=sa.text("'pending'")),
        sa.Column("metadata_json", JSON(), server_default=sa.text("'{}'::json")),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("charge_id", name="uq_pending_payments_charge_id"),
    )

    op.create_table(
        "completed_payments",
        _id(),
        *_tenant_columns(),
        sa.Column("charge_id", sa.String(100), nullable=False),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("whop_user_id", sa.String(100), nullable=False),
        sa.Column("whop_experience_id", sa.String(100), nullable=True),
        sa.Column("challenge_id", UUID(as_uuid=True), sa.ForeignKey("challenges.id", ondelete="SET NULL"), nullable=True),
        sa.Column("entity_type", sa.String(40), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(10), server_default=sa.text("'usd'")),
        sa.Column("status", sa.String(20), server_default=sa.text("'completed'")),
        sa.Column("metadata_json", JSON(), server_default=sa.text("'{}'::json")),
        _created_at("processed_at"),
        sa.UniqueConstraint("charge_id", name="uq_completed_payments_charge_id"),
    )

    op.create_table(
        "challenge_rewards",
        _id(),
        *_tenant_columns(),
        sa.Column("challenge_id", UUID(as_uuid=True), sa.ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("charge_id", sa.String(100), nullable=False),
        sa.Column("reward_type", sa.String(40), nullable=True),
        _created_at("granted_at"),
        sa.UniqueConstraint("charge_id", name="uq_challenge_rewards_charge_id"),
    )

    op.create_table(
        "revenue_shares",
        _id(),
        *_tenant_columns(),
        sa.Column("charge_id", sa.String(100), nullable=False),
        sa.Column("challenge_id", UUID(as_uuid=True), sa.ForeignKey("challenges.id", ondelete="SET NULL"), nullable=True),
        sa.Column("total_cents", sa.Integer(), nullable=False),
        sa.Column("creator_cents", sa.Integer(), nullable=False),
        sa.Column("platform_fee_cents", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), server_default=sa.text("'pending'")),
        _created_at(),
        sa.UniqueConstraint("charge_id", name="uq_revenue_shares_charge_id"),
    )

    op.create_table(
        "whop_subscriptions",
        _id(),
        *_tenant_columns(),
        sa.Column("whop_membership_id", sa.String(100), nullable=False),
        sa.Column("whop_user_id", sa.String(100), nullable=True),
        sa.Column("whop_product_id", sa.String(100), nullable=True),
        sa.Column("whop_plan_id", sa.String(100), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("whop_membership_id", name="uq_whop_subscriptions_membership_id"),
    )


def downgrade() -> None:
    for table in (
        "whop_subscriptions",
        "revenue_shares",
        "challenge_rewards",
        "completed_payments",
        "pending_payments",
        "offer_conversions",
        "challenge_offers",
        "internal_notifications",
        "challenge_winners",
        "proofs",
        "checkins",
        "enrollments",
        "challenges",
        "users",
        "tenants",
    ):
        op.drop_table(table)
