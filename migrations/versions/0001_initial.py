"""Initial schema: ride_requests, promo_codes, promo_redemptions"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "ride_requests",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("passenger_id", sa.String, nullable=False),
        sa.Column("matched_driver_id", sa.String, nullable=True),
        sa.Column("pickup_lat", sa.Float, nullable=False),
        sa.Column("pickup_lng", sa.Float, nullable=False),
        sa.Column("pickup_address", sa.String(500), nullable=False, server_default=""),
        sa.Column("drop_lat", sa.Float, nullable=False),
        sa.Column("drop_lng", sa.Float, nullable=False),
        sa.Column("drop_address", sa.String(500), nullable=False, server_default=""),
        sa.Column("vehicle_class", sa.String(20), nullable=False, server_default="car"),
        sa.Column("status", sa.String(20), nullable=False, server_default="searching"),
        sa.Column("fare", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("discount_amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("promo_code", sa.String(50), nullable=True),
        sa.Column("surge_multiplier", sa.Float, nullable=False, server_default="1.0"),
        sa.Column("distance_km", sa.Float, nullable=False, server_default="0"),
        sa.Column("duration_min", sa.Float, nullable=False, server_default="0"),
        sa.Column("search_radius_km", sa.Float, nullable=False),
        sa.Column("search_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scheduled_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_driver_ids", sa.JSON, nullable=False, server_default="[]"),
        sa.Column("cancel_reason", sa.String(500), nullable=True),
        sa.Column("cancelled_by", sa.String(20), nullable=True),
        sa.Column("matched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("discount_amount >= 0 AND discount_amount <= fare", name="ck_ride_requests_discount"),
        sa.CheckConstraint(
            "(matched_driver_id IS NOT NULL) = (status IN ('matched', 'accepted', 'in_progress'))",
            name="ck_ride_requests_driver_status",
        ),
    )
    op.create_index("idx_ride_requests_passenger", "ride_requests", ["passenger_id"])
    op.create_index("idx_ride_requests_status", "ride_requests", ["status"])
    op.create_index("idx_ride_requests_driver", "ride_requests", ["matched_driver_id"])
    op.create_index("idx_ride_requests_created_at", "ride_requests", ["created_at"])

    op.create_table(
        "promo_codes",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("code", sa.String(50), unique=True, nullable=False),
        sa.Column("discount_type", sa.String(20), nullable=False),
        sa.Column("discount_value", sa.Numeric(10, 2), nullable=False),
        sa.Column("max_discount", sa.Numeric(10, 2), nullable=True),
        sa.Column("min_fare", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("max_uses", sa.Integer, nullable=True),
        sa.Column("current_uses", sa.Integer, nullable=False, server_default="0"),
        sa.Column("per_user_limit", sa.Integer, nullable=False, server_default="1"),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("vehicle_classes", sa.JSON, nullable=False, server_default="[]"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_promo_codes_code", "promo_codes", ["code"])

    op.create_table(
        "promo_redemptions",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("promo_code_id", sa.String, sa.ForeignKey("promo_codes.id"), nullable=False),
        sa.Column("user_id", sa.String, nullable=False),
        sa.Column("ride_request_id", sa.String, sa.ForeignKey("ride_requests.id"), nullable=True),
        sa.Column("discount_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_promo_redemptions_code_user", "promo_redemptions", ["promo_code_id", "user_id"])


def downgrade() -> None:
    op.drop_table("promo_redemptions")
    op.drop_table("promo_codes")
    op.drop_table("ride_requests")
