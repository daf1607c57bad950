import uuid
from datetime import datetime
from decimal import Decimal
from sqlalchemy import JSON, String, Float, Numeric, DateTime, func
from sqlalchemy.orm import Mapped, mapped_column
from ridematch.database import Base


class RideRequestRecord(Base):
    __tablename__ = "ride_requests"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    passenger_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    matched_driver_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)

    pickup_lat: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_lng: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_address: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    drop_lat: Mapped[float] = mapped_column(Float, nullable=False)
    drop_lng: Mapped[float] = mapped_column(Float, nullable=False)
    drop_address: Mapped[str] = mapped_column(String(500), nullable=False, default="")

    vehicle_class: Mapped[str] = mapped_column(String(20), nullable=False, default="car")
    # pending | searching | matched | accepted | in_progress | completed | cancelled | expired
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="searching", index=True)

    fare: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    promo_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    surge_multiplier: Mapped[float] = mapped_column(Float, default=1.0)
    distance_km: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    duration_min: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    search_radius_km: Mapped[float] = mapped_column(Float, nullable=False)
    search_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    scheduled_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_driver_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    cancel_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String(20), nullable=True)
    matched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
