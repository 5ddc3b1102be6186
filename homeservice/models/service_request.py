import enum
from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from homeservice.db_core import Base


class ServiceStatus(str, enum.Enum):
    PENDING = "pending"
    AI_DIAGNOSED = "ai_diagnosed"
    FEE_PAID = "fee_paid"
    PROVIDER_ASSIGNED = "provider_assigned"
    PROVIDER_DIAGNOSED = "provider_diagnosed"
    QUOTE_SENT = "quote_sent"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Statuses that require an assigned provider.
PROVIDER_BOUND_STATUSES = frozenset(
    {
        ServiceStatus.PROVIDER_ASSIGNED.value,
        ServiceStatus.PROVIDER_DIAGNOSED.value,
        ServiceStatus.QUOTE_SENT.value,
        ServiceStatus.ACCEPTED.value,
        ServiceStatus.IN_PROGRESS.value,
        ServiceStatus.AWAITING_CONFIRMATION.value,
        ServiceStatus.COMPLETED.value,
    }
)
OPEN_STATUSES = frozenset(
    s.value
    for s in ServiceStatus
    if s not in (ServiceStatus.COMPLETED, ServiceStatus.CANCELLED)
)


class SlaPriority(str, enum.Enum):
    STANDARD = "standard"
    EXPRESS = "express"
    URGENT = "urgent"


class ServiceRequest(Base):
    __tablename__ = "service_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    client_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("user_profiles.id"), index=True
    )
    provider_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("user_profiles.id"), nullable=True, index=True
    )
    category_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("service_categories.id"), index=True
    )
    title: Mapped[str] = mapped_column(String(140))
    description: Mapped[str] = mapped_column(Text, default="")
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    sla_priority: Mapped[str] = mapped_column(String(16), default=SlaPriority.STANDARD.value)
    status: Mapped[str] = mapped_column(
        String(32), default=ServiceStatus.PENDING.value, index=True
    )
    estimated_price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    final_price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Bumped by every write; writes are conditional on the value they read.
    version: Mapped[int] = mapped_column(Integer, default=1)
    created_at = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    category = relationship("ServiceCategory")
    domestic_details = relationship("DomesticDetails", uselist=False)


class DomesticDetails(Base):
    __tablename__ = "domestic_details"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    service_request_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("service_requests.id"), unique=True
    )
    house_size: Mapped[str] = mapped_column(String(32))
    service_type: Mapped[str] = mapped_column(String(32))
    frequency: Mapped[str] = mapped_column(String(32))


class ServiceExecutionLog(Base):
    __tablename__ = "service_execution_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    service_request_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("service_requests.id"), unique=True
    )
    provider_id: Mapped[str] = mapped_column(String(64), ForeignKey("user_profiles.id"))
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    start_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    start_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    end_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    end_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    notes: Mapped[str] = mapped_column(Text, default="")
    duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at = mapped_column(DateTime(timezone=True), server_default=func.now())
