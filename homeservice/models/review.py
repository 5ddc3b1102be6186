from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from homeservice.db_core import Base


class Review(Base):
    __tablename__ = "reviews"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    service_request_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("service_requests.id"), unique=True
    )
    client_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("user_profiles.id"), index=True
    )
    provider_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("user_profiles.id"), index=True
    )
    rating: Mapped[int] = mapped_column(Integer)  # 0 to 10
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at = mapped_column(DateTime(timezone=True), server_default=func.now())

    service_request = relationship("ServiceRequest")

    __table_args__ = (
        CheckConstraint("rating >= 0 AND rating <= 10", name="ck_review_rating_range"),
    )
