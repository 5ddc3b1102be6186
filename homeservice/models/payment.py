from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from homeservice.db_core import Base
from homeservice.errors import InvariantViolation

PAYMENT_PENDING = "pending"
PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"

KIND_DIAGNOSIS_FEE = "diagnosis_fee"
KIND_SERVICE = "service"

PAYMENT_METHODS = ("pix", "credit_card", "debit_card")

ESCROW_HOLDING = "holding"
ESCROW_RELEASED = "released"


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (CheckConstraint("amount > 0", name="ck_payment_amount_positive"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("user_profiles.id"), index=True)
    service_request_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("service_requests.id"), index=True
    )
    kind: Mapped[str] = mapped_column(String(16), default=KIND_SERVICE)
    amount: Mapped[int] = mapped_column(Integer)
    method: Mapped[str] = mapped_column(String(16))
    status: Mapped[str] = mapped_column(String(16), default=PAYMENT_PENDING, index=True)
    gateway_ref: Mapped[str] = mapped_column(String(64), unique=True)
    pix_code: Mapped[str] = mapped_column(Text, default="")
    description: Mapped[str] = mapped_column(Text, default="")
    created_at = mapped_column(DateTime(timezone=True), server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


def check_escrow_shares(hold_amount, platform_share, provider_share, supplier_share) -> None:
    shares = (platform_share, provider_share, supplier_share)
    if hold_amount is None or hold_amount <= 0:
        raise InvariantViolation(f"escrow hold amount must be positive, got {hold_amount}")
    if any(s < 0 for s in shares):
        raise InvariantViolation(f"escrow shares must not be negative: {shares}")
    if sum(shares) != hold_amount:
        raise InvariantViolation(
            f"escrow shares {shares} sum to {sum(shares)}, hold amount is {hold_amount}"
        )


class PaymentEscrow(Base):
    __tablename__ = "payment_escrows"
    __table_args__ = (
        CheckConstraint(
            "platform_share + provider_share + supplier_share = hold_amount",
            name="ck_escrow_shares_balance",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    service_request_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("service_requests.id"), unique=True
    )
    payment_id: Mapped[int] = mapped_column(Integer, ForeignKey("payments.id"), index=True)
    hold_amount: Mapped[int] = mapped_column(Integer)
    platform_share: Mapped[int] = mapped_column(Integer, default=0)
    provider_share: Mapped[int] = mapped_column(Integer, default=0)
    supplier_share: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(16), default=ESCROW_HOLDING, index=True)
    release_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at = mapped_column(DateTime(timezone=True), server_default=func.now())

    payment = relationship("Payment")

    def __init__(self, **kwargs):
        for share in ("platform_share", "provider_share", "supplier_share"):
            kwargs.setdefault(share, 0)
        check_escrow_shares(
            kwargs.get("hold_amount"),
            kwargs["platform_share"],
            kwargs["provider_share"],
            kwargs["supplier_share"],
        )
        super().__init__(**kwargs)
