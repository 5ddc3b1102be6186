"""Money reports over completed jobs and escrows: provider earnings and
platform totals. Months are calendar months in UTC."""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.orm import Session

from homeservice.db_utils import utcnow
from homeservice.models.payment import ESCROW_HOLDING, ESCROW_RELEASED, PaymentEscrow
from homeservice.models.service_request import OPEN_STATUSES, ServiceRequest, ServiceStatus
from homeservice.models.user import ROLE_PROVIDER, UserProfile


@dataclass(frozen=True)
class ProviderEarnings:
    total: int
    this_month: int
    # Provider shares of completed jobs still waiting in escrow.
    held: int
    completed: int


@dataclass(frozen=True)
class PlatformStats:
    total_users: int
    total_providers: int
    total_services: int
    completed_services: int
    open_services: int
    total_revenue: int
    monthly_revenue: int
    platform_fees: int


def month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _sum(db: Session, column, *criteria) -> int:
    return int(db.query(func.coalesce(func.sum(column), 0)).filter(*criteria).scalar())


def provider_earnings(db: Session, provider_id: str, now: datetime | None = None) -> ProviderEarnings:
    """Earnings are the provider shares of released escrows."""
    since = month_start(now or utcnow())
    mine = (
        PaymentEscrow.service_request_id == ServiceRequest.id,
        ServiceRequest.provider_id == provider_id,
    )
    released = (*mine, PaymentEscrow.status == ESCROW_RELEASED)
    completed = (
        db.query(func.count(ServiceRequest.id))
        .filter(
            ServiceRequest.provider_id == provider_id,
            ServiceRequest.status == ServiceStatus.COMPLETED.value,
        )
        .scalar()
    )
    return ProviderEarnings(
        total=_sum(db, PaymentEscrow.provider_share, *released),
        this_month=_sum(db, PaymentEscrow.provider_share, *released, PaymentEscrow.released_at >= since),
        held=_sum(
            db,
            PaymentEscrow.provider_share,
            *mine,
            PaymentEscrow.status == ESCROW_HOLDING,
            ServiceRequest.status == ServiceStatus.COMPLETED.value,
        ),
        completed=int(completed),
    )


def platform_stats(db: Session, now: datetime | None = None) -> PlatformStats:
    since = month_start(now or utcnow())
    price = func.coalesce(ServiceRequest.final_price, ServiceRequest.estimated_price, 0)
    completed = ServiceRequest.status == ServiceStatus.COMPLETED.value

    def count(model, *criteria) -> int:
        return int(db.query(func.count()).select_from(model).filter(*criteria).scalar())

    return PlatformStats(
        total_users=count(UserProfile),
        total_providers=count(UserProfile, UserProfile.role == ROLE_PROVIDER),
        total_services=count(ServiceRequest),
        completed_services=count(ServiceRequest, completed),
        open_services=count(ServiceRequest, ServiceRequest.status.in_(OPEN_STATUSES)),
        total_revenue=_sum(db, price, completed),
        monthly_revenue=_sum(db, price, completed, ServiceRequest.completed_at >= since),
        platform_fees=_sum(db, PaymentEscrow.platform_share, PaymentEscrow.status == ESCROW_RELEASED),
    )
