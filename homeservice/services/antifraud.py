"""Anti-fraud monitor.

Rules are independent predicates over a finished job; any subset may fire.
Flags are advisory: they never block a transition and only an admin can
resolve them.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from homeservice.config import settings
from homeservice.db_utils import transaction, utcnow
from homeservice.errors import InvalidTransition, NotFound, Unauthorized
from homeservice.models.antifraud import (
    SEVERITY_HIGH,
    SEVERITY_LOW,
    SEVERITY_MEDIUM,
    AntifraudFlag,
)
from homeservice.models.category import ServiceCategory
from homeservice.models.service_request import (
    OPEN_STATUSES,
    ServiceExecutionLog,
    ServiceRequest,
    ServiceStatus,
)
from homeservice.models.user import ROLE_ADMIN, UserProfile
from homeservice.services import events as ev
from homeservice.services.events import EventDispatcher
from homeservice.services.geo import distance_km, has_coordinates

logger = logging.getLogger(__name__)

SHORT_EXECUTION = "short_execution_duration"
DUPLICATE_DOCUMENT = "duplicate_document"
VALUE_ABOVE_NORM = "value_above_category_norm"
EXCESSIVE_CANCELLATIONS = "excessive_cancellations"
LOCATION_MISMATCH = "location_mismatch"


@dataclass
class FraudContext:
    db: Session
    request: ServiceRequest
    category: ServiceCategory
    execution: Optional[ServiceExecutionLog]
    client: Optional[UserProfile]


@dataclass(frozen=True)
class FlagDraft:
    reason: str
    severity: str
    details: str
    user_id: Optional[str] = None


Rule = Callable[[FraudContext], Optional[FlagDraft]]


def short_execution_rule(min_minutes: int) -> Rule:
    def rule(ctx: FraudContext) -> Optional[FlagDraft]:
        log = ctx.execution
        if log is None or log.duration_minutes is None:
            return None
        if log.duration_minutes < min_minutes:
            return FlagDraft(
                SHORT_EXECUTION,
                SEVERITY_MEDIUM,
                f"execution took {log.duration_minutes} min, minimum expected {min_minutes} min",
                user_id=log.provider_id,
            )
        return None

    return rule


def duplicate_document_rule(ctx: FraudContext) -> Optional[FlagDraft]:
    client = ctx.client
    if client is None or not client.document:
        return None
    others = (
        ctx.db.query(ServiceRequest.client_id)
        .join(UserProfile, UserProfile.id == ServiceRequest.client_id)
        .filter(
            UserProfile.document == client.document,
            UserProfile.id != client.id,
            ServiceRequest.status.in_(OPEN_STATUSES),
        )
        .distinct()
        .all()
    )
    if not others:
        return None
    ids = ", ".join(sorted(row[0] for row in others))
    return FlagDraft(
        DUPLICATE_DOCUMENT,
        SEVERITY_HIGH,
        f"document shared with users holding open jobs: {ids}",
        user_id=client.id,
    )


def value_above_norm_rule(factor: float) -> Rule:
    def rule(ctx: FraudContext) -> Optional[FlagDraft]:
        value = ctx.request.final_price or ctx.request.estimated_price
        norm = ctx.category.base_price
        if not value or not norm:
            return None
        if value > norm * factor:
            return FlagDraft(
                VALUE_ABOVE_NORM,
                SEVERITY_MEDIUM,
                f"value {value} exceeds {factor}x the category base price {norm}",
                user_id=ctx.request.provider_id,
            )
        return None

    return rule


def excessive_cancellations_rule(max_cancellations: int) -> Rule:
    def rule(ctx: FraudContext) -> Optional[FlagDraft]:
        cancelled = (
            ctx.db.query(func.count(ServiceRequest.id))
            .filter(
                ServiceRequest.client_id == ctx.request.client_id,
                ServiceRequest.status == ServiceStatus.CANCELLED.value,
            )
            .scalar()
        )
        if cancelled >= max_cancellations:
            return FlagDraft(
                EXCESSIVE_CANCELLATIONS,
                SEVERITY_LOW,
                f"client cancelled {cancelled} jobs",
                user_id=ctx.request.client_id,
            )
        return None

    return rule


def location_mismatch_rule(max_km: float) -> Rule:
    def rule(ctx: FraudContext) -> Optional[FlagDraft]:
        sr, log = ctx.request, ctx.execution
        if log is None or not has_coordinates(sr.latitude, sr.longitude):
            return None
        points = [
            (log.start_latitude, log.start_longitude),
            (log.end_latitude, log.end_longitude),
        ]
        distances = [
            distance_km(sr.latitude, sr.longitude, lat, lon)
            for lat, lon in points
            if has_coordinates(lat, lon)
        ]
        if distances and max(distances) > max_km:
            return FlagDraft(
                LOCATION_MISMATCH,
                SEVERITY_HIGH,
                f"execution recorded {max(distances):.1f} km from the declared address",
                user_id=log.provider_id,
            )
        return None

    return rule


def default_rules() -> list[Rule]:
    return [
        short_execution_rule(settings.MIN_EXECUTION_MINUTES),
        duplicate_document_rule,
        value_above_norm_rule(settings.PRICE_NORM_FACTOR),
        excessive_cancellations_rule(settings.MAX_CANCELLATIONS),
        location_mismatch_rule(settings.MAX_LOCATION_DRIFT_KM),
    ]


class AntifraudMonitor:
    def __init__(self, rules: list[Rule] | None = None, events: EventDispatcher | None = None):
        self.rules = default_rules() if rules is None else rules
        self.events = events or EventDispatcher()

    def inspect(self, db: Session, service_request_id: int) -> list[AntifraudFlag]:
        """Run every rule for the request and persist new flags.

        A reason already flagged for the request is not raised again.
        """
        sr = db.get(ServiceRequest, service_request_id)
        if not sr:
            raise NotFound(f"service request {service_request_id} not found")
        ctx = FraudContext(
            db=db,
            request=sr,
            category=sr.category,
            execution=db.query(ServiceExecutionLog)
            .filter(ServiceExecutionLog.service_request_id == sr.id)
            .first(),
            client=db.get(UserProfile, sr.client_id),
        )
        existing = {
            reason
            for (reason,) in db.query(AntifraudFlag.reason).filter(
                AntifraudFlag.service_request_id == sr.id
            )
        }
        drafts = []
        for rule in self.rules:
            try:
                draft = rule(ctx)
            except Exception:
                logger.exception("antifraud rule %r failed for request %s", rule, sr.id)
                continue
            if draft and draft.reason not in existing:
                existing.add(draft.reason)
                drafts.append(draft)

        with transaction(db):
            flags = [
                AntifraudFlag(
                    service_request_id=sr.id,
                    user_id=d.user_id,
                    reason=d.reason,
                    severity=d.severity,
                    details=d.details,
                )
                for d in drafts
            ]
            db.add_all(flags)

        for flag in flags:
            logger.warning(
                "antifraud flag %s raised for request %s: %s (%s)",
                flag.id, sr.id, flag.reason, flag.severity,
            )
            self.events.publish(
                ev.ANTIFRAUD_FLAG_RAISED,
                {
                    "flag_id": flag.id,
                    "service_request_id": sr.id,
                    "reason": flag.reason,
                    "severity": flag.severity,
                },
            )
        return flags

    def resolve(self, db: Session, flag_id: int, actor) -> AntifraudFlag:
        if actor.role != ROLE_ADMIN:
            raise Unauthorized("only administrators resolve antifraud flags")
        with transaction(db):
            flag = db.get(AntifraudFlag, flag_id)
            if not flag:
                raise NotFound(f"antifraud flag {flag_id} not found")
            result = db.execute(
                update(AntifraudFlag)
                .where(AntifraudFlag.id == flag_id, AntifraudFlag.resolved.is_(False))
                .values(resolved=True, resolved_by=actor.user_id, resolved_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InvalidTransition(f"antifraud flag {flag_id} is already resolved")
        db.refresh(flag)
        logger.info("antifraud flag %s resolved by %s", flag_id, actor.user_id)
        return flag

    def pending_flags(self, db: Session) -> list[AntifraudFlag]:
        return (
            db.query(AntifraudFlag)
            .filter(AntifraudFlag.resolved.is_(False))
            .order_by(AntifraudFlag.id.desc())
            .all()
        )

    def flags_for_request(self, db: Session, service_request_id: int) -> list[AntifraudFlag]:
        return (
            db.query(AntifraudFlag)
            .filter(AntifraudFlag.service_request_id == service_request_id)
            .order_by(AntifraudFlag.id)
            .all()
        )
