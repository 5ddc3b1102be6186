"""Service lifecycle controller.

Every status change of a ServiceRequest goes through this module. Each
operation is a row of TRANSITIONS (allowed source statuses, target status,
who may trigger it); the controller re-reads the request, checks the row,
applies the side effects and moves the status with a conditional UPDATE on
the (status, version) it read. When two actors race, the loser's UPDATE
matches nothing and its whole transaction is rolled back as an
InvalidTransition.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import and_, or_, update
from sqlalchemy.orm import Session

from homeservice.ai.diagnosis import BaseDiagnosisService, DiagnosisRequest, GuidedAnswerIn
from homeservice.config import settings
from homeservice.db_utils import as_utc, transaction, utcnow
from homeservice.errors import InvalidTransition, NotFound, Unauthorized
from homeservice.models.category import ServiceCategory
from homeservice.models.diagnosis import (
    AiDiagnosis,
    DigitalAcceptance,
    GuidedAnswer,
    ProviderDiagnosis,
    QuotedMaterial,
    SuggestedMaterial,
)
from homeservice.models.payment import (
    KIND_DIAGNOSIS_FEE,
    KIND_SERVICE,
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    Payment,
)
from homeservice.models.service_request import (
    DomesticDetails,
    ServiceExecutionLog,
    ServiceRequest,
    ServiceStatus,
    SlaPriority,
)
from homeservice.models.user import ROLE_ADMIN, ROLE_CLIENT, ROLE_PROVIDER, UserProfile
from homeservice.payment.ledger import LedgerManager, split_shares
from homeservice.services import events as ev
from homeservice.services import matching, pricing
from homeservice.services.actors import ROLE_SYSTEM, SYSTEM, Actor
from homeservice.services.antifraud import AntifraudMonitor
from homeservice.services.catalog import resolve_category
from homeservice.services.events import EventDispatcher
from homeservice.services.user_service import get_or_create_profile

logger = logging.getLogger(__name__)

S = ServiceStatus

# Who may trigger a transition.
OWNER_CLIENT = "owner_client"
ASSIGNED_PROVIDER = "assigned_provider"
OWNER_OR_ADMIN = "owner_or_admin"
SYSTEM_ONLY = "system"


@dataclass(frozen=True)
class Transition:
    name: str
    sources: frozenset
    target: Optional[str]  # None keeps the current status
    actor: str
    # An eligible provider may claim an unassigned request.
    self_assign: bool = False


def _t(name, sources, target, actor, **kw) -> Transition:
    return Transition(
        name,
        frozenset(s.value for s in sources),
        target.value if target else None,
        actor,
        **kw,
    )


TRANSITIONS = {
    t.name: t
    for t in (
        _t("record_ai_diagnosis", {S.PENDING}, S.AI_DIAGNOSED, OWNER_CLIENT),
        _t("pay_diagnosis_fee", {S.AI_DIAGNOSED}, None, OWNER_CLIENT),
        _t("mark_fee_paid", {S.AI_DIAGNOSED}, S.FEE_PAID, SYSTEM_ONLY),
        _t("assign_provider", {S.FEE_PAID}, S.PROVIDER_ASSIGNED, OWNER_CLIENT),
        _t(
            "submit_provider_diagnosis",
            {S.FEE_PAID, S.PROVIDER_ASSIGNED},
            S.PROVIDER_DIAGNOSED,
            ASSIGNED_PROVIDER,
            self_assign=True,
        ),
        _t("send_quote", {S.PROVIDER_DIAGNOSED}, S.QUOTE_SENT, ASSIGNED_PROVIDER),
        _t("accept_quote", {S.QUOTE_SENT}, S.ACCEPTED, OWNER_CLIENT),
        _t("accept_domestic", {S.AI_DIAGNOSED}, None, OWNER_CLIENT),
        _t("domestic_payment_cleared", {S.AI_DIAGNOSED}, S.ACCEPTED, SYSTEM_ONLY),
        _t("start_execution", {S.ACCEPTED}, S.IN_PROGRESS, ASSIGNED_PROVIDER),
        _t("finish_execution", {S.IN_PROGRESS}, S.AWAITING_CONFIRMATION, ASSIGNED_PROVIDER),
        _t("confirm_completion", {S.AWAITING_CONFIRMATION}, S.COMPLETED, OWNER_CLIENT),
        _t("cancel", {S.PENDING, S.AI_DIAGNOSED, S.FEE_PAID}, S.CANCELLED, OWNER_OR_ADMIN),
    )
}


@dataclass(frozen=True)
class MaterialLine:
    name: str
    quantity: int
    unit_price: int

    def __post_init__(self):
        if not self.name or self.quantity <= 0 or self.unit_price < 0:
            raise ValueError(f"invalid material line: {self}")


@dataclass(frozen=True)
class DomesticOptions:
    house_size: str
    service_type: str
    frequency: str


class ServiceLifecycleController:
    def __init__(
        self,
        ledger: LedgerManager,
        diagnosis_service: BaseDiagnosisService,
        antifraud: AntifraudMonitor | None = None,
        events: EventDispatcher | None = None,
        confirmation_scheduler: Optional[Callable[[str], None]] = None,
        release_scheduler: Optional[Callable[[int, datetime], None]] = None,
    ):
        self.ledger = ledger
        self.diagnosis_service = diagnosis_service
        self.events = events or ledger.events
        self.antifraud = antifraud or AntifraudMonitor(events=self.events)
        self.confirmation_scheduler = confirmation_scheduler
        self.release_scheduler = release_scheduler

    # --- guards ---

    def _load(self, db: Session, request_id: int) -> ServiceRequest:
        sr = db.get(ServiceRequest, request_id, populate_existing=True)
        if not sr:
            raise NotFound(f"service request {request_id} not found")
        return sr

    def _authorize(self, t: Transition, sr: ServiceRequest, actor: Actor) -> None:
        if t.actor == SYSTEM_ONLY:
            ok = actor.role == ROLE_SYSTEM
        elif t.actor == OWNER_CLIENT:
            ok = actor.role == ROLE_CLIENT and actor.user_id == sr.client_id
        elif t.actor == OWNER_OR_ADMIN:
            ok = actor.role == ROLE_ADMIN or (
                actor.role == ROLE_CLIENT and actor.user_id == sr.client_id
            )
        elif t.actor == ASSIGNED_PROVIDER:
            ok = actor.role == ROLE_PROVIDER and (
                sr.provider_id == actor.user_id or (t.self_assign and sr.provider_id is None)
            )
        else:
            ok = False
        if not ok:
            logger.warning(
                "%s on request %s refused for %s %s", t.name, sr.id, actor.role, actor.user_id
            )
            raise Unauthorized(f"{actor.role} {actor.user_id} may not {t.name} request {sr.id}")

    def _guard(self, t: Transition, sr: ServiceRequest, actor: Actor) -> None:
        self._authorize(t, sr, actor)
        if sr.status not in t.sources:
            logger.warning("%s on request %s refused in status %s", t.name, sr.id, sr.status)
            raise InvalidTransition(f"cannot {t.name} request {sr.id} in status {sr.status}")

    def _advance(self, db: Session, sr: ServiceRequest, t: Transition, **values) -> None:
        """Conditional write of the new status; loses cleanly to a concurrent writer."""
        target = t.target or sr.status
        result = db.execute(
            update(ServiceRequest)
            .where(
                ServiceRequest.id == sr.id,
                ServiceRequest.status == sr.status,
                ServiceRequest.version == sr.version,
            )
            .values(status=target, version=sr.version + 1, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning("%s on request %s lost a concurrent update", t.name, sr.id)
            raise InvalidTransition(f"request {sr.id} changed concurrently, reload and retry")
        if target != sr.status:
            logger.info("request %s: %s -> %s (%s)", sr.id, sr.status, target, t.name)
        db.refresh(sr)

    # --- creation ---

    def create_request(
        self,
        db: Session,
        actor: Actor,
        *,
        category_id: int,
        title: str,
        description: str = "",
        sla_priority: str = SlaPriority.STANDARD.value,
        address: str | None = None,
        latitude: float | None = None,
        longitude: float | None = None,
        domestic: DomesticOptions | None = None,
    ) -> ServiceRequest:
        if actor.role != ROLE_CLIENT:
            raise Unauthorized("only clients create service requests")
        pricing.sla_multiplier(sla_priority)
        with transaction(db):
            get_or_create_profile(db, actor.user_id, ROLE_CLIENT)
            category = resolve_category(db, category_id)
            if category.is_domestic:
                if domestic is None:
                    raise ValueError("domestic categories need house size, service type and frequency")
                # Validates the labels before anything is stored.
                pricing.domestic_price(
                    domestic.house_size, domestic.service_type, domestic.frequency,
                    settings.DOMESTIC_FEE_PCT,
                )
            sr = ServiceRequest(
                client_id=actor.user_id,
                category_id=category.id,
                title=title,
                description=description,
                sla_priority=sla_priority,
                address=address,
                latitude=latitude,
                longitude=longitude,
                status=S.PENDING.value,
                estimated_price=pricing.estimate_for_sla(category.base_price, sla_priority),
                version=1,
            )
            db.add(sr)
            db.flush()
            if category.is_domestic:
                db.add(
                    DomesticDetails(
                        service_request_id=sr.id,
                        house_size=domestic.house_size,
                        service_type=domestic.service_type,
                        frequency=domestic.frequency,
                    )
                )
        logger.info("request %s created by %s in %s", sr.id, actor.user_id, category.name)
        return sr

    # --- diagnosis ---

    def record_ai_diagnosis(
        self,
        db: Session,
        request_id: int,
        actor: Actor,
        *,
        description: str | None = None,
        guided_answers: list[tuple[str, str]] | None = None,
        media_refs: list[str] | None = None,
    ) -> AiDiagnosis:
        t = TRANSITIONS["record_ai_diagnosis"]
        with transaction(db):
            sr = self._load(db, request_id)
            self._guard(t, sr, actor)
            category = sr.category
            diagnosis_input = DiagnosisRequest(
                description=description or sr.description or sr.title,
                guided_answers=[GuidedAnswerIn(question=q, answer=a) for q, a in guided_answers or []],
                media_refs=media_refs or [],
                category_name=category.name,
                base_price=category.base_price,
            )
            if category.is_domestic:
                diagnosis, estimated = self._domestic_diagnosis(sr, category, diagnosis_input)
                materials = []
            else:
                result = self.diagnosis_service.diagnose(diagnosis_input)
                diagnosis = AiDiagnosis(
                    service_request_id=sr.id,
                    input_description=diagnosis_input.description,
                    media_refs=diagnosis_input.media_refs,
                    classification=result.classification,
                    urgency_level=result.urgency_level,
                    estimated_duration=result.estimated_duration,
                    price_range_min=pricing.estimate_for_sla(result.price_range_min, sr.sla_priority),
                    price_range_max=pricing.estimate_for_sla(result.price_range_max, sr.sla_priority),
                    diagnosis_fee=settings.DIAGNOSIS_FEE,
                    explanation=result.explanation_text,
                )
                estimated = sr.estimated_price
                materials = result.materials
            self._advance(db, sr, t, estimated_price=estimated)
            db.add(diagnosis)
            db.flush()
            db.add_all(
                GuidedAnswer(ai_diagnosis_id=diagnosis.id, question=qa.question, answer=qa.answer)
                for qa in diagnosis_input.guided_answers
            )
            db.add_all(SuggestedMaterial(ai_diagnosis_id=diagnosis.id, name=m) for m in materials)
        return diagnosis

    def _domestic_diagnosis(
        self, sr: ServiceRequest, category: ServiceCategory, diagnosis_input: DiagnosisRequest
    ) -> tuple[AiDiagnosis, int]:
        details = sr.domestic_details
        if details is None:
            raise InvalidTransition(f"domestic request {sr.id} has no service details")
        quote = pricing.domestic_price(
            details.house_size, details.service_type, details.frequency,
            settings.DOMESTIC_FEE_PCT,
        )
        diagnosis = AiDiagnosis(
            service_request_id=sr.id,
            input_description=diagnosis_input.description,
            media_refs=diagnosis_input.media_refs,
            classification=category.name,
            urgency_level="",
            estimated_duration="",
            price_range_min=quote.price,
            price_range_max=quote.price,
            diagnosis_fee=quote.platform_fee,
            explanation=(
                f"{details.service_type}, {details.house_size}, {details.frequency}: "
                f"preço calculado automaticamente"
            ),
        )
        return diagnosis, quote.price

    # --- diagnosis fee ---

    def pay_diagnosis_fee(self, db: Session, request_id: int, actor: Actor, *, method: str) -> Payment:
        """Charge the diagnosis fee. A fee already pending is returned as is."""
        t = TRANSITIONS["pay_diagnosis_fee"]
        with transaction(db):
            sr = self._load(db, request_id)
            self._guard(t, sr, actor)
            if sr.category.is_domestic:
                raise InvalidTransition(f"domestic request {sr.id} is paid on acceptance")
            fees = (
                db.query(Payment)
                .filter(Payment.service_request_id == sr.id, Payment.kind == KIND_DIAGNOSIS_FEE)
                .all()
            )
            for p in fees:
                if p.status == PAYMENT_PENDING:
                    return p
                if p.status == PAYMENT_COMPLETED:
                    raise InvalidTransition(f"diagnosis fee of request {sr.id} is already paid")
            diagnosis = self._ai_diagnosis(db, sr)
            self._advance(db, sr, t)
            payment = self.ledger.create_payment(
                db,
                amount=diagnosis.diagnosis_fee,
                method=method,
                service_request_id=sr.id,
                user_id=actor.user_id,
                kind=KIND_DIAGNOSIS_FEE,
                description=f"Taxa de diagnóstico #{sr.id}",
            )
        self._schedule_confirmation(payment)
        return payment

    def handle_payment_confirmation(
        self, db: Session, gateway_ref: str, succeeded: bool = True
    ) -> tuple[Payment, bool]:
        """Gateway callback (webhook or simulated timer). Safe to replay."""
        with transaction(db):
            if not succeeded:
                return self.ledger.fail_payment(db, gateway_ref)
            payment, changed = self.ledger.confirm_payment(db, gateway_ref)
            accepted = None
            if changed and payment.kind == KIND_DIAGNOSIS_FEE:
                sr = self._load(db, payment.service_request_id)
                if sr.status == S.AI_DIAGNOSED.value:
                    self._mark_fee_paid(db, sr, SYSTEM)
                else:
                    logger.warning(
                        "diagnosis fee %s confirmed while request %s is %s",
                        payment.id, sr.id, sr.status,
                    )
            elif changed and payment.kind == KIND_SERVICE:
                sr = self._load(db, payment.service_request_id)
                if self._domestic_payment_cleared(db, sr):
                    accepted = sr
        if accepted is not None:
            self.events.publish(
                ev.PROVIDER_ASSIGNED,
                {"service_request_id": accepted.id, "provider_id": accepted.provider_id},
            )
            self._publish_accepted(accepted, payment)
        return payment, changed

    def mark_fee_paid(self, db: Session, request_id: int, actor: Actor) -> ServiceRequest:
        with transaction(db):
            sr = self._load(db, request_id)
            self._mark_fee_paid(db, sr, actor)
        return sr

    def _mark_fee_paid(self, db: Session, sr: ServiceRequest, actor: Actor) -> None:
        t = TRANSITIONS["mark_fee_paid"]
        self._guard(t, sr, actor)
        paid = (
            db.query(Payment)
            .filter(
                Payment.service_request_id == sr.id,
                Payment.kind == KIND_DIAGNOSIS_FEE,
                Payment.status == PAYMENT_COMPLETED,
            )
            .first()
        )
        if not paid:
            raise InvalidTransition(f"request {sr.id} has no completed diagnosis fee payment")
        self._advance(db, sr, t)

    # --- provider selection and quote ---

    def assign_provider(
        self, db: Session, request_id: int, actor: Actor, *, provider_id: str
    ) -> ServiceRequest:
        t = TRANSITIONS["assign_provider"]
        with transaction(db):
            sr = self._load(db, request_id)
            self._guard(t, sr, actor)
            provider = self._eligible_provider(db, sr, provider_id)
            band = matching.band_for(db, sr, provider)
            self._advance(db, sr, t, provider_id=provider.id, estimated_price=band.midpoint)
        self.events.publish(
            ev.PROVIDER_ASSIGNED,
            {"service_request_id": sr.id, "provider_id": provider_id, "tier": band.tier},
        )
        return sr

    def _eligible_provider(self, db: Session, sr: ServiceRequest, provider_id: str) -> UserProfile:
        provider = db.get(UserProfile, provider_id)
        if not provider:
            raise NotFound(f"provider {provider_id} not found")
        if not matching.is_eligible(provider, sr.category):
            raise InvalidTransition(
                f"provider {provider_id} is not available for {sr.category.name}"
            )
        return provider

    def submit_provider_diagnosis(
        self,
        db: Session,
        request_id: int,
        actor: Actor,
        *,
        findings: str,
        labor_cost: int,
        materials: list[MaterialLine] | None = None,
        estimated_duration: str = "",
        notes: str = "",
    ) -> ProviderDiagnosis:
        t = TRANSITIONS["submit_provider_diagnosis"]
        materials = materials or []
        with transaction(db):
            sr = self._load(db, request_id)
            self._guard(t, sr, actor)
            if sr.provider_id is None and not matching.is_eligible(
                db.get(UserProfile, actor.user_id), sr.category
            ):
                raise Unauthorized(f"provider {actor.user_id} does not serve {sr.category.name}")
            materials_cost = pricing.materials_total(
                (m.name, m.quantity, m.unit_price) for m in materials
            )
            quote = pricing.quote_breakdown(labor_cost, materials_cost, settings.PLATFORM_FEE_PCT)
            self._advance(
                db, sr, t, provider_id=actor.user_id, estimated_price=quote.total_price
            )
            diagnosis = ProviderDiagnosis(
                service_request_id=sr.id,
                provider_id=actor.user_id,
                findings=findings,
                labor_cost=labor_cost,
                materials_cost=materials_cost,
                estimated_duration=estimated_duration,
                notes=notes,
            )
            db.add(diagnosis)
            db.flush()
            db.add_all(
                QuotedMaterial(
                    provider_diagnosis_id=diagnosis.id,
                    name=m.name,
                    quantity=m.quantity,
                    unit_price=m.unit_price,
                )
                for m in materials
            )
        return diagnosis

    def send_quote(self, db: Session, request_id: int, actor: Actor) -> ServiceRequest:
        t = TRANSITIONS["send_quote"]
        with transaction(db):
            sr = self._load(db, request_id)
            self._guard(t, sr, actor)
            self._advance(db, sr, t)
        return sr

    # --- acceptance ---

    def accept_quote(
        self,
        db: Session,
        request_id: int,
        actor: Actor,
        *,
        method: str,
        ip_address: str = "",
        user_agent: str = "",
    ) -> Payment:
        t = TRANSITIONS["accept_quote"]
        with transaction(db):
            sr = self._load(db, request_id)
            self._guard(t, sr, actor)
            quote_source = (
                db.query(ProviderDiagnosis)
                .filter(ProviderDiagnosis.service_request_id == sr.id)
                .first()
            )
            if not quote_source:
                raise InvalidTransition(f"request {sr.id} has no provider diagnosis to accept")
            quote = pricing.quote_breakdown(
                quote_source.labor_cost, quote_source.materials_cost, settings.PLATFORM_FEE_PCT
            )
            self._advance(db, sr, t, final_price=quote.total_price)
            payment = self._record_acceptance(
                db, sr, actor, quote,
                method=method,
                ip_address=ip_address,
                user_agent=user_agent,
                ai_diagnosis_id=self._ai_diagnosis_id(db, sr),
                provider_diagnosis_id=quote_source.id,
                estimated_duration=quote_source.estimated_duration,
            )
        self._after_acceptance(sr, payment)
        return payment

    def accept_domestic(
        self,
        db: Session,
        request_id: int,
        actor: Actor,
        *,
        provider_id: str,
        method: str,
        ip_address: str = "",
        user_agent: str = "",
    ) -> Payment:
        """Fast path for domestic jobs: the computed price is the quote.

        The request stays ai_diagnosed until the service payment clears;
        handle_payment_confirmation then moves it to accepted. A charge still
        pending is returned as is; after a failed charge the client may pay
        again against the same acceptance and escrow.
        """
        t = TRANSITIONS["accept_domestic"]
        with transaction(db):
            sr = self._load(db, request_id)
            self._guard(t, sr, actor)
            if not sr.category.is_domestic:
                raise InvalidTransition(f"request {sr.id} is not a domestic job")
            previous = self._service_payments(db, sr)
            for p in previous:
                if p.status == PAYMENT_PENDING:
                    return p
                if p.status == PAYMENT_COMPLETED:
                    raise InvalidTransition(f"request {sr.id} is already paid")
            provider = self._eligible_provider(db, sr, provider_id)
            diagnosis = self._ai_diagnosis(db, sr)
            price = diagnosis.price_range_min
            quote = pricing.QuoteBreakdown(
                labor_cost=price, materials_cost=0, platform_fee=diagnosis.diagnosis_fee
            )
            self._advance(
                db, sr, t, provider_id=provider.id, estimated_price=price, final_price=price
            )
            if previous:
                payment = self.ledger.create_payment(
                    db,
                    amount=quote.total_price,
                    method=method,
                    service_request_id=sr.id,
                    user_id=actor.user_id,
                    kind=KIND_SERVICE,
                    description=f"Serviço #{sr.id}",
                )
                self.ledger.rebind_escrow(db, sr.id, payment)
            else:
                payment = self._record_acceptance(
                    db, sr, actor, quote,
                    method=method,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    ai_diagnosis_id=diagnosis.id,
                    provider_diagnosis_id=None,
                    estimated_duration=diagnosis.estimated_duration,
                )
        self._schedule_confirmation(payment)
        return payment

    def _domestic_payment_cleared(self, db: Session, sr: ServiceRequest) -> bool:
        t = TRANSITIONS["domestic_payment_cleared"]
        if not sr.category.is_domestic:
            return False
        if sr.status != S.AI_DIAGNOSED.value:
            logger.warning("service payment confirmed while request %s is %s", sr.id, sr.status)
            return False
        self._guard(t, sr, SYSTEM)
        self._advance(db, sr, t)
        return True

    def _service_payments(self, db: Session, sr: ServiceRequest) -> list[Payment]:
        return (
            db.query(Payment)
            .filter(Payment.service_request_id == sr.id, Payment.kind == KIND_SERVICE)
            .order_by(Payment.id)
            .all()
        )

    def _record_acceptance(
        self, db: Session, sr: ServiceRequest, actor: Actor, quote: pricing.QuoteBreakdown, **kw
    ) -> Payment:
        """Acceptance record, payment and escrow; part of the caller's transaction."""
        db.add(
            DigitalAcceptance(
                service_request_id=sr.id,
                client_id=actor.user_id,
                ai_diagnosis_id=kw["ai_diagnosis_id"],
                provider_diagnosis_id=kw["provider_diagnosis_id"],
                total_price=quote.total_price,
                labor_cost=quote.labor_cost,
                materials_cost=quote.materials_cost,
                platform_fee=quote.platform_fee,
                estimated_duration=kw["estimated_duration"] or "",
                terms_version=settings.TERMS_VERSION,
                ip_address=kw["ip_address"],
                user_agent=kw["user_agent"],
            )
        )
        payment = self.ledger.create_payment(
            db,
            amount=quote.total_price,
            method=kw["method"],
            service_request_id=sr.id,
            user_id=actor.user_id,
            kind=KIND_SERVICE,
            description=f"Serviço #{sr.id}",
        )
        self.ledger.create_escrow(
            db,
            payment_id=payment.id,
            hold_amount=quote.total_price,
            shares=split_shares(quote.labor_cost, quote.materials_cost, quote.platform_fee),
        )
        return payment

    def _after_acceptance(self, sr: ServiceRequest, payment: Payment) -> None:
        self._publish_accepted(sr, payment)
        self._schedule_confirmation(payment)

    def _publish_accepted(self, sr: ServiceRequest, payment: Payment) -> None:
        self.events.publish(
            ev.SERVICE_ACCEPTED,
            {
                "service_request_id": sr.id,
                "provider_id": sr.provider_id,
                "total_price": payment.amount,
            },
        )

    # --- execution ---

    def start_execution(
        self,
        db: Session,
        request_id: int,
        actor: Actor,
        *,
        latitude: float | None = None,
        longitude: float | None = None,
        at: datetime | None = None,
    ) -> ServiceRequest:
        t = TRANSITIONS["start_execution"]
        with transaction(db):
            sr = self._load(db, request_id)
            self._guard(t, sr, actor)
            self._advance(db, sr, t)
            db.add(
                ServiceExecutionLog(
                    service_request_id=sr.id,
                    provider_id=actor.user_id,
                    started_at=at or utcnow(),
                    start_latitude=latitude,
                    start_longitude=longitude,
                )
            )
        return sr

    def finish_execution(
        self,
        db: Session,
        request_id: int,
        actor: Actor,
        *,
        latitude: float | None = None,
        longitude: float | None = None,
        at: datetime | None = None,
        notes: str = "",
    ) -> ServiceRequest:
        t = TRANSITIONS["finish_execution"]
        with transaction(db):
            sr = self._load(db, request_id)
            self._guard(t, sr, actor)
            log = (
                db.query(ServiceExecutionLog)
                .filter(ServiceExecutionLog.service_request_id == sr.id)
                .first()
            )
            if not log or not log.started_at:
                raise InvalidTransition(f"request {sr.id} has no open execution log")
            ended = as_utc(at or utcnow())
            started = as_utc(log.started_at)
            if ended < started:
                raise ValueError("execution cannot end before it started")
            self._advance(db, sr, t)
            log.completed_at = ended
            log.end_latitude = latitude
            log.end_longitude = longitude
            log.notes = notes
            log.duration_minutes = int((ended - started).total_seconds() // 60)
        self._inspect(db, sr.id)
        return sr

    def _inspect(self, db: Session, request_id: int) -> None:
        # Flags are advisory: the transition is already committed.
        try:
            self.antifraud.inspect(db, request_id)
        except Exception:
            logger.exception("antifraud inspection failed for request %s", request_id)

    # --- completion and cancellation ---

    def confirm_completion(self, db: Session, request_id: int, actor: Actor) -> ServiceRequest:
        t = TRANSITIONS["confirm_completion"]
        now = utcnow()
        release_at = now + timedelta(hours=settings.ESCROW_RELEASE_DELAY_HOURS)
        with transaction(db):
            sr = self._load(db, request_id)
            self._guard(t, sr, actor)
            self._advance(db, sr, t, completed_at=now)
            escrow = self.ledger.get_escrow_for_request(db, sr.id)
            self.ledger.schedule_release(db, escrow, release_at)
            db.execute(
                update(UserProfile)
                .where(UserProfile.id == sr.provider_id)
                .values(total_services=UserProfile.total_services + 1)
                .execution_options(synchronize_session=False)
            )
        if self.release_scheduler:
            self.release_scheduler(escrow.id, release_at)
        return sr

    def cancel(self, db: Session, request_id: int, actor: Actor) -> ServiceRequest:
        t = TRANSITIONS["cancel"]
        with transaction(db):
            sr = self._load(db, request_id)
            self._guard(t, sr, actor)
            if any(p.status != PAYMENT_FAILED for p in self._service_payments(db, sr)):
                raise InvalidTransition(f"request {sr.id} has a service payment in flight")
            self._advance(db, sr, t)
        return sr

    # --- queries ---

    def get_request(self, db: Session, request_id: int, actor: Actor) -> ServiceRequest:
        sr = self._load(db, request_id)
        visible = (
            actor.role == ROLE_ADMIN
            or actor.user_id in (sr.client_id, sr.provider_id)
            or (
                actor.role == ROLE_PROVIDER
                and sr.provider_id is None
                and sr.status == S.FEE_PAID.value
            )
        )
        if not visible:
            raise Unauthorized(f"request {request_id} is not visible to {actor.user_id}")
        return sr

    def list_requests(self, db: Session, actor: Actor) -> list[ServiceRequest]:
        """Client: own requests. Provider: assigned jobs plus open ones to claim."""
        query = db.query(ServiceRequest)
        if actor.role == ROLE_CLIENT:
            query = query.filter(ServiceRequest.client_id == actor.user_id)
        elif actor.role == ROLE_PROVIDER:
            query = query.filter(
                or_(
                    ServiceRequest.provider_id == actor.user_id,
                    and_(
                        ServiceRequest.provider_id.is_(None),
                        ServiceRequest.status == S.FEE_PAID.value,
                    ),
                )
            )
        return query.order_by(ServiceRequest.id.desc()).all()

    def provider_offers(self, db: Session, request_id: int, actor: Actor):
        sr = self.get_request(db, request_id, actor)
        return matching.provider_offers(db, sr, settings.MAX_PROVIDER_DISTANCE_KM)

    def _ai_diagnosis(self, db: Session, sr: ServiceRequest) -> AiDiagnosis:
        diagnosis = db.query(AiDiagnosis).filter(AiDiagnosis.service_request_id == sr.id).first()
        if not diagnosis:
            raise InvalidTransition(f"request {sr.id} has no diagnosis")
        return diagnosis

    def _ai_diagnosis_id(self, db: Session, sr: ServiceRequest) -> int | None:
        diagnosis = db.query(AiDiagnosis).filter(AiDiagnosis.service_request_id == sr.id).first()
        return diagnosis.id if diagnosis else None

    def _schedule_confirmation(self, payment: Payment) -> None:
        if (
            self.confirmation_scheduler
            and self.ledger.gateway.simulated
            and settings.SIMULATE_PAYMENT_CONFIRMATION
        ):
            self.confirmation_scheduler(payment.gateway_ref)
