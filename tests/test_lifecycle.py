from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from homeservice.ai.diagnosis import StaticDiagnosisService
from homeservice.db_core import Base
from homeservice.errors import InvalidTransition, NotFound, Unauthorized, UpstreamUnavailable
from homeservice.models.antifraud import AntifraudFlag
from homeservice.models.diagnosis import AiDiagnosis, DigitalAcceptance, ProviderDiagnosis
from homeservice.models.payment import KIND_DIAGNOSIS_FEE, Payment, PaymentEscrow
from homeservice.models.service_request import ServiceExecutionLog, ServiceRequest
from homeservice.models.user import UserProfile
from homeservice.payment.ledger import LedgerManager
from homeservice.services.actors import SYSTEM
from homeservice.services.catalog import seed_categories
from homeservice.services.events import EventDispatcher
from homeservice.services.lifecycle import (
    TRANSITIONS,
    DomesticOptions,
    MaterialLine,
    ServiceLifecycleController,
)
from homeservice.services.payments.mock import MockProvider

from helpers import (
    ADMIN,
    CLIENT,
    OTHER_CLIENT,
    OTHER_PROVIDER,
    PROVIDER,
    accepted_request,
    add_provider,
    category,
    fee_paid_request,
    payment_count,
)

T0 = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


def test_transition_table_is_monotonic():
    order = [
        "pending", "ai_diagnosed", "fee_paid", "provider_assigned", "provider_diagnosed",
        "quote_sent", "accepted", "in_progress", "awaiting_confirmation", "completed",
    ]
    for t in TRANSITIONS.values():
        if t.target in (None, "cancelled"):
            continue
        for source in t.sources:
            assert order.index(t.target) > order.index(source), t.name


def test_create_request_uses_sla_scaled_base_price(db_session, controller):
    cat = category(db_session, "Encanamento")
    standard = controller.create_request(db_session, CLIENT, category_id=cat.id, title="A")
    urgent = controller.create_request(
        db_session, CLIENT, category_id=cat.id, title="B", sla_priority="urgent"
    )
    assert standard.status == "pending"
    assert standard.estimated_price == 15000
    assert urgent.estimated_price == 30000
    assert db_session.get(UserProfile, CLIENT.user_id).role == "client"


def test_create_request_checks_actor_and_category(db_session, controller):
    with pytest.raises(Unauthorized):
        controller.create_request(db_session, PROVIDER, category_id=1, title="x")
    with pytest.raises(NotFound):
        controller.create_request(db_session, CLIENT, category_id=999, title="x")
    with pytest.raises(ValueError):
        controller.create_request(
            db_session, CLIENT, category_id=category(db_session, "Limpeza").id, title="x"
        )
    assert db_session.query(ServiceRequest).count() == 0


def test_full_repair_flow(db_session, controller, recorder, releases):
    add_provider(db_session, rating=8.5, total_ratings=4)
    sr = controller.create_request(
        db_session,
        CLIENT,
        category_id=category(db_session, "Encanamento").id,
        title="Vazamento na pia",
        description="Pia da cozinha vazando",
    )

    diagnosis = controller.record_ai_diagnosis(
        db_session, sr.id, CLIENT, guided_answers=[("Desde quando?", "Ontem")]
    )
    assert (diagnosis.price_range_min, diagnosis.price_range_max) == (15000, 22500)
    assert diagnosis.diagnosis_fee == 2500
    assert [qa.answer for qa in diagnosis.guided_answers] == ["Ontem"]

    fee = controller.pay_diagnosis_fee(db_session, sr.id, CLIENT, method="pix")
    assert fee.kind == KIND_DIAGNOSIS_FEE and fee.amount == 2500
    # Asking again returns the same pending charge.
    assert controller.pay_diagnosis_fee(db_session, sr.id, CLIENT, method="pix").id == fee.id
    assert controller.get_request(db_session, sr.id, CLIENT).status == "ai_diagnosed"

    controller.handle_payment_confirmation(db_session, fee.gateway_ref)
    assert controller.get_request(db_session, sr.id, CLIENT).status == "fee_paid"

    sr = controller.assign_provider(db_session, sr.id, CLIENT, provider_id=PROVIDER.user_id)
    assert sr.status == "provider_assigned"
    assert sr.provider_id == PROVIDER.user_id
    # Experienced band inside [15000, 22500]: 15000 + 0.29 * 7500 = 17175, width 750.
    assert sr.estimated_price == 17550

    quote = controller.submit_provider_diagnosis(
        db_session,
        sr.id,
        PROVIDER,
        findings="Sifão rachado",
        labor_cost=15000,
        materials=[MaterialLine("Sifão", 2, 2000), MaterialLine("Veda rosca", 1, 1000)],
    )
    assert quote.materials_cost == 5000
    assert [m.name for m in quote.materials] == ["Sifão", "Veda rosca"]
    sr = controller.get_request(db_session, sr.id, CLIENT)
    assert sr.status == "provider_diagnosed"
    assert sr.estimated_price == 22000

    assert controller.send_quote(db_session, sr.id, PROVIDER).status == "quote_sent"

    payment = controller.accept_quote(
        db_session, sr.id, CLIENT, method="credit_card", ip_address="10.0.0.1", user_agent="pytest"
    )
    assert payment.amount == 22000
    escrow = db_session.query(PaymentEscrow).filter_by(payment_id=payment.id).one()
    assert (escrow.hold_amount, escrow.provider_share, escrow.supplier_share, escrow.platform_share) == (
        22000, 15000, 5000, 2000,
    )
    acceptance = db_session.query(DigitalAcceptance).filter_by(service_request_id=sr.id).one()
    assert acceptance.total_price == 22000
    assert acceptance.ip_address == "10.0.0.1"
    sr = controller.get_request(db_session, sr.id, CLIENT)
    assert sr.status == "accepted"
    assert sr.final_price == 22000

    controller.start_execution(db_session, sr.id, PROVIDER, at=T0)
    sr = controller.finish_execution(db_session, sr.id, PROVIDER, at=T0 + timedelta(minutes=95))
    assert sr.status == "awaiting_confirmation"
    log = db_session.query(ServiceExecutionLog).filter_by(service_request_id=sr.id).one()
    assert log.duration_minutes == 95

    sr = controller.confirm_completion(db_session, sr.id, CLIENT)
    assert sr.status == "completed"
    assert sr.completed_at is not None
    assert db_session.get(UserProfile, PROVIDER.user_id).total_services == 1
    assert releases and releases[0][0] == escrow.id
    assert recorder.names()[:2] == ["provider_assigned", "service_accepted"]
    assert db_session.query(AntifraudFlag).count() == 0


def test_domestic_fast_path(db_session, controller):
    add_provider(db_session, specialties="Limpeza")
    sr = controller.create_request(
        db_session,
        CLIENT,
        category_id=category(db_session, "Limpeza").id,
        title="Faxina semanal",
        domestic=DomesticOptions("3-4 quartos", "completo", "Semanal"),
    )
    diagnosis = controller.record_ai_diagnosis(db_session, sr.id, CLIENT)
    assert diagnosis.price_range_min == diagnosis.price_range_max == 25500
    assert diagnosis.diagnosis_fee == 3825

    with pytest.raises(InvalidTransition):
        controller.pay_diagnosis_fee(db_session, sr.id, CLIENT, method="pix")

    payment = controller.accept_domestic(
        db_session, sr.id, CLIENT, provider_id=PROVIDER.user_id, method="pix"
    )
    assert payment.amount == 29325
    escrow = db_session.query(PaymentEscrow).filter_by(service_request_id=sr.id).one()
    assert (escrow.provider_share, escrow.supplier_share, escrow.platform_share) == (25500, 0, 3825)
    acceptance = db_session.query(DigitalAcceptance).filter_by(service_request_id=sr.id).one()
    assert (acceptance.labor_cost, acceptance.platform_fee) == (25500, 3825)

    sr = controller.get_request(db_session, sr.id, CLIENT)
    assert sr.final_price == sr.estimated_price == 25500
    assert sr.provider_id == PROVIDER.user_id
    # Not accepted until the charge clears.
    assert sr.status == "ai_diagnosed"


def test_domestic_job_is_accepted_once_payment_clears(db_session, controller, recorder):
    add_provider(db_session, specialties="Limpeza")
    sr = controller.create_request(
        db_session,
        CLIENT,
        category_id=category(db_session, "Limpeza").id,
        title="Faxina",
        domestic=DomesticOptions("3-4 quartos", "completo", "Semanal"),
    )
    controller.record_ai_diagnosis(db_session, sr.id, CLIENT)
    payment = controller.accept_domestic(
        db_session, sr.id, CLIENT, provider_id=PROVIDER.user_id, method="pix"
    )
    again = controller.accept_domestic(
        db_session, sr.id, CLIENT, provider_id=PROVIDER.user_id, method="pix"
    )
    assert again.id == payment.id

    with pytest.raises(InvalidTransition):
        controller.start_execution(db_session, sr.id, PROVIDER, at=T0)
    with pytest.raises(InvalidTransition):
        controller.cancel(db_session, sr.id, CLIENT)
    assert recorder.names() == []

    _, changed = controller.handle_payment_confirmation(db_session, payment.gateway_ref)
    assert changed
    assert controller.get_request(db_session, sr.id, CLIENT).status == "accepted"
    assert recorder.names() == ["provider_assigned", "service_accepted"]
    controller.start_execution(db_session, sr.id, PROVIDER, at=T0)
    assert controller.get_request(db_session, sr.id, CLIENT).status == "in_progress"


def test_domestic_payment_can_be_retried_after_failure(db_session, controller):
    add_provider(db_session, specialties="Limpeza")
    sr = controller.create_request(
        db_session,
        CLIENT,
        category_id=category(db_session, "Limpeza").id,
        title="Faxina",
        domestic=DomesticOptions("1-2 quartos", "padrao", "avulsa"),
    )
    controller.record_ai_diagnosis(db_session, sr.id, CLIENT)
    first = controller.accept_domestic(
        db_session, sr.id, CLIENT, provider_id=PROVIDER.user_id, method="credit_card"
    )
    controller.handle_payment_confirmation(db_session, first.gateway_ref, succeeded=False)
    assert controller.get_request(db_session, sr.id, CLIENT).status == "ai_diagnosed"

    second = controller.accept_domestic(
        db_session, sr.id, CLIENT, provider_id=PROVIDER.user_id, method="pix"
    )
    assert second.id != first.id and second.amount == first.amount
    escrow = db_session.query(PaymentEscrow).filter_by(service_request_id=sr.id).one()
    assert escrow.payment_id == second.id
    assert db_session.query(DigitalAcceptance).filter_by(service_request_id=sr.id).count() == 1

    controller.handle_payment_confirmation(db_session, second.gateway_ref)
    assert controller.get_request(db_session, sr.id, CLIENT).status == "accepted"
    with pytest.raises(InvalidTransition):
        controller.accept_domestic(
            db_session, sr.id, CLIENT, provider_id=PROVIDER.user_id, method="pix"
        )


def test_domestic_fast_path_rejects_repair_jobs(db_session, controller):
    add_provider(db_session)
    sr = controller.create_request(
        db_session, CLIENT, category_id=category(db_session, "Encanamento").id, title="x"
    )
    controller.record_ai_diagnosis(db_session, sr.id, CLIENT)
    with pytest.raises(InvalidTransition):
        controller.accept_domestic(db_session, sr.id, CLIENT, provider_id=PROVIDER.user_id, method="pix")
    assert payment_count(db_session) == 0


def test_accept_without_provider_diagnosis_creates_nothing(db_session, controller):
    add_provider(db_session)
    sr = fee_paid_request(db_session, controller)
    controller.assign_provider(db_session, sr.id, CLIENT, provider_id=PROVIDER.user_id)
    # Quote flagged as sent with no provider diagnosis behind it.
    db_session.query(ServiceRequest).filter_by(id=sr.id).update({"status": "quote_sent"})
    db_session.commit()
    before = payment_count(db_session)

    with pytest.raises(InvalidTransition):
        controller.accept_quote(db_session, sr.id, CLIENT, method="pix")
    assert payment_count(db_session) == before
    assert db_session.query(PaymentEscrow).count() == 0
    assert db_session.query(DigitalAcceptance).count() == 0
    assert controller.get_request(db_session, sr.id, CLIENT).status == "quote_sent"


def test_short_execution_is_flagged_once(db_session, controller, recorder):
    sr, _ = accepted_request(db_session, controller)
    controller.start_execution(db_session, sr.id, PROVIDER, at=T0)
    controller.finish_execution(db_session, sr.id, PROVIDER, at=T0 + timedelta(minutes=20))

    log = db_session.query(ServiceExecutionLog).filter_by(service_request_id=sr.id).one()
    assert log.duration_minutes == 20
    flags = db_session.query(AntifraudFlag).filter_by(service_request_id=sr.id).all()
    assert [f.reason for f in flags] == ["short_execution_duration"]
    assert recorder.names().count("antifraud_flag_raised") == 1

    # Re-inspection does not duplicate the flag.
    controller.antifraud.inspect(db_session, sr.id)
    assert db_session.query(AntifraudFlag).filter_by(service_request_id=sr.id).count() == 1
    assert controller.get_request(db_session, sr.id, CLIENT).status == "awaiting_confirmation"


def test_execution_cannot_end_before_start(db_session, controller):
    sr, _ = accepted_request(db_session, controller)
    controller.start_execution(db_session, sr.id, PROVIDER, at=T0)
    with pytest.raises(ValueError):
        controller.finish_execution(db_session, sr.id, PROVIDER, at=T0 - timedelta(minutes=1))
    assert controller.get_request(db_session, sr.id, CLIENT).status == "in_progress"


def test_wrong_status_is_rejected_without_side_effects(db_session, controller):
    sr = controller.create_request(
        db_session, CLIENT, category_id=category(db_session, "Encanamento").id, title="x"
    )
    with pytest.raises(InvalidTransition):
        controller.pay_diagnosis_fee(db_session, sr.id, CLIENT, method="pix")
    with pytest.raises(InvalidTransition):
        controller.confirm_completion(db_session, sr.id, CLIENT)
    assert payment_count(db_session) == 0
    assert controller.get_request(db_session, sr.id, CLIENT).version == 1


def test_actor_checks(db_session, controller):
    add_provider(db_session)
    add_provider(db_session, OTHER_PROVIDER.user_id)
    sr = fee_paid_request(db_session, controller)

    with pytest.raises(Unauthorized):
        controller.assign_provider(db_session, sr.id, OTHER_CLIENT, provider_id=PROVIDER.user_id)
    with pytest.raises(Unauthorized):
        controller.mark_fee_paid(db_session, sr.id, CLIENT)
    with pytest.raises(Unauthorized):
        controller.get_request(db_session, sr.id, OTHER_CLIENT)

    controller.assign_provider(db_session, sr.id, CLIENT, provider_id=PROVIDER.user_id)
    with pytest.raises(Unauthorized):
        controller.submit_provider_diagnosis(
            db_session, sr.id, OTHER_PROVIDER, findings="x", labor_cost=100
        )
    with pytest.raises(Unauthorized):
        controller.submit_provider_diagnosis(db_session, sr.id, CLIENT, findings="x", labor_cost=100)


def test_system_marks_fee_paid_only_after_confirmation(db_session, controller):
    sr = controller.create_request(
        db_session, CLIENT, category_id=category(db_session, "Encanamento").id, title="x"
    )
    controller.record_ai_diagnosis(db_session, sr.id, CLIENT)
    controller.pay_diagnosis_fee(db_session, sr.id, CLIENT, method="pix")
    with pytest.raises(InvalidTransition):
        controller.mark_fee_paid(db_session, sr.id, SYSTEM)


def test_confirmation_replay_is_noop(db_session, controller):
    sr = controller.create_request(
        db_session, CLIENT, category_id=category(db_session, "Encanamento").id, title="x"
    )
    controller.record_ai_diagnosis(db_session, sr.id, CLIENT)
    fee = controller.pay_diagnosis_fee(db_session, sr.id, CLIENT, method="pix")
    _, changed = controller.handle_payment_confirmation(db_session, fee.gateway_ref)
    assert changed is True
    version = controller.get_request(db_session, sr.id, CLIENT).version
    _, changed = controller.handle_payment_confirmation(db_session, fee.gateway_ref)
    assert changed is False
    sr = controller.get_request(db_session, sr.id, CLIENT)
    assert sr.status == "fee_paid"
    assert sr.version == version
    with pytest.raises(InvalidTransition):
        controller.pay_diagnosis_fee(db_session, sr.id, CLIENT, method="pix")


def test_failed_fee_payment_keeps_request_diagnosed(db_session, controller):
    sr = controller.create_request(
        db_session, CLIENT, category_id=category(db_session, "Encanamento").id, title="x"
    )
    controller.record_ai_diagnosis(db_session, sr.id, CLIENT)
    fee = controller.pay_diagnosis_fee(db_session, sr.id, CLIENT, method="pix")
    payment, changed = controller.handle_payment_confirmation(db_session, fee.gateway_ref, succeeded=False)
    assert changed and payment.status == "failed"
    assert controller.get_request(db_session, sr.id, CLIENT).status == "ai_diagnosed"
    # A new charge can be started after a failure.
    retry = controller.pay_diagnosis_fee(db_session, sr.id, CLIENT, method="pix")
    assert retry.id != fee.id


def test_provider_self_assigns_from_fee_paid(db_session, controller):
    add_provider(db_session)
    sr = fee_paid_request(db_session, controller)
    assert sr.id in [r.id for r in controller.list_requests(db_session, PROVIDER)]

    controller.submit_provider_diagnosis(db_session, sr.id, PROVIDER, findings="ok", labor_cost=10000)
    sr = controller.get_request(db_session, sr.id, CLIENT)
    assert sr.provider_id == PROVIDER.user_id
    assert sr.status == "provider_diagnosed"
    assert sr.estimated_price == 11000


def test_provider_without_specialty_cannot_self_assign(db_session, controller):
    add_provider(db_session, specialties="Pintura")
    sr = fee_paid_request(db_session, controller)
    with pytest.raises(Unauthorized):
        controller.submit_provider_diagnosis(db_session, sr.id, PROVIDER, findings="ok", labor_cost=100)
    assert db_session.query(ProviderDiagnosis).count() == 0


def test_assign_requires_eligible_provider(db_session, controller):
    add_provider(db_session, specialties="Pintura")
    add_provider(db_session, OTHER_PROVIDER.user_id, is_available=False)
    sr = fee_paid_request(db_session, controller)
    for provider_id in (PROVIDER.user_id, OTHER_PROVIDER.user_id):
        with pytest.raises(InvalidTransition):
            controller.assign_provider(db_session, sr.id, CLIENT, provider_id=provider_id)
    with pytest.raises(NotFound):
        controller.assign_provider(db_session, sr.id, CLIENT, provider_id="ghost")


def test_cancel(db_session, controller):
    cat = category(db_session, "Encanamento").id
    mine = controller.create_request(db_session, CLIENT, category_id=cat, title="a")
    assert controller.cancel(db_session, mine.id, CLIENT).status == "cancelled"
    with pytest.raises(InvalidTransition):
        controller.cancel(db_session, mine.id, CLIENT)

    other = controller.create_request(db_session, CLIENT, category_id=cat, title="b")
    with pytest.raises(Unauthorized):
        controller.cancel(db_session, other.id, OTHER_CLIENT)
    assert controller.cancel(db_session, other.id, ADMIN).status == "cancelled"


def test_cannot_cancel_after_acceptance(db_session, controller):
    sr, _ = accepted_request(db_session, controller)
    with pytest.raises(InvalidTransition):
        controller.cancel(db_session, sr.id, CLIENT)


def test_diagnosis_outage_leaves_request_pending(db_session, ledger, events):
    class Down(StaticDiagnosisService):
        def diagnose(self, request):
            raise UpstreamUnavailable("diagnosis service unavailable")

    controller = ServiceLifecycleController(ledger=ledger, diagnosis_service=Down(), events=events)
    sr = controller.create_request(
        db_session, CLIENT, category_id=category(db_session, "Encanamento").id, title="x"
    )
    with pytest.raises(UpstreamUnavailable):
        controller.record_ai_diagnosis(db_session, sr.id, CLIENT)
    assert controller.get_request(db_session, sr.id, CLIENT).status == "pending"
    assert db_session.query(AiDiagnosis).count() == 0


def test_simulated_gateway_schedules_confirmation(db_session, ledger, events, monkeypatch):
    from homeservice.config import settings

    monkeypatch.setattr(settings, "SIMULATE_PAYMENT_CONFIRMATION", True)
    scheduled = []
    controller = ServiceLifecycleController(
        ledger=ledger,
        diagnosis_service=StaticDiagnosisService(),
        events=events,
        confirmation_scheduler=scheduled.append,
    )
    sr = controller.create_request(
        db_session, CLIENT, category_id=category(db_session, "Encanamento").id, title="x"
    )
    controller.record_ai_diagnosis(db_session, sr.id, CLIENT)
    fee = controller.pay_diagnosis_fee(db_session, sr.id, CLIENT, method="pix")
    assert scheduled == [fee.gateway_ref]


def test_stale_writer_loses_to_committed_transition(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'race.db'}")
    Base.metadata.create_all(engine)
    Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    controller = ServiceLifecycleController(
        ledger=LedgerManager(MockProvider(), events=EventDispatcher()),
        diagnosis_service=StaticDiagnosisService(),
    )
    setup = Session()
    seed_categories(setup)
    sr, _ = accepted_request(setup, controller)
    setup.close()

    first, second = Session(), Session()
    try:
        # Both sessions read the request in the same state.
        stale = second.get(ServiceRequest, sr.id)
        assert stale.status == "accepted"
        controller.start_execution(first, sr.id, PROVIDER, at=T0)

        result = second.execute(
            ServiceRequest.__table__.update()
            .where(
                ServiceRequest.id == stale.id,
                ServiceRequest.status == stale.status,
                ServiceRequest.version == stale.version,
            )
            .values(status="in_progress")
        )
        assert result.rowcount == 0
        second.rollback()

        with pytest.raises(InvalidTransition):
            controller.start_execution(second, sr.id, PROVIDER, at=T0)
        assert second.query(ServiceExecutionLog).count() == 1
    finally:
        first.close()
        second.close()
        engine.dispose()


def test_lost_race_rolls_back_side_effects(db_session, controller, monkeypatch):
    sr, _ = accepted_request(db_session, controller)
    original = controller._load

    def load_then_someone_else_writes(db, request_id):
        loaded = original(db, request_id)
        db.execute(
            ServiceRequest.__table__.update()
            .where(ServiceRequest.id == request_id)
            .values(version=ServiceRequest.version + 1)
        )
        return loaded

    monkeypatch.setattr(controller, "_load", load_then_someone_else_writes)
    with pytest.raises(InvalidTransition):
        controller.start_execution(db_session, sr.id, PROVIDER, at=T0)
    assert db_session.query(ServiceExecutionLog).count() == 0
    assert db_session.query(Payment).filter_by(service_request_id=sr.id).count() == 2
