"""Process-wide wiring of the engine components."""

from functools import lru_cache

from homeservice.ai.diagnosis import get_diagnosis_service
from homeservice.payment.ledger import LedgerManager
from homeservice.services.antifraud import AntifraudMonitor
from homeservice.services.events import EventDispatcher
from homeservice.services.lifecycle import ServiceLifecycleController
from homeservice.services.payments import get_provider
from homeservice.services.ratings import RatingAggregator


@lru_cache()
def get_events() -> EventDispatcher:
    # Notifiers (push, e-mail) subscribe here at startup.
    return EventDispatcher()


@lru_cache()
def get_ledger() -> LedgerManager:
    return LedgerManager(get_provider(), events=get_events())


@lru_cache()
def get_antifraud() -> AntifraudMonitor:
    return AntifraudMonitor(events=get_events())


@lru_cache()
def get_controller() -> ServiceLifecycleController:
    from homeservice import tasks

    return ServiceLifecycleController(
        ledger=get_ledger(),
        diagnosis_service=get_diagnosis_service(),
        antifraud=get_antifraud(),
        events=get_events(),
        confirmation_scheduler=tasks.schedule_payment_confirmation,
        release_scheduler=tasks.schedule_escrow_release,
    )


@lru_cache()
def get_ratings() -> RatingAggregator:
    return RatingAggregator()
