import logging
from datetime import datetime

from celery import Celery

from homeservice.config import settings
from homeservice.db import SessionLocal
from homeservice.errors import InvalidTransition, NotFound

logger = logging.getLogger(__name__)

celery_app = Celery("tasks", broker=settings.REDIS_URL, backend=settings.REDIS_URL)
celery_app.conf.task_always_eager = settings.CELERY_EAGER


@celery_app.task
def confirm_simulated_payment(gateway_ref: str):
    """Stands in for the gateway callback when payments are simulated."""
    from homeservice.engine import get_controller

    db = SessionLocal()
    try:
        payment, changed = get_controller().handle_payment_confirmation(db, gateway_ref)
        logger.info(
            "simulated confirmation of %s: %s", gateway_ref, "applied" if changed else "no-op"
        )
        return payment.status
    except NotFound:
        logger.warning("simulated confirmation for unknown payment %s", gateway_ref)
    finally:
        db.close()


@celery_app.task(bind=True, max_retries=12, default_retry_delay=300)
def release_escrow(self, escrow_id: int):
    from homeservice.engine import get_ledger

    db = SessionLocal()
    try:
        escrow, changed = get_ledger().release_escrow(db, escrow_id)
        return escrow.status
    except InvalidTransition as e:
        # Backing payment not confirmed yet.
        logger.info("escrow %s not releasable yet: %s", escrow_id, e)
        raise self.retry(exc=e)
    finally:
        db.close()


def schedule_payment_confirmation(gateway_ref: str) -> None:
    confirm_simulated_payment.apply_async(
        args=[gateway_ref], countdown=settings.SIMULATED_CONFIRM_DELAY_SECONDS
    )


def schedule_escrow_release(escrow_id: int, release_at: datetime) -> None:
    release_escrow.apply_async(args=[escrow_id], eta=release_at)
