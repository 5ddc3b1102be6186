"""Ledger and escrow manager.

Owns Payment and PaymentEscrow rows. Methods that are part of a lifecycle
transition (create_payment, confirm_payment, create_escrow, ...) only flush;
the caller's transaction commits them. release_escrow runs on its own and
commits.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.orm import Session
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from homeservice.db_utils import transaction, utcnow
from homeservice.errors import InvalidTransition, InvariantViolation, NotFound, UpstreamUnavailable
from homeservice.models.payment import (
    ESCROW_HOLDING,
    ESCROW_RELEASED,
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_METHODS,
    PAYMENT_PENDING,
    Payment,
    PaymentEscrow,
)
from homeservice.services import events as ev
from homeservice.services.events import EventDispatcher
from homeservice.services.payments.base import BaseProvider, GatewayUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EscrowShares:
    platform_share: int
    provider_share: int
    supplier_share: int

    @property
    def total(self) -> int:
        return self.platform_share + self.provider_share + self.supplier_share


def split_shares(labor_cost: int, materials_cost: int, platform_fee: int) -> EscrowShares:
    """Provider keeps labor, supplier gets materials, platform keeps the fee."""
    return EscrowShares(
        platform_share=platform_fee, provider_share=labor_cost, supplier_share=materials_cost
    )


class LedgerManager:
    def __init__(self, gateway: BaseProvider, events: EventDispatcher | None = None):
        self.gateway = gateway
        self.events = events or EventDispatcher()

    # --- Payments ---

    def create_payment(
        self,
        db: Session,
        *,
        amount: int,
        method: str,
        service_request_id: int,
        user_id: str,
        kind: str,
        description: str = "",
    ) -> Payment:
        if method not in PAYMENT_METHODS:
            raise ValueError(f"unsupported payment method: {method}")
        if amount <= 0:
            raise InvariantViolation(f"payment amount must be positive, got {amount}")
        # One key per charge; retries reuse it so the gateway opens it once.
        reference = f"SR{service_request_id}-{kind}-{uuid.uuid4().hex[:12]}"
        try:
            data = self._initiate(amount, method, reference)
        except UpstreamUnavailable:
            raise
        except Exception as e:
            raise UpstreamUnavailable(f"payment gateway failed: {e}") from e
        payment = Payment(
            user_id=user_id,
            service_request_id=service_request_id,
            kind=kind,
            amount=amount,
            method=method,
            status=PAYMENT_PENDING,
            gateway_ref=data["gateway_ref"],
            pix_code=data.get("pix_code", ""),
            description=description,
        )
        db.add(payment)
        db.flush()
        logger.info(
            "payment %s created: %s %s cents for request %s",
            payment.id, kind, amount, service_request_id,
        )
        return payment

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_fixed(1),
        retry=retry_if_exception_type((GatewayUnavailable, ConnectionError, TimeoutError)),
        reraise=True,
    )
    def _initiate(self, amount: int, method: str, reference: str) -> dict:
        return self.gateway.initiate(amount, method, reference=reference)

    def get_payment_by_ref(self, db: Session, gateway_ref: str) -> Payment:
        payment = db.query(Payment).filter(Payment.gateway_ref == gateway_ref).first()
        if not payment:
            raise NotFound(f"payment {gateway_ref} not found")
        return payment

    def confirm_payment(self, db: Session, gateway_ref: str) -> tuple[Payment, bool]:
        """Move a pending payment to completed. Returns (payment, changed);
        a replayed confirmation changes nothing."""
        return self._settle(db, gateway_ref, PAYMENT_COMPLETED)

    def fail_payment(self, db: Session, gateway_ref: str) -> tuple[Payment, bool]:
        return self._settle(db, gateway_ref, PAYMENT_FAILED)

    def _settle(self, db: Session, gateway_ref: str, status: str) -> tuple[Payment, bool]:
        payment = self.get_payment_by_ref(db, gateway_ref)
        values = {"status": status}
        if status == PAYMENT_COMPLETED:
            values["completed_at"] = utcnow()
        result = db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == PAYMENT_PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.refresh(payment)
        changed = result.rowcount == 1
        if changed:
            logger.info("payment %s -> %s", payment.id, status)
        else:
            logger.info("payment %s already %s, %s ignored", payment.id, payment.status, status)
        return payment, changed

    # --- Escrow ---

    def create_escrow(
        self, db: Session, *, payment_id: int, hold_amount: int, shares: EscrowShares
    ) -> PaymentEscrow:
        payment = db.get(Payment, payment_id)
        if not payment:
            raise NotFound(f"payment {payment_id} not found")
        if hold_amount != payment.amount:
            raise InvariantViolation(
                f"escrow hold {hold_amount} differs from payment {payment_id} amount {payment.amount}"
            )
        escrow = PaymentEscrow(
            service_request_id=payment.service_request_id,
            payment_id=payment.id,
            hold_amount=hold_amount,
            platform_share=shares.platform_share,
            provider_share=shares.provider_share,
            supplier_share=shares.supplier_share,
            status=ESCROW_HOLDING,
        )
        db.add(escrow)
        db.flush()
        logger.info("escrow %s holding %s cents for payment %s", escrow.id, hold_amount, payment.id)
        return escrow

    def get_escrow_for_request(self, db: Session, service_request_id: int) -> PaymentEscrow:
        escrow = (
            db.query(PaymentEscrow)
            .filter(PaymentEscrow.service_request_id == service_request_id)
            .first()
        )
        if not escrow:
            raise NotFound(f"no escrow for service request {service_request_id}")
        return escrow

    def rebind_escrow(self, db: Session, service_request_id: int, payment: Payment) -> PaymentEscrow:
        """Point a held escrow at a new charge after the previous one failed."""
        escrow = self.get_escrow_for_request(db, service_request_id)
        previous = db.get(Payment, escrow.payment_id)
        if escrow.status != ESCROW_HOLDING or previous.status != PAYMENT_FAILED:
            raise InvalidTransition(
                f"escrow {escrow.id} is still backed by payment {previous.id} ({previous.status})"
            )
        if payment.amount != escrow.hold_amount:
            raise InvariantViolation(
                f"escrow hold {escrow.hold_amount} differs from payment {payment.id} amount {payment.amount}"
            )
        escrow.payment_id = payment.id
        db.flush()
        logger.info("escrow %s moved from payment %s to %s", escrow.id, previous.id, payment.id)
        return escrow

    def schedule_release(self, db: Session, escrow: PaymentEscrow, release_at: datetime) -> None:
        if escrow.status == ESCROW_HOLDING:
            escrow.release_at = release_at
            db.flush()

    def release_escrow(self, db: Session, escrow_id: int) -> tuple[PaymentEscrow, bool]:
        """Release all shares at once. Releasing twice is a no-op."""
        with transaction(db):
            escrow = db.get(PaymentEscrow, escrow_id)
            if not escrow:
                raise NotFound(f"escrow {escrow_id} not found")
            if escrow.status == ESCROW_RELEASED:
                return escrow, False
            payment = db.get(Payment, escrow.payment_id)
            if payment.status != PAYMENT_COMPLETED:
                raise InvalidTransition(
                    f"escrow {escrow_id}: payment {payment.id} is {payment.status}, not completed"
                )
            result = db.execute(
                update(PaymentEscrow)
                .where(PaymentEscrow.id == escrow.id, PaymentEscrow.status == ESCROW_HOLDING)
                .values(status=ESCROW_RELEASED, released_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            changed = result.rowcount == 1
        db.refresh(escrow)
        if changed:
            logger.info(
                "escrow %s released: platform=%s provider=%s supplier=%s",
                escrow.id, escrow.platform_share, escrow.provider_share, escrow.supplier_share,
            )
            self.events.publish(
                ev.ESCROW_RELEASED,
                {
                    "escrow_id": escrow.id,
                    "service_request_id": escrow.service_request_id,
                    "provider_share": escrow.provider_share,
                    "platform_share": escrow.platform_share,
                    "supplier_share": escrow.supplier_share,
                },
            )
        return escrow, changed
