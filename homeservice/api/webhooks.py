import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from homeservice.api.deps import controller
from homeservice.db import get_db
from homeservice.services.lifecycle import ServiceLifecycleController

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhook/payments")
def payments_webhook(
    payload: Dict[str, Any],
    db: Session = Depends(get_db),
    ctl: ServiceLifecycleController = Depends(controller),
):
    data = ctl.ledger.gateway.verify_webhook(payload)
    status = data.get("status")
    if status not in ("succeeded", "failed"):
        logger.info("payment webhook for %s ignored, status %r", data["gateway_ref"], status)
        return {"ok": True, "applied": False}
    payment, changed = ctl.handle_payment_confirmation(
        db, data["gateway_ref"], succeeded=status == "succeeded"
    )
    return {"ok": True, "applied": changed, "payment_status": payment.status}
