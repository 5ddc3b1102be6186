from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from homeservice import schemas
from homeservice.api.deps import antifraud, current_actor
from homeservice.db import get_db
from homeservice.errors import Unauthorized
from homeservice.models.user import ROLE_ADMIN
from homeservice.services import reports
from homeservice.services.actors import Actor
from homeservice.services.antifraud import AntifraudMonitor

router = APIRouter(prefix="/admin", tags=["admin"])


def admin_actor(actor: Actor = Depends(current_actor)) -> Actor:
    if actor.role != ROLE_ADMIN:
        raise Unauthorized("admin only")
    return actor


@router.get("/antifraud/flags", response_model=list[schemas.FlagOut])
def pending_flags(
    service_id: int | None = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(admin_actor),
    monitor: AntifraudMonitor = Depends(antifraud),
):
    flags = (
        monitor.flags_for_request(db, service_id)
        if service_id is not None
        else monitor.pending_flags(db)
    )
    return [schemas.FlagOut.model_validate(f) for f in flags]


@router.post("/antifraud/flags/{flag_id}/resolve", response_model=schemas.FlagOut)
def resolve_flag(
    flag_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(admin_actor),
    monitor: AntifraudMonitor = Depends(antifraud),
):
    return schemas.FlagOut.model_validate(monitor.resolve(db, flag_id, actor))


@router.post("/antifraud/services/{service_id}/inspect", response_model=list[schemas.FlagOut])
def inspect_service(
    service_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(admin_actor),
    monitor: AntifraudMonitor = Depends(antifraud),
):
    return [schemas.FlagOut.model_validate(f) for f in monitor.inspect(db, service_id)]


@router.get("/stats", response_model=schemas.PlatformStatsOut)
def stats(db: Session = Depends(get_db), actor: Actor = Depends(admin_actor)):
    return schemas.PlatformStatsOut.model_validate(reports.platform_stats(db))
