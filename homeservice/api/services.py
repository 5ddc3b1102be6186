from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from homeservice import schemas
from homeservice.api.deps import controller, current_actor, diagnosis_limiter, ratings
from homeservice.db import get_db
from homeservice.services.actors import Actor
from homeservice.services.attempts import RateLimiter
from homeservice.services.lifecycle import (
    DomesticOptions,
    MaterialLine,
    ServiceLifecycleController,
)
from homeservice.services.ratings import RatingAggregator

router = APIRouter(prefix="/services", tags=["services"])


def _client_info(request: Request) -> dict:
    return {
        "ip_address": request.client.host if request.client else "",
        "user_agent": request.headers.get("user-agent", ""),
    }


@router.post("", response_model=schemas.ServiceOut, status_code=201)
def create_service(
    body: schemas.ServiceCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
    ctl: ServiceLifecycleController = Depends(controller),
):
    sr = ctl.create_request(
        db,
        actor,
        category_id=body.category_id,
        title=body.title,
        description=body.description,
        sla_priority=body.sla_priority.value,
        address=body.address,
        latitude=body.latitude,
        longitude=body.longitude,
        domestic=DomesticOptions(**body.domestic.model_dump()) if body.domestic else None,
    )
    return schemas.ServiceOut.model_validate(sr)


@router.get("", response_model=list[schemas.ServiceOut])
def list_services(
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
    ctl: ServiceLifecycleController = Depends(controller),
):
    return [schemas.ServiceOut.model_validate(sr) for sr in ctl.list_requests(db, actor)]


@router.get("/{service_id}", response_model=schemas.ServiceOut)
def get_service(
    service_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
    ctl: ServiceLifecycleController = Depends(controller),
):
    return schemas.ServiceOut.model_validate(ctl.get_request(db, service_id, actor))


@router.post("/{service_id}/diagnosis", response_model=schemas.AiDiagnosisOut)
def ai_diagnosis(
    service_id: int,
    body: schemas.DiagnosisIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
    ctl: ServiceLifecycleController = Depends(controller),
    limiter: RateLimiter = Depends(diagnosis_limiter),
):
    limiter.check(actor.user_id)
    diagnosis = ctl.record_ai_diagnosis(
        db,
        service_id,
        actor,
        description=body.description,
        guided_answers=[(qa.question, qa.answer) for qa in body.guided_answers],
        media_refs=body.media_refs,
    )
    return schemas.AiDiagnosisOut.model_validate(diagnosis)


@router.post("/{service_id}/diagnosis-fee", response_model=schemas.PaymentOut)
def pay_diagnosis_fee(
    service_id: int,
    body: schemas.PaymentIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
    ctl: ServiceLifecycleController = Depends(controller),
):
    payment = ctl.pay_diagnosis_fee(db, service_id, actor, method=body.method)
    return schemas.PaymentOut.model_validate(payment)


@router.get("/{service_id}/providers", response_model=list[schemas.ProviderOfferOut])
def list_providers(
    service_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
    ctl: ServiceLifecycleController = Depends(controller),
):
    return [
        schemas.ProviderOfferOut.model_validate(o)
        for o in ctl.provider_offers(db, service_id, actor)
    ]


@router.post("/{service_id}/assign", response_model=schemas.ServiceOut)
def assign_provider(
    service_id: int,
    body: schemas.AssignIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
    ctl: ServiceLifecycleController = Depends(controller),
):
    sr = ctl.assign_provider(db, service_id, actor, provider_id=body.provider_id)
    return schemas.ServiceOut.model_validate(sr)


@router.post("/{service_id}/provider-diagnosis", response_model=schemas.ProviderDiagnosisOut)
def provider_diagnosis(
    service_id: int,
    body: schemas.ProviderDiagnosisIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
    ctl: ServiceLifecycleController = Depends(controller),
):
    diagnosis = ctl.submit_provider_diagnosis(
        db,
        service_id,
        actor,
        findings=body.findings,
        labor_cost=body.labor_cost,
        materials=[MaterialLine(**m.model_dump()) for m in body.materials],
        estimated_duration=body.estimated_duration,
        notes=body.notes,
    )
    return schemas.ProviderDiagnosisOut.model_validate(diagnosis)


@router.post("/{service_id}/quote", response_model=schemas.ServiceOut)
def send_quote(
    service_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
    ctl: ServiceLifecycleController = Depends(controller),
):
    return schemas.ServiceOut.model_validate(ctl.send_quote(db, service_id, actor))


@router.post("/{service_id}/accept", response_model=schemas.PaymentOut)
def accept_quote(
    service_id: int,
    body: schemas.PaymentIn,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
    ctl: ServiceLifecycleController = Depends(controller),
):
    payment = ctl.accept_quote(db, service_id, actor, method=body.method, **_client_info(request))
    return schemas.PaymentOut.model_validate(payment)


@router.post("/{service_id}/accept-domestic", response_model=schemas.PaymentOut)
def accept_domestic(
    service_id: int,
    body: schemas.DomesticAcceptIn,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
    ctl: ServiceLifecycleController = Depends(controller),
):
    payment = ctl.accept_domestic(
        db,
        service_id,
        actor,
        provider_id=body.provider_id,
        method=body.method,
        **_client_info(request),
    )
    return schemas.PaymentOut.model_validate(payment)


@router.post("/{service_id}/start", response_model=schemas.ServiceOut)
def start_execution(
    service_id: int,
    body: schemas.LocationIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
    ctl: ServiceLifecycleController = Depends(controller),
):
    sr = ctl.start_execution(
        db, service_id, actor, latitude=body.latitude, longitude=body.longitude
    )
    return schemas.ServiceOut.model_validate(sr)


@router.post("/{service_id}/finish", response_model=schemas.ServiceOut)
def finish_execution(
    service_id: int,
    body: schemas.LocationIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
    ctl: ServiceLifecycleController = Depends(controller),
):
    sr = ctl.finish_execution(
        db,
        service_id,
        actor,
        latitude=body.latitude,
        longitude=body.longitude,
        notes=body.notes,
    )
    return schemas.ServiceOut.model_validate(sr)


@router.post("/{service_id}/confirm", response_model=schemas.ServiceOut)
def confirm_completion(
    service_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
    ctl: ServiceLifecycleController = Depends(controller),
):
    return schemas.ServiceOut.model_validate(ctl.confirm_completion(db, service_id, actor))


@router.post("/{service_id}/cancel", response_model=schemas.ServiceOut)
def cancel_service(
    service_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
    ctl: ServiceLifecycleController = Depends(controller),
):
    return schemas.ServiceOut.model_validate(ctl.cancel(db, service_id, actor))


@router.post("/{service_id}/review", response_model=schemas.ReviewOut, status_code=201)
def review_service(
    service_id: int,
    body: schemas.ReviewIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
    agg: RatingAggregator = Depends(ratings),
):
    review = agg.submit_review(db, service_id, actor, body.rating, body.comment)
    return schemas.ReviewOut.model_validate(review)
