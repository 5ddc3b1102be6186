from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from homeservice import schemas
from homeservice.api.deps import current_actor
from homeservice.db import get_db
from homeservice.errors import Unauthorized
from homeservice.models.user import ROLE_PROVIDER
from homeservice.services import reports
from homeservice.services.actors import Actor
from homeservice.services.catalog import list_categories
from homeservice.services.user_service import get_or_create_profile, update_profile

router = APIRouter()


@router.get("/categories", response_model=list[schemas.CategoryOut])
def categories(db: Session = Depends(get_db)):
    return [schemas.CategoryOut.model_validate(c) for c in list_categories(db)]


@router.get("/profiles/me", response_model=schemas.ProfileOut)
def my_profile(db: Session = Depends(get_db), actor: Actor = Depends(current_actor)):
    profile = get_or_create_profile(db, actor.user_id, actor.role)
    db.commit()
    return schemas.ProfileOut.model_validate(profile)


@router.put("/profiles/me", response_model=schemas.ProfileOut)
def edit_profile(
    body: schemas.ProfileIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    profile = update_profile(db, actor.user_id, actor.role, **body.model_dump())
    return schemas.ProfileOut.model_validate(profile)


@router.get("/provider/earnings", response_model=schemas.EarningsOut)
def my_earnings(db: Session = Depends(get_db), actor: Actor = Depends(current_actor)):
    if actor.role != ROLE_PROVIDER:
        raise Unauthorized("earnings are only kept for providers")
    return schemas.EarningsOut.model_validate(reports.provider_earnings(db, actor.user_id))
