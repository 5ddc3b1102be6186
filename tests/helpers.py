from sqlalchemy.orm import Session

from homeservice.models.category import ServiceCategory
from homeservice.models.payment import Payment
from homeservice.models.user import ROLE_PROVIDER, UserProfile
from homeservice.services.actors import Actor
from homeservice.services.lifecycle import MaterialLine, ServiceLifecycleController

CLIENT = Actor(user_id="client-1", role="client")
OTHER_CLIENT = Actor(user_id="client-2", role="client")
PROVIDER = Actor(user_id="prov-1", role="provider")
OTHER_PROVIDER = Actor(user_id="prov-2", role="provider")
ADMIN = Actor(user_id="admin-1", role="admin")


def category(db: Session, name: str) -> ServiceCategory:
    return db.query(ServiceCategory).filter(ServiceCategory.name == name).one()


def add_provider(
    db: Session,
    provider_id: str = PROVIDER.user_id,
    specialties: str = "Encanamento, Elétrica",
    rating: float = 0.0,
    total_ratings: int = 0,
    **fields,
) -> UserProfile:
    profile = UserProfile(
        id=provider_id,
        role=ROLE_PROVIDER,
        display_name=provider_id,
        specialties=specialties,
        rating=rating,
        total_ratings=total_ratings,
        **fields,
    )
    db.add(profile)
    db.commit()
    return profile


def fee_paid_request(db: Session, controller: ServiceLifecycleController, **create_kw):
    """A repair request whose diagnosis fee has been confirmed by the gateway."""
    create_kw.setdefault("title", "Vazamento na pia")
    create_kw.setdefault("description", "Pia da cozinha vazando embaixo")
    sr = controller.create_request(
        db, CLIENT, category_id=category(db, "Encanamento").id, **create_kw
    )
    controller.record_ai_diagnosis(db, sr.id, CLIENT)
    fee = controller.pay_diagnosis_fee(db, sr.id, CLIENT, method="pix")
    controller.handle_payment_confirmation(db, fee.gateway_ref)
    return sr


def accepted_request(db: Session, controller: ServiceLifecycleController, labor=15000, materials=()):
    """A repair request accepted at the given labor cost; returns (request, payment)."""
    add_provider(db)
    sr = fee_paid_request(db, controller)
    controller.assign_provider(db, sr.id, CLIENT, provider_id=PROVIDER.user_id)
    controller.submit_provider_diagnosis(
        db,
        sr.id,
        PROVIDER,
        findings="Sifão rachado",
        labor_cost=labor,
        materials=[MaterialLine(*m) for m in materials],
    )
    controller.send_quote(db, sr.id, PROVIDER)
    payment = controller.accept_quote(db, sr.id, CLIENT, method="pix")
    return sr, payment


def payment_count(db: Session) -> int:
    return db.query(Payment).count()
