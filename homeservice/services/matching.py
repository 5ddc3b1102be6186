from dataclasses import dataclass

from sqlalchemy.orm import Session

from homeservice.models.category import ServiceCategory
from homeservice.models.diagnosis import AiDiagnosis
from homeservice.models.service_request import ServiceRequest
from homeservice.models.user import ROLE_PROVIDER, UserProfile
from homeservice.services import pricing
from homeservice.services.catalog import matches_specialty
from homeservice.services.geo import distance_km, has_coordinates


@dataclass(frozen=True)
class ProviderOffer:
    provider_id: str
    display_name: str
    rating: float
    total_ratings: int
    tier: str
    band_min: int
    band_max: int
    distance_km: float | None
    # Single-price display: category base price scaled by the rating multiplier.
    adjusted_price: int


def is_eligible(provider: UserProfile | None, category: ServiceCategory) -> bool:
    return bool(
        provider
        and provider.role == ROLE_PROVIDER
        and provider.is_available
        and matches_specialty(provider.specialties, category.name)
    )


def estimate_range(db: Session, sr: ServiceRequest) -> tuple[int, int]:
    """Range the bands are placed in: the stored diagnosis range, or the
    SLA-scaled estimate when no diagnosis exists yet."""
    diagnosis = (
        db.query(AiDiagnosis).filter(AiDiagnosis.service_request_id == sr.id).first()
    )
    if diagnosis:
        return diagnosis.price_range_min, diagnosis.price_range_max
    base = sr.estimated_price or pricing.estimate_for_sla(sr.category.base_price, sr.sla_priority)
    return base, base


def band_for(db: Session, sr: ServiceRequest, provider: UserProfile) -> pricing.PriceBand:
    low, high = estimate_range(db, sr)
    return pricing.price_band(low, high, provider.rating, provider.total_ratings)


def provider_offers(
    db: Session, sr: ServiceRequest, max_distance_km: float | None = None
) -> list[ProviderOffer]:
    """Available providers for the request's category with their price bands.

    Providers with a known location farther than max_distance_km are left
    out; the rest are sorted by distance, providers without a location last.
    """
    candidates = (
        db.query(UserProfile)
        .filter(UserProfile.role == ROLE_PROVIDER, UserProfile.is_available.is_(True))
        .all()
    )
    low, high = estimate_range(db, sr)
    located, unlocated = [], []
    for p in candidates:
        if not matches_specialty(p.specialties, sr.category.name):
            continue
        distance = None
        if has_coordinates(sr.latitude, sr.longitude) and has_coordinates(p.latitude, p.longitude):
            distance = distance_km(sr.latitude, sr.longitude, p.latitude, p.longitude)
            if max_distance_km is not None and distance > max_distance_km:
                continue
        band = pricing.price_band(low, high, p.rating, p.total_ratings)
        offer = ProviderOffer(
            provider_id=p.id,
            display_name=p.display_name,
            rating=p.rating,
            total_ratings=p.total_ratings,
            tier=band.tier,
            band_min=band.band_min,
            band_max=band.band_max,
            distance_km=distance,
            adjusted_price=pricing.adjusted_price(sr.category.base_price, p.rating),
        )
        (located if distance is not None else unlocated).append(offer)
    located.sort(key=lambda o: o.distance_km)
    return located + unlocated
