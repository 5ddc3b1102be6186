"""Pricing engine.

Pure functions only: SLA-scaled estimates, repair quote breakdowns,
automated domestic pricing, reputation-based price banding and the running
reputation average. All amounts are integer cents; rounding is half-up.
"""

import unicodedata
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

SLA_MULTIPLIERS = {
    "standard": Decimal("1.0"),
    "express": Decimal("1.5"),
    "urgent": Decimal("2.0"),
}

HOUSE_SIZE_BASE_PRICES = {
    "kitnet": 10000,
    "1-2 quartos": 15000,
    "3-4 quartos": 20000,
    "5+ quartos": 28000,
}


@dataclass(frozen=True)
class DomesticServiceType:
    multiplier: Decimal = Decimal("1.0")
    surcharge: int = 0


DOMESTIC_SERVICE_TYPES = {
    "padrao": DomesticServiceType(),
    "completo": DomesticServiceType(multiplier=Decimal("1.5")),
    "pos_obra": DomesticServiceType(multiplier=Decimal("1.8")),
    # single-task add-ons
    "passar_roupa": DomesticServiceType(surcharge=6000),
    "janelas": DomesticServiceType(surcharge=4000),
}

FREQUENCY_MULTIPLIERS = {
    "diaria": Decimal("0.80"),
    "semanal": Decimal("0.85"),
    "quinzenal": Decimal("0.90"),
    "mensal": Decimal("0.95"),
    "avulsa": Decimal("1.0"),
}
_FREQUENCY_ALIASES = {
    "daily": "diaria",
    "weekly": "semanal",
    "biweekly": "quinzenal",
    "monthly": "mensal",
    "once": "avulsa",
    "one-off": "avulsa",
    "unica": "avulsa",
}
_SERVICE_TYPE_ALIASES = {
    "standard": "padrao",
    "complete": "completo",
    "pos-obra": "pos_obra",
    "post_construction": "pos_obra",
    "ironing": "passar_roupa",
    "windows": "janelas",
}

TIER_NEW = "New"
TIER_BEGINNER = "Beginner"
TIER_REGULAR = "Regular"
TIER_EXPERIENCED = "Experienced"
TIER_PREMIUM = "Premium"

MAX_RATING = 10.0


def _normalize(label: str) -> str:
    text = unicodedata.normalize("NFKD", label.strip().lower())
    return "".join(c for c in text if not unicodedata.combining(c))


def round_cents(value) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def sla_multiplier(sla_priority: str) -> Decimal:
    try:
        return SLA_MULTIPLIERS[sla_priority]
    except KeyError:
        raise ValueError(f"unknown SLA priority: {sla_priority!r}")


def estimate_for_sla(base_price: int, sla_priority: str) -> int:
    """Estimate shown before a provider is assigned."""
    return round_cents(Decimal(base_price) * sla_multiplier(sla_priority))


def platform_fee(amount: int, fee_percent: float) -> int:
    return round_cents(Decimal(amount) * Decimal(str(fee_percent)) / Decimal(100))


@dataclass(frozen=True)
class QuoteBreakdown:
    labor_cost: int
    materials_cost: int
    platform_fee: int

    @property
    def total_price(self) -> int:
        return self.labor_cost + self.materials_cost + self.platform_fee


def quote_breakdown(labor_cost: int, materials_cost: int, fee_percent: float) -> QuoteBreakdown:
    if labor_cost < 0 or materials_cost < 0:
        raise ValueError("labor and materials cost must not be negative")
    fee = platform_fee(labor_cost + materials_cost, fee_percent)
    return QuoteBreakdown(labor_cost, materials_cost, fee)


def materials_total(items) -> int:
    """Sum of quantity x unit_price over itemized (name, quantity, unit_price) lines."""
    return sum(quantity * unit_price for _, quantity, unit_price in items)


def house_size_base_price(house_size: str) -> int:
    key = _normalize(house_size)
    if key not in HOUSE_SIZE_BASE_PRICES:
        raise ValueError(f"unknown house size: {house_size!r}")
    return HOUSE_SIZE_BASE_PRICES[key]


def domestic_service_type(service_type: str) -> DomesticServiceType:
    key = _normalize(service_type)
    key = _SERVICE_TYPE_ALIASES.get(key, key)
    if key not in DOMESTIC_SERVICE_TYPES:
        raise ValueError(f"unknown domestic service type: {service_type!r}")
    return DOMESTIC_SERVICE_TYPES[key]


def frequency_multiplier(frequency: str) -> Decimal:
    key = _normalize(frequency)
    key = _FREQUENCY_ALIASES.get(key, key)
    if key not in FREQUENCY_MULTIPLIERS:
        raise ValueError(f"unknown frequency: {frequency!r}")
    return FREQUENCY_MULTIPLIERS[key]


@dataclass(frozen=True)
class DomesticPrice:
    price: int
    platform_fee: int


def domestic_price(
    house_size: str, service_type: str, frequency: str, fee_percent: float
) -> DomesticPrice:
    base = Decimal(house_size_base_price(house_size))
    kind = domestic_service_type(service_type)
    raw = (base * kind.multiplier + kind.surcharge) * frequency_multiplier(frequency)
    price = round_cents(raw)
    return DomesticPrice(price=price, platform_fee=platform_fee(price, fee_percent))


@dataclass(frozen=True)
class PriceBand:
    tier: str
    band_min: int
    band_max: int

    @property
    def midpoint(self) -> int:
        return round_cents((Decimal(self.band_min) + Decimal(self.band_max)) / 2)


def reputation_tier(rating: float, total_ratings: int) -> str:
    if total_ratings == 0:
        return TIER_NEW
    if rating >= 9:
        return TIER_PREMIUM
    if rating >= 8:
        return TIER_EXPERIENCED
    if rating >= 5.1:
        return TIER_REGULAR
    return TIER_BEGINNER


def price_band(range_min: int, range_max: int, rating: float, total_ratings: int) -> PriceBand:
    """Place a provider's sub-band inside the estimated range [min, max].

    The band is 10% of the range wide and anchored by reputation tier; its
    upper bound never exceeds max + 10% of the range.
    """
    if range_max < range_min:
        raise ValueError(f"invalid price range [{range_min}, {range_max}]")
    rating = clamp_rating(rating)
    span = Decimal(range_max - range_min)
    width = span * Decimal("0.10")
    tier = reputation_tier(rating, total_ratings)
    r = Decimal(str(rating))

    if tier == TIER_NEW:
        offset = Decimal(0)
    elif tier == TIER_PREMIUM:
        offset = span * Decimal("0.35") + span * Decimal("0.15") * (r - 9)
    elif tier == TIER_EXPERIENCED:
        offset = span * Decimal("0.25") + span * Decimal("0.08") * (r - 8)
    elif tier == TIER_REGULAR:
        offset = span * Decimal("0.10") + span * Decimal("0.12") * (r - Decimal("5.1")) / Decimal("2.9")
    else:
        offset = span * Decimal("0.05") * min(r / 5, Decimal(1))

    ceiling = Decimal(range_max) + width
    low = Decimal(range_min) + offset
    high = min(low + width, ceiling)
    return PriceBand(tier=tier, band_min=round_cents(min(low, high)), band_max=round_cents(high))


def clamp_rating(rating: float) -> float:
    return max(0.0, min(MAX_RATING, float(rating)))


def updated_reputation(old_rating: float, total_ratings: int, submitted: float):
    """Return (new_rating, new_total) for one more submitted rating."""
    submitted = clamp_rating(submitted)
    if total_ratings <= 0:
        return submitted, 1
    new_rating = (float(old_rating) * total_ratings + submitted) / (total_ratings + 1)
    return clamp_rating(new_rating), total_ratings + 1


def rating_multiplier(rating: float) -> float:
    if rating <= 5:
        return 0.8
    if rating <= 8:
        return 1.2
    if rating <= 9:
        return 1.3
    return 1.5


def adjusted_price(base_price: int, rating: float) -> int:
    """Single-price display: base price scaled by the rating multiplier."""
    return round_cents(Decimal(base_price) * Decimal(str(rating_multiplier(rating))))
