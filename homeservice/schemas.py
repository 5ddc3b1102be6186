from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from homeservice.models.service_request import SlaPriority


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# --- requests ---


class DomesticIn(BaseModel):
    house_size: str
    service_type: str
    frequency: str


class ServiceCreate(BaseModel):
    category_id: int
    title: str = Field(min_length=1, max_length=140)
    description: str = ""
    sla_priority: SlaPriority = SlaPriority.STANDARD
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    domestic: Optional[DomesticIn] = None


class GuidedAnswerBody(BaseModel):
    question: str
    answer: str


class DiagnosisIn(BaseModel):
    description: Optional[str] = None
    guided_answers: list[GuidedAnswerBody] = []
    media_refs: list[str] = []


class PaymentIn(BaseModel):
    method: str = "pix"


class AssignIn(BaseModel):
    provider_id: str


class MaterialIn(BaseModel):
    name: str = Field(min_length=1)
    quantity: int = Field(default=1, gt=0)
    unit_price: int = Field(ge=0)


class ProviderDiagnosisIn(BaseModel):
    findings: str = Field(min_length=1)
    labor_cost: int = Field(ge=0)
    materials: list[MaterialIn] = []
    estimated_duration: str = ""
    notes: str = ""


class DomesticAcceptIn(PaymentIn):
    provider_id: str


class LocationIn(BaseModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    notes: str = ""


class ReviewIn(BaseModel):
    rating: int = Field(ge=0, le=10)
    comment: Optional[str] = None


class ProfileIn(BaseModel):
    display_name: Optional[str] = None
    document: Optional[str] = None
    address: Optional[str] = None
    specialties: Optional[str] = None
    is_available: Optional[bool] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class PaymentWebhook(BaseModel):
    gateway_ref: str
    status: str


# --- responses ---


class CategoryOut(ORMModel):
    id: int
    name: str
    kind: str
    icon: str
    description: str
    base_price: int


class ServiceOut(ORMModel):
    id: int
    client_id: str
    provider_id: Optional[str]
    category_id: int
    title: str
    description: str
    sla_priority: str
    status: str
    estimated_price: Optional[int]
    final_price: Optional[int]
    version: int
    completed_at: Optional[datetime] = None


class AiDiagnosisOut(ORMModel):
    id: int
    service_request_id: int
    classification: str
    urgency_level: str
    estimated_duration: str
    price_range_min: int
    price_range_max: int
    diagnosis_fee: int
    explanation: str


class QuotedMaterialOut(ORMModel):
    name: str
    quantity: int
    unit_price: int


class ProviderDiagnosisOut(ORMModel):
    id: int
    service_request_id: int
    provider_id: str
    findings: str
    labor_cost: int
    materials_cost: int
    estimated_duration: str
    materials: list[QuotedMaterialOut] = []


class PaymentOut(ORMModel):
    id: int
    service_request_id: int
    kind: str
    amount: int
    method: str
    status: str
    gateway_ref: str
    pix_code: str


class ProviderOfferOut(ORMModel):
    provider_id: str
    display_name: str
    rating: float
    total_ratings: int
    tier: str
    band_min: int
    band_max: int
    distance_km: Optional[float]
    adjusted_price: int


class ReviewOut(ORMModel):
    id: int
    service_request_id: int
    provider_id: str
    rating: int
    comment: Optional[str]


class FlagOut(ORMModel):
    id: int
    service_request_id: int
    user_id: Optional[str]
    reason: str
    severity: str
    details: str
    resolved: bool
    resolved_by: Optional[str]


class ProfileOut(ORMModel):
    id: str
    role: str
    display_name: str
    specialties: str
    is_available: bool
    rating: float
    total_ratings: int
    total_services: int


class EarningsOut(ORMModel):
    total: int
    this_month: int
    held: int
    completed: int


class PlatformStatsOut(ORMModel):
    total_users: int
    total_providers: int
    total_services: int
    completed_services: int
    open_services: int
    total_revenue: int
    monthly_revenue: int
    platform_fees: int
