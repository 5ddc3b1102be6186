from homeservice.db_core import Base
from homeservice.models.antifraud import AntifraudFlag
from homeservice.models.category import ServiceCategory
from homeservice.models.diagnosis import (
    AiDiagnosis,
    DigitalAcceptance,
    GuidedAnswer,
    ProviderDiagnosis,
    QuotedMaterial,
    SuggestedMaterial,
)
from homeservice.models.payment import Payment, PaymentEscrow
from homeservice.models.review import Review
from homeservice.models.service_request import (
    DomesticDetails,
    ServiceExecutionLog,
    ServiceRequest,
    ServiceStatus,
    SlaPriority,
)
from homeservice.models.user import UserProfile

__all__ = (
    "Base",
    "AiDiagnosis",
    "AntifraudFlag",
    "DigitalAcceptance",
    "DomesticDetails",
    "GuidedAnswer",
    "Payment",
    "PaymentEscrow",
    "ProviderDiagnosis",
    "QuotedMaterial",
    "Review",
    "ServiceCategory",
    "ServiceExecutionLog",
    "ServiceRequest",
    "ServiceStatus",
    "SlaPriority",
    "SuggestedMaterial",
    "UserProfile",
)
