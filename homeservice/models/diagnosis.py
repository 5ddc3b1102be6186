from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from homeservice.db_core import Base


class AiDiagnosis(Base):
    __tablename__ = "ai_diagnoses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    service_request_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("service_requests.id"), unique=True
    )
    input_description: Mapped[str] = mapped_column(Text, default="")
    media_refs: Mapped[list] = mapped_column(JSON, default=list)
    classification: Mapped[str] = mapped_column(String(80), default="")
    urgency_level: Mapped[str] = mapped_column(String(16), default="")
    estimated_duration: Mapped[str] = mapped_column(String(40), default="")
    price_range_min: Mapped[int] = mapped_column(Integer)
    price_range_max: Mapped[int] = mapped_column(Integer)
    diagnosis_fee: Mapped[int] = mapped_column(Integer)
    explanation: Mapped[str] = mapped_column(Text, default="")
    created_at = mapped_column(DateTime(timezone=True), server_default=func.now())

    guided_answers = relationship("GuidedAnswer", order_by="GuidedAnswer.id")
    suggested_materials = relationship("SuggestedMaterial", order_by="SuggestedMaterial.id")


class GuidedAnswer(Base):
    __tablename__ = "guided_answers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ai_diagnosis_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("ai_diagnoses.id"), index=True
    )
    question: Mapped[str] = mapped_column(Text)
    answer: Mapped[str] = mapped_column(Text)


class SuggestedMaterial(Base):
    __tablename__ = "suggested_materials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ai_diagnosis_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("ai_diagnoses.id"), index=True
    )
    name: Mapped[str] = mapped_column(String(120))


class ProviderDiagnosis(Base):
    __tablename__ = "provider_diagnoses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    service_request_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("service_requests.id"), unique=True
    )
    provider_id: Mapped[str] = mapped_column(String(64), ForeignKey("user_profiles.id"))
    findings: Mapped[str] = mapped_column(Text)
    labor_cost: Mapped[int] = mapped_column(Integer)
    materials_cost: Mapped[int] = mapped_column(Integer, default=0)
    estimated_duration: Mapped[str] = mapped_column(String(40), default="")
    notes: Mapped[str] = mapped_column(Text, default="")
    created_at = mapped_column(DateTime(timezone=True), server_default=func.now())

    materials = relationship("QuotedMaterial", order_by="QuotedMaterial.id")


class QuotedMaterial(Base):
    __tablename__ = "quoted_materials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    provider_diagnosis_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("provider_diagnoses.id"), index=True
    )
    name: Mapped[str] = mapped_column(String(120))
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    unit_price: Mapped[int] = mapped_column(Integer)


class DigitalAcceptance(Base):
    __tablename__ = "digital_acceptances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    service_request_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("service_requests.id"), unique=True
    )
    client_id: Mapped[str] = mapped_column(String(64), ForeignKey("user_profiles.id"))
    ai_diagnosis_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("ai_diagnoses.id"), nullable=True
    )
    provider_diagnosis_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("provider_diagnoses.id"), nullable=True
    )
    total_price: Mapped[int] = mapped_column(Integer)
    labor_cost: Mapped[int] = mapped_column(Integer)
    materials_cost: Mapped[int] = mapped_column(Integer, default=0)
    platform_fee: Mapped[int] = mapped_column(Integer, default=0)
    estimated_duration: Mapped[str] = mapped_column(String(40), default="")
    terms_version: Mapped[str] = mapped_column(String(16), default="1.0")
    ip_address: Mapped[str] = mapped_column(String(64), default="")
    user_agent: Mapped[str] = mapped_column(Text, default="")
    accepted_at = mapped_column(DateTime(timezone=True), server_default=func.now())
