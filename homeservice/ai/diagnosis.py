"""Clients for the external diagnosis service.

The engine only stores the explanation text and uses the numeric fields of
the answer; how the text is produced is up to the service.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from decimal import Decimal
from functools import lru_cache

from openai import OpenAI, OpenAIError
from pydantic import BaseModel, Field, ValidationError, model_validator
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from homeservice.config import settings
from homeservice.errors import UpstreamUnavailable
from homeservice.services.pricing import round_cents

logger = logging.getLogger(__name__)


class GuidedAnswerIn(BaseModel):
    question: str = Field(min_length=1)
    answer: str = Field(min_length=1)


class DiagnosisRequest(BaseModel):
    description: str = Field(min_length=1)
    guided_answers: list[GuidedAnswerIn] = []
    media_refs: list[str] = []
    # Catalog hints; services may ignore them.
    category_name: str = ""
    base_price: int = 0


class DiagnosisResult(BaseModel):
    classification: str = ""
    urgency_level: str = ""
    estimated_duration: str = ""
    materials: list[str] = []
    price_range_min: int = Field(ge=0)
    price_range_max: int = Field(ge=0)
    explanation_text: str = ""

    @model_validator(mode="after")
    def _range_is_ordered(self):
        if self.price_range_max < self.price_range_min:
            raise ValueError("price_range_max below price_range_min")
        return self


class BaseDiagnosisService(ABC):
    @abstractmethod
    def diagnose(self, request: DiagnosisRequest) -> DiagnosisResult:
        """Return an estimate; raise UpstreamUnavailable when no answer is usable."""


class StaticDiagnosisService(BaseDiagnosisService):
    """Catalog-based estimate for development and tests: [base, base x 1.5]."""

    def __init__(self, spread: Decimal = Decimal("1.5")):
        self.spread = spread

    def diagnose(self, request: DiagnosisRequest) -> DiagnosisResult:
        if request.base_price <= 0:
            raise UpstreamUnavailable("no base price to estimate from")
        return DiagnosisResult(
            classification=request.category_name,
            urgency_level="media",
            estimated_duration="2-4 horas",
            price_range_min=request.base_price,
            price_range_max=round_cents(Decimal(request.base_price) * self.spread),
            explanation_text=f"Estimativa baseada no preço de referência de {request.category_name}.",
        )


SYSTEM_PROMPT = """Você é o assistente de diagnóstico de serviços residenciais.
Analise o problema descrito pelo cliente e responda APENAS em JSON válido:
{
  "classification": "categoria do serviço",
  "urgency_level": "baixa | media | alta | urgente",
  "estimated_duration": "ex: 2-4 horas",
  "materials": ["material provável"],
  "price_range_min": 0,
  "price_range_max": 0,
  "explanation_text": "explicação simples do problema e da solução"
}
Preços em centavos, para atendimento padrão."""

_FENCE = re.compile(r"```(?:json)?\s*|\s*```")


class OpenAIDiagnosisService(BaseDiagnosisService):
    """Chat-completions client; works with any OpenAI-compatible endpoint."""

    def __init__(self, api_key: str, base_url: str = "", model: str = "", client=None):
        self.model = model or settings.DIAGNOSIS_MODEL
        self.client = client or OpenAI(api_key=api_key or "missing", base_url=base_url or None)

    def _messages(self, request: DiagnosisRequest) -> list[dict]:
        text = request.description
        if request.category_name:
            text = f"Categoria informada: {request.category_name}\n{text}"
        for qa in request.guided_answers:
            text += f"\n{qa.question}: {qa.answer}"
        content = [{"type": "text", "text": text}]
        for ref in request.media_refs:
            content.append({"type": "image_url", "image_url": {"url": ref}})
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": content},
        ]

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_fixed(1),
        retry=retry_if_exception_type(OpenAIError),
        reraise=True,
    )
    def _complete(self, messages: list[dict]) -> str:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            max_tokens=800,
        )
        return response.choices[0].message.content or ""

    def diagnose(self, request: DiagnosisRequest) -> DiagnosisResult:
        try:
            content = self._complete(self._messages(request))
        except OpenAIError as e:
            logger.warning("diagnosis service failed: %s", e)
            raise UpstreamUnavailable("diagnosis service unavailable") from e
        try:
            return DiagnosisResult.model_validate(json.loads(_FENCE.sub("", content).strip()))
        except (ValueError, ValidationError) as e:
            logger.warning("unusable diagnosis answer: %r", content[:200])
            raise UpstreamUnavailable("diagnosis service returned an unusable answer") from e


@lru_cache()
def get_diagnosis_service() -> BaseDiagnosisService:
    provider = settings.DIAGNOSIS_PROVIDER.lower()
    if provider == "static":
        return StaticDiagnosisService()
    if provider == "openai":
        return OpenAIDiagnosisService(
            api_key=settings.DIAGNOSIS_API_KEY,
            base_url=settings.DIAGNOSIS_BASE_URL,
            model=settings.DIAGNOSIS_MODEL,
        )
    raise ValueError(f"unknown diagnosis provider: {provider}")
