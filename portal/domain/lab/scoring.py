from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, List, Literal, Mapping, Optional, Protocol
import asyncio
import json
import logging

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from portal.core.config import settings
from portal.core.exceptions import (
    InvalidModelResponse,
    ScoringUnavailable,
    handle_external_service_error,
)
from portal.domain.lab.anonymise import AnonymisedRecord

logger = logging.getLogger(__name__)

RiskLevel = Literal["low", "medium", "high"]

RISK_SCORE_MAP: Mapping[str, int] = MappingProxyType({
    "low": 1,
    "medium": 2,
    "high": 3,
})

RISK_SYSTEM_PROMPT = """You are a clinical assistant analyzing anonymized laboratory values.
Analyze the provided lab values and reference ranges to identify potential health risks.

Respond with a JSON object containing:
{
  "riskLevel": "low" | "medium" | "high",
  "flaggedTests": ["test_name1", "test_name2"],
  "reasoning": "Brief clinical reasoning"
}

Risk levels:
- low: All values within normal ranges or minor deviations
- medium: Some values outside normal ranges requiring attention
- high: Critical values or patterns indicating urgent medical attention

Only include test names in flaggedTests if they are significantly outside normal ranges.
No PII is included in this data."""


class RiskAssessment(BaseModel):
    """Validated risk assessment as returned by the scoring model"""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    risk_level: RiskLevel = Field(alias="riskLevel")
    flagged_tests: List[str] = Field(alias="flaggedTests")
    reasoning: str = ""

    @field_validator("reasoning", mode="before")
    @classmethod
    def reasoning_default(cls, v: Any) -> Any:
        return "" if v is None else v

    @property
    def risk_score(self) -> int:
        return risk_score_for(self.risk_level)


@dataclass(frozen=True)
class ScoringResult:
    assessment: RiskAssessment
    raw_text: str
    model: str


class RiskScorer(Protocol):
    """Anything able to score an anonymised record"""

    model_name: str

    async def score(self, record: AnonymisedRecord) -> ScoringResult:
        ...


def risk_score_for(level: Any) -> int:
    """Map a qualitative risk level onto its numeric score"""
    if not isinstance(level, str) or level not in RISK_SCORE_MAP:
        raise InvalidModelResponse(
            message="Unknown risk level",
            details={"risk_level": str(level)[:20]}
        )
    return RISK_SCORE_MAP[level]


def build_risk_prompt(record: AnonymisedRecord) -> str:
    """User prompt for the scorer. Only an AnonymisedRecord is accepted."""
    if not isinstance(record, AnonymisedRecord):
        raise TypeError(
            f"risk prompts are built from AnonymisedRecord only, got {type(record).__name__}"
        )
    return (
        "Analyze these anonymized lab results:\n"
        f"{record.to_json(indent=2)}\n\n"
        "Provide risk assessment in the specified JSON format."
    )


def parse_risk_assessment(text: str) -> RiskAssessment:
    """Parse and validate the model's free-form reply"""
    # Clean markdown if present
    content = (text or "").replace("```json", "").replace("```", "").strip()

    try:
        data = json.loads(content)
    except json.JSONDecodeError as exc:
        raise InvalidModelResponse(message="AI response is not valid JSON") from exc

    if not isinstance(data, dict):
        raise InvalidModelResponse(message="AI response is not a JSON object")

    try:
        return RiskAssessment.model_validate(data)
    except ValidationError as exc:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
        raise InvalidModelResponse(
            message="Invalid AI risk assessment",
            details={"invalid_fields": fields}
        ) from exc


class GeminiRiskScorer:
    """Risk scorer backed by a Gemini model"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model_name: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.GEMINI_API_KEY
        self.model_name = model_name or settings.GEMINI_MODEL
        self.timeout_seconds = timeout_seconds or settings.SCORING_TIMEOUT_SECONDS
        self.max_output_tokens = max_output_tokens or settings.SCORING_MAX_OUTPUT_TOKENS
        self.temperature = settings.SCORING_TEMPERATURE if temperature is None else temperature

        if self.api_key:
            genai.configure(api_key=self.api_key)

    def _build_model(self) -> "genai.GenerativeModel":
        return genai.GenerativeModel(
            self.model_name,
            system_instruction=RISK_SYSTEM_PROMPT,
            generation_config=genai.GenerationConfig(
                temperature=self.temperature,
                max_output_tokens=self.max_output_tokens,
                response_mime_type="application/json",
            ),
        )

    async def score(self, record: AnonymisedRecord) -> ScoringResult:
        prompt = build_risk_prompt(record)

        if not self.api_key:
            logger.error("Gemini API key missing, risk scoring disabled")
            raise ScoringUnavailable(message="AI service not configured")

        try:
            response = await asyncio.wait_for(
                self._build_model().generate_content_async(prompt),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.error("Gemini risk scoring timed out after %.1fs", self.timeout_seconds)
            raise ScoringUnavailable(
                message="Risk scoring timed out",
                details={"timeout_seconds": self.timeout_seconds}
            ) from exc
        except (google_exceptions.GoogleAPIError, ConnectionError) as exc:
            raise handle_external_service_error(exc, "gemini", "generate_content") from exc

        try:
            text = response.text
        except ValueError as exc:
            # Raised by the SDK when the reply has no usable candidate
            raise InvalidModelResponse(message="AI analysis incomplete") from exc

        if not text or not text.strip():
            raise InvalidModelResponse(message="AI analysis incomplete")

        return ScoringResult(
            assessment=parse_risk_assessment(text),
            raw_text=text,
            model=self.model_name,
        )
