"""
LLM Service for summary and diagnosis suggestions
"""
import asyncio
import instructor
from openai import AsyncOpenAI
from typing import Protocol

from clinic_scribe.config import settings
from clinic_scribe.core.errors import AnalysisFailure
from clinic_scribe.core.logging import get_logger
from clinic_scribe.models.responses import AnalysisResult, DiagnosisSuggestion

logger = get_logger(__name__)


class AnalysisService(Protocol):
    async def analyze(self, transcript: str, clinic_prompt: str, summary_prompt: str) -> AnalysisResult:
        ...


class LLMService:
    """Service for analyzing consultation transcripts with an OpenAI compatible LLM."""

    def __init__(self, client: AsyncOpenAI = None, model: str = None):
        self.openai_client = client or AsyncOpenAI(
            api_key=settings.openai_api_key or "not-configured",
            base_url=settings.llm_base_url,
            timeout=settings.llm_timeout,
        )
        # Structured output for the diagnosis / prescription pair
        self.structured_client = instructor.from_openai(self.openai_client, mode=instructor.Mode.JSON)
        self.model = model or settings.default_llm_model
        self.temperature = settings.llm_temperature
        self.max_tokens = settings.llm_max_tokens

    async def analyze(self, transcript: str, clinic_prompt: str, summary_prompt: str) -> AnalysisResult:
        """
        Produces the summary and the diagnosis/prescription suggestion for a transcript.
        Any failure is raised as AnalysisFailure.
        """
        logger.info(f"Starting LLM analysis with model: {self.model}")
        try:
            summary, suggestion = await asyncio.gather(
                self.generate_summary(transcript, summary_prompt),
                self.suggest_diagnosis(transcript, clinic_prompt),
            )
        except Exception as e:
            logger.error(f"LLM analysis failed: {e}", exc_info=True)
            raise AnalysisFailure("Failed to analyze transcript.") from e

        logger.info("LLM analysis completed successfully.")
        return AnalysisResult(
            summary=summary,
            suggested_diagnosis=suggestion.diagnosis.strip(),
            suggested_prescription=suggestion.prescription.strip(),
        )

    async def generate_summary(self, transcript: str, summary_prompt: str) -> str:
        completion = await self.openai_client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": summary_prompt},
                {"role": "user", "content": transcript},
            ],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        return (completion.choices[0].message.content or "").strip()

    async def suggest_diagnosis(self, transcript: str, clinic_prompt: str) -> DiagnosisSuggestion:
        return await self.structured_client.chat.completions.create(
            model=self.model,
            response_model=DiagnosisSuggestion,
            messages=[
                {"role": "system", "content": self._build_clinic_prompt(clinic_prompt)},
                {"role": "user", "content": transcript},
            ],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )

    @staticmethod
    def _build_clinic_prompt(clinic_prompt: str) -> str:
        return (
            f"{clinic_prompt}\n\n"
            "Provide the diagnosis and the prescription as separate fields. "
            "If the transcript does not support a suggestion, say so in the field."
        )
