"""
OpenAI-powered expense categorization provider.

This module implements the CategorizationProvider protocol with a single chat
completion per expense. The model is asked for a JSON object; anything that
does not parse into a known category is treated as a failed call and the
keyword rules answer instead.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Optional

from openai import APIError, APITimeoutError, OpenAI
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from shared.observability.privacy import hash_payload

from categorization_provider import (
    CategorizationRequest,
    DeterministicCategorizationProvider,
    log_categorization,
)
from expense_category import (
    CATEGORY_DEFINITIONS,
    CategorySuggestion,
    ExpenseCategory,
    clamp_confidence,
)

if TYPE_CHECKING:
    from shared.provider_settings import ProviderSettings

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.5
DEFAULT_REASONING = "AI categorization based on description analysis"
MAX_REASONING_LENGTH = 500

SYSTEM_PROMPT = """You are an assistant that categorizes construction project expenses.

Choose exactly one category from the list you are given. Consider context clues such as vendor
names, expense descriptions, and typical construction workflows.

Respond with a single JSON object and nothing else:
{
  "category": "one_of_the_listed_categories",
  "confidence": 0.95,
  "reasoning": "Brief explanation of why this category fits best"
}

confidence must be a number between 0 and 1."""

USER_PROMPT_TEMPLATE = """Available categories:
{category_section}

Analyze this expense and suggest the most appropriate category:
{expense_section}"""


class _CategorizationAnswer(BaseModel):
    """Shape the model must answer with; anything else is a failed call."""

    model_config = ConfigDict(extra="ignore")

    category: ExpenseCategory
    confidence: Optional[float] = Field(default=None, allow_inf_nan=False)
    reasoning: Optional[str] = None


def _format_category_section() -> str:
    return "\n".join(f"- {category.value}: {definition}" for category, definition in CATEGORY_DEFINITIONS.items())


def _format_expense_section(request: CategorizationRequest) -> str:
    lines = [f'Description: "{request.description}"']
    if request.vendor:
        lines.append(f'Vendor: "{request.vendor}"')
    if request.amount is not None:
        lines.append(f"Amount: ${request.amount:,.2f}")
    return "\n".join(lines)


def build_user_prompt(request: CategorizationRequest) -> str:
    return USER_PROMPT_TEMPLATE.format(
        category_section=_format_category_section(),
        expense_section=_format_expense_section(request),
    )


class OpenAICategorizationProvider:
    """
    ChatGPT-backed categorizer with a keyword fallback.

    The client is built without SDK retries so that a call exceeding the
    configured timeout fails once and the fallback answers within the request.
    """

    name = "openai"

    def __init__(self, settings: ProviderSettings | None = None, *, client: Any | None = None):
        self._settings = settings
        self._fallback = DeterministicCategorizationProvider()
        if settings and settings.openai:
            self._client = client or OpenAI(
                api_key=settings.openai.api_key,
                base_url=settings.openai.api_base,
                timeout=settings.timeout_seconds,
                max_retries=0,
            )
            self._model = settings.openai.model
            self._temperature = settings.temperature
            self._max_tokens = settings.max_output_tokens
        else:
            self._client = client
            self._model = "gpt-4o"
            self._temperature = 0.3
            self._max_tokens = 256

    def categorize(self, request: CategorizationRequest) -> CategorySuggestion:
        if not self._client:
            logger.warning({"event": "openai_client_not_configured", "provider": self.name})
            return self._fallback_to_keywords(request)

        user_prompt = build_user_prompt(request)
        logger.info(
            {
                "event": "openai_categorization_request",
                "provider": self.name,
                "model": self._model,
                "prompt_hash": hash_payload({"system": SYSTEM_PROMPT, "user": user_prompt}),
            }
        )

        try:
            response = self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": user_prompt},
                ],
                response_format={"type": "json_object"},
                temperature=self._temperature,
                max_tokens=self._max_tokens,
            )
        except (APIError, APITimeoutError) as exc:
            logger.error(
                {
                    "event": "openai_categorization_error",
                    "provider": self.name,
                    "error_type": type(exc).__name__,
                    "error_message": str(exc),
                }
            )
            return self._fallback_to_keywords(request)
        except Exception as exc:
            logger.error(
                {
                    "event": "openai_categorization_unexpected_error",
                    "provider": self.name,
                    "error_type": type(exc).__name__,
                    "error_message": str(exc),
                }
            )
            return self._fallback_to_keywords(request)

        try:
            content = response.choices[0].message.content if response.choices else None
        except (AttributeError, IndexError, TypeError):
            content = None
        if not content or not isinstance(content, str):
            logger.warning({"event": "openai_empty_response", "provider": self.name})
            return self._fallback_to_keywords(request)

        try:
            payload = json.loads(content)
        except (ValueError, RecursionError) as exc:
            logger.error(
                {
                    "event": "openai_json_parse_error",
                    "provider": self.name,
                    "error_message": str(exc)[:200],
                }
            )
            return self._fallback_to_keywords(request)

        try:
            answer = _CategorizationAnswer.model_validate(payload)
        except ValidationError as exc:
            logger.warning(
                {
                    "event": "openai_invalid_categorization",
                    "provider": self.name,
                    "response_hash": hash_payload(content),
                    "error_count": exc.error_count(),
                }
            )
            return self._fallback_to_keywords(request)

        try:
            suggestion = self._to_suggestion(answer)
        except Exception as exc:
            logger.warning(
                {
                    "event": "openai_categorization_parse_skip",
                    "provider": self.name,
                    "error_type": type(exc).__name__,
                    "error_message": str(exc)[:200],
                }
            )
            return self._fallback_to_keywords(request)

        log_categorization(self.name, request, suggestion)
        return suggestion

    def _to_suggestion(self, answer: _CategorizationAnswer) -> CategorySuggestion:
        confidence = DEFAULT_CONFIDENCE if answer.confidence is None else answer.confidence
        reasoning = (answer.reasoning or "").strip() or DEFAULT_REASONING
        return CategorySuggestion(
            category=answer.category,
            confidence=clamp_confidence(confidence),
            reasoning=reasoning[:MAX_REASONING_LENGTH],
            source="openai",
        )

    def _fallback_to_keywords(self, request: CategorizationRequest) -> CategorySuggestion:
        logger.info({"event": "openai_fallback_to_keywords", "provider": self.name})
        return self._fallback.categorize(request)
