from __future__ import annotations

"""
Provider abstraction for expense categorization.

This module defines the request contract that both the deterministic keyword
rules and LLM-backed implementations satisfy. Providers accept one expense
description (plus optional vendor and amount) and always return a
CategorySuggestion; a failed model call degrades to the keyword rules rather
than surfacing as an error.
"""

import logging
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any, Optional, Protocol, runtime_checkable

from shared.observability.privacy import fingerprint_text, redact_fields

from expense_category import CategorySuggestion, categorize_by_keywords

logger = logging.getLogger(__name__)

SAFE_REQUEST_KEYS = frozenset({"amount"})


class CategorizationValidationError(ValueError):
    """Raised when a categorization request is rejected before any provider work."""


@dataclass(slots=True)
class CategorizationRequest:
    """
    Contract for categorization inputs.

    Attributes:
        description: Free-text expense description; must not be blank.
        vendor: Optional vendor name, used as a context clue.
        amount: Optional expense amount, used as a context clue.
    """

    description: str
    vendor: Optional[str] = None
    amount: Optional[float] = None

    @classmethod
    def build(
        cls,
        description: str | None,
        vendor: str | None = None,
        amount: float | Decimal | None = None,
    ) -> "CategorizationRequest":
        """Validate raw inputs and return a normalized request."""
        cleaned = (description or "").strip()
        if not cleaned:
            raise CategorizationValidationError("Description is required")

        cleaned_vendor = (vendor or "").strip() or None
        return cls(
            description=cleaned,
            vendor=cleaned_vendor,
            amount=float(amount) if amount is not None else None,
        )


@runtime_checkable
class CategorizationProvider(Protocol):
    """
    Interface for swappable expense categorizers.

    Implementations expose a descriptive `name` attribute and a `categorize`
    method. `categorize` must never return a category outside ExpenseCategory
    or a confidence outside [0, 1].
    """

    name: str

    def categorize(self, request: CategorizationRequest) -> CategorySuggestion:
        """Suggest a category for the provided expense."""
        ...


class DeterministicCategorizationProvider:
    """
    Provider that applies the keyword rules without any network calls.

    Used when no model is configured and as the fallback inside the OpenAI
    provider.
    """

    name = "deterministic"

    def categorize(self, request: CategorizationRequest) -> CategorySuggestion:
        suggestion = categorize_by_keywords(request.description)
        log_categorization(self.name, request, suggestion)
        return suggestion


def categorize_expense(
    provider: CategorizationProvider,
    description: str | None,
    vendor: str | None = None,
    amount: float | Decimal | None = None,
) -> CategorySuggestion:
    """Validate the inputs and ask the provider for a suggestion."""
    request = CategorizationRequest.build(description, vendor, amount)
    return provider.categorize(request)


def build_categorization_provider(
    name: str | None,
    *,
    settings: Optional[Any] = None,
) -> CategorizationProvider:
    """
    Factory that instantiates the requested categorization provider implementation.
    """

    normalized = (name or "").strip().lower()
    if normalized in ("", "deterministic"):
        return DeterministicCategorizationProvider()
    if normalized == "openai":
        from providers.openai_categorization import OpenAICategorizationProvider

        return OpenAICategorizationProvider(settings=settings)

    raise ValueError(f"Unsupported categorization provider '{name}'")


def log_categorization(
    provider_name: str,
    request: CategorizationRequest,
    suggestion: CategorySuggestion,
) -> None:
    logger.info(
        {
            "event": "categorization_provider_output",
            "provider": provider_name,
            "category": suggestion.category.value,
            "confidence": suggestion.confidence,
            "source": suggestion.source,
            "description": fingerprint_text(request.description),
            "request_snapshot": redact_fields(asdict(request), SAFE_REQUEST_KEYS),
        }
    )
