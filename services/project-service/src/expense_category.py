from __future__ import annotations

"""
Expense categories, category suggestions, and the keyword fallback rules.

The keyword rules are the deterministic floor under every categorization
provider: when the language model is unavailable or answers with something
unusable, these rules still produce a category, just with lower confidence.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Tuple


class ExpenseCategory(str, Enum):
    """Closed set of categories an expense can be filed under."""

    MATERIALS = "materials"
    LABOR = "labor"
    EQUIPMENT = "equipment"
    TRANSPORTATION = "transportation"
    PERMITS = "permits"
    UTILITIES = "utilities"
    SUBCONTRACTOR = "subcontractor"
    OVERHEAD = "overhead"
    OTHER = "other"


CATEGORY_DEFINITIONS: dict[ExpenseCategory, str] = {
    ExpenseCategory.MATERIALS: "Construction materials, supplies, hardware, lumber, concrete, etc.",
    ExpenseCategory.LABOR: "Direct labor costs, wages, contractor fees for human work",
    ExpenseCategory.EQUIPMENT: "Tools, machinery, equipment rental or purchase",
    ExpenseCategory.TRANSPORTATION: "Vehicle costs, fuel, delivery, shipping",
    ExpenseCategory.PERMITS: "Government permits, licenses, inspections",
    ExpenseCategory.UTILITIES: "Electricity, water, gas, internet, phone services",
    ExpenseCategory.SUBCONTRACTOR: "Third-party contractor services (electrical, plumbing, etc.)",
    ExpenseCategory.OVERHEAD: "Office supplies, insurance, general business expenses",
    ExpenseCategory.OTHER: "Items that don't fit other categories",
}

# Checked in order; the first rule with a matching keyword wins.
KEYWORD_RULES: Tuple[Tuple[ExpenseCategory, Tuple[str, ...]], ...] = (
    (ExpenseCategory.MATERIALS, ("lumber", "concrete", "material", "supply")),
    (ExpenseCategory.LABOR, ("labor", "worker", "wage")),
    (ExpenseCategory.EQUIPMENT, ("tool", "equipment", "machinery")),
)

KEYWORD_MATCH_CONFIDENCE = 0.6
DEFAULT_CATEGORY_CONFIDENCE = 0.3
AUTO_APPLY_CONFIDENCE_THRESHOLD = 0.8

KEYWORD_MATCH_REASONING = "Fallback categorization based on keyword matching"
DEFAULT_CATEGORY_REASONING = "Fallback categorization: no keyword rule matched, defaulted to other"


@dataclass(frozen=True, slots=True)
class CategorySuggestion:
    """
    A suggested category for one expense.

    Attributes:
        category: Member of the closed ExpenseCategory set.
        confidence: Certainty in [0, 1].
        reasoning: Short human-readable explanation.
        source: Which path produced the suggestion ("openai" or "keyword").
    """

    category: ExpenseCategory
    confidence: float
    reasoning: str
    source: str = "keyword"

    def to_dict(self) -> dict[str, object]:
        return {
            "category": self.category.value,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "source": self.source,
        }


def clamp_confidence(value: float) -> float:
    """Clamp a confidence score into [0, 1]."""
    if math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, float(value)))


def categorize_by_keywords(description: str) -> CategorySuggestion:
    """
    Apply the ordered keyword rules to a description.

    Matching is a case-insensitive substring test, so "Raw materials" matches
    "material" and "Toolbox" matches "tool".
    """
    lowered = description.lower()
    for category, keywords in KEYWORD_RULES:
        if any(keyword in lowered for keyword in keywords):
            return CategorySuggestion(
                category=category,
                confidence=KEYWORD_MATCH_CONFIDENCE,
                reasoning=KEYWORD_MATCH_REASONING,
                source="keyword",
            )

    return CategorySuggestion(
        category=ExpenseCategory.OTHER,
        confidence=DEFAULT_CATEGORY_CONFIDENCE,
        reasoning=DEFAULT_CATEGORY_REASONING,
        source="keyword",
    )


def should_auto_apply(suggestion: CategorySuggestion) -> bool:
    """Return True when a suggestion is confident enough to skip user confirmation."""
    return suggestion.confidence > AUTO_APPLY_CONFIDENCE_THRESHOLD
