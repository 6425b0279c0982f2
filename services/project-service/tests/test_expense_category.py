import math

import pytest
from categorization_provider import (
    CategorizationValidationError,
    DeterministicCategorizationProvider,
    categorize_expense,
)
from expense_category import (
    DEFAULT_CATEGORY_CONFIDENCE,
    KEYWORD_MATCH_CONFIDENCE,
    CategorySuggestion,
    ExpenseCategory,
    categorize_by_keywords,
    clamp_confidence,
    should_auto_apply,
)


@pytest.mark.parametrize(
    "description, expected",
    [
        ("Purchased lumber from Home Depot", ExpenseCategory.MATERIALS),
        ("Ready-mix CONCRETE delivery", ExpenseCategory.MATERIALS),
        ("Weekly wage for site crew", ExpenseCategory.LABOR),
        ("Worker overtime", ExpenseCategory.LABOR),
        ("Excavator equipment rental", ExpenseCategory.EQUIPMENT),
        ("New toolbox", ExpenseCategory.EQUIPMENT),
    ],
)
def test_keyword_rules_match_expected_category(description: str, expected: ExpenseCategory) -> None:
    suggestion = categorize_by_keywords(description)

    assert suggestion.category is expected
    assert suggestion.confidence == KEYWORD_MATCH_CONFIDENCE
    assert suggestion.source == "keyword"
    assert "keyword" in suggestion.reasoning.lower()


def test_unmatched_description_defaults_to_other() -> None:
    suggestion = categorize_by_keywords("Building permit fee")

    assert suggestion.category is ExpenseCategory.OTHER
    assert suggestion.confidence == DEFAULT_CATEGORY_CONFIDENCE
    assert "fallback" in suggestion.reasoning.lower()


def test_first_matching_rule_wins() -> None:
    # "material" (materials rule) is checked before "labor".
    suggestion = categorize_by_keywords("Material handling labor")

    assert suggestion.category is ExpenseCategory.MATERIALS


def test_clamp_confidence_bounds_values() -> None:
    assert clamp_confidence(1.7) == 1.0
    assert clamp_confidence(-0.2) == 0.0
    assert clamp_confidence(0.42) == 0.42
    assert clamp_confidence(math.nan) == 0.0


def test_should_auto_apply_is_strictly_above_threshold() -> None:
    def suggestion(confidence: float) -> CategorySuggestion:
        return CategorySuggestion(category=ExpenseCategory.LABOR, confidence=confidence, reasoning="r")

    assert should_auto_apply(suggestion(0.81)) is True
    assert should_auto_apply(suggestion(0.8)) is False
    assert should_auto_apply(suggestion(0.6)) is False


def test_categorize_expense_rejects_blank_description() -> None:
    provider = DeterministicCategorizationProvider()

    with pytest.raises(CategorizationValidationError):
        categorize_expense(provider, "   ")
    with pytest.raises(CategorizationValidationError):
        categorize_expense(provider, None)


def test_deterministic_provider_returns_valid_suggestion() -> None:
    provider = DeterministicCategorizationProvider()

    suggestion = categorize_expense(provider, "  Purchased lumber from Home Depot  ", vendor="Home Depot", amount=250)

    assert suggestion.category is ExpenseCategory.MATERIALS
    assert suggestion.confidence == 0.6
    assert suggestion.to_dict()["category"] == "materials"
