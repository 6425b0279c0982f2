from decimal import Decimal

import pytest
from categorization_provider import CategorizationRequest, DeterministicCategorizationProvider
from expense_category import CategorySuggestion, ExpenseCategory
from expense_ledger import (
    ExpenseAlreadyApprovedError,
    SelfApprovalError,
    compute_total,
    ensure_can_approve,
    resolve_category,
    to_money,
)


class ConfidentProvider:
    name = "confident"

    def __init__(self, confidence: float) -> None:
        self.confidence = confidence
        self.requests: list[CategorizationRequest] = []

    def categorize(self, request: CategorizationRequest) -> CategorySuggestion:
        self.requests.append(request)
        return CategorySuggestion(
            category=ExpenseCategory.SUBCONTRACTOR,
            confidence=self.confidence,
            reasoning="Electrical contractor invoice.",
            source="openai",
        )


def test_money_helpers_round_to_cents() -> None:
    assert to_money("10.005") == Decimal("10.01")
    assert to_money(None) == Decimal("0.00")
    assert compute_total(Decimal("99.99"), 0.01) == Decimal("100.00")
    assert compute_total(12, None) == Decimal("12.00")


def test_ensure_can_approve_rules() -> None:
    ensure_can_approve(is_approved=False, submitted_by="worker-1", approver_id="manager-1")

    with pytest.raises(ExpenseAlreadyApprovedError) as already:
        ensure_can_approve(is_approved=True, submitted_by="worker-1", approver_id="manager-1")
    assert already.value.status_code == 409

    with pytest.raises(SelfApprovalError) as own:
        ensure_can_approve(is_approved=False, submitted_by="worker-1", approver_id="worker-1")
    assert own.value.status_code == 403


def test_explicit_category_skips_provider() -> None:
    provider = ConfidentProvider(0.99)

    resolution = resolve_category(
        provider, description="Panel upgrade", category=ExpenseCategory.UTILITIES, auto_categorize=True
    )

    assert resolution.category is ExpenseCategory.UTILITIES
    assert resolution.suggestion is None
    assert provider.requests == []


def test_without_auto_categorize_defaults_to_other() -> None:
    provider = ConfidentProvider(0.99)

    resolution = resolve_category(provider, description="Panel upgrade")

    assert resolution.category is ExpenseCategory.OTHER
    assert provider.requests == []


def test_confident_suggestion_is_applied() -> None:
    provider = ConfidentProvider(0.92)

    resolution = resolve_category(
        provider, description="Panel upgrade", vendor="Volt Bros", amount=Decimal("1800"), auto_categorize=True
    )

    assert resolution.category is ExpenseCategory.SUBCONTRACTOR
    assert resolution.auto_applied is True
    assert provider.requests[0].vendor == "Volt Bros"
    assert provider.requests[0].amount == 1800.0


def test_threshold_confidence_is_not_applied() -> None:
    resolution = resolve_category(ConfidentProvider(0.8), description="Panel upgrade", auto_categorize=True)

    assert resolution.category is ExpenseCategory.OTHER
    assert resolution.auto_applied is False
    assert resolution.suggestion.category is ExpenseCategory.SUBCONTRACTOR


def test_keyword_suggestion_never_auto_applies() -> None:
    resolution = resolve_category(
        DeterministicCategorizationProvider(), description="Purchased lumber from Home Depot", auto_categorize=True
    )

    assert resolution.category is ExpenseCategory.OTHER
    assert resolution.suggestion.category is ExpenseCategory.MATERIALS
