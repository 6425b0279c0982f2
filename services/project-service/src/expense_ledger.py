from __future__ import annotations

"""
Expense rules that do not depend on storage: totals, approval checks and
category resolution at creation time.
"""

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from categorization_provider import CategorizationProvider, categorize_expense
from expense_category import CategorySuggestion, ExpenseCategory, should_auto_apply

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


class ExpenseNotFoundError(LookupError):
    """Raised when an expense id does not exist."""


class ExpenseApprovalError(Exception):
    """Base class for rejected approval attempts."""

    status_code = 400
    error_code = "approval_rejected"


class ExpenseAlreadyApprovedError(ExpenseApprovalError):
    status_code = 409
    error_code = "expense_already_approved"


class SelfApprovalError(ExpenseApprovalError):
    status_code = 403
    error_code = "self_approval_forbidden"


def to_money(value: Decimal | float | int | str | None) -> Decimal:
    """Normalize a monetary value to a two-decimal Decimal."""
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def compute_total(amount: Decimal | float | int | str, tax_amount: Decimal | float | int | str | None) -> Decimal:
    return to_money(amount) + to_money(tax_amount)


def ensure_can_approve(*, is_approved: bool, submitted_by: str | None, approver_id: str) -> None:
    """Raise when `approver_id` may not approve an expense in its current state."""
    if is_approved:
        raise ExpenseAlreadyApprovedError("Expense is already approved")
    if submitted_by is not None and submitted_by == approver_id:
        raise SelfApprovalError("Expenses must be approved by someone other than the submitter")


@dataclass(frozen=True, slots=True)
class CategoryResolution:
    """
    Category chosen for a new expense.

    `suggestion` is set whenever a provider was consulted; `auto_applied`
    says whether the suggestion was confident enough to become the category.
    """

    category: ExpenseCategory
    suggestion: Optional[CategorySuggestion] = None
    auto_applied: bool = False


def resolve_category(
    provider: CategorizationProvider,
    *,
    description: str,
    vendor: str | None = None,
    amount: Decimal | float | None = None,
    category: ExpenseCategory | None = None,
    auto_categorize: bool = False,
) -> CategoryResolution:
    """
    Pick the category to store for a new expense.

    An explicit category always wins. Otherwise, when `auto_categorize` is set,
    the provider is asked and its suggestion is adopted only above the
    auto-apply threshold; below it the expense is filed as `other` and the
    suggestion is handed back for the user to confirm.
    """
    if category is not None:
        return CategoryResolution(category=ExpenseCategory(category))
    if not auto_categorize:
        return CategoryResolution(category=ExpenseCategory.OTHER)

    suggestion = categorize_expense(provider, description, vendor, amount)
    if should_auto_apply(suggestion):
        return CategoryResolution(category=suggestion.category, suggestion=suggestion, auto_applied=True)

    logger.info(
        {
            "event": "category_suggestion_deferred",
            "provider": provider.name,
            "category": suggestion.category.value,
            "confidence": suggestion.confidence,
        }
    )
    return CategoryResolution(category=ExpenseCategory.OTHER, suggestion=suggestion)
