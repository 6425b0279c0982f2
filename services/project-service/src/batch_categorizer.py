"""
Best-effort batch categorization.

Every item is categorized concurrently in its own worker thread. Outcomes are
settled rather than raised: `collect_successes` keeps the items that produced
a suggestion and drops the rest, so one bad item never fails the batch.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Sequence

from categorization_provider import CategorizationProvider, CategorizationValidationError, categorize_expense
from expense_category import CategorySuggestion

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 50


@dataclass(frozen=True, slots=True)
class BatchItem:
    id: str
    description: str
    vendor: Optional[str] = None
    amount: Optional[float | Decimal] = None


@dataclass(frozen=True, slots=True)
class BatchResult:
    id: str
    suggestion: CategorySuggestion


def validate_batch_size(items: Sequence[BatchItem], max_size: int = MAX_BATCH_SIZE) -> None:
    if len(items) > max_size:
        raise CategorizationValidationError(
            f"Too many expenses to categorize at once. Maximum {max_size} allowed."
        )


async def categorize_batch(
    provider: CategorizationProvider,
    items: Sequence[BatchItem],
    *,
    max_concurrency: int | None = None,
) -> list[BatchResult]:
    """
    Categorize every item concurrently and return only the successes.

    Raises CategorizationValidationError when the batch exceeds MAX_BATCH_SIZE;
    nothing is categorized in that case.
    """
    validate_batch_size(items)
    if not items:
        return []

    semaphore = asyncio.Semaphore(max_concurrency) if max_concurrency else None

    async def _categorize_one(item: BatchItem) -> BatchResult:
        if semaphore is None:
            suggestion = await asyncio.to_thread(
                categorize_expense, provider, item.description, item.vendor, item.amount
            )
        else:
            async with semaphore:
                suggestion = await asyncio.to_thread(
                    categorize_expense, provider, item.description, item.vendor, item.amount
                )
        return BatchResult(id=item.id, suggestion=suggestion)

    outcomes = await asyncio.gather(
        *(_categorize_one(item) for item in items),
        return_exceptions=True,
    )
    results = collect_successes(items, outcomes)

    logger.info(
        {
            "event": "batch_categorization",
            "provider": provider.name,
            "requested": len(items),
            "succeeded": len(results),
            "dropped": len(items) - len(results),
        }
    )
    return results


def collect_successes(
    items: Sequence[BatchItem],
    outcomes: Sequence[BatchResult | BaseException],
) -> list[BatchResult]:
    """Keep successful outcomes; log and drop failed ones."""
    results: list[BatchResult] = []
    for item, outcome in zip(items, outcomes):
        if isinstance(outcome, BaseException):
            logger.warning(
                {
                    "event": "batch_item_dropped",
                    "item_id": item.id,
                    "error_type": type(outcome).__name__,
                    "error_message": str(outcome),
                }
            )
            continue
        results.append(outcome)
    return results
