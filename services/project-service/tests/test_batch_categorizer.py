import asyncio
import threading

import pytest
from batch_categorizer import MAX_BATCH_SIZE, BatchItem, BatchResult, categorize_batch, collect_successes
from categorization_provider import CategorizationRequest, CategorizationValidationError, DeterministicCategorizationProvider
from expense_category import CategorySuggestion, ExpenseCategory


class SpyProvider:
    """Counts calls and fails for descriptions containing 'explode'."""

    name = "spy"

    def __init__(self) -> None:
        self.calls = 0
        self._lock = threading.Lock()

    def categorize(self, request: CategorizationRequest) -> CategorySuggestion:
        with self._lock:
            self.calls += 1
        if "explode" in request.description:
            raise RuntimeError("provider blew up")
        return CategorySuggestion(category=ExpenseCategory.LABOR, confidence=0.9, reasoning="spy")


def _items(count: int) -> list[BatchItem]:
    return [BatchItem(id=f"exp-{index}", description=f"Crew wage {index}") for index in range(count)]


def test_batch_over_limit_is_rejected_before_any_work() -> None:
    provider = SpyProvider()

    with pytest.raises(CategorizationValidationError, match="Maximum 50"):
        asyncio.run(categorize_batch(provider, _items(MAX_BATCH_SIZE + 1)))

    assert provider.calls == 0


def test_batch_at_limit_categorizes_every_item() -> None:
    provider = SpyProvider()

    results = asyncio.run(categorize_batch(provider, _items(MAX_BATCH_SIZE)))

    assert provider.calls == MAX_BATCH_SIZE
    assert {result.id for result in results} == {f"exp-{index}" for index in range(MAX_BATCH_SIZE)}


def test_empty_batch_returns_no_results() -> None:
    provider = SpyProvider()

    assert asyncio.run(categorize_batch(provider, [])) == []
    assert provider.calls == 0


def test_failed_items_are_dropped_without_failing_the_batch() -> None:
    provider = SpyProvider()
    items = [
        BatchItem(id="ok-1", description="Crew wage"),
        BatchItem(id="boom", description="explode please"),
        BatchItem(id="blank", description="   "),
        BatchItem(id="ok-2", description="Site worker"),
    ]

    results = asyncio.run(categorize_batch(provider, items))

    assert sorted(result.id for result in results) == ["ok-1", "ok-2"]
    # The blank item fails validation before reaching the provider.
    assert provider.calls == 3


def test_concurrency_cap_still_processes_all_items() -> None:
    provider = DeterministicCategorizationProvider()
    items = [
        BatchItem(id="a", description="Purchased lumber from Home Depot"),
        BatchItem(id="b", description="Equipment rental"),
        BatchItem(id="c", description="Permit fee"),
    ]

    results = asyncio.run(categorize_batch(provider, items, max_concurrency=1))
    by_id = {result.id: result.suggestion for result in results}

    assert by_id["a"].category is ExpenseCategory.MATERIALS
    assert by_id["b"].category is ExpenseCategory.EQUIPMENT
    assert by_id["c"].category is ExpenseCategory.OTHER
    assert by_id["c"].confidence == 0.3


def test_collect_successes_keeps_only_results() -> None:
    items = [BatchItem(id="a", description="x"), BatchItem(id="b", description="y")]
    suggestion = CategorySuggestion(category=ExpenseCategory.OTHER, confidence=0.3, reasoning="r")
    outcomes = [BatchResult(id="a", suggestion=suggestion), ValueError("nope")]

    assert collect_successes(items, outcomes) == [BatchResult(id="a", suggestion=suggestion)]
