"""Shared test helpers for the tier escalation test suite.

Fixtures are in conftest.py. This module contains non-fixture helpers
(record builders, scripted attempt callbacks) used across multiple test files.
"""

from typing import Optional

from models import (
    AttemptOutcome,
    TestFailure,
    TestRunSummary,
    TierAttemptRecord,
    TierRunResult,
    WorkingContext,
)


# --- Record builders ---

def make_record(
    iteration: int = 1,
    tier_name: str = "local",
    tier_index: int = 0,
    errors: Optional[list[str]] = None,
    failed_tests: Optional[list[str]] = None,
    cost: float = 0.01,
    summary: str = "",
    run_id: str = "run-1",
) -> TierAttemptRecord:
    return TierAttemptRecord(
        run_id=run_id,
        tier_index=tier_index,
        tier_name=tier_name,
        tier_mode="simple",
        model_artisan="llama3",
        iteration=iteration,
        code_change_summary=summary,
        test_status="failed",
        failed_tests=failed_tests if failed_tests is not None else ["test_parse"],
        error_messages=errors if errors is not None else ["AssertionError: expected 1"],
        cost_usd=cost,
    )


def make_result(
    tier_name: str = "local",
    tier_index: int = 0,
    records: Optional[list[TierAttemptRecord]] = None,
    exit_reason: str = "iterations_exhausted",
) -> TierRunResult:
    records = records if records is not None else [make_record(tier_name=tier_name)]
    return TierRunResult(
        tier_name=tier_name,
        tier_index=tier_index,
        success=exit_reason == "success",
        iterations_ran=len(records),
        total_cost_usd=sum(r.cost_usd for r in records),
        records=records,
        exit_reason=exit_reason,
    )


# --- Attempt callbacks ---

def failing_context(
    context: WorkingContext,
    error: str = "AssertionError: expected 1 got 0",
    test_name: str = "test_parse",
    change: str = "tweaked parser",
) -> WorkingContext:
    return context.model_copy(update={
        "last_change_summary": change,
        "test_results": TestRunSummary(
            status="fail",
            failures=[TestFailure(test_name=test_name, error_message=error)],
        ),
    })


def passing_context(context: WorkingContext, change: str = "fixed parser") -> WorkingContext:
    return context.model_copy(update={
        "last_change_summary": change,
        "test_results": TestRunSummary(status="pass"),
    })


class ScriptedAttempt:
    """Attempt callback that fails until call ``succeed_on`` (1-based), or forever.

    Records every context it was called with.
    """

    def __init__(
        self,
        succeed_on: Optional[int] = None,
        cost: float = 0.1,
        errors: Optional[list[str]] = None,
        tokens: Optional[dict[str, int]] = None,
    ) -> None:
        self.succeed_on = succeed_on
        self.cost = cost
        self.errors = errors
        self.tokens = tokens or {}
        self.calls: list[WorkingContext] = []

    def __call__(self, context: WorkingContext) -> AttemptOutcome:
        self.calls.append(context)
        n = len(self.calls)
        if self.succeed_on is not None and n >= self.succeed_on:
            return AttemptOutcome(
                context=passing_context(context), success=True,
                cost_usd=self.cost, tokens_by_agent=dict(self.tokens),
            )
        error = self.errors[(n - 1) % len(self.errors)] if self.errors else "AssertionError: expected 1 got 0"
        return AttemptOutcome(
            context=failing_context(context, error=error), success=False,
            cost_usd=self.cost, tokens_by_agent=dict(self.tokens),
        )


class FakeClock:
    """Manually advanced monotonic clock, in seconds."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_minutes(self, minutes: float) -> None:
        self.now += minutes * 60.0
