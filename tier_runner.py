"""Bounded retry loop for a single escalation tier.

Runs the tier's attempt callback until tests pass, the tier's iteration
ceiling is used up, the budget runs out, or the callback raises. Each attempt
is recorded to the audit sink; each stop carries a named reason.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Optional

from audit_sink import AuditSink
from budget_tracker import (
    BudgetTracker,
    budget_warnings,
    format_budget_status,
    format_entropy_report,
    predict_overrun,
)
from config import LoopSettings, TierConfig
from context_monitor import ContextMonitor
from models import (
    AttemptCallback,
    AttemptOutcome,
    BudgetSnapshot,
    StopReason,
    TestStatus,
    TierAttemptRecord,
    TierRunResult,
    WorkingContext,
)
from session_reset import SessionResetCoordinator

logger = logging.getLogger(__name__)


@dataclass
class TierRunOutput:
    result: TierRunResult
    final_context: WorkingContext


def _select_callback(
    tier: TierConfig, simple: AttemptCallback, full: Optional[AttemptCallback]
) -> AttemptCallback:
    if tier.mode == "full" and full is not None:
        return full
    if tier.mode == "full":
        logger.warning("Tier %r is in full mode but no full callback was given, using simple", tier.name)
    return simple


def _test_status(outcome: AttemptOutcome) -> TestStatus:
    if outcome.success:
        return "passed"
    results = outcome.context.test_results
    if results is not None and results.status == "error":
        return "error"
    return "failed"


def _persist(sink: Optional[AuditSink], record: TierAttemptRecord) -> None:
    if sink is None:
        return
    try:
        sink.write_attempt_record(record)
    except Exception as e:
        logger.warning(
            "[audit] failed to persist attempt %d of tier %r: %s, continuing",
            record.iteration, record.tier_name, e,
        )


def _register_cleanups(coordinator: SessionResetCoordinator, outcome: AttemptOutcome) -> None:
    for agent, cleanup in outcome.agent_cleanups.items():
        coordinator.register_agent_cleanup(agent, cleanup)
    for cleanup in outcome.connection_cleanups:
        coordinator.register_connection_cleanup(cleanup)


def _log_budget_outlook(tracker: BudgetTracker, budget: BudgetSnapshot) -> None:
    for warning in budget_warnings(budget):
        logger.warning("Budget warning: %s", warning)
    completed = budget.current_iteration
    if completed == 0:
        return
    will_overrun, reason = predict_overrun(
        budget,
        tracker.total_cost_usd / completed,
        budget.elapsed_minutes / completed,
    )
    if will_overrun:
        logger.warning("Budget forecast: %s", reason)


def _track_tokens(monitor: ContextMonitor, outcome: AttemptOutcome) -> None:
    for agent, tokens in outcome.tokens_by_agent.items():
        if monitor.get_usage(agent) is None:
            logger.warning("Tokens reported for unconfigured agent %r, ignoring", agent)
            continue
        monitor.track_tokens(agent, tokens)


def run_tier(
    run_id: str,
    tier: TierConfig,
    tier_index: int,
    total_tiers: int,
    context: WorkingContext,
    simple: AttemptCallback,
    full: Optional[AttemptCallback] = None,
    sink: Optional[AuditSink] = None,
    settings: Optional[LoopSettings] = None,
    tracker: Optional[BudgetTracker] = None,
    monitor: Optional[ContextMonitor] = None,
    coordinator: Optional[SessionResetCoordinator] = None,
) -> TierRunOutput:
    """Run one tier's iteration loop and return its terminal result.

    ``tracker``, ``monitor`` and ``coordinator`` are created fresh when not
    given; whichever are passed must not be shared with another tier.
    """
    settings = settings or LoopSettings()
    tracker = tracker or BudgetTracker(
        max_iterations=tier.max_iterations,
        max_cost_usd=settings.max_cost_usd,
        max_duration_minutes=settings.max_duration_minutes,
        entropy_threshold=settings.entropy_threshold,
        context_reset_frequency=settings.context_reset_frequency,
    )
    monitor = monitor or ContextMonitor()
    coordinator = coordinator or SessionResetCoordinator(session_id=f"{run_id}:{tier.name}")

    for role, model in tier.models.by_role().items():
        monitor.register_agent(role, model)

    attempt = _select_callback(tier, simple, full)
    models = tier.models

    records: list[TierAttemptRecord] = []
    exit_reason: StopReason = "iterations_exhausted"
    entropy_detected = False
    provider_error: Optional[str] = None
    previous_failed: Optional[list[str]] = None

    logger.info(
        "Starting tier %d/%d: %r (mode=%s, max_iterations=%d)",
        tier_index + 1, total_tiers, tier.name, tier.mode, tier.max_iterations,
    )

    for iteration in range(1, tier.max_iterations + 1):
        budget = tracker.check_budget()
        if not budget.within_budget:
            logger.warning(
                "Budget exhausted before iteration %d of tier %r: %s",
                iteration, tier.name, budget.reason,
            )
            logger.info("%s", format_budget_status(budget))
            exit_reason = "budget_exhausted"
            break

        tracker.increment_iteration()
        logger.info("=" * 60)
        logger.info("TIER %r ITERATION %d / %d", tier.name, iteration, tier.max_iterations)
        logger.info("=" * 60)
        _log_budget_outlook(tracker, budget)

        start = time.monotonic()
        try:
            outcome = attempt(context)
        except Exception as e:
            logger.error(
                "Provider error on tier %r iteration %d: %s", tier.name, iteration, e
            )
            coordinator.emergency_reset()
            exit_reason = "provider_error"
            provider_error = str(e)
            break
        duration_ms = int((time.monotonic() - start) * 1000)

        context = outcome.context
        tracker.record_cost(outcome.cost_usd)
        _track_tokens(monitor, outcome)
        _register_cleanups(coordinator, outcome)

        results = context.test_results
        failed_tests = results.failed_tests if results else []
        error_messages = results.error_messages if results else []

        record = TierAttemptRecord(
            run_id=run_id,
            tier_index=tier_index,
            tier_name=tier.name,
            tier_mode=tier.mode,
            model_artisan=models.artisan,
            model_librarian=models.librarian,
            model_critic=models.critic,
            iteration=iteration,
            code_change_summary=context.last_change_summary,
            test_status=_test_status(outcome),
            failed_tests=failed_tests,
            error_messages=error_messages,
            cost_usd=outcome.cost_usd,
            duration_ms=duration_ms,
        )
        records.append(record)
        _persist(sink, record)

        if outcome.success:
            logger.info("Tier %r succeeded on iteration %d", tier.name, iteration)
            exit_reason = "success"
            break

        if previous_failed is not None and failed_tests and set(failed_tests) != set(previous_failed):
            tracker.reset_entropy()
        previous_failed = failed_tests
        if error_messages and tracker.track_error(error_messages[0]):
            entropy_detected = True
            logger.warning("%s", format_entropy_report(tracker))

        if tracker.should_reset_context() or monitor.should_reset_context():
            coordinator.reset(iteration)
            monitor.reset()

    # Release whatever the last attempt left registered.
    if exit_reason != "provider_error" and any(coordinator.get_stats().values()):
        coordinator.reset(tracker.current_iteration)
        monitor.reset()

    result = TierRunResult(
        tier_name=tier.name,
        tier_index=tier_index,
        success=exit_reason == "success",
        iterations_ran=len(records),
        total_cost_usd=tracker.total_cost_usd,
        records=records,
        exit_reason=exit_reason,
        entropy_detected=entropy_detected,
        provider_error_message=provider_error,
    )
    logger.info(
        "Tier %r finished: %s after %d iteration(s), $%.4f",
        tier.name, exit_reason, result.iterations_ran, result.total_cost_usd,
    )
    return TierRunOutput(result=result, final_context=context)
