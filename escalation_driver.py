"""Run an ordered list of tiers until one makes the tests pass.

Each tier starts from the previous tier's final working context with a fresh
escalation brief of everything that failed so far. Spend is carried across
tiers so the optional run-wide ceilings hold no matter how many tiers run.
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from audit_sink import AuditSink, open_audit_sink
from budget_tracker import BudgetTracker
from config import LoopSettings, TierEscalationConfig, load_tier_config
from escalation import build_accumulated_summary, with_tier_escalation_context
from log_setup import configure_logging
from models import (
    AccumulatedFailureSummary,
    AttemptCallback,
    RunMetadataRecord,
    RunOutcome,
    TierRunResult,
    WorkingContext,
    utc_now,
)
from tier_runner import run_tier

logger = logging.getLogger(__name__)


@dataclass
class EscalationRunResult:
    run_id: str
    success: bool
    outcome: RunOutcome
    tier_results: list[TierRunResult] = field(default_factory=list)
    total_cost_usd: float = 0.0
    total_iterations: int = 0
    final_context: Optional[WorkingContext] = None
    final_summary: AccumulatedFailureSummary = field(default_factory=AccumulatedFailureSummary)
    resolved_tier_name: Optional[str] = None
    resolved_iteration: Optional[int] = None


class EscalationDriver:
    """Owns one audit sink and runs tiers in order for each ``run`` call."""

    def __init__(
        self,
        config: TierEscalationConfig,
        settings: Optional[LoopSettings] = None,
        sink: Optional[AuditSink] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.settings = settings or LoopSettings()
        self.sink = sink if sink is not None else open_audit_sink(config.global_settings.audit_db_path)
        self._clock = clock

    def _global_exhausted(self, spent_cost: float, spent_minutes: float) -> Optional[str]:
        limits = self.config.global_settings
        if limits.max_total_cost_usd is not None and spent_cost >= limits.max_total_cost_usd:
            return f"max_total_cost_usd spent (${spent_cost:.2f} / ${limits.max_total_cost_usd:.2f})"
        if (
            limits.max_total_duration_minutes is not None
            and spent_minutes >= limits.max_total_duration_minutes
        ):
            return (
                f"max_total_duration_minutes spent "
                f"({spent_minutes:.1f} / {limits.max_total_duration_minutes})"
            )
        return None

    def _tracker_for(self, tier_max_iterations: int, spent_cost: float, spent_minutes: float) -> BudgetTracker:
        limits = self.config.global_settings
        return BudgetTracker(
            max_iterations=tier_max_iterations,
            max_cost_usd=self.settings.max_cost_usd,
            max_duration_minutes=self.settings.max_duration_minutes,
            entropy_threshold=self.settings.entropy_threshold,
            context_reset_frequency=self.settings.context_reset_frequency,
            max_total_cost_usd=limits.max_total_cost_usd,
            max_total_duration_minutes=limits.max_total_duration_minutes,
            carried_cost_usd=spent_cost,
            carried_minutes=spent_minutes,
            clock=self._clock,
        )

    def _write_metadata(self, metadata: RunMetadataRecord) -> bool:
        try:
            written = self.sink.write_run_metadata(metadata)
        except Exception as e:
            logger.warning("[audit] failed to write run metadata for %s: %s, continuing", metadata.run_id, e)
            return False
        if written is False:
            logger.warning(
                "[audit] run metadata for %s was not stored (run id reused?); "
                "its completion will not be recorded",
                metadata.run_id,
            )
            return False
        return True

    def _complete_metadata(self, run_id: str, result: EscalationRunResult) -> None:
        try:
            self.sink.update_run_metadata(
                run_id,
                completed_at=utc_now(),
                outcome=result.outcome,
                resolved_tier_name=result.resolved_tier_name,
                resolved_iteration=result.resolved_iteration,
            )
        except Exception as e:
            logger.warning("[audit] failed to complete run metadata for %s: %s, continuing", run_id, e)

    def run(
        self,
        run_id: str,
        context: WorkingContext,
        simple: AttemptCallback,
        full: Optional[AttemptCallback] = None,
        tier_config_path: str = "",
    ) -> EscalationRunResult:
        """Escalate through every configured tier, stopping at the first success."""
        metadata_stored = self._write_metadata(
            RunMetadataRecord(
                run_id=run_id,
                objective=context.objective,
                working_directory=context.working_directory,
                test_command=context.test_command,
                tier_config_path=tier_config_path,
            )
        )

        start = self._clock()
        tiers = self.config.tiers
        results: list[TierRunResult] = []
        summary = AccumulatedFailureSummary()
        outcome: RunOutcome = "failed"

        logger.info("Run %s: escalating through %d tier(s)", run_id, len(tiers))

        for index, tier in enumerate(tiers):
            spent_cost = sum(r.total_cost_usd for r in results)
            spent_minutes = (self._clock() - start) / 60.0
            exhausted = self._global_exhausted(spent_cost, spent_minutes)
            if exhausted:
                logger.warning("Run %s: stopping before tier %r, %s", run_id, tier.name, exhausted)
                outcome = "budget_exhausted"
                break

            summary = build_accumulated_summary(results)
            context = with_tier_escalation_context(context, summary)
            if summary.natural_language_summary:
                logger.info(
                    "Escalating to tier %r with %d prior iteration(s), $%.4f spent",
                    tier.name, summary.total_iterations_across_tiers,
                    summary.total_cost_usd_across_tiers,
                )

            output = run_tier(
                run_id,
                tier,
                index,
                len(tiers),
                context,
                simple,
                full,
                sink=self.sink,
                settings=self.settings,
                tracker=self._tracker_for(tier.max_iterations, spent_cost, spent_minutes),
            )
            results.append(output.result)
            context = output.final_context

            if output.result.success:
                outcome = "success"
                break
            # Ran out of run-wide budget mid-tier; later tiers would stop immediately.
            if output.result.exit_reason == "budget_exhausted" and self._global_exhausted(
                sum(r.total_cost_usd for r in results), (self._clock() - start) / 60.0
            ):
                outcome = "budget_exhausted"
                break

        winner = results[-1] if results and results[-1].success else None
        result = EscalationRunResult(
            run_id=run_id,
            success=winner is not None,
            outcome=outcome,
            tier_results=results,
            total_cost_usd=sum(r.total_cost_usd for r in results),
            total_iterations=sum(r.iterations_ran for r in results),
            final_context=context,
            final_summary=summary if winner else build_accumulated_summary(results),
            resolved_tier_name=winner.tier_name if winner else None,
            resolved_iteration=winner.iterations_ran if winner else None,
        )
        # Never touch a row this run did not insert.
        if metadata_stored:
            self._complete_metadata(run_id, result)

        logger.info(
            "Run %s finished: %s after %d tier(s), %d iteration(s), $%.4f",
            run_id, outcome, len(results), result.total_iterations, result.total_cost_usd,
        )
        return result

    def close(self) -> None:
        self.sink.close()


def main(argv: Optional[list[str]] = None) -> int:
    """Validate a tier config file and print the tier plan."""
    parser = argparse.ArgumentParser(description="Check a tier escalation config")
    parser.add_argument("config", help="Path to the tier config JSON file")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--json-log", action="store_true", help="Output structured JSON logs")
    args = parser.parse_args(argv)

    configure_logging(args.verbose, args.json_log, LoopSettings().log_redact_patterns)

    loaded = load_tier_config(args.config)
    if not loaded.success:
        logger.error("Config error [%s]: %s", loaded.error_code, loaded.error)
        return 1

    config = loaded.data
    for position, tier in enumerate(config.tiers, start=1):
        roles = ", ".join(f"{role}={model}" for role, model in tier.models.by_role().items())
        print(f"{position}. {tier.name} ({tier.mode}, {tier.max_iterations} iterations): {roles}")
    limits = config.global_settings
    if limits.max_total_cost_usd is not None:
        print(f"Run cost ceiling: ${limits.max_total_cost_usd:.2f}")
    if limits.max_total_duration_minutes is not None:
        print(f"Run duration ceiling: {limits.max_total_duration_minutes} min")
    return 0


if __name__ == "__main__":
    sys.exit(main())
