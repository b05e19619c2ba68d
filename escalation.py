"""Escalation brief: prior tiers' failures compressed for the next tier."""

from __future__ import annotations

from models import AccumulatedFailureSummary, TierRunResult, WorkingContext

MAX_SUMMARY_CHARS = 4000
TRUNCATION_MARKER = "\n[prior tier history truncated for context efficiency]"
MAX_LISTED_ERRORS = 5


def _dedupe(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


def _tier_block(result: TierRunResult, position: int) -> str:
    plural = "" if result.iterations_ran == 1 else "s"
    lines = [
        f"=== TIER {position} FAILURES: {result.tier_name} "
        f"({result.iterations_ran} iteration{plural}) ===",
        "",
    ]
    for record in result.records:
        errors = "; ".join(record.error_messages[:2]) or "no error captured"
        change = record.code_change_summary or "code modified"
        lines.append(f"Iteration {record.iteration}: {change}. Tests: {errors}")

    if result.exit_reason == "provider_error" and result.provider_error_message:
        lines.append(f"Stopped by provider error: {result.provider_error_message}")

    tier_errors = _dedupe([e for r in result.records for e in r.error_messages])
    lines.append("")
    lines.append(
        f"Unique error patterns: {' | '.join(tier_errors[:MAX_LISTED_ERRORS]) or 'none'}"
    )
    return "\n".join(lines)


def _footer(tier_count: int, iterations: int, cost: float, errors: list[str]) -> str:
    listed = " | ".join(errors[:MAX_LISTED_ERRORS]) or "none"
    more = len(errors) - MAX_LISTED_ERRORS
    if more > 0:
        listed += f" (+{more} more)"
    return (
        f"\n[total accumulated across {tier_count} tier(s): {iterations} iterations, ${cost:.4f}]"
        f"\nDistinct errors so far: {listed}"
    )


def _fit(blocks: list[str], footer: str) -> str:
    """Join blocks under the size cap, dropping the oldest first."""
    for start in range(len(blocks)):
        candidate = "\n".join(blocks[start:]) + footer
        if len(candidate) <= MAX_SUMMARY_CHARS:
            return candidate
    hard_cap = MAX_SUMMARY_CHARS - len(TRUNCATION_MARKER)
    return blocks[-1][:hard_cap] + TRUNCATION_MARKER


def build_accumulated_summary(prior_results: list[TierRunResult]) -> AccumulatedFailureSummary:
    """Summarize every exhausted tier so far.

    The rendered brief is capped at ``MAX_SUMMARY_CHARS``; when it is too long
    the oldest tiers go first since the most recent detail matters most to
    the next tier. The structured fields always cover every prior tier.
    ``last_failed_tests`` is the current state only: the final attempt of the
    most recent tier, not a union.
    """
    if not prior_results:
        return AccumulatedFailureSummary()

    total_iterations = sum(r.iterations_ran for r in prior_results)
    total_cost = sum(r.total_cost_usd for r in prior_results)
    unique_errors = _dedupe(
        [e for r in prior_results for rec in r.records for e in rec.error_messages]
    )
    last_records = prior_results[-1].records
    last_failed_tests = list(last_records[-1].failed_tests) if last_records else []

    blocks = [_tier_block(r, i) for i, r in enumerate(prior_results, start=1)]
    footer = _footer(len(prior_results), total_iterations, total_cost, unique_errors)

    return AccumulatedFailureSummary(
        natural_language_summary=_fit(blocks, footer),
        total_iterations_across_tiers=total_iterations,
        total_cost_usd_across_tiers=total_cost,
        all_unique_error_signatures=unique_errors,
        last_failed_tests=last_failed_tests,
    )


def with_tier_escalation_context(
    context: WorkingContext, summary: AccumulatedFailureSummary
) -> WorkingContext:
    """Attach the brief to a copy of ``context``; return ``context`` itself if there is none."""
    if not summary.natural_language_summary:
        return context
    return context.model_copy(update={"escalation_context": summary.natural_language_summary})
