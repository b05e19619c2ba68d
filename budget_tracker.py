"""Cost, time and iteration bookkeeping plus the repeating-error circuit breaker."""

from __future__ import annotations

import logging
import re
import time
from typing import Callable, Optional

from models import BudgetSnapshot
from notifications import NotificationLog

logger = logging.getLogger(__name__)

DEFAULT_ENTROPY_THRESHOLD = 3
BUDGET_WARNING_FRACTION = 0.8

_LINE_COL_RE = re.compile(r":\d+:\d+")
_NUMBER_RE = re.compile(r"\d+")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_error_signature(message: str) -> str:
    """Reduce an error message to its shape so re-renderings of one bug match."""
    text = _LINE_COL_RE.sub(":X:X", message)
    text = _NUMBER_RE.sub("N", text)
    text = _WHITESPACE_RE.sub(" ", text)
    return text.strip().lower()


class BudgetTracker:
    """Tier-scoped running totals and entropy state.

    The iteration ceiling is reported but not enforced by ``check_budget``;
    the tier loop bounds iterations itself. ``max_cost_usd`` and
    ``max_duration_minutes`` bound this tier alone. The optional
    ``max_total_*`` ceilings bound the whole run: spend from earlier tiers
    arrives as ``carried_cost_usd`` / ``carried_minutes`` and is counted
    against them only, never mixed into ``total_cost_usd``.
    """

    def __init__(
        self,
        max_iterations: int,
        max_cost_usd: float,
        max_duration_minutes: float,
        entropy_threshold: int = DEFAULT_ENTROPY_THRESHOLD,
        context_reset_frequency: int = 1,
        max_total_cost_usd: Optional[float] = None,
        max_total_duration_minutes: Optional[float] = None,
        carried_cost_usd: float = 0.0,
        carried_minutes: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_iterations = max_iterations
        self.max_cost_usd = max_cost_usd
        self.max_duration_minutes = max_duration_minutes
        self.entropy_threshold = entropy_threshold
        self.context_reset_frequency = max(1, context_reset_frequency)
        self.max_total_cost_usd = max_total_cost_usd
        self.max_total_duration_minutes = max_total_duration_minutes
        self.carried_cost_usd = carried_cost_usd
        self.carried_minutes = carried_minutes
        self._clock = clock
        self._start = clock()

        self.current_iteration = 0
        self.total_cost_usd = 0.0
        self.last_error_signature: Optional[str] = None
        self.consecutive_error_count = 0

        self.notifications = NotificationLog("budget")

    def elapsed_minutes(self) -> float:
        return (self._clock() - self._start) / 60.0

    def _exceeded(self, elapsed: float) -> Optional[str]:
        if self.total_cost_usd >= self.max_cost_usd:
            return f"max_cost_usd exceeded (${self.total_cost_usd:.2f} / ${self.max_cost_usd:.2f})"
        if elapsed >= self.max_duration_minutes:
            return f"max_duration_minutes exceeded ({elapsed:.1f} / {self.max_duration_minutes})"

        run_cost = self.carried_cost_usd + self.total_cost_usd
        if self.max_total_cost_usd is not None and run_cost >= self.max_total_cost_usd:
            return f"max_total_cost_usd exceeded (${run_cost:.2f} / ${self.max_total_cost_usd:.2f})"
        run_minutes = self.carried_minutes + elapsed
        if (
            self.max_total_duration_minutes is not None
            and run_minutes >= self.max_total_duration_minutes
        ):
            return (
                f"max_total_duration_minutes exceeded "
                f"({run_minutes:.1f} / {self.max_total_duration_minutes})"
            )
        return None

    def check_budget(self) -> BudgetSnapshot:
        elapsed = self.elapsed_minutes()
        reason = self._exceeded(elapsed)
        return BudgetSnapshot(
            current_iteration=self.current_iteration,
            total_cost_usd=self.total_cost_usd,
            elapsed_minutes=elapsed,
            max_iterations=self.max_iterations,
            max_cost_usd=self.max_cost_usd,
            max_duration_minutes=self.max_duration_minutes,
            max_total_cost_usd=self.max_total_cost_usd,
            max_total_duration_minutes=self.max_total_duration_minutes,
            carried_cost_usd=self.carried_cost_usd,
            carried_minutes=self.carried_minutes,
            within_budget=reason is None,
            reason=reason,
        )

    def record_cost(self, amount: float) -> None:
        """Add spend; the notification reports the tighter of tier and run headroom."""
        self.total_cost_usd += amount
        self.notifications.publish(
            "cost-update",
            iteration_cost=amount,
            total_cost=self.total_cost_usd,
            remaining=estimate_remaining(self.check_budget())["remaining_cost_usd"],
        )

    def increment_iteration(self) -> int:
        self.current_iteration += 1
        self.notifications.publish(
            "iteration-start",
            iteration=self.current_iteration,
            max_iterations=self.max_iterations,
        )
        return self.current_iteration

    def track_error(self, signature: str) -> bool:
        """Record a failure signature. Returns True once it has repeated ``entropy_threshold`` times in a row."""
        normalized = normalize_error_signature(signature)
        if normalized == self.last_error_signature:
            self.consecutive_error_count += 1
        else:
            self.last_error_signature = normalized
            self.consecutive_error_count = 1

        if self.consecutive_error_count < self.entropy_threshold:
            return False

        logger.warning(
            "Entropy detected: same error %d times in a row (threshold %d): %s",
            self.consecutive_error_count, self.entropy_threshold, normalized[:200],
        )
        self.notifications.publish(
            "entropy-detected",
            error_signature=normalized,
            count=self.consecutive_error_count,
            threshold=self.entropy_threshold,
        )
        return True

    def reset_entropy(self) -> None:
        """Forget the remembered signature. Call only when test output really changed."""
        self.last_error_signature = None
        self.consecutive_error_count = 0

    def should_reset_context(self) -> bool:
        """True every ``context_reset_frequency`` iterations."""
        return (
            self.current_iteration > 0
            and self.current_iteration % self.context_reset_frequency == 0
        )

    def get_stats(self) -> dict:
        return {
            "iteration": self.current_iteration,
            "total_cost_usd": self.total_cost_usd,
            "elapsed_minutes": self.elapsed_minutes(),
            "average_cost_per_iteration": (
                self.total_cost_usd / self.current_iteration if self.current_iteration else 0.0
            ),
        }


def calculate_utilization(snapshot: BudgetSnapshot) -> dict[str, float]:
    """Percent of each tier ceiling used; ``overall`` is the highest of the three."""
    iterations = snapshot.current_iteration / snapshot.max_iterations * 100
    cost = snapshot.total_cost_usd / snapshot.max_cost_usd * 100
    duration = snapshot.elapsed_minutes / snapshot.max_duration_minutes * 100
    return {
        "iterations": iterations,
        "cost": cost,
        "duration": duration,
        "overall": max(iterations, cost, duration),
    }


def estimate_remaining(snapshot: BudgetSnapshot) -> dict:
    remaining_iterations = snapshot.max_iterations - snapshot.current_iteration
    remaining_cost = snapshot.max_cost_usd - snapshot.total_cost_usd
    remaining_minutes = snapshot.max_duration_minutes - snapshot.elapsed_minutes
    if snapshot.max_total_cost_usd is not None:
        remaining_cost = min(
            remaining_cost,
            snapshot.max_total_cost_usd - snapshot.carried_cost_usd - snapshot.total_cost_usd,
        )
    if snapshot.max_total_duration_minutes is not None:
        remaining_minutes = min(
            remaining_minutes,
            snapshot.max_total_duration_minutes - snapshot.carried_minutes - snapshot.elapsed_minutes,
        )
    return {
        "remaining_iterations": max(0, remaining_iterations),
        "remaining_cost_usd": max(0.0, remaining_cost),
        "remaining_minutes": max(0.0, remaining_minutes),
        "can_continue": remaining_iterations > 0 and remaining_cost > 0 and remaining_minutes > 0,
    }


def predict_overrun(
    snapshot: BudgetSnapshot,
    average_iteration_cost: float,
    average_iteration_minutes: float,
) -> tuple[bool, Optional[str]]:
    """Would one more average iteration break a ceiling? Returns (will_overrun, reason)."""
    next_iteration = snapshot.current_iteration + 1
    if next_iteration > snapshot.max_iterations:
        return True, (
            f"Next iteration would exceed max iterations "
            f"({next_iteration} > {snapshot.max_iterations})"
        )

    remaining = estimate_remaining(snapshot)
    if average_iteration_cost > remaining["remaining_cost_usd"]:
        return True, (
            f"Next iteration would exceed the cost ceiling "
            f"(${average_iteration_cost:.2f} > ${remaining['remaining_cost_usd']:.2f} left)"
        )
    if average_iteration_minutes > remaining["remaining_minutes"]:
        return True, (
            f"Next iteration would exceed the duration ceiling "
            f"({average_iteration_minutes:.1f} > {remaining['remaining_minutes']:.1f} min left)"
        )

    return False, None


def budget_warnings(snapshot: BudgetSnapshot) -> list[str]:
    """Tier ceilings at or past 80% utilization, one line each."""
    utilization = calculate_utilization(snapshot)
    threshold = BUDGET_WARNING_FRACTION * 100
    warnings = []
    if utilization["iterations"] >= threshold:
        warnings.append(
            f"Iterations: {utilization['iterations']:.0f}% used "
            f"({snapshot.current_iteration}/{snapshot.max_iterations})"
        )
    if utilization["cost"] >= threshold:
        warnings.append(
            f"Cost: {utilization['cost']:.0f}% used "
            f"(${snapshot.total_cost_usd:.2f}/${snapshot.max_cost_usd:.2f})"
        )
    if utilization["duration"] >= threshold:
        warnings.append(
            f"Duration: {utilization['duration']:.0f}% used "
            f"({snapshot.elapsed_minutes:.1f}/{snapshot.max_duration_minutes} min)"
        )
    return warnings


def format_budget_status(snapshot: BudgetSnapshot) -> str:
    utilization = calculate_utilization(snapshot)
    remaining = estimate_remaining(snapshot)

    lines = [
        "Budget Status:",
        f"Iterations: {snapshot.current_iteration}/{snapshot.max_iterations} "
        f"({utilization['iterations']:.0f}%), remaining {remaining['remaining_iterations']}",
        f"Cost: ${snapshot.total_cost_usd:.2f}/${snapshot.max_cost_usd:.2f} "
        f"({utilization['cost']:.0f}%), remaining ${remaining['remaining_cost_usd']:.2f}",
        f"Duration: {snapshot.elapsed_minutes:.1f}/{snapshot.max_duration_minutes} min "
        f"({utilization['duration']:.0f}%), remaining {remaining['remaining_minutes']:.1f} min",
        f"Overall utilization: {utilization['overall']:.0f}%",
    ]
    if snapshot.max_total_cost_usd is not None:
        lines.append(
            f"Run cost: ${snapshot.carried_cost_usd + snapshot.total_cost_usd:.2f}"
            f"/${snapshot.max_total_cost_usd:.2f}"
        )
    if not snapshot.within_budget:
        lines.append(f"Reason: {snapshot.reason}")
    return "\n".join(lines)


def format_entropy_report(tracker: BudgetTracker) -> str:
    """Human-readable circuit breaker state for logs."""
    count = tracker.consecutive_error_count
    threshold = tracker.entropy_threshold
    if count < threshold:
        return f"Error tracked: {count}/{threshold}"
    return (
        f"CIRCUIT BREAKER TRIGGERED: identical error {count} times (threshold {threshold})\n"
        f"Signature: {tracker.last_error_signature}"
    )
