"""Shared record types for the tier escalation loop.

Everything that crosses a module boundary or lands in the audit sink lives
here. Records are pydantic models so they serialize the same way to SQLite,
JSONL and logs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from config import TierMode

StopReason = Literal["success", "iterations_exhausted", "budget_exhausted", "provider_error"]
TestStatus = Literal["passed", "failed", "error"]
RunOutcome = Literal["success", "failed", "budget_exhausted", "in_progress"]
ThresholdLevel = Literal["info", "warning", "critical"]


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class TestFailure(BaseModel):
    """One failing test as reported by the test runner."""

    __test__ = False

    test_name: str
    error_message: str = ""
    error_type: str = ""


class TestRunSummary(BaseModel):
    """Pass/fail plus failing names and error text from one test run."""

    __test__ = False

    status: Literal["pass", "fail", "error", "timeout"] = "fail"
    failures: list[TestFailure] = Field(default_factory=list)

    @property
    def failed_tests(self) -> list[str]:
        return [f.test_name for f in self.failures]

    @property
    def error_messages(self) -> list[str]:
        return [f.error_message for f in self.failures if f.error_message]


class WorkingContext(BaseModel):
    """State handed to each attempt and returned, updated, by it."""

    objective: str
    working_directory: str
    test_command: str
    escalation_context: Optional[str] = None
    last_change_summary: str = ""
    test_results: Optional[TestRunSummary] = None
    artifacts: dict[str, str] = Field(default_factory=dict)


@dataclass
class AttemptOutcome:
    """What an attempt callback returns.

    ``tokens_by_agent`` feeds the context monitor. ``agent_cleanups`` and
    ``connection_cleanups`` are registered with the session reset coordinator
    after the attempt and released on the next reset.
    """

    context: WorkingContext
    success: bool
    cost_usd: float = 0.0
    tokens_by_agent: dict[str, int] = field(default_factory=dict)
    agent_cleanups: dict[str, Callable[[], None]] = field(default_factory=dict)
    connection_cleanups: list[Callable[[], None]] = field(default_factory=list)


AttemptCallback = Callable[[WorkingContext], AttemptOutcome]


class BudgetSnapshot(BaseModel):
    """Point-in-time view of a tracker's running totals and ceilings."""

    current_iteration: int
    total_cost_usd: float
    elapsed_minutes: float
    max_iterations: int
    max_cost_usd: float
    max_duration_minutes: float
    max_total_cost_usd: Optional[float] = None
    max_total_duration_minutes: Optional[float] = None
    carried_cost_usd: float = 0.0
    carried_minutes: float = 0.0
    within_budget: bool = True
    reason: Optional[str] = None


class ContextUsageRecord(BaseModel):
    agent: str
    model: str
    context_window: int
    tokens: int = 0
    fraction: float = 0.0


class ThresholdCrossing(BaseModel):
    """Payload for the call that pushes an agent across a usage boundary."""

    agent: str
    model: str
    usage: int
    limit: int
    fraction: float
    level: ThresholdLevel
    message: str


class ResetStats(BaseModel):
    timestamp: str = Field(default_factory=utc_now)
    iteration: int
    connections_closed: int = 0
    agents_reset: int = 0
    memory_freed_bytes: int = 0
    duration_ms: int = 0


class TierAttemptRecord(BaseModel):
    """One row per attempt. Append-only."""

    model_config = ConfigDict(protected_namespaces=())

    run_id: str
    tier_index: int
    tier_name: str
    tier_mode: TierMode
    model_artisan: str
    model_librarian: Optional[str] = None
    model_critic: Optional[str] = None
    iteration: int
    code_change_summary: str = ""
    test_status: TestStatus
    failed_tests: list[str] = Field(default_factory=list)
    error_messages: list[str] = Field(default_factory=list)
    cost_usd: float = 0.0
    duration_ms: int = 0
    timestamp: str = Field(default_factory=utc_now)


class TierRunResult(BaseModel):
    """Terminal summary of one tier."""

    tier_name: str
    tier_index: int
    success: bool
    iterations_ran: int
    total_cost_usd: float
    records: list[TierAttemptRecord] = Field(default_factory=list)
    exit_reason: StopReason
    entropy_detected: bool = False
    provider_error_message: Optional[str] = None


class AccumulatedFailureSummary(BaseModel):
    """Compressed brief of every prior tier's failures."""

    natural_language_summary: str = ""
    total_iterations_across_tiers: int = 0
    total_cost_usd_across_tiers: float = 0.0
    all_unique_error_signatures: list[str] = Field(default_factory=list)
    last_failed_tests: list[str] = Field(default_factory=list)


class RunMetadataRecord(BaseModel):
    """One row per run. Completion fields are filled in exactly once."""

    run_id: str
    objective: str
    working_directory: str
    test_command: str
    tier_config_path: str = ""
    started_at: str = Field(default_factory=utc_now)
    completed_at: Optional[str] = None
    outcome: RunOutcome = "in_progress"
    resolved_tier_name: Optional[str] = None
    resolved_iteration: Optional[int] = None
