"""Per-agent context window accounting.

Tracks cumulative tokens for each registered agent against its model's
context window. Past 40% of the window output quality degrades, so crossing
that boundary flags a required reset even when the fixed reset-every-N
policy would not.
"""

from __future__ import annotations

import logging
from typing import Optional

from models import ContextUsageRecord, ThresholdCrossing
from notifications import NotificationLog

logger = logging.getLogger(__name__)

SAFE_THRESHOLD = 0.3
WARNING_THRESHOLD = 0.4
CRITICAL_THRESHOLD = 0.5

FALLBACK_CONTEXT_WINDOW = 8_000

DEFAULT_CONTEXT_LIMITS: dict[str, int] = {
    "claude-opus-4": 200_000,
    "claude-sonnet-4.5": 200_000,
    "claude-haiku-4": 200_000,
    "gemini-2.0-pro": 1_000_000,
    "gemini-1.5-pro": 1_000_000,
    "gemini-1.5-flash": 1_000_000,
    "gpt-4": 128_000,
    "gpt-4-turbo": 128_000,
    "gpt-4.1-mini": 128_000,
    "o1-preview": 128_000,
    "llama3": 8_000,
    "mistral": 8_000,
}

# (level, lower bound), lowest first
_LEVELS = (
    ("info", SAFE_THRESHOLD),
    ("warning", WARNING_THRESHOLD),
    ("critical", CRITICAL_THRESHOLD),
)

_MESSAGES = {
    "info": "INFO: {agent} at {pct:.1f}% context usage, approaching the 40% boundary",
    "warning": "WARNING: {agent} at {pct:.1f}% context usage, reset required",
    "critical": "CRITICAL: {agent} at {pct:.1f}% context usage, output quality degraded",
}


class UnregisteredAgentError(KeyError):
    """Tokens reported for an agent that was never registered."""


def _level_rank(fraction: float) -> int:
    """0 below the safe threshold, then 1..3 for info/warning/critical."""
    rank = 0
    for i, (_, bound) in enumerate(_LEVELS, start=1):
        if fraction >= bound:
            rank = i
    return rank


class ContextMonitor:
    def __init__(self, context_limits: Optional[dict[str, int]] = None) -> None:
        self.context_limits = {**DEFAULT_CONTEXT_LIMITS, **(context_limits or {})}
        self._agent_models: dict[str, str] = {}
        self._token_counts: dict[str, int] = {}
        self._reported_rank: dict[str, int] = {}
        self.notifications = NotificationLog("context")

    def register_agent(self, agent: str, model: str) -> None:
        self._agent_models[agent] = model
        if model not in self.context_limits:
            logger.warning(
                "Unknown model %r for agent %r, assuming a %d token context window",
                model, agent, FALLBACK_CONTEXT_WINDOW,
            )
            self.context_limits[model] = FALLBACK_CONTEXT_WINDOW

    def track_tokens(self, agent: str, tokens: int) -> Optional[ThresholdCrossing]:
        """Add tokens for ``agent``.

        Returns the highest newly crossed boundary, or None when no new boundary
        was crossed. Every boundary crossed by this call is published once.
        """
        model = self._agent_models.get(agent)
        if model is None:
            raise UnregisteredAgentError(
                f"Agent {agent!r} not registered. Call register_agent() first."
            )

        total = self._token_counts.get(agent, 0) + tokens
        self._token_counts[agent] = total
        limit = self.context_limits[model]
        fraction = total / limit

        self.notifications.publish(
            "usage-update", agent=agent, model=model, tokens=total, fraction=fraction
        )

        rank = _level_rank(fraction)
        previous = self._reported_rank.get(agent, 0)
        if rank <= previous:
            return None
        self._reported_rank[agent] = rank

        # One notification per boundary crossed, lowest first.
        crossing = None
        for crossed in range(previous + 1, rank + 1):
            level = _LEVELS[crossed - 1][0]
            crossing = ThresholdCrossing(
                agent=agent,
                model=model,
                usage=total,
                limit=limit,
                fraction=fraction,
                level=level,
                message=_MESSAGES[level].format(agent=agent, pct=fraction * 100),
            )
            log = logger.info if level == "info" else logger.warning
            log(crossing.message)
            self.notifications.publish(f"threshold-{level}", **crossing.model_dump())
        return crossing

    def get_usage(self, agent: str) -> Optional[ContextUsageRecord]:
        model = self._agent_models.get(agent)
        if model is None:
            return None
        tokens = self._token_counts.get(agent, 0)
        limit = self.context_limits[model]
        return ContextUsageRecord(
            agent=agent, model=model, context_window=limit, tokens=tokens, fraction=tokens / limit
        )

    def get_all_usage(self) -> list[ContextUsageRecord]:
        return [self.get_usage(agent) for agent in self._agent_models]

    def should_reset_context(self) -> bool:
        """True iff any agent is at or past the 40% boundary."""
        for agent, tokens in self._token_counts.items():
            limit = self.context_limits[self._agent_models[agent]]
            if tokens / limit >= WARNING_THRESHOLD:
                return True
        return False

    def reset(self) -> None:
        """Zero every agent's total. Registrations are kept."""
        self._token_counts.clear()
        self._reported_rank.clear()
        self.notifications.publish("reset")

    def get_summary(self) -> dict:
        total_tokens = 0
        max_fraction = 0.0
        max_agent: Optional[str] = None
        for agent, tokens in self._token_counts.items():
            total_tokens += tokens
            fraction = tokens / self.context_limits[self._agent_models[agent]]
            if fraction > max_fraction:
                max_fraction = fraction
                max_agent = agent

        return {
            "agents": len(self._agent_models),
            "total_tokens": total_tokens,
            "max_usage_fraction": max_fraction,
            "max_usage_agent": max_agent,
            "reset_required": max_fraction >= WARNING_THRESHOLD,
        }
