"""Release of per-iteration agent sessions and model connections.

Attempts register the resources they hold (agent sessions, client
connections) once per iteration. ``reset`` releases all of them, forgets every
registration and asks the garbage collector for a pass, so the next iteration
starts from a clean slate and must register again.
"""

from __future__ import annotations

import gc
import logging
import time
import tracemalloc
from typing import Any, Callable

from models import ResetStats
from notifications import NotificationLog

logger = logging.getLogger(__name__)

Cleanup = Callable[[], None]


def _traced_bytes() -> int:
    if not tracemalloc.is_tracing():
        return 0
    current, _peak = tracemalloc.get_traced_memory()
    return current


def format_bytes(n: int) -> str:
    if n < 1024:
        return f"{n}B"
    if n < 1024 * 1024:
        return f"{n / 1024:.1f}KB"
    return f"{n / (1024 * 1024):.1f}MB"


class SessionResetCoordinator:
    """Owns the cleanup registrations of one tier run."""

    def __init__(self, session_id: str = "") -> None:
        self.session_id = session_id
        self._agent_cleanups: dict[str, Cleanup] = {}
        self._connection_cleanups: list[Cleanup] = []
        self.notifications = NotificationLog("session")

    def register_agent_cleanup(self, agent: str, cleanup: Cleanup) -> None:
        if agent in self._agent_cleanups:
            logger.warning("Agent cleanup for %r already registered this iteration, replacing", agent)
        self._agent_cleanups[agent] = cleanup

    def register_connection_cleanup(self, cleanup: Cleanup) -> None:
        self._connection_cleanups.append(cleanup)

    def reset(self, iteration: int) -> ResetStats:
        """Run every cleanup, then clear all registrations.

        A failing cleanup is logged and skipped; it never stops the others
        from running, and the registry is always empty afterwards.
        """
        start = time.monotonic()
        memory_before = _traced_bytes()
        logger.debug("Resetting sessions for iteration %d", iteration)

        connections_closed = 0
        for cleanup in self._connection_cleanups:
            try:
                cleanup()
                connections_closed += 1
            except Exception as e:
                logger.warning("Connection cleanup failed: %s", e)
                self.notifications.publish("cleanup-error", type="connection", error=str(e))

        agents_reset = 0
        for agent, cleanup in self._agent_cleanups.items():
            try:
                cleanup()
                agents_reset += 1
            except Exception as e:
                logger.warning("Cleanup for agent %s failed: %s", agent, e)
                self.notifications.publish("cleanup-error", type="agent", agent=agent, error=str(e))

        self._clear()
        self._collect_garbage()

        stats = ResetStats(
            iteration=iteration,
            connections_closed=connections_closed,
            agents_reset=agents_reset,
            memory_freed_bytes=max(0, memory_before - _traced_bytes()),
            duration_ms=int((time.monotonic() - start) * 1000),
        )
        logger.info(
            "Session reset for iteration %d: %d connection(s), %d agent(s), %s freed in %dms",
            iteration, connections_closed, agents_reset,
            format_bytes(stats.memory_freed_bytes), stats.duration_ms,
        )
        self.notifications.publish("reset-complete", **stats.model_dump())
        return stats

    def verify_reset(self) -> tuple[bool, list[str]]:
        """Check that no registrations survived. Returns (verified, issues)."""
        issues = [f"agent cleanup still registered: {name}" for name in self._agent_cleanups]
        if self._connection_cleanups:
            issues.append(
                f"{len(self._connection_cleanups)} connection cleanup(s) still registered"
            )
        return not issues, issues

    def emergency_reset(self) -> None:
        """Drop every registration without running it.

        For paths where a failure is already propagating and running cleanups
        could hang or raise again.
        """
        logger.warning(
            "Emergency reset: dropping %d agent and %d connection cleanup(s) unexecuted",
            len(self._agent_cleanups), len(self._connection_cleanups),
        )
        self._clear()
        self._collect_garbage()
        self.notifications.publish("emergency-reset")

    def get_stats(self) -> dict[str, int]:
        return {
            "agent_cleanups_registered": len(self._agent_cleanups),
            "connection_cleanups_registered": len(self._connection_cleanups),
        }

    def _clear(self) -> None:
        self._agent_cleanups = {}
        self._connection_cleanups = []

    @staticmethod
    def _collect_garbage() -> None:
        try:
            gc.collect()
        except Exception as e:
            logger.debug("gc pass failed: %s", e)


def make_connection_cleanup(client: Any) -> Cleanup:
    """Wrap a client object with ``close()`` or ``destroy()`` as a cleanup."""

    def cleanup() -> None:
        if hasattr(client, "close"):
            client.close()
        elif hasattr(client, "destroy"):
            client.destroy()

    return cleanup
