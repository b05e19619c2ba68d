"""Tests for session_reset module."""

from unittest.mock import MagicMock

from session_reset import SessionResetCoordinator, format_bytes, make_connection_cleanup


class TestReset:
    def test_runs_connections_before_agents(self) -> None:
        order = []
        coordinator = SessionResetCoordinator()
        coordinator.register_agent_cleanup("artisan", lambda: order.append("agent"))
        coordinator.register_connection_cleanup(lambda: order.append("connection"))

        stats = coordinator.reset(iteration=1)

        assert order == ["connection", "agent"]
        assert stats.iteration == 1
        assert stats.connections_closed == 1
        assert stats.agents_reset == 1

    def test_failing_cleanups_do_not_stop_others(self) -> None:
        survivor = MagicMock()
        coordinator = SessionResetCoordinator()
        coordinator.register_connection_cleanup(MagicMock(side_effect=OSError("socket gone")))
        coordinator.register_agent_cleanup("artisan", MagicMock(side_effect=RuntimeError("stuck")))
        coordinator.register_agent_cleanup("critic", survivor)

        stats = coordinator.reset(iteration=2)

        survivor.assert_called_once()
        assert stats.connections_closed == 0
        assert stats.agents_reset == 1
        errors = coordinator.notifications.of_kind("cleanup-error")
        assert [e.data["type"] for e in errors] == ["connection", "agent"]

    def test_verify_after_throwing_cleanups(self) -> None:
        coordinator = SessionResetCoordinator()
        coordinator.register_agent_cleanup("artisan", MagicMock(side_effect=RuntimeError("x")))
        coordinator.register_connection_cleanup(MagicMock(side_effect=RuntimeError("y")))
        coordinator.reset(iteration=1)
        assert coordinator.verify_reset() == (True, [])

    def test_cleanups_run_once(self) -> None:
        cleanup = MagicMock()
        coordinator = SessionResetCoordinator()
        coordinator.register_agent_cleanup("artisan", cleanup)
        coordinator.reset(iteration=1)
        coordinator.reset(iteration=2)
        cleanup.assert_called_once()

    def test_reset_complete_notification(self) -> None:
        coordinator = SessionResetCoordinator()
        coordinator.reset(iteration=3)
        [event] = coordinator.notifications.of_kind("reset-complete")
        assert event.data["iteration"] == 3


class TestRegistration:
    def test_verify_reports_pending_registrations(self) -> None:
        coordinator = SessionResetCoordinator()
        coordinator.register_agent_cleanup("artisan", MagicMock())
        coordinator.register_connection_cleanup(MagicMock())
        verified, issues = coordinator.verify_reset()
        assert not verified
        assert issues == [
            "agent cleanup still registered: artisan",
            "1 connection cleanup(s) still registered",
        ]

    def test_re_registering_agent_replaces(self) -> None:
        first, second = MagicMock(), MagicMock()
        coordinator = SessionResetCoordinator()
        coordinator.register_agent_cleanup("artisan", first)
        coordinator.register_agent_cleanup("artisan", second)
        coordinator.reset(iteration=1)
        first.assert_not_called()
        second.assert_called_once()

    def test_get_stats(self) -> None:
        coordinator = SessionResetCoordinator()
        coordinator.register_agent_cleanup("artisan", MagicMock())
        coordinator.register_connection_cleanup(MagicMock())
        coordinator.register_connection_cleanup(MagicMock())
        assert coordinator.get_stats() == {
            "agent_cleanups_registered": 1,
            "connection_cleanups_registered": 2,
        }


class TestEmergencyReset:
    def test_drops_without_running(self) -> None:
        cleanup = MagicMock()
        coordinator = SessionResetCoordinator()
        coordinator.register_agent_cleanup("artisan", cleanup)
        coordinator.register_connection_cleanup(cleanup)

        coordinator.emergency_reset()

        cleanup.assert_not_called()
        assert coordinator.verify_reset() == (True, [])
        assert len(coordinator.notifications.of_kind("emergency-reset")) == 1


class TestHelpers:
    def test_connection_cleanup_prefers_close(self) -> None:
        client = MagicMock()
        make_connection_cleanup(client)()
        client.close.assert_called_once()
        client.destroy.assert_not_called()

    def test_connection_cleanup_falls_back_to_destroy(self) -> None:
        client = MagicMock(spec=["destroy"])
        make_connection_cleanup(client)()
        client.destroy.assert_called_once()

    def test_format_bytes(self) -> None:
        assert format_bytes(512) == "512B"
        assert format_bytes(2048) == "2.0KB"
        assert format_bytes(3 * 1024 * 1024) == "3.0MB"
