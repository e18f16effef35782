from datetime import timedelta

import pytest

from app.engine import Forbidden, LivenessMonitor, is_stale
from app.models import TicketStatus
from tests.conftest import T0, make_ticket


class TestIsStale:
    def test_fresh_heartbeat(self):
        assert not is_stale(T0 + timedelta(seconds=45), T0, 135)

    def test_exactly_at_threshold_is_not_stale(self):
        assert not is_stale(T0 + timedelta(seconds=135), T0, 135)

    def test_past_threshold(self):
        assert is_stale(T0 + timedelta(seconds=136), T0, 135)

    def test_never_seen(self):
        assert is_stale(T0, None, 135)


class TestLivenessMonitor:
    def test_default_threshold_is_three_missed_heartbeats(self):
        assert LivenessMonitor().threshold_seconds == 45 * 3

    def test_heartbeat_updates_timestamp_when_in_progress(self):
        ticket = make_ticket(status=TicketStatus.IN_PROGRESS, teacher_id="teacher-a")
        transition = LivenessMonitor().heartbeat(ticket, "teacher-a", T0)
        assert transition.changes == {"last_heartbeat_at": T0}
        assert transition.expect["status"] == TicketStatus.IN_PROGRESS

    @pytest.mark.parametrize(
        "status", [TicketStatus.PAUSED, TicketStatus.SUBMITTED, TicketStatus.CLOSED]
    )
    def test_heartbeat_outside_session_is_noop(self, status):
        ticket = make_ticket(status=status, teacher_id="teacher-a")
        assert LivenessMonitor().heartbeat(ticket, "teacher-a", T0) is None

    def test_heartbeat_from_other_teacher_is_forbidden(self):
        ticket = make_ticket(status=TicketStatus.IN_PROGRESS, teacher_id="teacher-a")
        with pytest.raises(Forbidden):
            LivenessMonitor().heartbeat(ticket, "teacher-b", T0)

    def test_paused_ticket_is_never_stale(self):
        ticket = make_ticket(status=TicketStatus.PAUSED, last_heartbeat_at=T0)
        assert not LivenessMonitor(60).ticket_is_stale(ticket, T0 + timedelta(hours=1))

    def test_falls_back_to_started_at(self):
        ticket = make_ticket(status=TicketStatus.IN_PROGRESS, started_at=T0)
        monitor = LivenessMonitor(60)
        assert not monitor.ticket_is_stale(ticket, T0 + timedelta(seconds=30))
        assert monitor.ticket_is_stale(ticket, T0 + timedelta(seconds=61))
