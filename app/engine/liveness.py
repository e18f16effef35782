from datetime import datetime

from app.config import settings
from app.engine.errors import Forbidden
from app.engine.transition import Transition
from app.models import TicketRecord, TicketStatus


def is_stale(
    now: datetime, last_heartbeat_at: datetime | None, threshold_seconds: float
) -> bool:
    """True when no heartbeat arrived within *threshold_seconds* of *now*."""
    if last_heartbeat_at is None:
        return True
    return (now - last_heartbeat_at).total_seconds() > threshold_seconds


class LivenessMonitor:
    """Advisory liveness for open sessions.

    Heartbeats are client-driven (``settings.heartbeat_interval_seconds``).
    Nothing here schedules work or changes ticket status; staleness is
    computed on demand for operator tooling.
    """

    def __init__(self, threshold_seconds: float | None = None) -> None:
        self.threshold_seconds = (
            threshold_seconds
            if threshold_seconds is not None
            else settings.stale_threshold_seconds
        )

    def heartbeat(
        self, ticket: TicketRecord, teacher_id: str, now: datetime
    ) -> Transition | None:
        """Return the heartbeat write, or ``None`` when it is a no-op.

        A heartbeat racing a pause lands on a non in-progress ticket; that
        is accepted and ignored rather than reported as an error.
        """
        if ticket.teacher_id is not None and ticket.teacher_id != teacher_id:
            raise Forbidden("Only the assigned teacher can send heartbeats.")
        if ticket.status != TicketStatus.IN_PROGRESS:
            return None
        return Transition(
            action="heartbeat",
            from_status=ticket.status,
            to_status=ticket.status,
            expect={"status": TicketStatus.IN_PROGRESS, "teacher_id": teacher_id},
            changes={"last_heartbeat_at": now},
        )

    def ticket_is_stale(self, ticket: TicketRecord, now: datetime) -> bool:
        # Paused sessions do not heartbeat.
        if ticket.status != TicketStatus.IN_PROGRESS:
            return False
        last_seen = ticket.last_heartbeat_at or ticket.started_at
        return is_stale(now, last_seen, self.threshold_seconds)
