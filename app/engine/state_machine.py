from datetime import datetime

from app.engine.errors import Forbidden, StateConflict, ValidationFailed
from app.engine.ledger import MistakeLedger
from app.engine.liveness import LivenessMonitor
from app.engine.range_lock import RangeLock, validate_range
from app.engine.transition import Transition
from app.models import (
    OPEN_SESSION_STATUSES,
    TERMINAL_STATUSES,
    Actor,
    AyahRange,
    MistakeEntry,
    TicketRecord,
    TicketStatus,
)

REASSIGNABLE_STATUSES = frozenset({
    TicketStatus.PENDING,
    TicketStatus.IN_PROGRESS,
    TicketStatus.PAUSED,
    TicketStatus.REJECTED,
    TicketStatus.REASSIGNED,
})

CLOSABLE_STATUSES = frozenset({
    TicketStatus.IN_PROGRESS,
    TicketStatus.PAUSED,
    TicketStatus.SUBMITTED,
    TicketStatus.REJECTED,
    TicketStatus.REASSIGNED,
})


def _seconds_between(later: datetime, earlier: datetime) -> float:
    return max((later - earlier).total_seconds(), 0.0)


class SessionStateMachine:
    """Status lifecycle of a single ticket.

    Every method takes the current persisted snapshot and returns the
    guarded write that moves it forward, or raises a ``TicketError``.
    Nothing is kept between calls; the store decides which of two racing
    writes wins.

        pending --start--> in-progress <--pause/resume--> paused
        {in-progress, paused} --submit--> submitted
        {rejected, in-progress, paused, pending} --reassign--> pending
        non-pending, non-terminal --close--> closed
    """

    def __init__(self, liveness: LivenessMonitor | None = None) -> None:
        self.liveness = liveness or LivenessMonitor()
        self.ledger = MistakeLedger
        self.range_lock = RangeLock

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    @staticmethod
    def _require_status(
        ticket: TicketRecord, allowed: frozenset | set, action: str
    ) -> None:
        if ticket.status not in allowed:
            raise StateConflict(ticket.status.value, action)

    @staticmethod
    def _require_bound_teacher(ticket: TicketRecord, teacher_id: str, action: str) -> None:
        if ticket.teacher_id != teacher_id:
            raise Forbidden(f"Only the assigned teacher can {action} this ticket.")

    # ------------------------------------------------------------------
    # Session commands
    # ------------------------------------------------------------------

    def start(
        self,
        ticket: TicketRecord,
        teacher_id: str,
        now: datetime,
        ayah_range: AyahRange | None = None,
        assignment_id: int | None = None,
    ) -> Transition:
        self._require_status(ticket, {TicketStatus.PENDING}, "start")
        if ticket.teacher_id is not None and ticket.teacher_id != teacher_id:
            raise Forbidden(
                f"Ticket {ticket.id} is reserved for another teacher."
            )
        changes = {
            "status": TicketStatus.IN_PROGRESS,
            "teacher_id": teacher_id,
            "started_at": now,
            "paused_at": None,
            "paused_seconds": 0.0,
            "last_heartbeat_at": now,
            **self.range_lock.set_on_start(ticket, ayah_range),
        }
        if assignment_id is not None:
            changes["assignment_id"] = assignment_id
        return Transition(
            action="start",
            from_status=ticket.status,
            to_status=TicketStatus.IN_PROGRESS,
            # teacher_id is either unset or already the caller
            expect={"status": TicketStatus.PENDING, "teacher_id": ticket.teacher_id},
            changes=changes,
        )

    def pause(self, ticket: TicketRecord, teacher_id: str, now: datetime) -> Transition:
        self._require_status(ticket, {TicketStatus.IN_PROGRESS}, "pause")
        self._require_bound_teacher(ticket, teacher_id, "pause")
        return Transition(
            action="pause",
            from_status=ticket.status,
            to_status=TicketStatus.PAUSED,
            expect={"status": TicketStatus.IN_PROGRESS, "teacher_id": teacher_id},
            changes={"status": TicketStatus.PAUSED, "paused_at": now},
        )

    def resume(self, ticket: TicketRecord, teacher_id: str, now: datetime) -> Transition:
        self._require_status(ticket, {TicketStatus.PAUSED}, "resume")
        self._require_bound_teacher(ticket, teacher_id, "resume")
        paused_for = _seconds_between(now, ticket.paused_at) if ticket.paused_at else 0.0
        return Transition(
            action="resume",
            from_status=ticket.status,
            to_status=TicketStatus.IN_PROGRESS,
            expect={
                "status": TicketStatus.PAUSED,
                "teacher_id": teacher_id,
                "paused_at": ticket.paused_at,
                "paused_seconds": ticket.paused_seconds,
            },
            changes={
                "status": TicketStatus.IN_PROGRESS,
                "paused_at": None,
                "paused_seconds": ticket.paused_seconds + paused_for,
                "last_heartbeat_at": now,
            },
        )

    def submit_for_review(
        self,
        ticket: TicketRecord,
        teacher_id: str,
        now: datetime,
        session_notes: str | None = None,
    ) -> Transition:
        self._require_status(ticket, OPEN_SESSION_STATUSES, "submit")
        self._require_bound_teacher(ticket, teacher_id, "submit")

        paused_seconds = ticket.paused_seconds
        if ticket.status == TicketStatus.PAUSED and ticket.paused_at is not None:
            paused_seconds += _seconds_between(now, ticket.paused_at)

        duration = None
        if ticket.started_at is not None:
            elapsed = _seconds_between(now, ticket.started_at)
            duration = max(round(elapsed - paused_seconds), 0)

        changes = {
            "status": TicketStatus.SUBMITTED,
            "submitted_at": now,
            "paused_at": None,
            "paused_seconds": paused_seconds,
            "listening_duration_seconds": duration,
        }
        if session_notes is not None:
            changes["session_notes"] = session_notes.strip()
        return Transition(
            action="submit",
            from_status=ticket.status,
            to_status=TicketStatus.SUBMITTED,
            # pause accounting is computed from this snapshot
            expect={
                "status": ticket.status,
                "teacher_id": teacher_id,
                "paused_at": ticket.paused_at,
                "paused_seconds": ticket.paused_seconds,
            },
            changes=changes,
        )

    # ------------------------------------------------------------------
    # Administrative commands
    # ------------------------------------------------------------------

    def reassign(
        self,
        ticket: TicketRecord,
        now: datetime,
        *,
        from_teacher_id: str | None = None,
        to_teacher_id: str | None = None,
        reason: str = "",
        from_teacher_name: str | None = None,
        to_teacher_name: str | None = None,
    ) -> Transition:
        self._require_status(ticket, REASSIGNABLE_STATUSES, "reassign")
        if from_teacher_id is not None and from_teacher_id != ticket.teacher_id:
            raise ValidationFailed(
                f"Ticket {ticket.id} is not assigned to teacher {from_teacher_id}."
            )
        changes = {
            "status": TicketStatus.PENDING,
            "teacher_id": to_teacher_id,
            **self.range_lock.clear_on_reassign(ticket),
            "previous_mistakes": list(ticket.mistakes),
            "mistakes": [],
            "previous_teacher_comment": ticket.session_notes or "",
            "session_notes": None,
            "started_at": None,
            "paused_at": None,
            "paused_seconds": 0.0,
            "last_heartbeat_at": None,
            "submitted_at": None,
            "listening_duration_seconds": None,
            "reassigned_from_teacher_id": ticket.teacher_id,
            "reassigned_from_teacher_name": from_teacher_name,
            "reassigned_to_teacher_id": to_teacher_id,
            "reassigned_to_teacher_name": to_teacher_name,
            "reassignment_reason": reason or "",
            "reassigned_at": now,
        }
        return Transition(
            action="reassign",
            from_status=ticket.status,
            to_status=TicketStatus.PENDING,
            # mistakes and notes are copied from this snapshot
            expect={"status": ticket.status, "revision": ticket.revision},
            changes=changes,
        )

    def close(self, ticket: TicketRecord, actor_id: str, now: datetime) -> Transition:
        self._require_status(ticket, CLOSABLE_STATUSES, "close")
        return Transition(
            action="close",
            from_status=ticket.status,
            to_status=TicketStatus.CLOSED,
            expect={"status": ticket.status},
            changes={
                "status": TicketStatus.CLOSED,
                "range_locked": True,
                "paused_at": None,
                "closed_by": actor_id,
                "closed_at": now,
            },
        )

    def update_details(
        self,
        ticket: TicketRecord,
        actor: Actor,
        *,
        notes: str | None = None,
        audio_url: str | None = None,
        session_notes: str | None = None,
        ayah_range: AyahRange | None = None,
    ) -> Transition:
        """Edit free-form annotations and, while unlocked, the range."""
        if ticket.status in TERMINAL_STATUSES:
            raise StateConflict(ticket.status.value, "update")
        if actor.role == "teacher" and ticket.teacher_id not in (None, actor.id):
            raise Forbidden("Only the assigned teacher can update this ticket.")

        changes: dict = {}
        expect: dict = {"status": ticket.status}
        if notes is not None:
            changes["notes"] = notes.strip()
        if audio_url is not None:
            changes["audio_url"] = audio_url.strip()
        if session_notes is not None:
            if ticket.status not in OPEN_SESSION_STATUSES:
                raise StateConflict(
                    ticket.status.value,
                    "edit session notes of",
                    "Session notes can only change during an open session.",
                )
            changes["session_notes"] = session_notes.strip()
        if ayah_range is not None:
            self.range_lock.assert_mutable(ticket)
            validate_range(ayah_range)
            changes["ayah_range"] = ayah_range
            expect["range_locked"] = False
        if not changes:
            raise ValidationFailed("Nothing to update.")
        return Transition(
            action="update",
            from_status=ticket.status,
            to_status=ticket.status,
            expect=expect,
            changes=changes,
        )

    # ------------------------------------------------------------------
    # Delegated guards
    # ------------------------------------------------------------------

    def record_heartbeat(
        self, ticket: TicketRecord, teacher_id: str, now: datetime
    ) -> Transition | None:
        return self.liveness.heartbeat(ticket, teacher_id, now)

    def add_mistake(
        self, ticket: TicketRecord, teacher_id: str, entry: MistakeEntry, now: datetime
    ) -> MistakeEntry:
        return self.ledger.prepare_add(ticket, teacher_id, entry, now)

    def remove_mistake(self, ticket: TicketRecord, teacher_id: str, index: int) -> None:
        self.ledger.check_remove(ticket, teacher_id, index)
