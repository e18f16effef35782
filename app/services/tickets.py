import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable

import aiosqlite

from app.config import settings
from app.engine import (
    Forbidden,
    LivenessMonitor,
    NotFound,
    ReviewGate,
    SessionStateMachine,
    StateConflict,
    TicketError,
    Transition,
)
from app.engine.ledger import MUTABLE_STATUSES
from app.models import (
    Actor,
    AyahRange,
    MistakeEntry,
    TicketRecord,
    TicketStatus,
    WorkflowStep,
)
from app.services.assignments import AssignmentService
from app.services.mistake_history import MistakeHistoryService
from app.services.notifications import NotificationService
from app.services.ticket_store import TicketStore

logger = logging.getLogger(__name__)

TEACHER_ROLES = frozenset({"teacher"})
REVIEWER_ROLES = frozenset({"admin", "super_admin"})
SCHEDULER_ROLES = TEACHER_ROLES | REVIEWER_ROLES


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_role(actor: Actor, roles: frozenset, action: str) -> None:
    if actor.role not in roles:
        raise Forbidden(f"Role '{actor.role}' may not {action} tickets.")


class TicketService:
    """Command entry point for the ticket session engine.

    Stateless between calls: each command reads the ticket, asks the engine
    for a guarded transition and applies it with one conditional write.
    Notifications run only after that write has won. Approval's history
    migration and homework are written inside the same transaction.

    Usage::

        service = TicketService()
        ticket = await service.start_session(ticket_id, actor, ayah_range)
        ticket = await service.submit_for_review(ticket_id, actor)
        ticket = await service.approve_ticket(ticket_id, reviewer)
    """

    def __init__(
        self,
        store: TicketStore | None = None,
        history: MistakeHistoryService | None = None,
        assignments: AssignmentService | None = None,
        notifications: NotificationService | None = None,
        liveness: LivenessMonitor | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store or TicketStore()
        self.history = history or MistakeHistoryService()
        self.assignments = assignments or AssignmentService()
        self.notifications = notifications or NotificationService()
        self.liveness = liveness or LivenessMonitor()
        self.machine = SessionStateMachine(self.liveness)
        self.gate = ReviewGate()
        self.clock = clock or utcnow

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load(self, ticket_id: int) -> TicketRecord:
        ticket = await self.store.get(ticket_id)
        if ticket is None:
            raise NotFound(f"Ticket {ticket_id} not found")
        return ticket

    async def _apply(
        self,
        ticket: TicketRecord,
        transition: Transition,
        actor: Actor,
        now: datetime,
        within: Callable[[aiosqlite.Connection], Awaitable[None]] | None = None,
    ) -> TicketRecord:
        won = await self.store.compare_and_set(
            ticket.id, transition.expect, transition.changes, now, within=within
        )
        if not won:
            current = await self._load(ticket.id)
            logger.warning(
                "Ticket %s: %s by %s lost a concurrent update (now '%s')",
                ticket.id, transition.action, actor.id, current.status.value,
            )
            raise StateConflict(
                current.status.value,
                transition.action,
                f"Ticket {ticket.id} changed while {transition.action} was in "
                f"flight (status is now '{current.status.value}').",
            )
        logger.info(
            "Ticket %s: %s by %s (%s -> %s)",
            ticket.id, transition.action, actor.id,
            transition.from_status.value, transition.to_status.value,
        )
        return await self._load(ticket.id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def create_ticket(
        self,
        actor: Actor,
        student_id: str,
        workflow_step: WorkflowStep,
        *,
        teacher_id: str | None = None,
        notes: str | None = None,
        audio_url: str | None = None,
        assignment_id: int | None = None,
    ) -> TicketRecord:
        _require_role(actor, SCHEDULER_ROLES, "create")
        ticket = await self.store.create(
            student_id,
            workflow_step,
            self.clock(),
            teacher_id=teacher_id,
            notes=notes,
            audio_url=audio_url,
            assignment_id=assignment_id,
        )
        logger.info(
            "Ticket %s created for student %s (%s) by %s",
            ticket.id, student_id, workflow_step.value, actor.id,
        )
        return ticket

    async def get_ticket(self, ticket_id: int) -> TicketRecord:
        return await self._load(ticket_id)

    async def list_tickets(
        self,
        *,
        statuses: list[TicketStatus] | None = None,
        workflow_step: WorkflowStep | None = None,
        student_id: str | None = None,
        teacher_id: str | None = None,
        page: int = 1,
        limit: int | None = None,
        oldest_first: bool = False,
    ) -> tuple[list[TicketRecord], int]:
        limit = min(limit or settings.default_page_size, settings.max_page_size)
        page = max(page, 1)
        return await self.store.find(
            statuses=statuses,
            workflow_step=workflow_step,
            student_id=student_id,
            teacher_id=teacher_id,
            limit=limit,
            offset=(page - 1) * limit,
            oldest_first=oldest_first,
        )

    async def pending_review(
        self, page: int = 1, limit: int | None = None
    ) -> tuple[list[TicketRecord], int]:
        return await self.list_tickets(
            statuses=[TicketStatus.SUBMITTED], page=page, limit=limit, oldest_first=True
        )

    async def stale_tickets(self) -> list[TicketRecord]:
        """In-progress tickets whose teacher client stopped heartbeating."""
        tickets, _ = await self.store.find(
            statuses=[TicketStatus.IN_PROGRESS], oldest_first=True
        )
        now = self.clock()
        return [t for t in tickets if self.liveness.ticket_is_stale(t, now)]

    def is_stale(self, ticket: TicketRecord) -> bool:
        return self.liveness.ticket_is_stale(ticket, self.clock())

    # ------------------------------------------------------------------
    # Teacher commands
    # ------------------------------------------------------------------

    async def start_session(
        self,
        ticket_id: int,
        actor: Actor,
        ayah_range: AyahRange | None = None,
        assignment_id: int | None = None,
    ) -> TicketRecord:
        _require_role(actor, TEACHER_ROLES, "start")
        ticket = await self._load(ticket_id)
        now = self.clock()
        transition = self.machine.start(ticket, actor.id, now, ayah_range, assignment_id)
        return await self._apply(ticket, transition, actor, now)

    async def pause_session(self, ticket_id: int, actor: Actor) -> TicketRecord:
        _require_role(actor, TEACHER_ROLES, "pause")
        ticket = await self._load(ticket_id)
        now = self.clock()
        return await self._apply(ticket, self.machine.pause(ticket, actor.id, now), actor, now)

    async def resume_session(self, ticket_id: int, actor: Actor) -> TicketRecord:
        _require_role(actor, TEACHER_ROLES, "resume")
        ticket = await self._load(ticket_id)
        now = self.clock()
        return await self._apply(ticket, self.machine.resume(ticket, actor.id, now), actor, now)

    async def record_heartbeat(self, ticket_id: int, actor: Actor) -> dict:
        """Refresh liveness. Returns ``{"last_heartbeat_at", "status", "accepted"}``."""
        _require_role(actor, TEACHER_ROLES, "heartbeat")
        ticket = await self._load(ticket_id)
        now = self.clock()
        transition = self.machine.record_heartbeat(ticket, actor.id, now)
        if transition is not None:
            won = await self.store.compare_and_set(
                ticket.id, transition.expect, transition.changes, now, bump_revision=False
            )
            if won:
                return {
                    "last_heartbeat_at": now,
                    "status": TicketStatus.IN_PROGRESS,
                    "accepted": True,
                }
            # Lost to a pause or reassign; re-evaluate against the new state.
            ticket = await self._load(ticket_id)
            if self.machine.record_heartbeat(ticket, actor.id, now) is not None:
                raise StateConflict(ticket.status.value, "heartbeat")
        logger.debug(
            "Ticket %s: heartbeat ignored while '%s'", ticket.id, ticket.status.value
        )
        return {
            "last_heartbeat_at": ticket.last_heartbeat_at,
            "status": ticket.status,
            "accepted": False,
        }

    async def add_mistake(
        self, ticket_id: int, actor: Actor, entry: MistakeEntry
    ) -> TicketRecord:
        _require_role(actor, TEACHER_ROLES, "edit mistakes of")
        ticket = await self._load(ticket_id)
        now = self.clock()
        stamped = self.machine.add_mistake(ticket, actor.id, entry, now)
        won = await self.store.append_mistake(
            ticket.id, stamped, statuses=MUTABLE_STATUSES, teacher_id=actor.id, now=now
        )
        if not won:
            current = await self._load(ticket.id)
            # Raises the precise error (frozen ledger, new owner) when it applies.
            self.machine.add_mistake(current, actor.id, entry, now)
            raise StateConflict(current.status.value, "add a mistake to")
        logger.info(
            "Ticket %s: mistake %s/%s added by %s",
            ticket.id, stamped.category, stamped.type, actor.id,
        )
        return await self._load(ticket.id)

    async def remove_mistake(self, ticket_id: int, actor: Actor, index: int) -> TicketRecord:
        _require_role(actor, TEACHER_ROLES, "edit mistakes of")
        ticket = await self._load(ticket_id)
        now = self.clock()
        self.machine.remove_mistake(ticket, actor.id, index)
        won = await self.store.remove_mistake(
            ticket.id, index, statuses=MUTABLE_STATUSES, teacher_id=actor.id, now=now
        )
        if not won:
            current = await self._load(ticket.id)
            self.machine.remove_mistake(current, actor.id, index)
            raise StateConflict(current.status.value, "remove a mistake from")
        logger.info("Ticket %s: mistake %d removed by %s", ticket.id, index, actor.id)
        return await self._load(ticket.id)

    async def submit_for_review(
        self, ticket_id: int, actor: Actor, session_notes: str | None = None
    ) -> TicketRecord:
        _require_role(actor, TEACHER_ROLES, "submit")
        ticket = await self._load(ticket_id)
        now = self.clock()
        transition = self.machine.submit_for_review(ticket, actor.id, now, session_notes)
        submitted = await self._apply(ticket, transition, actor, now)

        if submitted.assignment_id is not None:
            if not await self.assignments.mark_listened(submitted.assignment_id):
                logger.warning(
                    "Ticket %s: linked assignment %s not found",
                    submitted.id, submitted.assignment_id,
                )
        await self.notifications.notify(
            "Ticket Submitted for Review",
            f"A {submitted.workflow_step.value} ticket for student "
            f"{submitted.student_id} is ready for review.",
            recipient_role="admin",
            ticket_id=submitted.id,
        )
        return submitted

    async def update_details(
        self,
        ticket_id: int,
        actor: Actor,
        *,
        notes: str | None = None,
        audio_url: str | None = None,
        session_notes: str | None = None,
        ayah_range: AyahRange | None = None,
    ) -> TicketRecord:
        _require_role(actor, SCHEDULER_ROLES, "update")
        ticket = await self._load(ticket_id)
        now = self.clock()
        transition = self.machine.update_details(
            ticket,
            actor,
            notes=notes,
            audio_url=audio_url,
            session_notes=session_notes,
            ayah_range=ayah_range,
        )
        return await self._apply(ticket, transition, actor, now)

    # ------------------------------------------------------------------
    # Reviewer commands
    # ------------------------------------------------------------------

    async def approve_ticket(
        self,
        ticket_id: int,
        reviewer: Actor,
        review_notes: str | None = None,
        homework_assignment_data: dict | None = None,
    ) -> TicketRecord:
        _require_role(reviewer, REVIEWER_ROLES, "approve")
        ticket = await self._load(ticket_id)
        now = self.clock()
        transition = self.gate.approve(ticket, reviewer.id, now, review_notes)

        # The ledger is frozen while submitted, so the snapshot is what gets
        # migrated. Runs in the status write's transaction.
        async def record_outcome(conn: aiosqlite.Connection) -> None:
            await self.history.migrate(ticket, marked_by=reviewer.id, conn=conn)
            if homework_assignment_data:
                assignment_id = await self.assignments.create_from_ticket(
                    ticket, reviewer.id, homework_assignment_data, review_notes, conn=conn
                )
                await self.store.link_homework(conn, ticket.id, assignment_id)

        try:
            approved = await self._apply(
                ticket, transition, reviewer, now, within=record_outcome
            )
        except TicketError:
            raise
        except Exception:
            logger.exception("Ticket %s: approval rolled back", ticket.id)
            raise

        await self.notifications.notify(
            "Recitation Approved",
            f"Your {approved.workflow_step.value} recitation has been approved.",
            recipient_id=approved.student_id,
            ticket_id=approved.id,
        )
        if approved.teacher_id:
            await self.notifications.notify(
                "Ticket Approved",
                f"The {approved.workflow_step.value} ticket you listened to has been approved.",
                recipient_id=approved.teacher_id,
                ticket_id=approved.id,
            )
        return approved

    async def reject_ticket(
        self, ticket_id: int, reviewer: Actor, review_notes: str
    ) -> TicketRecord:
        _require_role(reviewer, REVIEWER_ROLES, "reject")
        ticket = await self._load(ticket_id)
        now = self.clock()
        transition = self.gate.reject(ticket, reviewer.id, now, review_notes)
        rejected = await self._apply(ticket, transition, reviewer, now)
        if rejected.teacher_id:
            await self.notifications.notify(
                "Ticket Rejected",
                f"The {rejected.workflow_step.value} ticket has been rejected. "
                f"Review notes: {rejected.review_notes}",
                recipient_id=rejected.teacher_id,
                ticket_id=rejected.id,
            )
        return rejected

    async def reassign_ticket(
        self,
        ticket_id: int,
        actor: Actor,
        *,
        from_teacher_id: str | None = None,
        to_teacher_id: str | None = None,
        reason: str = "",
        from_teacher_name: str | None = None,
        to_teacher_name: str | None = None,
    ) -> TicketRecord:
        _require_role(actor, REVIEWER_ROLES, "reassign")
        ticket = await self._load(ticket_id)
        now = self.clock()
        transition = self.machine.reassign(
            ticket,
            now,
            from_teacher_id=from_teacher_id,
            to_teacher_id=to_teacher_id,
            reason=reason,
            from_teacher_name=from_teacher_name,
            to_teacher_name=to_teacher_name,
        )
        reassigned = await self._apply(ticket, transition, actor, now)
        if to_teacher_id:
            suffix = f" Reason: {reason}" if reason else ""
            await self.notifications.notify(
                "Ticket Reassigned to You",
                f"A ticket has been reassigned to you.{suffix}",
                recipient_id=to_teacher_id,
                ticket_id=reassigned.id,
            )
        return reassigned

    async def close_ticket(self, ticket_id: int, actor: Actor) -> TicketRecord:
        _require_role(actor, REVIEWER_ROLES, "close")
        ticket = await self._load(ticket_id)
        now = self.clock()
        return await self._apply(ticket, self.machine.close(ticket, actor.id, now), actor, now)

    async def delete_ticket(self, ticket_id: int, actor: Actor) -> None:
        """Hard delete. Migrated mistake history is kept."""
        _require_role(actor, REVIEWER_ROLES, "delete")
        if not await self.store.delete(ticket_id):
            raise NotFound(f"Ticket {ticket_id} not found")
        logger.info("Ticket %s deleted by %s", ticket_id, actor.id)
