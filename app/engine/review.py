from datetime import datetime

from app.engine.errors import StateConflict, ValidationFailed
from app.engine.transition import Transition
from app.models import TicketRecord, TicketStatus


class ReviewGate:
    """Terminal review of a submitted ticket.

    Only the write that wins ``submitted -> approved`` may run the approval
    side effects, so migration into the mistake history happens once even
    when two reviewers click at the same moment.
    """

    @staticmethod
    def approve(
        ticket: TicketRecord,
        reviewer_id: str,
        now: datetime,
        review_notes: str | None = None,
    ) -> Transition:
        if ticket.status != TicketStatus.SUBMITTED:
            raise StateConflict(ticket.status.value, "approve")
        changes = {
            "status": TicketStatus.APPROVED,
            "reviewed_by": reviewer_id,
            "reviewed_at": now,
        }
        if review_notes:
            changes["review_notes"] = review_notes.strip()
        return Transition(
            action="approve",
            from_status=ticket.status,
            to_status=TicketStatus.APPROVED,
            expect={"status": TicketStatus.SUBMITTED},
            changes=changes,
        )

    @staticmethod
    def reject(
        ticket: TicketRecord,
        reviewer_id: str,
        now: datetime,
        review_notes: str,
    ) -> Transition:
        if not (review_notes or "").strip():
            raise ValidationFailed("Review notes are required to reject a ticket.")
        if ticket.status != TicketStatus.SUBMITTED:
            raise StateConflict(ticket.status.value, "reject")
        return Transition(
            action="reject",
            from_status=ticket.status,
            to_status=TicketStatus.REJECTED,
            expect={"status": TicketStatus.SUBMITTED},
            changes={
                "status": TicketStatus.REJECTED,
                "reviewed_by": reviewer_id,
                "reviewed_at": now,
                "review_notes": review_notes.strip(),
            },
        )
