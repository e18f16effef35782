from dataclasses import replace
from datetime import datetime

from app.engine.errors import Forbidden, NotFound, StateConflict, ValidationFailed
from app.models import OPEN_SESSION_STATUSES, MistakeEntry, TicketRecord

MUTABLE_STATUSES = OPEN_SESSION_STATUSES


class MistakeLedger:
    """Guards for the ordered mistake list of one ticket.

    The list itself is rewritten by the store with an atomic JSON append or
    remove; this class only decides whether the edit is allowed and what
    gets written.
    """

    @staticmethod
    def assert_mutable(ticket: TicketRecord, teacher_id: str, action: str) -> None:
        if ticket.status not in MUTABLE_STATUSES:
            raise StateConflict(
                ticket.status.value,
                action,
                f"Mistakes are frozen once a ticket leaves the session "
                f"(status '{ticket.status.value}').",
            )
        if ticket.teacher_id != teacher_id:
            raise Forbidden("Only the assigned teacher can edit mistakes.")

    @staticmethod
    def prepare_add(
        ticket: TicketRecord, teacher_id: str, entry: MistakeEntry, now: datetime
    ) -> MistakeEntry:
        """Validate *entry* and return the copy that will be appended."""
        MistakeLedger.assert_mutable(ticket, teacher_id, "add a mistake to")
        if not (entry.type or "").strip() or not (entry.category or "").strip():
            raise ValidationFailed("Mistake type and category are required.")
        return replace(
            entry,
            type=entry.type.strip(),
            category=entry.category.strip(),
            timestamp=entry.timestamp or now,
        )

    @staticmethod
    def check_remove(ticket: TicketRecord, teacher_id: str, index: int) -> None:
        MistakeLedger.assert_mutable(ticket, teacher_id, "remove a mistake from")
        if index < 0 or index >= len(ticket.mistakes):
            raise NotFound(
                f"Mistake index {index} out of range "
                f"(ticket has {len(ticket.mistakes)})."
            )
