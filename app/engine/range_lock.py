from app.engine.errors import Locked, StateConflict, ValidationFailed
from app.models import AyahRange, TicketRecord, TicketStatus

SURAH_COUNT = 114


def validate_range(ayah_range: AyahRange) -> None:
    """Reject ranges that cannot describe a real span of the mushaf."""
    values = (
        ayah_range.from_surah,
        ayah_range.from_ayah,
        ayah_range.to_surah,
        ayah_range.to_ayah,
    )
    if any(v < 1 for v in values):
        raise ValidationFailed("Ayah range values must be positive.")
    if ayah_range.from_surah > SURAH_COUNT or ayah_range.to_surah > SURAH_COUNT:
        raise ValidationFailed(f"Surah numbers must be between 1 and {SURAH_COUNT}.")
    start = (ayah_range.from_surah, ayah_range.from_ayah)
    end = (ayah_range.to_surah, ayah_range.to_ayah)
    if end < start:
        raise ValidationFailed("Ayah range ends before it starts.")


class RangeLock:
    """Owns ``ayah_range`` and ``range_locked``.

    The range is writable only while the ticket is pending. ``start`` locks
    it, ``reassign`` is the only path that unlocks it again.
    """

    @staticmethod
    def set_on_start(ticket: TicketRecord, ayah_range: AyahRange | None) -> dict:
        if ticket.status != TicketStatus.PENDING:
            raise StateConflict(ticket.status.value, "lock the range of")
        if ayah_range is not None:
            validate_range(ayah_range)
        return {
            "ayah_range": ayah_range if ayah_range is not None else ticket.ayah_range,
            "range_locked": True,
        }

    @staticmethod
    def assert_mutable(ticket: TicketRecord, *, reassigning: bool = False) -> None:
        if ticket.range_locked and not reassigning:
            raise Locked(
                f"Ayah range of ticket {ticket.id} is locked while "
                f"status is '{ticket.status.value}'."
            )

    @staticmethod
    def clear_on_reassign(ticket: TicketRecord) -> dict:
        RangeLock.assert_mutable(ticket, reassigning=True)
        return {"ayah_range": None, "range_locked": False}
