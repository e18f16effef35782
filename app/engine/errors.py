class TicketError(Exception):
    """Base class for every rejected ticket command.

    ``kind`` is the stable name rendered to clients; ``status_code`` is the
    HTTP status the API layer answers with.
    """

    kind = "ticket_error"
    status_code = 400

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class StateConflict(TicketError):
    kind = "state_conflict"
    status_code = 409

    def __init__(self, current: str, requested: str, detail: str | None = None) -> None:
        self.current = current
        self.requested = requested
        super().__init__(
            detail or f"Cannot {requested} a ticket with status '{current}'."
        )


class Forbidden(TicketError):
    kind = "forbidden"
    status_code = 403


class Locked(TicketError):
    kind = "locked"
    status_code = 423


class NotFound(TicketError):
    kind = "not_found"
    status_code = 404


class ValidationFailed(TicketError):
    kind = "validation_failed"
    status_code = 422
