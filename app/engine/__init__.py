from app.engine.errors import (
    Forbidden,
    Locked,
    NotFound,
    StateConflict,
    TicketError,
    ValidationFailed,
)
from app.engine.ledger import MistakeLedger
from app.engine.liveness import LivenessMonitor, is_stale
from app.engine.range_lock import RangeLock, validate_range
from app.engine.review import ReviewGate
from app.engine.state_machine import SessionStateMachine
from app.engine.transition import Transition

__all__ = [
    "Forbidden",
    "Locked",
    "LivenessMonitor",
    "MistakeLedger",
    "NotFound",
    "RangeLock",
    "ReviewGate",
    "SessionStateMachine",
    "StateConflict",
    "TicketError",
    "Transition",
    "ValidationFailed",
    "is_stale",
    "validate_range",
]
