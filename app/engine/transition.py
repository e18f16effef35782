from dataclasses import dataclass, field
from typing import Any

from app.models import TicketStatus


@dataclass
class Transition:
    """A guarded single-record write computed from one ticket snapshot.

    ``expect`` maps column -> value the row must still hold (``None`` means
    IS NULL, a tuple means IN).  ``changes`` maps column -> new value.
    The store applies both in one conditional UPDATE.
    """

    action: str
    from_status: TicketStatus
    to_status: TicketStatus
    expect: dict[str, Any] = field(default_factory=dict)
    changes: dict[str, Any] = field(default_factory=dict)
