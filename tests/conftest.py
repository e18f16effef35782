from datetime import datetime, timedelta, timezone

import pytest

from app.config import settings
from app.database import init_db
from app.models import Actor, TicketRecord, WorkflowStep
from app.services.tickets import TicketService

T0 = datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)

TEACHER_A = Actor(id="teacher-a", role="teacher")
TEACHER_B = Actor(id="teacher-b", role="teacher")
ADMIN = Actor(id="admin-1", role="admin")


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingHistory:
    """Stands in for the mistake-history collaborator."""

    def __init__(self) -> None:
        self.calls: list[tuple[int, list, str]] = []

    async def migrate(self, ticket, marked_by, conn=None):
        self.calls.append((ticket.id, list(ticket.mistakes), marked_by))
        return len(ticket.mistakes)

    async def list_for_student(self, student_id, workflow_step=None):
        return []


def make_ticket(**overrides) -> TicketRecord:
    fields = {"id": 1, "student_id": "student-1", "workflow_step": WorkflowStep.SABQ}
    fields.update(overrides)
    return TicketRecord(**fields)


@pytest.fixture
async def db(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "database_path", str(tmp_path / "tickets.db"))
    await init_db()
    return settings.database_path


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def history():
    return RecordingHistory()


@pytest.fixture
def service(db, clock, history):
    return TicketService(history=history, clock=clock)


@pytest.fixture
async def pending_ticket(service):
    return await service.create_ticket(ADMIN, "student-1", WorkflowStep.SABQ)
