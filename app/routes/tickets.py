import math

from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel, Field

from app.models import Actor, AyahRange, MistakeEntry, TicketRecord, TicketStatus, WorkflowStep
from app.services.tickets import TicketService

router = APIRouter(prefix="/api", tags=["tickets"])


# ------------------------------------------------------------------
# Dependencies
# ------------------------------------------------------------------


async def current_actor(
    x_actor_id: str = Header(...),
    x_actor_role: str = Header(...),
) -> Actor:
    """Identity asserted by the upstream auth layer."""
    return Actor(id=x_actor_id, role=x_actor_role.strip().lower())


def get_ticket_service() -> TicketService:
    return TicketService()


# ------------------------------------------------------------------
# Request bodies
# ------------------------------------------------------------------


class AyahRangeBody(BaseModel):
    from_surah: int
    from_ayah: int
    to_surah: int
    to_ayah: int

    def to_range(self) -> AyahRange:
        return AyahRange(**self.model_dump())


class TicketCreate(BaseModel):
    student_id: str
    workflow_step: WorkflowStep
    teacher_id: str | None = None
    notes: str | None = None
    audio_url: str | None = None
    assignment_id: int | None = None


class TicketUpdate(BaseModel):
    notes: str | None = None
    audio_url: str | None = None
    session_notes: str | None = None
    ayah_range: AyahRangeBody | None = None


class StartSession(BaseModel):
    ayah_range: AyahRangeBody | None = None
    assignment_id: int | None = None


class MistakeCreate(BaseModel):
    type: str
    category: str
    page: int | None = None
    surah: int | None = None
    ayah: int | None = None
    word_index: int | None = None
    letter_index: int | None = None
    position: dict[str, float] | None = None
    tajweed_data: dict | None = None
    note: str | None = None
    audio_url: str | None = None


class SubmitForReview(BaseModel):
    session_notes: str | None = None


class HomeworkAssignmentData(BaseModel):
    title: str
    description: str | None = None
    instructions: str | None = None
    due_date: str | None = None


class ApproveTicket(BaseModel):
    review_notes: str | None = None
    homework_assignment_data: HomeworkAssignmentData | None = None


class RejectTicket(BaseModel):
    review_notes: str = ""


class ReassignTicket(BaseModel):
    from_teacher_id: str | None = None
    to_teacher_id: str | None = None
    reason: str = ""
    from_teacher_name: str | None = None
    to_teacher_name: str | None = None


def _page(tickets: list[TicketRecord], total: int, page: int, limit: int) -> dict:
    return {
        "tickets": [t.to_dict() for t in tickets],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit) if limit else 0,
        },
    }


# ------------------------------------------------------------------
# Ticket queries
# ------------------------------------------------------------------


@router.post("/tickets", status_code=201)
async def create_ticket(
    body: TicketCreate,
    actor: Actor = Depends(current_actor),
    service: TicketService = Depends(get_ticket_service),
) -> dict:
    ticket = await service.create_ticket(
        actor,
        body.student_id,
        body.workflow_step,
        teacher_id=body.teacher_id,
        notes=body.notes,
        audio_url=body.audio_url,
        assignment_id=body.assignment_id,
    )
    return ticket.to_dict()


@router.get("/tickets")
async def list_tickets(
    status: list[TicketStatus] | None = Query(None),
    workflow_step: WorkflowStep | None = None,
    student_id: str | None = None,
    teacher_id: str | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(current_actor),
    service: TicketService = Depends(get_ticket_service),
) -> dict:
    # Teachers only ever see their own tickets.
    if actor.role == "teacher":
        teacher_id = actor.id
    tickets, total = await service.list_tickets(
        statuses=status,
        workflow_step=workflow_step,
        student_id=student_id,
        teacher_id=teacher_id,
        page=page,
        limit=limit,
    )
    return _page(tickets, total, page, limit)


@router.get("/tickets/pending-review")
async def pending_review(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(current_actor),
    service: TicketService = Depends(get_ticket_service),
) -> dict:
    """Submitted tickets, oldest first."""
    tickets, total = await service.pending_review(page=page, limit=limit)
    return _page(tickets, total, page, limit)


@router.get("/tickets/stale")
async def stale_tickets(
    actor: Actor = Depends(current_actor),
    service: TicketService = Depends(get_ticket_service),
) -> list[dict]:
    """In-progress sessions whose teacher client stopped heartbeating."""
    return [
        {**t.to_dict(), "stale": True} for t in await service.stale_tickets()
    ]


@router.get("/tickets/{ticket_id}")
async def get_ticket(
    ticket_id: int,
    actor: Actor = Depends(current_actor),
    service: TicketService = Depends(get_ticket_service),
) -> dict:
    ticket = await service.get_ticket(ticket_id)
    return {**ticket.to_dict(), "stale": service.is_stale(ticket)}


@router.patch("/tickets/{ticket_id}")
async def update_ticket(
    ticket_id: int,
    body: TicketUpdate,
    actor: Actor = Depends(current_actor),
    service: TicketService = Depends(get_ticket_service),
) -> dict:
    ticket = await service.update_details(
        ticket_id,
        actor,
        notes=body.notes,
        audio_url=body.audio_url,
        session_notes=body.session_notes,
        ayah_range=body.ayah_range.to_range() if body.ayah_range else None,
    )
    return ticket.to_dict()


@router.delete("/tickets/{ticket_id}")
async def delete_ticket(
    ticket_id: int,
    actor: Actor = Depends(current_actor),
    service: TicketService = Depends(get_ticket_service),
) -> dict:
    await service.delete_ticket(ticket_id, actor)
    return {"id": ticket_id, "deleted": True}


# ------------------------------------------------------------------
# Session commands
# ------------------------------------------------------------------


@router.post("/tickets/{ticket_id}/start")
async def start_session(
    ticket_id: int,
    body: StartSession | None = None,
    actor: Actor = Depends(current_actor),
    service: TicketService = Depends(get_ticket_service),
) -> dict:
    body = body or StartSession()
    ticket = await service.start_session(
        ticket_id,
        actor,
        ayah_range=body.ayah_range.to_range() if body.ayah_range else None,
        assignment_id=body.assignment_id,
    )
    return ticket.to_dict()


@router.post("/tickets/{ticket_id}/pause")
async def pause_session(
    ticket_id: int,
    actor: Actor = Depends(current_actor),
    service: TicketService = Depends(get_ticket_service),
) -> dict:
    return (await service.pause_session(ticket_id, actor)).to_dict()


@router.post("/tickets/{ticket_id}/resume")
async def resume_session(
    ticket_id: int,
    actor: Actor = Depends(current_actor),
    service: TicketService = Depends(get_ticket_service),
) -> dict:
    return (await service.resume_session(ticket_id, actor)).to_dict()


@router.post("/tickets/{ticket_id}/heartbeat")
async def heartbeat(
    ticket_id: int,
    actor: Actor = Depends(current_actor),
    service: TicketService = Depends(get_ticket_service),
) -> dict:
    result = await service.record_heartbeat(ticket_id, actor)
    last = result["last_heartbeat_at"]
    return {
        "ticket_id": ticket_id,
        "status": result["status"].value,
        "accepted": result["accepted"],
        "last_heartbeat_at": last.isoformat() if last else None,
    }


@router.post("/tickets/{ticket_id}/mistakes")
async def add_mistake(
    ticket_id: int,
    body: MistakeCreate,
    actor: Actor = Depends(current_actor),
    service: TicketService = Depends(get_ticket_service),
) -> dict:
    entry = MistakeEntry(**body.model_dump())
    return (await service.add_mistake(ticket_id, actor, entry)).to_dict()


@router.delete("/tickets/{ticket_id}/mistakes/{index}")
async def remove_mistake(
    ticket_id: int,
    index: int,
    actor: Actor = Depends(current_actor),
    service: TicketService = Depends(get_ticket_service),
) -> dict:
    return (await service.remove_mistake(ticket_id, actor, index)).to_dict()


@router.post("/tickets/{ticket_id}/submit")
async def submit_for_review(
    ticket_id: int,
    body: SubmitForReview | None = None,
    actor: Actor = Depends(current_actor),
    service: TicketService = Depends(get_ticket_service),
) -> dict:
    session_notes = body.session_notes if body else None
    return (await service.submit_for_review(ticket_id, actor, session_notes)).to_dict()


# ------------------------------------------------------------------
# Review commands
# ------------------------------------------------------------------


@router.post("/tickets/{ticket_id}/approve")
async def approve_ticket(
    ticket_id: int,
    body: ApproveTicket | None = None,
    actor: Actor = Depends(current_actor),
    service: TicketService = Depends(get_ticket_service),
) -> dict:
    body = body or ApproveTicket()
    homework = (
        body.homework_assignment_data.model_dump()
        if body.homework_assignment_data
        else None
    )
    ticket = await service.approve_ticket(ticket_id, actor, body.review_notes, homework)
    return ticket.to_dict()


@router.post("/tickets/{ticket_id}/reject")
async def reject_ticket(
    ticket_id: int,
    body: RejectTicket,
    actor: Actor = Depends(current_actor),
    service: TicketService = Depends(get_ticket_service),
) -> dict:
    return (await service.reject_ticket(ticket_id, actor, body.review_notes)).to_dict()


@router.post("/tickets/{ticket_id}/reassign")
async def reassign_ticket(
    ticket_id: int,
    body: ReassignTicket,
    actor: Actor = Depends(current_actor),
    service: TicketService = Depends(get_ticket_service),
) -> dict:
    ticket = await service.reassign_ticket(
        ticket_id,
        actor,
        from_teacher_id=body.from_teacher_id,
        to_teacher_id=body.to_teacher_id,
        reason=body.reason,
        from_teacher_name=body.from_teacher_name,
        to_teacher_name=body.to_teacher_name,
    )
    return ticket.to_dict()


@router.post("/tickets/{ticket_id}/close")
async def close_ticket(
    ticket_id: int,
    actor: Actor = Depends(current_actor),
    service: TicketService = Depends(get_ticket_service),
) -> dict:
    return (await service.close_ticket(ticket_id, actor)).to_dict()


# ------------------------------------------------------------------
# Mistake history
# ------------------------------------------------------------------


@router.get("/students/{student_id}/mistakes")
async def student_mistakes(
    student_id: str,
    workflow_step: WorkflowStep | None = None,
    actor: Actor = Depends(current_actor),
    service: TicketService = Depends(get_ticket_service),
) -> list[dict]:
    return await service.history.list_for_student(
        student_id, workflow_step.value if workflow_step else None
    )
