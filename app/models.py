import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TicketStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    PAUSED = "paused"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    REASSIGNED = "reassigned"  # legacy rows only; reassign lands in PENDING
    CLOSED = "closed"


class WorkflowStep(str, Enum):
    SABQ = "sabq"
    SABQI = "sabqi"
    MANZIL = "manzil"


TERMINAL_STATUSES = frozenset({TicketStatus.APPROVED, TicketStatus.CLOSED})
OPEN_SESSION_STATUSES = frozenset({TicketStatus.IN_PROGRESS, TicketStatus.PAUSED})


def parse_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def format_datetime(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _load_json(value: Any, default: Any) -> Any:
    if value is None or value == "":
        return default
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


@dataclass
class AyahRange:
    from_surah: int
    from_ayah: int
    to_surah: int
    to_ayah: int

    def to_dict(self) -> dict:
        return {
            "from_surah": self.from_surah,
            "from_ayah": self.from_ayah,
            "to_surah": self.to_surah,
            "to_ayah": self.to_ayah,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "AyahRange | None":
        if not data:
            return None
        return cls(
            from_surah=int(data["from_surah"]),
            from_ayah=int(data["from_ayah"]),
            to_surah=int(data["to_surah"]),
            to_ayah=int(data["to_ayah"]),
        )


@dataclass
class MistakeEntry:
    type: str
    category: str
    page: int | None = None
    surah: int | None = None
    ayah: int | None = None
    word_index: int | None = None
    letter_index: int | None = None
    position: dict | None = None  # {"x": float, "y": float}
    tajweed_data: dict | None = None
    note: str | None = None
    audio_url: str | None = None
    timestamp: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "category": self.category,
            "page": self.page,
            "surah": self.surah,
            "ayah": self.ayah,
            "word_index": self.word_index,
            "letter_index": self.letter_index,
            "position": self.position,
            "tajweed_data": self.tajweed_data,
            "note": self.note,
            "audio_url": self.audio_url,
            "timestamp": format_datetime(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MistakeEntry":
        return cls(
            type=data["type"],
            category=data["category"],
            page=data.get("page"),
            surah=data.get("surah"),
            ayah=data.get("ayah"),
            word_index=data.get("word_index"),
            letter_index=data.get("letter_index"),
            position=data.get("position"),
            tajweed_data=data.get("tajweed_data"),
            note=data.get("note"),
            audio_url=data.get("audio_url"),
            timestamp=parse_datetime(data.get("timestamp")),
        )


@dataclass
class TicketRecord:
    id: int
    student_id: str
    workflow_step: WorkflowStep
    status: TicketStatus = TicketStatus.PENDING
    teacher_id: str | None = None

    # Recitation scope
    ayah_range: AyahRange | None = None
    range_locked: bool = False
    assignment_id: int | None = None

    mistakes: list[MistakeEntry] = field(default_factory=list)

    # Free-form annotations
    notes: str | None = None
    audio_url: str | None = None
    session_notes: str | None = None

    # Time accounting
    started_at: datetime | None = None
    paused_at: datetime | None = None
    paused_seconds: float = 0.0
    last_heartbeat_at: datetime | None = None
    submitted_at: datetime | None = None
    listening_duration_seconds: int | None = None

    # Review
    reviewed_by: str | None = None
    review_notes: str | None = None
    reviewed_at: datetime | None = None
    homework_assigned: int | None = None

    # Reassignment audit
    reassigned_from_teacher_id: str | None = None
    reassigned_from_teacher_name: str | None = None
    reassigned_to_teacher_id: str | None = None
    reassigned_to_teacher_name: str | None = None
    reassignment_reason: str | None = None
    reassigned_at: datetime | None = None
    previous_mistakes: list[MistakeEntry] = field(default_factory=list)
    previous_teacher_comment: str | None = None

    closed_by: str | None = None
    closed_at: datetime | None = None

    revision: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Any) -> "TicketRecord":
        """Build a record from a ``tickets`` row (``aiosqlite.Row`` or dict)."""
        data = dict(row)
        return cls(
            id=data["id"],
            student_id=data["student_id"],
            workflow_step=WorkflowStep(data["workflow_step"]),
            status=TicketStatus(data["status"]),
            teacher_id=data.get("teacher_id"),
            ayah_range=AyahRange.from_dict(_load_json(data.get("ayah_range"), None)),
            range_locked=bool(data.get("range_locked")),
            assignment_id=data.get("assignment_id"),
            mistakes=[
                MistakeEntry.from_dict(m)
                for m in _load_json(data.get("mistakes"), [])
            ],
            notes=data.get("notes"),
            audio_url=data.get("audio_url"),
            session_notes=data.get("session_notes"),
            started_at=parse_datetime(data.get("started_at")),
            paused_at=parse_datetime(data.get("paused_at")),
            paused_seconds=float(data.get("paused_seconds") or 0.0),
            last_heartbeat_at=parse_datetime(data.get("last_heartbeat_at")),
            submitted_at=parse_datetime(data.get("submitted_at")),
            listening_duration_seconds=data.get("listening_duration_seconds"),
            reviewed_by=data.get("reviewed_by"),
            review_notes=data.get("review_notes"),
            reviewed_at=parse_datetime(data.get("reviewed_at")),
            homework_assigned=data.get("homework_assigned"),
            reassigned_from_teacher_id=data.get("reassigned_from_teacher_id"),
            reassigned_from_teacher_name=data.get("reassigned_from_teacher_name"),
            reassigned_to_teacher_id=data.get("reassigned_to_teacher_id"),
            reassigned_to_teacher_name=data.get("reassigned_to_teacher_name"),
            reassignment_reason=data.get("reassignment_reason"),
            reassigned_at=parse_datetime(data.get("reassigned_at")),
            previous_mistakes=[
                MistakeEntry.from_dict(m)
                for m in _load_json(data.get("previous_mistakes"), [])
            ],
            previous_teacher_comment=data.get("previous_teacher_comment"),
            closed_by=data.get("closed_by"),
            closed_at=parse_datetime(data.get("closed_at")),
            revision=data.get("revision") or 0,
            created_at=parse_datetime(data.get("created_at")),
            updated_at=parse_datetime(data.get("updated_at")),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "student_id": self.student_id,
            "teacher_id": self.teacher_id,
            "workflow_step": self.workflow_step.value,
            "status": self.status.value,
            "ayah_range": self.ayah_range.to_dict() if self.ayah_range else None,
            "range_locked": self.range_locked,
            "assignment_id": self.assignment_id,
            "mistakes": [m.to_dict() for m in self.mistakes],
            "notes": self.notes,
            "audio_url": self.audio_url,
            "session_notes": self.session_notes,
            "started_at": format_datetime(self.started_at),
            "paused_at": format_datetime(self.paused_at),
            "paused_seconds": self.paused_seconds,
            "last_heartbeat_at": format_datetime(self.last_heartbeat_at),
            "submitted_at": format_datetime(self.submitted_at),
            "listening_duration_seconds": self.listening_duration_seconds,
            "reviewed_by": self.reviewed_by,
            "review_notes": self.review_notes,
            "reviewed_at": format_datetime(self.reviewed_at),
            "homework_assigned": self.homework_assigned,
            "reassigned_from_teacher_id": self.reassigned_from_teacher_id,
            "reassigned_from_teacher_name": self.reassigned_from_teacher_name,
            "reassigned_to_teacher_id": self.reassigned_to_teacher_id,
            "reassigned_to_teacher_name": self.reassigned_to_teacher_name,
            "reassignment_reason": self.reassignment_reason,
            "reassigned_at": format_datetime(self.reassigned_at),
            "previous_mistakes": [m.to_dict() for m in self.previous_mistakes],
            "previous_teacher_comment": self.previous_teacher_comment,
            "closed_by": self.closed_by,
            "closed_at": format_datetime(self.closed_at),
            "revision": self.revision,
            "created_at": format_datetime(self.created_at),
            "updated_at": format_datetime(self.updated_at),
        }


@dataclass
class Actor:
    """Authenticated caller as asserted by the external auth layer."""

    id: str
    role: str  # teacher | admin | super_admin
