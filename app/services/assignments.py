import json
import logging
from datetime import datetime, timezone

import aiosqlite

from app.database import get_async_conn
from app.models import TicketRecord

logger = logging.getLogger(__name__)


def _homework_range(ticket: TicketRecord) -> dict:
    """Range the homework covers: the session range, else the first mistake."""
    if ticket.ayah_range is not None:
        return {
            "mode": "surah_ayah",
            "from": {"surah": ticket.ayah_range.from_surah, "ayah": ticket.ayah_range.from_ayah},
            "to": {"surah": ticket.ayah_range.to_surah, "ayah": ticket.ayah_range.to_ayah},
        }
    first = ticket.mistakes[0] if ticket.mistakes else None
    surah = (first.surah if first else None) or 1
    ayah = (first.ayah if first else None) or 1
    return {
        "mode": "surah_ayah",
        "from": {"surah": surah, "ayah": ayah},
        "to": {"surah": surah, "ayah": ayah},
    }


class AssignmentService:
    """Creates homework assignments and tracks ticket-linked assignment status."""

    async def create_from_ticket(
        self,
        ticket: TicketRecord,
        assigned_by: str,
        homework_data: dict,
        review_notes: str | None = None,
        conn: aiosqlite.Connection | None = None,
    ) -> int:
        """Create the homework produced by approving *ticket*. Returns its id."""
        now = datetime.now(timezone.utc).isoformat()
        homework = {
            "enabled": True,
            "items": [
                {
                    "type": ticket.workflow_step.value,
                    "range": _homework_range(ticket),
                    "source": {"suggested_from": "ticket", "ticket_ids": [ticket.id]},
                    "content": (
                        homework_data.get("instructions")
                        or homework_data.get("description")
                        or ""
                    ),
                }
            ],
        }
        own = conn is None
        if own:
            conn = await get_async_conn()
        try:
            cursor = await conn.execute(
                """INSERT INTO assignments
                   (student_id, assigned_by, from_ticket_id, workflow_step, title,
                    description, instructions, due_date, homework, comment, status,
                    created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'active', ?, ?)""",
                (
                    ticket.student_id,
                    assigned_by,
                    ticket.id,
                    ticket.workflow_step.value,
                    homework_data.get("title"),
                    homework_data.get("description"),
                    homework_data.get("instructions"),
                    homework_data.get("due_date"),
                    json.dumps(homework),
                    review_notes or "",
                    now,
                    now,
                ),
            )
            if own:
                await conn.commit()
            assignment_id = cursor.lastrowid
        finally:
            if own:
                await conn.close()
        logger.info("Created assignment %s from ticket %s", assignment_id, ticket.id)
        return assignment_id

    async def mark_listened(self, assignment_id: int) -> bool:
        """Flag the assignment a submitted ticket was opened for."""
        conn = await get_async_conn()
        try:
            cursor = await conn.execute(
                "UPDATE assignments SET status = 'listened', updated_at = ? WHERE id = ?",
                (datetime.now(timezone.utc).isoformat(), assignment_id),
            )
            await conn.commit()
            return cursor.rowcount == 1
        finally:
            await conn.close()

    async def get(self, assignment_id: int) -> dict | None:
        conn = await get_async_conn()
        try:
            row = await conn.execute(
                "SELECT * FROM assignments WHERE id = ?", (assignment_id,)
            )
            assignment = await row.fetchone()
            if not assignment:
                return None
            result = dict(assignment)
            result["homework"] = json.loads(result["homework"])
            return result
        finally:
            await conn.close()
