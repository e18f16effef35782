import json
import logging
from datetime import datetime, timezone

import aiosqlite

from app.database import get_async_conn
from app.models import TicketRecord

logger = logging.getLogger(__name__)


class MistakeHistoryService:
    """The student's durable, cross-session mistake record.

    Fed only from approved tickets.  Each row keeps the ticket id and
    workflow step it came from.
    """

    async def migrate(
        self,
        ticket: TicketRecord,
        marked_by: str,
        conn: aiosqlite.Connection | None = None,
    ) -> int:
        """Copy the frozen ledger of *ticket* into the history. Returns rows written.

        With *conn* the rows join the caller's open transaction and are
        committed (or rolled back) by the caller.
        """
        if not ticket.mistakes:
            return 0
        now = datetime.now(timezone.utc).isoformat()
        rows = [
            (
                ticket.student_id,
                ticket.id,
                ticket.workflow_step.value,
                m.type,
                m.category,
                m.page,
                m.surah,
                m.ayah,
                m.word_index,
                m.letter_index,
                json.dumps(m.position) if m.position is not None else None,
                json.dumps(m.tajweed_data) if m.tajweed_data is not None else None,
                m.note,
                m.audio_url,
                marked_by,
                (m.timestamp.isoformat() if m.timestamp else now),
                now,
            )
            for m in ticket.mistakes
        ]
        own = conn is None
        if own:
            conn = await get_async_conn()
        try:
            await conn.executemany(
                """INSERT INTO mistake_history
                   (student_id, ticket_id, workflow_step, type, category, page,
                    surah, ayah, word_index, letter_index, position, tajweed_data,
                    note, audio_url, marked_by, timestamp, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                rows,
            )
            if own:
                await conn.commit()
        finally:
            if own:
                await conn.close()
        logger.info(
            "Migrated %d mistakes from ticket %s to student %s",
            len(rows), ticket.id, ticket.student_id,
        )
        return len(rows)

    async def list_for_student(
        self, student_id: str, workflow_step: str | None = None
    ) -> list[dict]:
        conn = await get_async_conn()
        try:
            if workflow_step is not None:
                rows = await conn.execute(
                    "SELECT * FROM mistake_history WHERE student_id = ? "
                    "AND workflow_step = ? ORDER BY id",
                    (student_id, workflow_step),
                )
            else:
                rows = await conn.execute(
                    "SELECT * FROM mistake_history WHERE student_id = ? ORDER BY id",
                    (student_id,),
                )
            result = []
            for row in await rows.fetchall():
                item = dict(row)
                for key in ("position", "tajweed_data"):
                    if item[key]:
                        item[key] = json.loads(item[key])
                result.append(item)
            return result
        finally:
            await conn.close()
