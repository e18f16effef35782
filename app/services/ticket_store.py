import json
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable

import aiosqlite

from app.database import get_async_conn
from app.models import AyahRange, MistakeEntry, TicketRecord, TicketStatus, WorkflowStep

# Columns a transition may read or write.  Anything else is a programming
# error and must never reach the SQL text.
WRITABLE_COLUMNS = frozenset({
    "teacher_id", "status", "ayah_range", "range_locked", "assignment_id",
    "mistakes", "notes", "audio_url", "session_notes", "started_at",
    "paused_at", "paused_seconds", "last_heartbeat_at", "submitted_at",
    "listening_duration_seconds", "reviewed_by", "review_notes", "reviewed_at",
    "homework_assigned", "reassigned_from_teacher_id",
    "reassigned_from_teacher_name", "reassigned_to_teacher_id",
    "reassigned_to_teacher_name", "reassignment_reason", "reassigned_at",
    "previous_mistakes", "previous_teacher_comment", "closed_by", "closed_at",
})
GUARD_COLUMNS = WRITABLE_COLUMNS | {"revision"}


def _encode(value: Any) -> Any:
    """Convert a Python value into its SQLite column representation."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, AyahRange):
        return json.dumps(value.to_dict())
    if isinstance(value, list):
        return json.dumps(
            [v.to_dict() if isinstance(v, MistakeEntry) else v for v in value]
        )
    if isinstance(value, dict):
        return json.dumps(value)
    return value


def _where(ticket_id: int, expect: dict[str, Any]) -> tuple[str, list]:
    clauses = ["id = ?"]
    params: list = [ticket_id]
    for column, value in expect.items():
        if column not in GUARD_COLUMNS:
            raise ValueError(f"Unknown guard column: {column}")
        if value is None:
            clauses.append(f"{column} IS NULL")
        elif isinstance(value, (tuple, set, frozenset)):
            values = [_encode(v) for v in value]
            clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
            params.extend(values)
        else:
            clauses.append(f"{column} = ?")
            params.append(_encode(value))
    return " AND ".join(clauses), params


class TicketStore:
    """Single-record access to the ``tickets`` table.

    Every write is one ``UPDATE ... WHERE`` guarded by the values the caller
    read; ``rowcount`` tells the caller whether it won.  There is no
    read-then-write path and no lock table.
    """

    async def create(
        self,
        student_id: str,
        workflow_step: WorkflowStep,
        now: datetime,
        *,
        teacher_id: str | None = None,
        notes: str | None = None,
        audio_url: str | None = None,
        assignment_id: int | None = None,
    ) -> TicketRecord:
        conn = await get_async_conn()
        try:
            cursor = await conn.execute(
                "INSERT INTO tickets (student_id, teacher_id, workflow_step, status, "
                "notes, audio_url, assignment_id, created_at, updated_at) "
                "VALUES (?, ?, ?, 'pending', ?, ?, ?, ?, ?)",
                (
                    student_id,
                    teacher_id,
                    workflow_step.value,
                    notes,
                    audio_url,
                    assignment_id,
                    now.isoformat(),
                    now.isoformat(),
                ),
            )
            await conn.commit()
            row = await conn.execute(
                "SELECT * FROM tickets WHERE id = ?", (cursor.lastrowid,)
            )
            return TicketRecord.from_row(await row.fetchone())
        finally:
            await conn.close()

    async def get(self, ticket_id: int) -> TicketRecord | None:
        conn = await get_async_conn()
        try:
            row = await conn.execute(
                "SELECT * FROM tickets WHERE id = ?", (ticket_id,)
            )
            ticket = await row.fetchone()
            return TicketRecord.from_row(ticket) if ticket else None
        finally:
            await conn.close()

    async def find(
        self,
        *,
        statuses: list[TicketStatus] | None = None,
        workflow_step: WorkflowStep | None = None,
        student_id: str | None = None,
        teacher_id: str | None = None,
        limit: int | None = None,
        offset: int = 0,
        oldest_first: bool = False,
    ) -> tuple[list[TicketRecord], int]:
        """Return one page of tickets plus the total match count."""
        clauses: list[str] = []
        params: list = []
        if statuses:
            clauses.append(f"status IN ({', '.join('?' for _ in statuses)})")
            params.extend(s.value for s in statuses)
        if workflow_step is not None:
            clauses.append("workflow_step = ?")
            params.append(workflow_step.value)
        if student_id is not None:
            clauses.append("student_id = ?")
            params.append(student_id)
        if teacher_id is not None:
            clauses.append("teacher_id = ?")
            params.append(teacher_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        order = "ASC" if oldest_first else "DESC"

        conn = await get_async_conn()
        try:
            row = await conn.execute(f"SELECT COUNT(*) FROM tickets{where}", params)
            total = (await row.fetchone())[0]

            query = f"SELECT * FROM tickets{where} ORDER BY created_at {order}, id {order}"
            page_params = list(params)
            if limit is not None:
                query += " LIMIT ? OFFSET ?"
                page_params.extend([limit, offset])
            rows = await conn.execute(query, page_params)
            return [TicketRecord.from_row(r) for r in await rows.fetchall()], total
        finally:
            await conn.close()

    async def compare_and_set(
        self,
        ticket_id: int,
        expect: dict[str, Any],
        changes: dict[str, Any],
        now: datetime,
        *,
        bump_revision: bool = True,
        within: Callable[[aiosqlite.Connection], Awaitable[None]] | None = None,
    ) -> bool:
        """Apply *changes* only if the row still matches *expect*.

        ``within`` runs on the same connection after the update has matched
        and before the commit; if it raises, the update is rolled back too.
        Liveness-only writes pass ``bump_revision=False``.
        """
        unknown = set(changes) - WRITABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown ticket columns: {sorted(unknown)}")
        assignments = [f"{column} = ?" for column in changes]
        params = [_encode(v) for v in changes.values()]
        if bump_revision:
            assignments.append("revision = revision + 1")
        assignments.append("updated_at = ?")
        params.append(now.isoformat())
        where, where_params = _where(ticket_id, expect)

        conn = await get_async_conn()
        try:
            cursor = await conn.execute(
                f"UPDATE tickets SET {', '.join(assignments)} WHERE {where}",
                params + where_params,
            )
            if cursor.rowcount != 1:
                await conn.rollback()
                return False
            if within is not None:
                await within(conn)
            await conn.commit()
            return True
        except Exception:
            await conn.rollback()
            raise
        finally:
            await conn.close()

    @staticmethod
    async def link_homework(
        conn: aiosqlite.Connection, ticket_id: int, assignment_id: int
    ) -> None:
        await conn.execute(
            "UPDATE tickets SET homework_assigned = ? WHERE id = ?",
            (assignment_id, ticket_id),
        )

    async def delete(self, ticket_id: int) -> bool:
        conn = await get_async_conn()
        try:
            cursor = await conn.execute("DELETE FROM tickets WHERE id = ?", (ticket_id,))
            await conn.commit()
            return cursor.rowcount == 1
        finally:
            await conn.close()

    async def append_mistake(
        self,
        ticket_id: int,
        entry: MistakeEntry,
        *,
        statuses: frozenset[TicketStatus],
        teacher_id: str,
        now: datetime,
    ) -> bool:
        """Append *entry* to the ledger in place with ``json_insert``."""
        where, where_params = _where(
            ticket_id, {"status": tuple(statuses), "teacher_id": teacher_id}
        )
        conn = await get_async_conn()
        try:
            cursor = await conn.execute(
                "UPDATE tickets SET mistakes = json_insert(mistakes, '$[#]', json(?)), "
                f"revision = revision + 1, updated_at = ? WHERE {where}",
                [json.dumps(entry.to_dict()), now.isoformat()] + where_params,
            )
            await conn.commit()
            return cursor.rowcount == 1
        finally:
            await conn.close()

    async def remove_mistake(
        self,
        ticket_id: int,
        index: int,
        *,
        statuses: frozenset[TicketStatus],
        teacher_id: str,
        now: datetime,
    ) -> bool:
        """Remove the entry at *index* in place with ``json_remove``."""
        where, where_params = _where(
            ticket_id, {"status": tuple(statuses), "teacher_id": teacher_id}
        )
        conn = await get_async_conn()
        try:
            cursor = await conn.execute(
                "UPDATE tickets SET mistakes = json_remove(mistakes, ?), "
                f"revision = revision + 1, updated_at = ? WHERE {where} "
                "AND json_array_length(mistakes) > ?",
                [f"$[{int(index)}]", now.isoformat()] + where_params + [index],
            )
            await conn.commit()
            return cursor.rowcount == 1
        finally:
            await conn.close()
