from datetime import datetime, timezone

from app.database import get_async_conn


class NotificationService:
    """In-app notifications addressed to a user or to every user of a role."""

    async def notify(
        self,
        title: str,
        message: str,
        *,
        recipient_id: str | None = None,
        recipient_role: str | None = None,
        ticket_id: int | None = None,
    ) -> int:
        if recipient_id is None and recipient_role is None:
            raise ValueError("A notification needs a recipient id or role.")
        conn = await get_async_conn()
        try:
            cursor = await conn.execute(
                """INSERT INTO notifications
                   (recipient_id, recipient_role, title, message, ticket_id, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    recipient_id,
                    recipient_role,
                    title,
                    message,
                    ticket_id,
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            await conn.commit()
            return cursor.lastrowid
        finally:
            await conn.close()

    async def list_for(self, recipient_id: str, role: str | None = None) -> list[dict]:
        conn = await get_async_conn()
        try:
            rows = await conn.execute(
                "SELECT * FROM notifications WHERE recipient_id = ? "
                "OR (recipient_role IS NOT NULL AND recipient_role = ?) "
                "ORDER BY id DESC",
                (recipient_id, role),
            )
            return [dict(row) for row in await rows.fetchall()]
        finally:
            await conn.close()
