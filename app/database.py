import logging

import aiosqlite

from app.config import settings

logger = logging.getLogger(__name__)

CREATE_TICKETS = """
CREATE TABLE IF NOT EXISTS tickets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    student_id TEXT NOT NULL,
    teacher_id TEXT,
    workflow_step TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    ayah_range TEXT,
    range_locked INTEGER NOT NULL DEFAULT 0,
    assignment_id INTEGER,
    mistakes TEXT NOT NULL DEFAULT '[]',
    notes TEXT,
    audio_url TEXT,
    session_notes TEXT,
    started_at TEXT,
    paused_at TEXT,
    paused_seconds REAL NOT NULL DEFAULT 0,
    last_heartbeat_at TEXT,
    submitted_at TEXT,
    listening_duration_seconds INTEGER,
    reviewed_by TEXT,
    review_notes TEXT,
    reviewed_at TEXT,
    homework_assigned INTEGER,
    reassigned_from_teacher_id TEXT,
    reassigned_from_teacher_name TEXT,
    reassigned_to_teacher_id TEXT,
    reassigned_to_teacher_name TEXT,
    reassignment_reason TEXT,
    reassigned_at TEXT,
    previous_mistakes TEXT NOT NULL DEFAULT '[]',
    previous_teacher_comment TEXT,
    closed_by TEXT,
    closed_at TEXT,
    revision INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
)
"""

CREATE_TICKET_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_tickets_student_step "
    "ON tickets (student_id, workflow_step, status)",
    "CREATE INDEX IF NOT EXISTS idx_tickets_teacher_status "
    "ON tickets (teacher_id, status)",
]

CREATE_MISTAKE_HISTORY = """
CREATE TABLE IF NOT EXISTS mistake_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    student_id TEXT NOT NULL,
    ticket_id INTEGER NOT NULL,
    workflow_step TEXT NOT NULL,
    type TEXT NOT NULL,
    category TEXT NOT NULL,
    page INTEGER,
    surah INTEGER,
    ayah INTEGER,
    word_index INTEGER,
    letter_index INTEGER,
    position TEXT,
    tajweed_data TEXT,
    note TEXT,
    audio_url TEXT,
    marked_by TEXT,
    timestamp TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (ticket_id) REFERENCES tickets(id)
)
"""

CREATE_ASSIGNMENTS = """
CREATE TABLE IF NOT EXISTS assignments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    student_id TEXT NOT NULL,
    assigned_by TEXT NOT NULL,
    from_ticket_id INTEGER,
    workflow_step TEXT,
    title TEXT,
    description TEXT,
    instructions TEXT,
    due_date TEXT,
    homework TEXT NOT NULL DEFAULT '{}',
    comment TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (from_ticket_id) REFERENCES tickets(id)
)
"""

CREATE_NOTIFICATIONS = """
CREATE TABLE IF NOT EXISTS notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    recipient_id TEXT,
    recipient_role TEXT,
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    ticket_id INTEGER,
    is_read INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
)
"""

_DDL = [
    CREATE_TICKETS,
    *CREATE_TICKET_INDEXES,
    CREATE_MISTAKE_HISTORY,
    CREATE_ASSIGNMENTS,
    CREATE_NOTIFICATIONS,
]


async def init_db() -> None:
    """Create all tables. Called once at server startup via FastAPI lifespan."""
    async with aiosqlite.connect(settings.database_path) as db:
        await db.execute("PRAGMA journal_mode = WAL")
        for stmt in _DDL:
            await db.execute(stmt)
        await db.commit()
    logger.info("Database ready at %s", settings.database_path)


async def get_async_conn() -> aiosqlite.Connection:
    """Open a connection for a single command. Callers close it."""
    conn = await aiosqlite.connect(settings.database_path)
    await conn.execute("PRAGMA busy_timeout = 5000")
    conn.row_factory = aiosqlite.Row
    return conn
