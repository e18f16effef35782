import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.config import settings
from app.database import init_db
from app.engine import TicketError
from app.routes import tickets

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Ensure the ticket, history, assignment and notification tables exist."""
    await init_db()
    yield


app = FastAPI(
    title="recitation-tickets",
    description="Supervised Quran recitation review sessions",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(tickets.router)


@app.exception_handler(TicketError)
async def ticket_error_handler(_request: Request, exc: TicketError) -> JSONResponse:
    """Render engine errors as ``{"error": kind, "detail": message}``."""
    logger.debug("Rejected command: %s (%s)", exc.detail, exc.kind)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.kind, "detail": exc.detail},
    )


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}
