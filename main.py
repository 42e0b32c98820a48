import asyncio
import logging
import os
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "3600"))
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
VERSION = "1.0.0"

from database import Base, SessionLocal, engine
from errors import (
    InvalidPasswordError, PasswordRequiredError, RateLimitExceededError, ZKShareError,
)
from maintenance import run_sweep
from ratelimit import get_rate_limiters
from storage import StorageBackend, get_storage


# ─── Periodic sweep ──────────────────────────────────────────────────────────

def _sweep_once():
    db = SessionLocal()
    try:
        run_sweep(db, get_storage(), get_rate_limiters().store)
    finally:
        db.close()


async def _periodic_sweep(interval: int):
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(_sweep_once)
        except Exception:
            # Keep the loop alive; the next interval retries.
            logger.exception("Periodic sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    task = None
    if SWEEP_INTERVAL_SECONDS > 0:
        task = asyncio.create_task(_periodic_sweep(SWEEP_INTERVAL_SECONDS))
    logger.info(f"ZKShare started (storage={get_storage().backend_name})")
    yield
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task


app = FastAPI(
    title="ZKShare API",
    description="Zero-knowledge encrypted file sharing",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[
        "X-ZK-IV", "X-ZK-Salt", "X-ZK-Iterations", "X-ZK-Algorithm", "X-ZK-Key-Mode",
        "X-Download-Count", "X-Downloads-Remaining",
        "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After",
    ],
)


@app.middleware("http")
async def referrer_policy(request: Request, call_next):
    response = await call_next(request)
    # Share pages carry the key in the fragment; never let a Referer out.
    response.headers["Referrer-Policy"] = "no-referrer"
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    return response


# ─── Routers ─────────────────────────────────────────────────────────────────
from share_routes import router as share_router
from audit_routes import router as audit_router
app.include_router(share_router)
app.include_router(audit_router)


# ─── Exception handlers ──────────────────────────────────────────────────────

def _epoch(dt: datetime) -> int:
    return int(dt.replace(tzinfo=timezone.utc).timestamp())


@app.exception_handler(ZKShareError)
async def zkshare_error_handler(request: Request, exc: ZKShareError):
    body = {"success": False, "error": exc.error_code, "message": exc.message}
    headers = {}

    if exc.status_code >= 500:
        logger.error(f"{exc.error_code} on {request.method} {request.url.path}")
        body["message"] = exc.public_message
    elif isinstance(exc, RateLimitExceededError):
        body.update({"limit": exc.limit, "remaining": exc.remaining})
        headers = {
            "X-RateLimit-Limit": str(exc.limit),
            "X-RateLimit-Remaining": str(exc.remaining),
        }
        if exc.reset_at is not None:
            reset = _epoch(exc.reset_at)
            now = int(datetime.now(timezone.utc).timestamp())
            body["reset_at"] = exc.reset_at.isoformat()
            headers["X-RateLimit-Reset"] = str(reset)
            headers["Retry-After"] = str(max(0, reset - now))
    elif isinstance(exc, PasswordRequiredError):
        # Public derivation parameters, needed before the client can form a key.
        body.update({k: v for k, v in exc.details.items() if v is not None})
    elif isinstance(exc, InvalidPasswordError) and "attempts_remaining" in exc.details:
        body["attempts_remaining"] = exc.details["attempts_remaining"]

    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled {type(exc).__name__} on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "internal_error", "message": "Internal server error"},
    )


# ─── Health ──────────────────────────────────────────────────────────────────

@app.get("/health", tags=["System"])
def health(storage: StorageBackend = Depends(get_storage)):
    return {
        "status": "ok",
        "service": "ZKShare",
        "version": VERSION,
        "storage": storage.get_health(),
    }
