import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from slotwise.config import _env_csv, settings
from slotwise.routers import auth, bookings, notifications
from slotwise.services.booking_engine import booking_engine
from slotwise.services.email_sender import email_sender
from slotwise.services.sms_sender import sms_sender

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    logger.info(
        "SlotWise starting (conflict policy %s, %s notifications)",
        settings.conflict_policy,
        settings.notification_dispatch,
    )
    yield
    booking_engine.notifier.shutdown()


app = FastAPI(title="SlotWise API", version="0.1.0", lifespan=lifespan)

cors_origins = _env_csv("CORS_ORIGINS", "*")
allow_any_origin = len(cors_origins) == 1 and cors_origins[0] == "*"

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    # Browsers reject wildcard CORS with credentials enabled.
    allow_credentials=not allow_any_origin,
    allow_methods=["*"],
    allow_headers=["*"],
)

trusted_hosts = _env_csv("TRUSTED_HOSTS", "*")
if not (len(trusted_hosts) == 1 and trusted_hosts[0] == "*"):
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=trusted_hosts)

app.include_router(bookings.router)
app.include_router(auth.router)
app.include_router(notifications.router)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/ready")
def ready():
    return {
        "status": "ready",
        "conflict_policy": settings.conflict_policy,
        "notification_dispatch": settings.notification_dispatch,
        "cache_backend": type(booking_engine.directory.cache).__name__,
        "email_configured": email_sender.enabled,
        "sms_configured": sms_sender.enabled,
    }
