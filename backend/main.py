import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from db.database import engine, Base, run_startup_migrations
from auth.bootstrap import ensure_bootstrap_admin
from auth.enterprise_admin import cleanup_expired_sessions
from auth.routes import router as auth_router
from api.subscription import router as subscription_router
from api.questionnaires import router as questionnaires_router
from api.responses import router as responses_router
from api.analytics import router as analytics_router
from api.qr_codes import router as qr_codes_router
from api.enterprise_admin import router as enterprise_admin_router
from services.errors import ServiceError
from services.session_store import get_admin_session_store

logging.basicConfig(
    level=getattr(logging, (settings.LOG_LEVEL or "INFO").upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

settings.validate_security_configuration()

# Create all tables
Base.metadata.create_all(bind=engine)
run_startup_migrations()
ensure_bootstrap_admin()


async def _sweep_admin_sessions(interval_seconds: int) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            cleanup_expired_sessions(get_admin_session_store())
        except Exception as e:
            logger.error(f"Admin session sweep failed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    task = asyncio.create_task(_sweep_admin_sessions(max(int(settings.ADMIN_SESSION_SWEEP_INTERVAL_SECONDS), 1)))
    try:
        yield
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


app = FastAPI(title=settings.APP_NAME, version="1.0.0", lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if not settings.SECURITY_HEADERS_ENABLED:
        return response
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Permissions-Policy"] = "camera=(), microphone=(), geolocation=()"
    return response


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=exc.headers)


# Routers
app.include_router(auth_router, prefix="/api/v1")
app.include_router(subscription_router, prefix="/api/v1")
app.include_router(questionnaires_router, prefix="/api/v1")
app.include_router(responses_router, prefix="/api/v1")
app.include_router(analytics_router, prefix="/api/v1")
app.include_router(qr_codes_router, prefix="/api/v1")
app.include_router(enterprise_admin_router, prefix="/api/v1")


@app.get("/api/health")
def health_check():
    return {"status": "ok", "app": settings.APP_NAME}
