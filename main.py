#main.py
import logging

from fastapi import FastAPI
from fastapi import Request
from fastapi.responses import JSONResponse

from middleware import RequestContextMiddleware
from routes.admin_transfers import router as admin_transfers_router
from routes.cron import router as cron_router
from routes.health import router as health_router
from routes.metrics import router as metrics_router
from routes.settlements import router as settlements_router
from routes.webhooks import router as webhooks_router
from services.observability import configure_logging
from settings import settings, validate_env_settings

configure_logging(settings.LOG_LEVEL)
validate_env_settings()

logger = logging.getLogger("settlement.http")

app = FastAPI(title="Settlement Scheduler API", version="1.0.0")
app.add_middleware(RequestContextMiddleware)

# -----------------------------
# ROUTERS
# -----------------------------

app.include_router(health_router)
app.include_router(metrics_router)
app.include_router(settlements_router)
app.include_router(webhooks_router)
app.include_router(cron_router)
app.include_router(admin_transfers_router)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(
        "unhandled error path=%s",
        request.url.path,
        exc_info=(type(exc), exc, exc.__traceback__),
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )
