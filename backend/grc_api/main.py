import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from grc_api.config import settings
from grc_api.database import check_db_connection
from grc_api.errors import install_error_handlers
from grc_api.middleware.request_context import RequestContextMiddleware, RequestIdLogFilter
from grc_api.routers.alert_rules import router as alert_rules_router
from grc_api.routers.alerts import router as alerts_router
from grc_api.routers.audit import router as audit_router
from grc_api.routers.auth import router as auth_router
from grc_api.routers.controls import router as controls_router
from grc_api.routers.frameworks import router as frameworks_router
from grc_api.routers.monitoring import router as monitoring_router
from grc_api.routers.org_frameworks import router as org_frameworks_router
from grc_api.routers.risk_analytics import router as risk_analytics_router
from grc_api.routers.risk_treatments import router as risk_treatments_router
from grc_api.routers.risks import router as risks_router
from grc_api.routers.test_results import router as test_results_router
from grc_api.routers.test_runs import router as test_runs_router
from grc_api.routers.tests import router as tests_router
from grc_api.routers.users import org_router as organizations_router
from grc_api.routers.users import router as users_router

logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    handler = logging.StreamHandler()
    handler.addFilter(RequestIdLogFilter())
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s [%(request_id)s] %(message)s",
        handlers=[handler],
    )


_configure_logging()

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(RequestContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)

install_error_handlers(app)

app.include_router(auth_router)
app.include_router(users_router)
app.include_router(organizations_router)
app.include_router(audit_router)
app.include_router(frameworks_router)
app.include_router(org_frameworks_router)
app.include_router(controls_router)
# /risks/heat-map, /risks/gaps and /risks/stats must win over /risks/{risk_id}
app.include_router(risk_analytics_router)
app.include_router(risks_router)
app.include_router(risk_treatments_router)
app.include_router(tests_router)
app.include_router(test_runs_router)
app.include_router(test_results_router)
app.include_router(alerts_router)
app.include_router(alert_rules_router)
app.include_router(monitoring_router)


@app.get("/health")
async def health():
    """Liveness: the process is up. Does not touch the database."""
    return {"status": "ok", "app": settings.APP_NAME, "version": settings.APP_VERSION}


@app.get("/ready")
async def ready():
    """Readiness: every backing dependency answers within its timeout."""
    try:
        await check_db_connection()
        database = "ok"
    except Exception as exc:
        logger.warning("Readiness check failed for database: %r", exc)
        database = "error"

    is_ready = database == "ok"
    return JSONResponse(
        status_code=200 if is_ready else 503,
        content={"status": "ready" if is_ready else "not_ready", "checks": {"database": database}},
    )
