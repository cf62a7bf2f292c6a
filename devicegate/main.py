"""
FastAPI application factory.

Assembles the app, registers all routers, and wires up lifecycle
events.  Database schema is managed by Alembic, NOT create_all.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from devicegate.controllers.admin_controller import router as admin_router
from devicegate.controllers.session_controller import router as session_router
from devicegate.core.config import settings
from devicegate.core.database import engine
from devicegate.core.exceptions import SessionControlError
from devicegate.core.security import DeviceCookieMiddleware
from devicegate.models import Base  # noqa: F401 (registers every model)
from devicegate.services.idp_gateway import IdPGateway

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


def _error_body(error: str, message: str, detail=None) -> dict:
    body = {"error": error, "message": message}
    if detail is not None:
        body["detail"] = detail
    return body


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(SessionControlError)
    async def session_control_error_handler(request: Request, exc: SessionControlError):
        if exc.status_code >= 500:
            logger.error("%s on %s %s: %s", exc.error, request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(exc.error, exc.message, exc.detail),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content=_error_body("validation_error", "Invalid request", jsonable_errors(exc)),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content=_error_body("internal_error", "An unexpected error occurred"),
        )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(DeviceCookieMiddleware)
    register_exception_handlers(app)

    # ── Register routers ─────────────────────────────────────────────
    app.include_router(session_router)
    app.include_router(admin_router)

    # ── Startup / Shutdown ───────────────────────────────────────────
    @app.on_event("startup")
    async def on_startup() -> None:
        """Create the IdP gateway (one HTTP client + token cache per process).

        NOTE: Database schema is managed by Alembic migrations.
        Run `alembic upgrade head` before starting the app.
        """
        app.state.idp_gateway = IdPGateway.from_settings(settings)
        logger.info("IdP gateway ready for %s", settings.IDP_BASE_URL)

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        gateway = getattr(app.state, "idp_gateway", None)
        if gateway is not None:
            await gateway.aclose()
        await engine.dispose()
        logger.info("IdP gateway closed, database engine disposed.")

    # ── Health check ─────────────────────────────────────────────────
    @app.get("/health", tags=["Health"])
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
