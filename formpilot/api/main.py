import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from formpilot.api import routes_auth, routes_challenges, routes_internal, routes_jobs, routes_progress
from formpilot.core.config import get_settings
from formpilot.core.errors import FormPilotError
from formpilot.core.logging import get_logger, setup_logging

settings = get_settings()
setup_logging(logging.DEBUG if settings.debug else logging.INFO)
logger = get_logger(__name__)

app = FastAPI(title=settings.app_name)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Last-Event-ID"],
)


@app.exception_handler(FormPilotError)
async def formpilot_error_handler(request: Request, exc: FormPilotError) -> JSONResponse:
    # Routes translate the errors they expect; anything reaching here escaped a handler.
    logger.warning(
        "Unhandled service error",
        extra={"extra": {"path": request.url.path, "code": exc.code}},
    )
    return JSONResponse(status_code=exc.http_status, content={"detail": {"code": exc.code, "message": exc.message}})


@app.get("/healthz")
def healthz():
    return {
        "status": "ok",
        "service": settings.app_name,
        "dispatch_mode": settings.job_dispatch_mode,
        "driver_mode": settings.form_driver_mode,
    }


app.include_router(routes_auth.router)
app.include_router(routes_jobs.router)
app.include_router(routes_progress.router)
app.include_router(routes_challenges.router)
app.include_router(routes_internal.router)
