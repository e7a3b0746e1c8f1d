import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .client_routes import router as client_router
from .core.config import get_settings
from .core.db import AsyncSessionLocal, Base, engine
from .core.errors import SchedulingError
from .core.responses import ErrorCodes, error_response
from .cron import router as cron_router
from .owner_routes import router as owner_router
from .public_booking import router as public_router
from .seed import seed_initial_data


settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Slotkeeper Scheduling Backend")
logger = logging.getLogger(__name__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SchedulingError)
async def scheduling_error_handler(request: Request, exc: SchedulingError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(exc.code, exc.message, exc.details),
    )


HTTP_ERROR_CODES = {
    401: ErrorCodes.AUTHENTICATION_REQUIRED,
    403: ErrorCodes.AUTHORIZATION_DENIED,
    404: ErrorCodes.NOT_FOUND,
    429: ErrorCodes.RATE_LIMITED,
}


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    """Auth, ownership and rate-limit rejections use the same envelope as engine errors."""
    code = HTTP_ERROR_CODES.get(exc.status_code, ErrorCodes.INVALID_INPUT)
    details = None
    if isinstance(exc.detail, dict):
        details = {k: v for k, v in exc.detail.items() if k != "message"}
        message = exc.detail.get("message", "Request rejected")
    else:
        message = str(exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(code, message, details),
        headers=getattr(exc, "headers", None),
    )


app.include_router(public_router)
app.include_router(client_router)
app.include_router(owner_router)
app.include_router(cron_router)


@app.on_event("startup")
async def on_startup():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    if settings.seed_demo_data:
        async with AsyncSessionLocal() as session:
            await seed_initial_data(session)


@app.get("/health")
async def health():
    return {"status": "ok"}
