import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .booking_lifecycle import BookingError
from .core.config import get_settings
from .core.db import AsyncSessionLocal, Base, engine
from .core.responses import ErrorCodes, code_for_status, error_response, success_response
from .offers import PromoCodeError
from .rate_limiter import RateLimitHeadersMiddleware
from .routes_admin import router as admin_router
from .routes_bookings import router as bookings_router
from .routes_public import router as public_router
from .seed import seed_initial_data


settings = get_settings()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Excursions Booking Backend")

app.add_middleware(RateLimitHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(public_router)
app.include_router(bookings_router)
app.include_router(admin_router)


# ────────────────────────────────────────────────────────────────
# Error envelope
# ────────────────────────────────────────────────────────────────

def _error(status_code: int, message: str, code: str | None = None, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_response(message, code or code_for_status(status_code)),
        headers=headers,
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return _error(exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path"))
        message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    else:
        message = "Invalid request"
    return _error(status.HTTP_400_BAD_REQUEST, message, ErrorCodes.VALIDATION_ERROR)


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    return _error(exc.status_code, exc.message)


@app.exception_handler(PromoCodeError)
async def promo_code_error_handler(request: Request, exc: PromoCodeError):
    return _error(exc.status_code, exc.message)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    message = "Internal server error" if settings.is_production else str(exc)
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, message, ErrorCodes.INTERNAL_ERROR)


# ────────────────────────────────────────────────────────────────
# Lifecycle
# ────────────────────────────────────────────────────────────────

@app.on_event("startup")
async def on_startup():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    if settings.seed_demo_data:
        async with AsyncSessionLocal() as session:
            await seed_initial_data(session)


@app.get("/health")
async def health():
    return success_response({"status": "ok", "environment": settings.environment})
