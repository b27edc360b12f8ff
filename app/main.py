"""
TIMBRADO-NOMINA — Main API Application
FastAPI backend for stamping Mexican payroll CFDI 4.0 (Nómina 1.2) with a PAC.

Flow:
  1. POST /cfdi/records     → Validate FiscalDocument, store as pending
  2. POST /cfdi/stamp       → Stamp one pending record with the company's PAC
  3. POST /cfdi/stamp-run   → Stamp every pending record of a payroll run
  4. POST /cfdi/resubmit    → New pending attempt for a record in error
  5. GET  /cfdi/{id}/xml    → Stamped XML (or preview of a pending document)

Architecture:
  - PAC credentials live in mx_pac_configurations (password Fernet-encrypted)
  - Each stamp attempt ends in exactly one terminal state: stamped | error
  - A stamped record is never sent to a PAC again
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings, PAC_URLS
from app.core.errors import StampServiceError
from app.dependencies import get_stamping_service
from app.routers.cfdi_router import create_cfdi_router
from app.schemas.models import ErrorResponse, HealthResponse

# ─────────────────────────────────────────────────────────────
# LOGGING
# ─────────────────────────────────────────────────────────────

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("timbrado-nomina")


def _environment() -> str:
    return "development" if settings.debug else "production"


# ─────────────────────────────────────────────────────────────
# APP LIFECYCLE
# ─────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"🚀 {settings.app_name} v{settings.app_version} starting...")
    logger.info(f"   Environment: {_environment()}")
    for provider in PAC_URLS:
        logger.info(f"   PAC provider enabled: {provider.value}")
    yield
    logger.info(f"{settings.app_name} shutdown complete.")


# ─────────────────────────────────────────────────────────────
# FASTAPI APP
# ─────────────────────────────────────────────────────────────


# --- Rate Limiting ---
import jwt
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

def _get_rate_limit_key(request):
    """Rate limit by token subject if a bearer token is present, else by IP."""
    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        try:
            token = auth_header.split(" ", 1)[1]
            # Unverified decode: only the caller key is needed here
            payload = jwt.decode(token, options={"verify_signature": False})
            return payload.get("sub") or get_remote_address(request)
        except jwt.PyJWTError:
            logger.debug("Rate limit key: unreadable bearer token, using client IP")
    return get_remote_address(request)

limiter = Limiter(key_func=_get_rate_limit_key, default_limits=["60/minute"])

app = FastAPI(
    title="TIMBRADO-NOMINA API",
    description=(
        "Backend API para timbrado de CFDI 4.0 con complemento de Nómina 1.2. "
        "Serializa el documento fiscal, lo envía al PAC configurado de la empresa "
        "(SOAP o REST) y persiste el resultado del timbrado."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Rate limiter setup
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)


# ─────────────────────────────────────────────────────────────
# GLOBAL EXCEPTION HANDLERS
# ─────────────────────────────────────────────────────────────

@app.exception_handler(StampServiceError)
async def stamp_error_handler(request: Request, exc: StampServiceError):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=exc.__class__.__name__, detail=exc.message, code=exc.code,
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error="INTERNAL_ERROR", detail="Error interno del servidor", code="INTERNAL_ERROR",
        ).model_dump(),
    )


# ═════════════════════════════════════════════════════════════
# ROUTES
# ═════════════════════════════════════════════════════════════


# ─────────────────────────────────────────────────────────────
# HEALTH CHECK
# ─────────────────────────────────────────────────────────────

@app.get("/health", response_model=HealthResponse, tags=["Sistema"])
async def health_check():
    """Verificar estado del servicio."""
    return {
        "status": "ok",
        "version": settings.app_version,
        "environment": _environment(),
    }


app.include_router(create_cfdi_router(get_stamping_service=get_stamping_service))


# ENTRYPOINT
# ─────────────────────────────────────────────────────────────

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
