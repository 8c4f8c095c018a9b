import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from src import config
from src.api.limiter import limiter
from src.api.logging_config import LOG_FILE
from src.api.routers import audit, auth, users
from src.catalog_app.models.database import init_database
from src.catalog_app.services.errors import SecurityError
from src.catalog_app.services.security_config import load_security_config
from src.catalog_app.utils import get_response_builder


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize the database on startup"""
    logger.info("=" * 60)
    logger.info(f"Starting {config.APP_NAME} API ({config.ENVIRONMENT})...")
    logger.info(f"Log file: {LOG_FILE}")
    logger.info("=" * 60)

    try:
        init_database()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        logger.exception("Database initialization traceback:")

    logger.info("Server ready to accept requests")

    yield

    logger.info(f"Shutting down {config.APP_NAME} API...")


app = FastAPI(
    title=f"{config.APP_NAME} API",
    description="Session and login-defense backend for the catalog site admin CMS",
    version=config.APP_VERSION,
    lifespan=lifespan,
)

# Built once; handlers receive it through get_security_config
app.state.security_config = load_security_config()

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.middleware("http")
async def apply_response_builder(request: Request, call_next):
    """Apply cookies and headers accumulated during the request, on any response."""
    builder = get_response_builder(request)
    response = await call_next(request)
    if request.url.path.startswith("/api/auth"):
        builder.set_header("Cache-Control", "no-store")
    return builder.apply(response)


@app.exception_handler(SecurityError)
async def security_error_handler(request: Request, exc: SecurityError):
    if exc.status_code >= 500:
        logger.error(f"{exc.reason} on {request.method} {request.url.path}")
    else:
        logger.debug(f"{exc.status_code} {exc.reason} on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=exc.status_code, content=exc.payload(), headers=exc.headers()
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    fields = sorted({".".join(str(p) for p in err.get("loc", ())[1:]) for err in exc.errors()})
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "reason": "invalid_request",
            "message": "Solicitud inválida",
            "error": "Solicitud inválida",
            "fields": fields,
        },
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    error_id = uuid.uuid4().hex[:12]
    logger.opt(exception=exc).error(
        f"Unhandled error {error_id} on {request.method} {request.url.path}"
    )
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "reason": "server_error",
            "message": "Error interno del servidor",
            "error": "Error interno del servidor",
            "error_id": error_id,
        },
    )


@app.get("/api/health")
async def root():
    """Health check endpoint"""
    return {"status": "online", "app": f"{config.APP_NAME} API", "version": config.APP_VERSION}


app.include_router(auth.router, prefix="/api/auth", tags=["auth"])
app.include_router(users.router, prefix="/api/users", tags=["users"])
app.include_router(audit.router, prefix="/api/audit", tags=["audit"])

# Configure CORS
origins = [origin.strip() for origin in config.ALLOWED_ORIGINS.split(",") if origin.strip()]

if not origins:
    logger.warning("ALLOWED_ORIGINS is empty; falling back to development defaults")
    origins = ["http://localhost:5173", "http://127.0.0.1:5173"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-CSRF-Token"],
)

if __name__ == "__main__":
    uvicorn.run("src.api.main:app", host=config.BACKEND_HOST, port=config.BACKEND_PORT, reload=True)
