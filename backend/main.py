import asyncio

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from starlette.concurrency import run_in_threadpool

from api.v1 import auth, diagnostics
from core.config import reload_settings, settings
from core.exceptions import register_exception_handlers
from db.mongodb import close_mongo_client, init_mongo_indexes
from services.mail_transport import ClientCache, MailTransport
from utils.logging_config import configure_logging, RequestContextMiddleware

# Configure logging with date-based files and TTL retention
logger = configure_logging("loan_portal")

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG
)
register_exception_handlers(app)

# Add GZip compression for larger JSON payloads
app.add_middleware(GZipMiddleware, minimum_size=500)

# Add logging context middleware to capture user_id and API path
app.add_middleware(RequestContextMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# One transport per process; unusable or rejected SMTP settings trigger an environment re-read
app.state.mail_transport = MailTransport(ClientCache(), reloader=reload_settings)

# Include routers
app.include_router(auth.router, prefix=settings.API_AUTH_PREFIX, tags=["Authentication"])
app.include_router(diagnostics.router, prefix="/api", tags=["Diagnostics"])


async def _verify_smtp(transport: MailTransport) -> None:
    diagnosis = transport.diagnose()
    logger.info(
        f"SMTP configuration: host={diagnosis['emailHost']} port={diagnosis['emailPort']} "
        f"user={diagnosis['emailUser']} password {diagnosis['emailPass']}"
    )
    if not diagnosis["configValid"]:
        logger.error(f"SMTP configuration invalid: {diagnosis['error']}")
        return
    result = await run_in_threadpool(transport.verify_connection)
    if result.success:
        logger.info("SMTP server is ready to send emails")
    else:
        logger.error(f"SMTP verification failed ({result.kind}): {result.error}")
        if result.hint:
            logger.error(f"Hint: {result.hint}")


@app.on_event("startup")
async def startup_event():
    """Ensure Mongo indexes and check the SMTP relay without blocking startup"""
    try:
        await init_mongo_indexes()
        logger.info("Mongo indexes ensured")
    except Exception as e:
        logger.warning(f"Mongo init skipped or failed: {e}")
    if settings.SMTP_VERIFY_ON_STARTUP:
        app.state.smtp_check = asyncio.create_task(_verify_smtp(app.state.mail_transport))
    logger.info("Application startup complete")

@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown"""
    close_mongo_client()
    logger.info("Application shutdown complete")

@app.get("/")
async def root():
    return {"message": settings.APP_NAME, "version": settings.VERSION}

@app.get("/api/health")
async def health_check():
    return {"status": "OK", "message": "Server is running"}
