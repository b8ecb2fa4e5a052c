from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import projects, billing, admin

import os
import logging
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Idea Validation API")
    await database.connect()

    if not (os.environ.get("LLM_API_KEY") or "").strip():
        logger.error("LLM_API_KEY is not set. Stage generation will fail with UPSTREAM_ERROR.")
    if not (os.environ.get("STRIPE_SECRET_KEY") or os.environ.get("STRIPE_API_KEY") or "").strip():
        logger.warning("STRIPE_API_KEY is not set. Billing portal will be unavailable.")

    from services.completion_service import COMPLETION_TIMEOUT_SECONDS
    from services.credit_ledger import ORPHAN_CHARGE_AFTER_SECONDS
    if ORPHAN_CHARGE_AFTER_SECONDS <= COMPLETION_TIMEOUT_SECONDS:
        logger.warning(
            "ORPHAN_CHARGE_AFTER_SECONDS (%s) should exceed COMPLETION_TIMEOUT_SECONDS (%s); "
            "in-flight generations may be reported as orphaned",
            ORPHAN_CHARGE_AFTER_SECONDS, COMPLETION_TIMEOUT_SECONDS,
        )

    yield

    # Shutdown
    logger.info("Shutting down Idea Validation API")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Idea Validation API",
    description="Project analysis pipeline with per-project credit metering",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(projects.router)
app.include_router(billing.router)
app.include_router(admin.router)

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }

def jsonable_errors(errors):
    return [{"loc": list(e.get("loc", [])), "msg": e.get("msg"), "type": e.get("type")} for e in errors]

# Validation error handler: log request_id + full errors (loc path)
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    logger.warning(
        "Validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=422,
        content={"detail": jsonable_errors(errors), "request_id": request_id},
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
