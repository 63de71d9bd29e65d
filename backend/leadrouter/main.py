"""Main FastAPI application."""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

from leadrouter import __version__
from leadrouter.config import settings
from leadrouter.database import Base, init_db
from leadrouter.routers import routing_routes

# Configure logging
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Lead Routing API",
    description="Routes inbound leads to service locations by proximity, capacity and lead value",
    version=__version__,
    redirect_slashes=False,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed or missing fields are a caller error (400), never routed."""
    fields = sorted({str(err["loc"][-1]) for err in exc.errors() if err.get("loc")})
    logger.warning(f"Rejected {request.method} {request.url.path}: invalid fields {fields}")
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": f"Missing or invalid fields: {', '.join(fields)}",
            "details": jsonable_errors(exc),
        },
    )


def jsonable_errors(exc: RequestValidationError):
    return [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]


app.include_router(routing_routes.router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": __version__,
        "environment": settings.ENVIRONMENT,
        "tables": sorted(Base.metadata.tables.keys()),
    }


@app.on_event("startup")
async def startup_event():
    logger.info("Starting Lead Routing API...")
    await init_db()
    logger.info(f"Registered {len(Base.metadata.tables)} tables: {', '.join(sorted(Base.metadata.tables))}")
