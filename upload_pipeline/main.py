from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from upload_pipeline.core.logging_config import logger, setup_logging
from upload_pipeline.db.database import init_models
from upload_pipeline.middleware import AuthMiddleware
from upload_pipeline.routers import maintenance, multipart, uploads

setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_models()
    logger.info("Upload pipeline service started")
    yield


app = FastAPI(
    title="Upload Pipeline Service",
    description="Multi-phase upload lifecycle for projects, options and records",
    version="1.0.0",
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add Auth middleware (inactive unless AUTH_VERIFY_URL is set)
app.add_middleware(AuthMiddleware)

# Include routers
app.include_router(multipart.router, prefix="/api/v1", tags=["Upload Sessions"])
app.include_router(uploads.router, prefix="/api/v1", tags=["Uploads"])
app.include_router(maintenance.router, prefix="/api/v1", tags=["Maintenance"])


@app.get("/")
async def root(request: Request):
    """Root endpoint with user info"""
    return {
        "message": "Upload Pipeline Service",
        "version": "1.0.0",
        "user": getattr(request.state, "user", None),
    }


@app.get("/health")
async def health():
    return {"status": "ok"}
