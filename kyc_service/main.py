"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import router
from .api.routes import get_face_matcher
from .services import OCREngine
from .config import get_settings
from . import __version__

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager - handles startup and shutdown."""
    # Startup
    logger.info("Starting KYC Verification API...")
    settings = get_settings()

    # Load the face cascade once
    if get_face_matcher().detector_ready:
        logger.info("Face detector loaded and ready")
    else:
        logger.warning("Face detector unavailable - face isolation will use center crops")

    # Keep the local OCR engine warm when selected
    if settings.ocr_backend.lower() == "easyocr":
        if OCREngine().initialize():
            logger.info("OCR engine initialized and ready")
        else:
            logger.warning("OCR engine failed to initialize - will retry on first request")

    logger.info(f"API ready - Version {__version__} (OCR backend: {settings.ocr_backend})")

    yield

    # Shutdown
    logger.info("Shutting down KYC Verification API...")


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="""
## Multi-document KYC Verification API

Verifies that identity documents agree with each other and with a claimed address.

### Features
- **Document OCR**: LLMWhisperer API or a local EasyOCR engine
- **Field Extraction**: KYC fields and mailing address via an LLM, with regex fallback
- **Consistency Scoring**: Token-set similarity with state/province expansion
- **Geocoding**: Google Geocoding check when documents agree
- **Face Matching**: License photo vs. selfie (Haar cascade + ORB)
- **KYC Agent**: Rule-based field reading for Aadhaar, PAN and other ID documents

### Quick Start
1. Use `/api/v1/health` to check API status
2. Use `/api/v1/kyc/verify` with two or more documents and the expected address
3. Use `/api/v1/face/compare` to compare a license photo with a selfie
4. Use `/api/v1/kyc/agent` to read KYC fields from documents without an LLM
        """,
        version=__version__,
        debug=settings.debug,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    # Include routes
    app.include_router(router, prefix="/api/v1")

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "message": "KYC Verification API",
            "version": __version__,
            "docs": "/docs"
        }

    return app


# Create app instance
app = create_app()
