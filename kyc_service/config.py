"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App settings
    app_name: str = "KYC Verification API"
    debug: bool = False

    # CORS - Allow all origins for prototype (restrict in production)
    cors_origins: list[str] = ["*"]

    # Upload limits
    max_upload_size_mb: int = 15
    max_documents: int = 10
    allowed_extensions: set = {"png", "jpg", "jpeg", "webp", "bmp"}
    min_image_dimension: int = 100
    max_image_dimension: int = 1600  # Clamp before local OCR

    # Verification thresholds
    consistency_threshold: float = 0.82  # Default address consistency threshold

    # Face matching
    face_match_threshold: int = 4  # Good ORB matches required (out of face_match_count)
    face_match_count: int = 5
    face_crop_size: int = 128
    face_cascade_path: str | None = None  # Defaults to OpenCV's bundled frontal-face cascade

    # OCR backend: "whisperer" (LLMWhisperer API) or "easyocr" (local engine)
    ocr_backend: str = "whisperer"
    whisperer_base_url: str = "https://llmwhisperer-api.us-central.unstract.com/api/v2"
    whisperer_api_key: str = ""
    ocr_poll_interval_seconds: float = 0.5
    ocr_max_polls: int = 360  # 360 * 0.5s = 3 minutes

    # Local OCR (EasyOCR)
    ocr_lang: str = "en"
    ocr_max_concurrent: int = 1  # CPU-bound, no benefit from concurrency

    # LLM field extraction (OpenAI-compatible endpoint)
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_api_key: str = ""
    llm_referer: str = "https://ezofis.com"
    llm_title: str = "EZOFIS KYC Agent"
    llm_temperature: float = 0.2
    llm_max_tokens: int = 2000
    default_model_choice: str = "Mistral"

    # Geocoding
    google_maps_api_key: str = ""
    geocoding_url: str = "https://maps.googleapis.com/maps/api/geocode/json"

    # Outbound HTTP
    http_timeout_seconds: float = 30.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
