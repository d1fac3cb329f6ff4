"""Environment-based configuration for the document intake service."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Document intake settings, loaded from environment variables."""

    # Server
    PORT: int = 8092

    # Recognition / upload service (empty = remote unavailable, local dev default)
    INTAKE_SERVICE_URL: str = ""

    # Per-call deadlines, enforced locally
    FAST_PATH_TIMEOUT_SECONDS: float = 45.0
    SCAN_TIMEOUT_SECONDS: float = 120.0
    UPLOAD_TIMEOUT_SECONDS: float = 60.0
    CONNECT_TIMEOUT: float = 10.0

    # Retry for recognition calls (503 / connection errors only)
    RETRY_ATTEMPTS: int = 2
    RETRY_DELAY: float = 1.0
    RETRY_BACKOFF: float = 2.0

    # Local file checks
    MAX_FILE_SIZE_BYTES: int = 10 * 1024 * 1024
    ALLOWED_CONTENT_TYPES: list[str] = [
        "application/pdf",
        "image/jpeg",
        "image/jpg",
        "image/png",
        "image/webp",
    ]

    # Review display policy
    HIGH_CONFIDENCE_THRESHOLD: float = 0.8
    LOW_CONFIDENCE_THRESHOLD: float = 0.5
    CURRENCY_SYMBOL: str = "$"

    # Pause between classifying and extracting so both stages are observable
    STAGE_DELAY_SECONDS: float = 0.5

    # Confidence assigned to an expiration date found in raw text
    TEXT_EXPIRATION_CONFIDENCE: float = 0.6

    # Finished sessions whose results stay readable after their file is released
    COMPLETED_SESSIONS_KEPT: int = 100

    model_config = {"env_prefix": "", "case_sensitive": True}


settings = Settings()
