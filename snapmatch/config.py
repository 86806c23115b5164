# snapmatch/config.py
import os
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # --- Azure Storage Config ---
    AZURE_STORAGE_CONNECTION_STRING: str | None = None
    STORAGE_ACCOUNT_NAME: str | None = None
    AZURE_PHOTO_CONTAINER: str = "photos"
    AZURE_INDEX_CONTAINER: str = "indexes"

    # Database (use the Postgres URL in production)
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./data.db")

    # Search Config
    FAISS_METRIC: str = "cosine"
    TOP_K: int = 50
    # Similarity (0-100) a face-search candidate needs to count as a match
    MATCH_THRESHOLD: float = 70.0

    # Catalog
    IMAGES_PER_PAGE: int = 300

    # Identifier allocation
    EVENT_ID_MAX_ATTEMPTS: int = 10
    STRICT_ID_ALLOCATION: bool = True

    # Counters / fan-out
    STATS_MAX_RETRIES: int = 5
    FANOUT_MAX_WORKERS: int = 8

    # Uploads
    UPLOAD_MAX_CONCURRENCY: int = 4
    UPLOAD_BLOCK_SIZE: int = 5 * 1024 * 1024
    MAX_UPLOAD_MB: int = 50

    # App
    CORS_ORIGINS: list[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://localhost:8080",
    ]
    LOG_LEVEL: str = "INFO"

    # Paths (local cache for face indexes)
    MEDIA_ROOT: str = os.getenv("MEDIA_ROOT", "/tmp/media")


settings = Settings()

# Local directory for the face index cache
os.makedirs(os.path.join(settings.MEDIA_ROOT, "indices"), exist_ok=True)
