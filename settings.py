# settings.py
from pydantic import BaseModel, Field
from dotenv import load_dotenv
import os

# Load variables from .env at import time
load_dotenv()

class Settings(BaseModel):
    gemini_api_key: str = Field(default=os.getenv("GEMINI_API_KEY", os.getenv("API_KEY", "")))
    gemini_api_base: str = Field(default=os.getenv("GEMINI_API_BASE", "https://generativelanguage.googleapis.com/v1beta"))
    image_model: str = Field(default=os.getenv("IMAGE_MODEL", "gemini-2.5-flash-image"))
    video_poll_interval_sec: float = Field(default=float(os.getenv("VIDEO_POLL_INTERVAL_SEC", "10")))
    max_concurrent_jobs: int = Field(default=int(os.getenv("MAX_CONCURRENT_JOBS", "4")))

    storage: str = Field(default=os.getenv("STORAGE", "local").lower())  # "r2" or "local"
    local_dir: str = Field(default=os.getenv("LOCAL_DIR", os.path.join(os.getcwd(), "local_renders")))
    r2_access_key_id: str = Field(default=os.getenv("R2_ACCESS_KEY_ID", ""))
    r2_secret_access_key: str = Field(default=os.getenv("R2_SECRET_ACCESS_KEY", ""))
    r2_endpoint_url: str = Field(default=os.getenv("R2_ENDPOINT_URL", ""))
    r2_bucket: str = Field(default=os.getenv("R2_BUCKET", "storyreel"))
    r2_public_base: str = Field(default=os.getenv("R2_PUBLIC_BASE", ""))

    public_base_url: str = Field(default=os.getenv("PUBLIC_BASE_URL", "http://localhost:8000"))
    database_url: str = Field(default=os.getenv("DATABASE_URL", "sqlite:///./storyreel.db"))
    cors_origins: str = Field(default=os.getenv("CORS_ORIGINS", "*"))
    debug: bool = Field(default=os.getenv("DEBUG", "true").lower() in {"1", "true", "yes"})
    log_level: str = Field(default=os.getenv("LOG_LEVEL", "INFO").upper())

settings = Settings()
