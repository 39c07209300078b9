from pydantic import BaseModel
from dotenv import load_dotenv
import os

load_dotenv()


class Settings(BaseModel):
    redis_url: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    broker_url: str = os.getenv("CELERY_BROKER_URL") or os.getenv("REDIS_URL", "redis://localhost:6379/0")

    # blob storage: "local" for development, "gcs" for Google Cloud Storage
    storage_backend: str = os.getenv("STORAGE_BACKEND", "local")
    local_storage_path: str = os.getenv("LOCAL_STORAGE_PATH", "./data/documents")
    gcs_bucket_name: str | None = os.getenv("GCS_BUCKET_NAME")
    signed_url_ttl_seconds: int = int(os.getenv("SIGNED_URL_TTL_SECONDS", 3600))

    ollama_host: str = os.getenv("OLLAMA_HOST", "http://localhost:11434")
    ollama_model: str = os.getenv("OLLAMA_MODEL", "qwen3-vl")
    ollama_request_timeout: float = float(os.getenv("OLLAMA_REQUEST_TIMEOUT", 300))
    ollama_temperature: float = float(os.getenv("OLLAMA_TEMPERATURE", 0.1))
    ollama_num_predict: int = int(os.getenv("OLLAMA_NUM_PREDICT", 2048))

    pdf_dpi: int = int(os.getenv("PDF_DPI", 200))

    # dispatch queue knobs
    recognition_queue: str = os.getenv("RECOGNITION_QUEUE", "recognition")
    default_queue: str = os.getenv("DEFAULT_QUEUE", "default")
    worker_concurrency: int = int(os.getenv("WORKER_CONCURRENCY", 2))
    max_retries: int = int(os.getenv("MAX_RETRIES", 3))
    retry_countdown_seconds: int = int(os.getenv("RETRY_COUNTDOWN_SECONDS", 30))
    task_soft_time_limit: int = int(os.getenv("TASK_SOFT_TIME_LIMIT", 600))
    dead_letter_key: str = os.getenv("DEAD_LETTER_KEY", "recognition:dead")

    # reconciliation sweep for tasks stranded in pending/processing
    reconcile_interval_seconds: int = int(os.getenv("RECONCILE_INTERVAL_SECONDS", 300))
    stale_pending_seconds: int = int(os.getenv("STALE_PENDING_SECONDS", 600))
    stale_processing_seconds: int = int(os.getenv("STALE_PROCESSING_SECONDS", 1800))

    max_upload_bytes: int = int(os.getenv("MAX_UPLOAD_BYTES", 32 * 1024 * 1024))

    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_format: str = os.getenv("LOG_FORMAT", "console")


def load_settings(**overrides) -> Settings:
    return Settings(**overrides)
