from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    APP_NAME: str = "Assetflow Analysis Service"
    CORS_ALLOW_ORIGINS: str = "*"
    LOG_LEVEL: str = "INFO"
    DATABASE_URL_ASYNC: str | None = None  # mysql+asyncmy://user:pass@IP:3306/assetflow?charset=utf8mb4
    CREATE_TABLES_ON_STARTUP: bool = True

    # Thumbnails are rendered elsewhere; paths in asset metadata resolve under this root
    STORAGE_DIR: str = "storage"
    THUMBNAIL_STYLE: str = "medium"

    EMBEDDING_BACKEND: str = "simclr"  # simclr | http
    EMBEDDING_MODEL_NAME: str = "simclr-resnet18"
    SIMCLR_WEIGHTS: str = "weights/simclr.pt"
    SIMCLR_DEVICE: str = "cpu"
    SIMCLR_HIDDEN_DIM: int = 128
    EMBEDDING_HTTP_URL: str | None = None
    EMBEDDING_HTTP_TIMEOUT: float = 20.0
    TORCH_NUM_THREADS: int = 4
    INFER_MAX_CONCURRENCY: int = 4

    COLOR_K: int = 6
    COLOR_MAX_SIZE: int = 200
    COLOR_ALPHA_THRESHOLD: float = 0.95
    COLOR_COVERAGE_MIN: float = 0.05
    COLOR_DELTA_E_MERGE: float = 10.0
    COLOR_PALETTE_DELTA_E: float = 10.0

    JOB_WORKERS: int = 2
    JOB_MAX_TRIES: int = 3
    JOB_BACKOFF_SECONDS: str = "60,300,900"

    STUCK_ASSET_TIMEOUT_MINUTES: int = 30
    RECOVERY_INCIDENT_SEVERITY: str = "error"
    RECOVERY_SCAN_LIMIT: int = 500
    RECOVERY_SCAN_INTERVAL_SECONDS: float = 300.0  # 0 disables the periodic scan

    model_config = SettingsConfigDict(env_file=".env")

    @property
    def job_backoff(self) -> List[float]:
        return [float(s) for s in self.JOB_BACKOFF_SECONDS.split(",") if s.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
