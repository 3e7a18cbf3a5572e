# backend/farmgrid/config.py
from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # 未指定なら SQLite（db.py 側で解決）
    DATABASE_URL: Optional[str] = None

    # Capture verification
    VERIFICATION_TOLERANCE_METERS: float = 50.0

    # Grid / sessions
    DEFAULT_GRID_RESOLUTION_M: int = 50
    MIN_GRID_RESOLUTION_M: int = 10
    MAX_GRID_RESOLUTION_M: int = 500
    GRID_MIN_CELL_AREA_M2: float = 1.0
    SESSION_SAMPLE_SIZE: int = 4

    # Block linking
    MAX_BLOCK_ATTEMPTS: int = 4
    LINK_FALLBACK_ON_EXPLICIT_CONFLICT: bool = False

    # Auth collaborator
    JWT_SECRET: str = "dev-secret-change-me"
    JWT_ALGORITHM: str = "HS256"

    # Object storage (local)
    STORAGE_DIR: Optional[str] = None

    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: list[str] = ["*"]

    class Config:
        env_file = ".env"


settings = Settings()
