from pydantic_settings import BaseSettings
from pathlib import Path
from typing import List

class Settings(BaseSettings):
    # Project
    PROJECT_NAME: str = "AnonChat API"
    VERSION: str = "1.0.0"
    API_V1_STR: str = "/api/v1"
    
    # Paths
    BASE_DIR: Path = Path(__file__).resolve().parent.parent.parent
    DATA_DIR: Path = BASE_DIR / "data"
    
    # Server
    SERVER_HOST: str = "0.0.0.0"
    SERVER_PORT: int = 5000
    LOG_LEVEL: str = "INFO"
    
    # Database
    DATABASE_URL: str = f"sqlite+aiosqlite:///{DATA_DIR}/chat.db"
    DATABASE_ECHO: bool = False
    
    # Identity
    SECRET_KEY: str = "your-secret-key-here"
    REQUIRE_SIGNED_IDENTITY: bool = False  # принимать только JWT с sub = external id
    
    # CORS
    BACKEND_CORS_ORIGINS: List[str] = ["*"]
    
    # Pairing / liveness
    SWEEP_INTERVAL_SECONDS: float = 30.0
    STALE_AFTER_SECONDS: float = 5 * 60
    PAIRING_MAX_ATTEMPTS: int = 3
    MAX_MESSAGE_LENGTH: int = 4096
    
    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

# Создаем экземпляр настроек
settings = Settings()
