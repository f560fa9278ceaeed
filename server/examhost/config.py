from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application configuration settings"""

    # Application
    app_name: str = "Exam Host"
    debug: bool = False
    api_version: str = "v1"
    log_level: str = "INFO"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Database
    database_url: str = "sqlite:///./examhost.db"

    # OpenAI (question drafting is disabled when no key is set)
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"

    # CORS
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string"""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    # File Upload
    max_upload_size_mb: int = 50
    upload_dir: str = "./uploads"
    public_base_url: str = "http://localhost:8000/uploads"

    # Exams
    default_question_points: int = 10

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


# Global settings instance
settings = Settings()
