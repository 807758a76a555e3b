import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()

@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))

    # Where the CLI reaches the collection service
    api_base_url: str = os.getenv(
        "API_BASE_URL",
        f"http://{os.getenv('API_HOST', '127.0.0.1')}:{os.getenv('API_PORT', '8000')}"
    )
    client_timeout: float = float(os.getenv("CLIENT_TIMEOUT", "10"))

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")
    # Browser-storage export imported once into an empty database
    legacy_json_file: Optional[str] = os.getenv("LIBRARY_JSON_FILE")

    # Cover URL probing (warning only)
    image_probe_timeout: float = float(os.getenv("IMAGE_PROBE_TIMEOUT", "5"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Bibliotheca")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = os.getenv("DEBUG", "False").lower() in ("true", "1", "yes")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


settings = Settings()
