import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")
    database_timeout: float = float(os.getenv("DATABASE_TIMEOUT", "30"))

    # Lending rules
    default_loan_days: int = int(os.getenv("DEFAULT_LOAN_DAYS", "7"))
    member_code_prefix: str = os.getenv("MEMBER_CODE_PREFIX", "MBR")
    member_code_width: int = int(os.getenv("MEMBER_CODE_WIDTH", "3"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Lending Service")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_flag("DEBUG")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    seed_demo_data: bool = _env_flag("SEED_DEMO_DATA")

    # Pagination settings
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "20"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))


settings = Settings()
