import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    client_url: str = os.getenv("CLIENT_URL", "*")

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")
    database_timeout: float = float(os.getenv("DATABASE_TIMEOUT", "10"))

    # Security settings
    secret_key: str = os.getenv("SECRET_KEY", "your-secret-key-change-this-in-production")
    jwt_secret_key: str = os.getenv("JWT_SECRET_KEY", secret_key)
    jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")
    jwt_expiration_minutes: int = int(os.getenv("JWT_EXPIRATION_MINUTES", "10080"))  # 7 days
    min_password_length: int = int(os.getenv("MIN_PASSWORD_LENGTH", "6"))
    allow_librarian_signup: bool = _env_flag("ALLOW_LIBRARIAN_SIGNUP", "True")

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Management System API")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_flag("DEBUG", "False")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Pagination settings
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "10"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))

    # Loan rules
    default_loan_days: int = int(os.getenv("DEFAULT_LOAN_DAYS", "14"))
    default_extension_days: int = int(os.getenv("DEFAULT_EXTENSION_DAYS", "7"))
    max_active_loans: int = int(os.getenv("MAX_ACTIVE_LOANS", "5"))
    max_loan_days: int = int(os.getenv("MAX_LOAN_DAYS", "365"))

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


settings = Settings()
