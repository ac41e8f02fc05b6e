import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
from dotenv import load_dotenv

load_dotenv()

@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Circulation rules
    unit_fine_rate: Decimal = Decimal(os.getenv("UNIT_FINE_RATE", "1.00"))  # per overdue day
    default_loan_days: int = int(os.getenv("DEFAULT_LOAN_DAYS", "14"))
    currency_symbol: str = os.getenv("CURRENCY_SYMBOL", "$")
    dashboard_path: str = os.getenv("DASHBOARD_PATH", "/dashboard")

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Circulation")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = os.getenv("DEBUG", "False").lower() in ("true", "1", "yes")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()


settings = Settings()
