"""
QR Pay Configuration Module

Loads environment variables for backend configuration.
"""
from pydantic import field_validator
from pydantic_settings import BaseSettings
from typing import List, Literal


# Every QR expires exactly this long after issuance
QR_TTL_MINUTES = 10


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Notes:
    - The HMAC secret for QR signatures is environment-based
    - Demo mode exposes the sample-order endpoint and error types in 500 responses
    """

    # Demo Configuration
    demo_mode: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Cryptographic Secret (HMAC-SHA256 over the canonical QR payload)
    payment_hmac_secret: str = "payment_hmac_secret_demo_only_change_me"

    # QR lifecycle
    qr_ttl_minutes: int = QR_TTL_MINUTES  # fixed, see validate_qr_ttl
    allowed_currencies: List[str] = ["USD", "EUR", "GBP", "THB", "JPY"]
    settlement_timeout_seconds: float = 5.0
    expiry_sweep_interval_seconds: int = 30

    # Authentication (bearer JWT, "sub" claim carries the user id)
    jwt_secret: str = "jwt_secret_demo_only_change_me"
    jwt_algorithm: str = "HS256"

    # Database
    database_path: str = "./qrpay.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    @field_validator("qr_ttl_minutes")
    @classmethod
    def validate_qr_ttl(cls, value: int) -> int:
        if value != QR_TTL_MINUTES:
            raise ValueError(f"QR lifetime is fixed at {QR_TTL_MINUTES} minutes")
        return value

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()
