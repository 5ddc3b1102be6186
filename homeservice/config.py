import os

from pydantic import BaseModel


class Settings(BaseModel):
    APP_ENV: str = os.getenv("APP_ENV", "dev")
    APP_HOST: str = os.getenv("APP_HOST", "0.0.0.0")
    APP_PORT: int = int(os.getenv("APP_PORT", "8000"))
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./homeservice.db")
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    CELERY_EAGER: bool = os.getenv("CELERY_EAGER", "0") == "1"
    CURRENCY: str = os.getenv("CURRENCY", "BRL")

    PAYMENTS_PROVIDER: str = os.getenv("PAYMENTS_PROVIDER", "mock")
    SIMULATE_PAYMENT_CONFIRMATION: bool = (
        os.getenv("SIMULATE_PAYMENT_CONFIRMATION", "1") == "1"
    )
    SIMULATED_CONFIRM_DELAY_SECONDS: int = int(
        os.getenv("SIMULATED_CONFIRM_DELAY_SECONDS", "5")
    )
    ESCROW_RELEASE_DELAY_HOURS: int = int(os.getenv("ESCROW_RELEASE_DELAY_HOURS", "24"))

    # Fees are percentages; amounts everywhere are integer cents.
    PLATFORM_FEE_PCT: float = float(os.getenv("PLATFORM_FEE_PCT", "10"))
    DOMESTIC_FEE_PCT: float = float(os.getenv("DOMESTIC_FEE_PCT", "15"))
    DIAGNOSIS_FEE: int = int(os.getenv("DIAGNOSIS_FEE", "2500"))
    TERMS_VERSION: str = os.getenv("TERMS_VERSION", "1.0")

    MIN_EXECUTION_MINUTES: int = int(os.getenv("MIN_EXECUTION_MINUTES", "30"))
    PRICE_NORM_FACTOR: float = float(os.getenv("PRICE_NORM_FACTOR", "5"))
    MAX_CANCELLATIONS: int = int(os.getenv("MAX_CANCELLATIONS", "3"))
    MAX_LOCATION_DRIFT_KM: float = float(os.getenv("MAX_LOCATION_DRIFT_KM", "5"))
    MAX_PROVIDER_DISTANCE_KM: float = float(os.getenv("MAX_PROVIDER_DISTANCE_KM", "30"))

    DIAGNOSIS_PROVIDER: str = os.getenv("DIAGNOSIS_PROVIDER", "static")
    DIAGNOSIS_API_KEY: str = os.getenv("DIAGNOSIS_API_KEY", "")
    DIAGNOSIS_BASE_URL: str = os.getenv("DIAGNOSIS_BASE_URL", "")
    DIAGNOSIS_MODEL: str = os.getenv("DIAGNOSIS_MODEL", "gemini-2.5-flash")
    DIAGNOSIS_RATE_LIMIT: int = int(os.getenv("DIAGNOSIS_RATE_LIMIT", "10"))
    DIAGNOSIS_RATE_WINDOW_SECONDS: int = int(
        os.getenv("DIAGNOSIS_RATE_WINDOW_SECONDS", "900")
    )
    ATTEMPT_STORE: str = os.getenv("ATTEMPT_STORE", "memory")


settings = Settings()
