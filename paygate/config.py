from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

# Force-load .env next to the project root
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(frozen=True, case_sensitive=True, extra="ignore")

    # --- Core ---
    APP_NAME: str = "Payment Reconciliation Service"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # --- Database ---
    DATABASE_URL: str = f"sqlite:///{BASE_DIR / 'paygate.db'}"

    # --- Trust ---
    ORDER_SYSTEM_SECRET: str = ""
    SIGNATURE_HEADER: str = "X-Signature"
    CANCEL_MAX_DRIFT_SECONDS: int = 300
    UNSIGNED_WEBHOOK_PROVIDERS: list[str] = []
    JWT_SECRET: str = ""

    # --- Lifecycle ---
    PAYMENT_TTL_MINUTES: int = 15
    IDEMPOTENCY_TTL_MINUTES: int = 10
    SWEEP_BATCH_SIZE: int = 100
    SWEEP_INTERVAL_SECONDS: int = 60

    # --- Outbound ---
    ORDER_SYSTEM_URL: str = ""
    PUBLIC_URL: str = "http://localhost:3000"
    GATEWAY_TIMEOUT_SECONDS: float = 30.0
    UPSTREAM_TIMEOUT_SECONDS: float = 10.0
    CALLBACK_MAX_RETRIES: int = 3

    # --- Bank transfer (SePay) ---
    SEPAY_ACCOUNT: str = ""
    SEPAY_BANK: str = "MBBank"
    SEPAY_QR_URL: str = "https://qr.sepay.vn/img"
    SEPAY_WEBHOOK_SECRET: str = ""

    # --- Wallet (MoMo) ---
    MOMO_PARTNER_CODE: str = ""
    MOMO_ACCESS_KEY: str = ""
    MOMO_SECRET_KEY: str = ""
    MOMO_API_URL: str = "https://test-payment.momo.vn/v2/gateway/api"

    # --- PayPal ---
    PAYPAL_API_URL: str = "https://api-m.sandbox.paypal.com"
    PAYPAL_CLIENT_ID: str = ""
    PAYPAL_CLIENT_SECRET: str = ""
    PAYPAL_WEBHOOK_SECRET: str = ""
    PAYPAL_VND_TO_USD_RATE: float = 23000.0

    @property
    def public_url(self) -> str:
        return self.PUBLIC_URL.rstrip("/")

    @property
    def order_system_url(self) -> str:
        return self.ORDER_SYSTEM_URL.rstrip("/")


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()
