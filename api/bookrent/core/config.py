"""Application configuration from environment variables."""

from decimal import Decimal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # App
    app_name: str = "BookRent"
    debug: bool = True
    secret_key: str = "dev-secret-change-in-production"
    api_prefix: str = "/api/v1"
    app_domain: str = "http://localhost:5173"

    # Database
    database_url: str = "postgresql+asyncpg://bookrent:bookrent@db:5432/bookrent"
    database_echo: bool = False

    # Redis (Celery broker)
    redis_url: str = "redis://redis:6379/0"

    # Auth
    access_token_expire_minutes: int = 60
    refresh_token_expire_days: int = 30
    jwt_algorithm: str = "HS256"

    # Email / SMTP
    smtp_host: str = "localhost"
    smtp_port: int = 1025
    smtp_from: str = "bookings@bookrent.example"
    company_name: str = "KingRent"

    # Payment gateway (Stripe Checkout). Empty secret key = stub mode.
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    gateway_timeout_seconds: int = 30
    payment_link_expiry_hours: int = 48

    # Follow-up links
    default_balance_method: str = "visa_mastercard"
    default_deposit_method: str = "visa_mastercard"
    # Stripe cancels uncaptured manual-capture payments after 7 days
    deposit_hold_days: int = 7
    deposit_link_expiry_hours: int = 720

    # Reminders
    immediate_reminder_window_hours: int = 48
    immediate_reminder_delay_minutes: int = 15
    immediate_reminder_cooldown_hours: int = 2

    # Bank account shown in transfer instructions
    bank_account_holder: str = "KingRent"
    bank_account_iban: str = ""
    bank_account_bic: str = ""
    bank_account_bank_name: str = ""

    # Receipts
    receipt_dir: str = "var/receipts"
    receipt_base_url: str = "http://localhost:8000/receipts"

    # Default currency when a booking has none
    default_currency: str = "EUR"
    min_confirmation_amount: Decimal = Decimal("0.01")

    model_config = {"env_prefix": "BR_", "env_file": ".env", "extra": "ignore"}


settings = Settings()
