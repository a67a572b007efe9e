# config.py
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database settings
    DATABASE_URL: str = "sqlite:///./insurance.db"

    # Razorpay configuration
    RAZORPAY_KEY_ID: str = ""
    RAZORPAY_KEY_SECRET: str = ""
    RAZORPAY_API_URL: str = "https://api.razorpay.com/v1"
    PAYMENT_CURRENCY: str = "INR"
    GATEWAY_TIMEOUT_SECONDS: float = 15.0

    # Email (SMTP) configuration
    EMAIL_HOST: str = "smtp.gmail.com"
    EMAIL_PORT: int = 587
    EMAIL_USER: str = ""
    EMAIL_PASS: str = ""
    EMAIL_TIMEOUT_SECONDS: float = 5.0

    FRONTEND_URL: str = "http://localhost:5173"
    BACKEND_URL: str = "http://localhost:8000"

    # Firebase configuration (push notifications)
    FIREBASE_PROJECT_ID: str = ""
    FIREBASE_CLIENT_EMAIL: str = ""
    FIREBASE_PRIVATE_KEY: str = ""

    # Reminder sweep
    SWEEP_INTERVAL_MINUTES: int = 5
    ENABLE_SCHEDULER: bool = True

    LOG_LEVEL: str = "INFO"

    @property
    def gateway_configured(self) -> bool:
        return bool(self.RAZORPAY_KEY_ID and self.RAZORPAY_KEY_SECRET)

    @property
    def push_configured(self) -> bool:
        return bool(self.FIREBASE_PRIVATE_KEY and self.FIREBASE_CLIENT_EMAIL)

    class Config:
        env_file = ".env"


settings = Settings()
