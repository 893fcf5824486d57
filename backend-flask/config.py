import os


def _env_flag(name: str, default: str = "0") -> bool:
    return str(os.getenv(name, default) or "").strip().lower() in {"1", "true", "yes", "on"}


class Config:
    def __init__(self) -> None:
        self.APP_ENV = os.getenv("APP_ENV", "development")
        self.HOST = os.getenv("HOST", "0.0.0.0")
        self.PORT = int(os.getenv("PORT", "5002"))

        database_url = (os.getenv("DATABASE_URL", "sqlite:///./recruit.db") or "").strip()

        # Heroku-style URLs use the deprecated "postgres://" scheme.
        if database_url.startswith("postgres://"):
            database_url = "postgresql://" + database_url[len("postgres://") :]

        self.DATABASE_URL = database_url

        self.SESSION_TTL_MINUTES = int(os.getenv("SESSION_TTL_MINUTES", "720"))
        self.APP_TIMEZONE = os.getenv("APP_TIMEZONE", "Europe/Paris")

        self.ALLOWED_ORIGINS = [
            s.strip() for s in (os.getenv("ALLOWED_ORIGINS", "*") or "*").split(",") if s.strip()
        ]

        self.RATE_LIMIT_DEFAULT = os.getenv("RATE_LIMIT_DEFAULT", "300 per minute")
        self.RATE_LIMIT_GLOBAL = os.getenv("RATE_LIMIT_GLOBAL", "2000 per minute")

        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

        self.COMPANY_NAME = os.getenv("COMPANY_NAME", "Hi-Ring")
        self.APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:3000").rstrip("/")

        # Workflow automation
        self.WORKFLOWS_ENABLED = _env_flag("WORKFLOWS_ENABLED", "1")
        self.WEBHOOK_TIMEOUT_SECONDS = float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "10"))
        self.WORKFLOW_MAX_ACTIONS = int(os.getenv("WORKFLOW_MAX_ACTIONS", "20"))

        # GDPR
        self.DATA_RETENTION_DAYS = int(os.getenv("DATA_RETENTION_DAYS", "730"))
        self.MIN_RETENTION_DAYS = int(os.getenv("MIN_RETENTION_DAYS", "30"))

        # Outgoing mail is recorded in email_log; delivery happens elsewhere.
        self.EMAIL_FROM = os.getenv("EMAIL_FROM", "no-reply@hi-ring.local")
