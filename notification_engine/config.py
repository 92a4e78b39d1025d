import logging
import logging.handlers
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "postgresql://portal:portal@db:5432/portal"
    secret_key: str = "change-me"

    # SMTP transport
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""  # plain or Fernet token (gAAAAA...)
    smtp_use_tls: bool = True
    smtp_timeout_seconds: float = 6.0

    # Sender identity
    email_from_address: str = ""
    email_from_name: str = "Training Portal"
    email_reply_to: str = ""
    frontend_url: str = "http://localhost:5173"

    # Scheduler
    scheduler_enabled: bool = True
    scheduler_timezone: str = "UTC"
    reminder_check_hour: int = 9
    reminder_check_minute: int = 0
    schedule_queue_minute: int = 0

    # Schedule queue
    schedule_batch_size: int = 50
    schedule_max_retries: int = Field(default=3, ge=0)
    schedule_retry_enabled: bool = True
    schedule_retry_backoff_seconds: int = 900

    # Reminder evaluation
    reminder_dedupe_enabled: bool = True
    overdue_max_age_days: int = 30

    # Broadcasts triggered from the API
    broadcast_wait_seconds: float = 6.0
    broadcast_workers: int = 4

    # API
    cors_origins: str = "*"
    rate_limit_manual_checks: str = "10/minute"
    logs_default_limit: int = 10
    logs_max_limit: int = 200

    # Logging
    log_level: str = "INFO"
    log_dir: str = "logs"
    log_max_bytes: int = 10_485_760  # 10 MB
    log_backup_count: int = 5

    model_config = {"env_file": ".env"}

    @property
    def effective_database_url(self) -> str:
        """Normalize legacy ``postgres://`` URLs for SQLAlchemy."""
        if self.database_url.startswith("postgres://"):
            return "postgresql://" + self.database_url[len("postgres://") :]
        return self.database_url

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def sender_address(self) -> str:
        return self.email_from_address or self.smtp_user

    @property
    def reply_to_address(self) -> str:
        return self.email_reply_to or self.smtp_user


settings = Settings()


_BRIEF_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
_DETAIL_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"


def _rotating_handler(path: Path, level: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=settings.log_max_bytes,
        backupCount=settings.log_backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(_DETAIL_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    return handler


def setup_logging() -> None:
    """Configure process-wide logging.

    Console gets INFO+ in a brief format; ``notifications.log`` keeps DEBUG+
    and ``errors.log`` keeps ERROR+, both rotated by size. Scheduler ticks run
    in background threads, so the file logs are the only record of a failed
    nightly reminder run.
    """
    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    root.handlers.clear()

    console = logging.StreamHandler()
    console.setLevel(logging.INFO)
    console.setFormatter(logging.Formatter(_BRIEF_FORMAT, datefmt="%H:%M:%S"))
    root.addHandler(console)
    root.addHandler(_rotating_handler(log_dir / "notifications.log", logging.DEBUG))
    root.addHandler(_rotating_handler(log_dir / "errors.log", logging.ERROR))

    for noisy in ("uvicorn.access", "sqlalchemy.engine", "apscheduler.executors.default"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging configured: level=%s, dir=%s, rotate at %d MB x %d",
        settings.log_level,
        log_dir,
        settings.log_max_bytes // 1_048_576,
        settings.log_backup_count,
    )
