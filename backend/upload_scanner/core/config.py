# upload_scanner/core/config.py
import os
from urllib.parse import quote_plus

from dotenv import load_dotenv


def str_to_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def normalize_prefix(value: str) -> str:
    return value.strip().strip("/")


class Settings:
    def __init__(self) -> None:
        # Only load .env for local/dev. In prod, env vars come from the service config.
        self.ENV = os.getenv("ENV", "dev").strip().lower()  # dev | prod
        if self.ENV != "prod":
            load_dotenv()

        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()

        # ----------------------------
        # Database
        # ----------------------------
        self.DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
        self.DB_HOST = os.getenv("DB_HOST", "")
        self.DB_PORT = os.getenv("DB_PORT", "5432")
        self.DB_NAME = os.getenv("DB_NAME", "")
        self.DB_APP_USER = os.getenv("DB_APP_USER", "")
        self.DB_APP_PASSWORD = os.getenv("DB_APP_PASSWORD", "")
        self.DB_MIGRATOR_USER = os.getenv("DB_MIGRATOR_USER", "")
        self.DB_MIGRATOR_PASSWORD = os.getenv("DB_MIGRATOR_PASSWORD", "")
        self.DB_SSLMODE = os.getenv("DB_SSLMODE", "prefer").strip().lower()

        # ----------------------------
        # Object storage (S3 / MinIO)
        # ----------------------------
        self.AWS_REGION = os.getenv("AWS_REGION", "")
        self.S3_BUCKET_NAME = os.getenv("S3_BUCKET_NAME", "bucket")
        self.S3_ENDPOINT_URL = os.getenv("S3_ENDPOINT_URL", "")
        self.S3_ACCESS_KEY = os.getenv("S3_ACCESS_KEY", "")
        self.S3_SECRET_KEY = os.getenv("S3_SECRET_KEY", "")
        self.S3_TEMP_PREFIX = normalize_prefix(os.getenv("S3_TEMP_PREFIX", "uploads/temp"))
        self.S3_SCANNED_PREFIX = normalize_prefix(os.getenv("S3_SCANNED_PREFIX", "uploads/scanned"))

        # ----------------------------
        # Scan engine (clamd)
        # ----------------------------
        self.CLAMAV_HOST = os.getenv("CLAMAV_HOST", "localhost")
        self.CLAMAV_PORT = int(os.getenv("CLAMAV_PORT", "3310"))
        self.CLAMAV_TIMEOUT_SECONDS = float(os.getenv("CLAMAV_TIMEOUT_SECONDS", "300"))
        # Worker-local scratch directory; must be mounted into the clamd container as well.
        self.SCAN_DIRECTORY = os.getenv("SCAN_DIRECTORY", "/tmp/upload-scanner")
        # The same directory as clamd sees it (e.g. "/scan"). Defaults to SCAN_DIRECTORY.
        self.CLAMAV_SCAN_DIRECTORY = os.getenv("CLAMAV_SCAN_DIRECTORY", "") or self.SCAN_DIRECTORY
        self.SCAN_REPORT_MAX_LENGTH = int(os.getenv("SCAN_REPORT_MAX_LENGTH", "4096"))

        # ----------------------------
        # Archives
        # ----------------------------
        self.CONTAINER_EXTENSIONS = [
            e.lower() if e.startswith(".") else f".{e.lower()}"
            for e in parse_csv(os.getenv("CONTAINER_EXTENSIONS", ".zip"))
        ]
        self.ARCHIVE_MAX_ENTRIES = int(os.getenv("ARCHIVE_MAX_ENTRIES", "10000"))
        self.ARCHIVE_MAX_TOTAL_BYTES = int(os.getenv("ARCHIVE_MAX_TOTAL_BYTES", str(2 * 1024 * 1024 * 1024)))

        # ----------------------------
        # Job queue / worker
        # ----------------------------
        self.WORKER_POLL_SECONDS = float(os.getenv("WORKER_POLL_SECONDS", "5"))
        self.WORKER_CONCURRENCY = int(os.getenv("WORKER_CONCURRENCY", "1"))
        self.JOB_MAX_ATTEMPTS = int(os.getenv("JOB_MAX_ATTEMPTS", "5"))
        self.JOB_LEASE_SECONDS = int(os.getenv("JOB_LEASE_SECONDS", str(15 * 60)))
        # Off by default: a failed job stays failed unless this is enabled.
        self.JOB_RETRY_TRANSIENT_ERRORS = str_to_bool(os.getenv("JOB_RETRY_TRANSIENT_ERRORS"), default=False)

        # ----------------------------
        # Upload-completion callback
        # ----------------------------
        self.UPLOAD_CALLBACK_SHARED_SECRET = os.getenv("UPLOAD_CALLBACK_SHARED_SECRET", "")

        # Final: fail fast in prod
        self._validate_prod()

    def _validate_prod(self) -> None:
        if self.ENV != "prod":
            return

        missing: list[str] = []

        if not self.DATABASE_URL:
            if not self.DB_HOST:
                missing.append("DB_HOST")
            if not self.DB_NAME:
                missing.append("DB_NAME")
            if not self.DB_APP_USER:
                missing.append("DB_APP_USER")
            if not self.DB_APP_PASSWORD:
                missing.append("DB_APP_PASSWORD")

        if not self.S3_BUCKET_NAME:
            missing.append("S3_BUCKET_NAME")
        if not self.UPLOAD_CALLBACK_SHARED_SECRET:
            missing.append("UPLOAD_CALLBACK_SHARED_SECRET")

        if self.S3_TEMP_PREFIX == self.S3_SCANNED_PREFIX:
            raise RuntimeError("S3_TEMP_PREFIX and S3_SCANNED_PREFIX must differ")

        if missing:
            raise RuntimeError(f"Missing required prod env vars: {', '.join(missing)}")

    def _build_database_url(self, user: str, password: str) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        encoded_password = quote_plus(password)
        return (
            f"postgresql+psycopg2://{user}:{encoded_password}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
            f"?sslmode={self.DB_SSLMODE}"
        )

    @property
    def database_url(self) -> str:
        return self._build_database_url(self.DB_APP_USER, self.DB_APP_PASSWORD)

    @property
    def migrations_database_url(self) -> str:
        return self._build_database_url(self.DB_MIGRATOR_USER, self.DB_MIGRATOR_PASSWORD)


settings = Settings()
