# genmeter/core/config.py
import os
from pathlib import Path

from dotenv import load_dotenv


def str_to_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def merge_unique(items: list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for v in items:
        if v in seen:
            continue
        seen.add(v)
        out.append(v)
    return out


class Settings:
    def __init__(self) -> None:
        # Only load .env for local/dev. In prod, env vars come from the service config.
        self.ENV = os.getenv("ENV", "dev").strip().lower()  # dev | prod
        if self.ENV != "prod":
            load_dotenv()

        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()

        # ----------------------------
        # Storage
        # ----------------------------
        self.DATA_DIR = os.getenv("DATA_DIR", str(Path.cwd() / "data" / "genmeter"))

        # ----------------------------
        # Exemptions
        # ----------------------------
        self.ADMIN_USERS = merge_unique(parse_csv(os.getenv("ADMIN_USERS")))
        self.UNLIMITED_PLATFORMS = merge_unique(
            [p.lower() for p in parse_csv(os.getenv("UNLIMITED_PLATFORMS"))]
        )

        # ----------------------------
        # Quota
        # ----------------------------
        self.DAILY_FREE_LIMIT = int(os.getenv("DAILY_FREE_LIMIT", "5"))
        self.DEFAULT_UNITS = int(os.getenv("DEFAULT_UNITS", "1"))
        self.MAX_UNITS_PER_REQUEST = int(os.getenv("MAX_UNITS_PER_REQUEST", "4"))

        # ----------------------------
        # Rate limiting
        # ----------------------------
        self.RATE_LIMIT_ENABLED = str_to_bool(os.getenv("RATE_LIMIT_ENABLED"), default=True)
        self.RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "300"))
        self.RATE_LIMIT_MAX = int(os.getenv("RATE_LIMIT_MAX", "3"))

        # ----------------------------
        # Content-policy escalation
        # ----------------------------
        self.SECURITY_BLOCK_WINDOW_SECONDS = int(os.getenv("SECURITY_BLOCK_WINDOW_SECONDS", "600"))
        self.SECURITY_BLOCK_WARNING_THRESHOLD = int(os.getenv("SECURITY_BLOCK_WARNING_THRESHOLD", "3"))
        self.SECURITY_BLOCK_PENALTY_UNITS = int(os.getenv("SECURITY_BLOCK_PENALTY_UNITS", "1"))

        # ----------------------------
        # Timeouts
        # ----------------------------
        self.COMMAND_TIMEOUT_SECONDS = float(os.getenv("COMMAND_TIMEOUT_SECONDS", "180"))
        self.INPUT_TIMEOUT_SECONDS = float(os.getenv("INPUT_TIMEOUT_SECONDS", "30"))

        # ----------------------------
        # Async jobs
        # ----------------------------
        self.MAX_UNCHARGED_JOBS_PER_USER = int(os.getenv("MAX_UNCHARGED_JOBS_PER_USER", "1"))
        self.JOB_CREDIT_MULTIPLIER = int(os.getenv("JOB_CREDIT_MULTIPLIER", "10"))
        self.JOB_FIRST_POLL_DELAY_SECONDS = float(os.getenv("JOB_FIRST_POLL_DELAY_SECONDS", "10"))
        self.JOB_MAX_WAIT_SECONDS = float(os.getenv("JOB_MAX_WAIT_SECONDS", "300"))
        self.PENDING_JOB_TTL_HOURS = float(os.getenv("PENDING_JOB_TTL_HOURS", "24"))
        self.PENDING_JOB_SWEEP_INTERVAL_SECONDS = float(os.getenv("PENDING_JOB_SWEEP_INTERVAL_SECONDS", "600"))
        self.PENDING_JOB_SWEEP_ENABLED = str_to_bool(os.getenv("PENDING_JOB_SWEEP_ENABLED"), default=True)

        # ----------------------------
        # Provider
        # ----------------------------
        self.PROVIDER_API_BASE = os.getenv("PROVIDER_API_BASE", "").strip().rstrip("/")
        self.PROVIDER_API_KEY = os.getenv("PROVIDER_API_KEY", "")
        self.PROVIDER_MODEL_ID = os.getenv("PROVIDER_MODEL_ID", "gemini-2.5-flash-image")
        self.PROVIDER_JOB_MODEL_ID = os.getenv("PROVIDER_JOB_MODEL_ID", "sora-2")
        self.PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "120"))
        self.PROVIDER_MAX_RETRIES = int(os.getenv("PROVIDER_MAX_RETRIES", "3"))

        # Final: fail fast in prod
        self._validate_prod()

    def _validate_prod(self) -> None:
        if self.ENV != "prod":
            return

        missing: list[str] = []
        if not self.PROVIDER_API_BASE:
            missing.append("PROVIDER_API_BASE")
        if not self.PROVIDER_API_KEY:
            missing.append("PROVIDER_API_KEY")

        if self.PROVIDER_API_BASE and not self.PROVIDER_API_BASE.startswith("https://"):
            raise RuntimeError("PROVIDER_API_BASE should be https://... in prod")
        if self.DAILY_FREE_LIMIT < 0:
            raise RuntimeError("DAILY_FREE_LIMIT must not be negative")

        if missing:
            raise RuntimeError(f"Missing required prod env vars: {', '.join(missing)}")

    @property
    def is_prod(self) -> bool:
        return self.ENV == "prod"


settings = Settings()
