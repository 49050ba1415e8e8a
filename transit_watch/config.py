import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Institutional Path Management: Locate .env in the project root
env_path = Path(__file__).resolve().parent.parent / '.env'
load_dotenv(dotenv_path=env_path)


def _int_or_none(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return int(raw)


def _split_emails(raw: Optional[str]) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(e.strip() for e in raw.split(",") if e.strip())


@dataclass(frozen=True)
class Settings:
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    cron_secret: Optional[str] = None

    trackingmore_api_key: Optional[str] = None
    trackingmore_base_url: str = "https://api.trackingmore.com/v4"
    tracking_timeout_seconds: float = 30.0
    tracking_calls_per_second: float = 2.0

    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"

    email_api_url: Optional[str] = None
    email_api_key: Optional[str] = None
    email_from: str = "claims@transit-watch.local"
    partner_emails: tuple[str, ...] = field(default_factory=tuple)

    sweep_budget_seconds: float = 270.0
    max_reported_errors: int = 20
    entry_batch_size: int = 500
    reassess_batch_size: int = 100
    benchmark_window_days: int = 90

    # Unset means the missed_window rule is disabled.
    filing_window_domestic_days: Optional[int] = None
    filing_window_international_days: Optional[int] = None

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            supabase_url=os.getenv("SUPABASE_URL"),
            supabase_key=os.getenv("SUPABASE_KEY"),
            cron_secret=os.getenv("CRON_SECRET"),
            trackingmore_api_key=os.getenv("TRACKINGMORE_API_KEY"),
            trackingmore_base_url=os.getenv("TRACKINGMORE_BASE_URL", cls.trackingmore_base_url),
            tracking_timeout_seconds=float(os.getenv("TRACKING_TIMEOUT_SECONDS", cls.tracking_timeout_seconds)),
            tracking_calls_per_second=float(os.getenv("TRACKING_CALLS_PER_SECOND", cls.tracking_calls_per_second)),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_model=os.getenv("OPENAI_MODEL", cls.openai_model),
            email_api_url=os.getenv("EMAIL_API_URL"),
            email_api_key=os.getenv("EMAIL_API_KEY"),
            email_from=os.getenv("EMAIL_FROM", cls.email_from),
            partner_emails=_split_emails(os.getenv("PARTNER_EMAILS")),
            sweep_budget_seconds=float(os.getenv("SWEEP_BUDGET_SECONDS", cls.sweep_budget_seconds)),
            max_reported_errors=int(os.getenv("MAX_REPORTED_ERRORS", cls.max_reported_errors)),
            entry_batch_size=int(os.getenv("ENTRY_BATCH_SIZE", cls.entry_batch_size)),
            reassess_batch_size=int(os.getenv("REASSESS_BATCH_SIZE", cls.reassess_batch_size)),
            benchmark_window_days=int(os.getenv("BENCHMARK_WINDOW_DAYS", cls.benchmark_window_days)),
            filing_window_domestic_days=_int_or_none("FILING_WINDOW_DOMESTIC_DAYS"),
            filing_window_international_days=_int_or_none("FILING_WINDOW_INTERNATIONAL_DAYS"),
        )

    def filing_window(self, is_international: bool) -> Optional[int]:
        if is_international:
            return self.filing_window_international_days
        return self.filing_window_domestic_days


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
