import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException

from transit_watch.config import Settings, get_settings
from transit_watch.services.assessor import OpenAIAssessor
from transit_watch.services.notifier import EmailNotifier
from transit_watch.services.rate_limit import RateLimiter
from transit_watch.services.repository import SupabaseRepository
from transit_watch.services.supabase_client import get_supabase
from transit_watch.services.trackingmore import TrackingMoreService


def require_cron_secret(
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> None:
    """Bearer token check. An unset secret rejects every call."""
    secret = settings.cron_secret
    if not secret or not authorization:
        raise HTTPException(status_code=401, detail="Unauthorized")
    expected = f"Bearer {secret}"
    if not hmac.compare_digest(authorization.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Unauthorized")


def get_repository() -> SupabaseRepository:
    return SupabaseRepository(get_supabase())


def get_tracker(settings: Settings = Depends(get_settings)) -> TrackingMoreService:
    return TrackingMoreService(settings)


def get_assessor(settings: Settings = Depends(get_settings)) -> Optional[OpenAIAssessor]:
    if not settings.openai_api_key:
        return None
    return OpenAIAssessor(settings)


def get_notifier(settings: Settings = Depends(get_settings)) -> EmailNotifier:
    return EmailNotifier(settings)


def get_limiter(settings: Settings = Depends(get_settings)) -> RateLimiter:
    return RateLimiter(settings.tracking_calls_per_second)
