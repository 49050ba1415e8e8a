import base64
import logging
from typing import Optional, Sequence

import requests

from transit_watch.config import Settings, get_settings
from transit_watch.errors import NotificationError

logger = logging.getLogger(__name__)


class EmailNotifier:
    """Sends mail through an HTTP email API (JSON body, bearer key)."""

    def __init__(self, settings: Optional[Settings] = None, session: Optional[requests.Session] = None):
        settings = settings or get_settings()
        self.api_url = settings.email_api_url
        self.api_key = settings.email_api_key
        self.sender = settings.email_from
        self.timeout = settings.tracking_timeout_seconds
        self.session = session or requests.Session()

    def notify(
        self,
        recipients: Sequence[str],
        subject: str,
        body: str,
        attachments: Optional[Sequence[tuple[str, bytes]]] = None,
    ) -> None:
        if not self.api_url or not self.api_key:
            raise NotificationError("Email API not configured")
        if not recipients:
            raise NotificationError("No recipients")

        payload = {
            "from": self.sender,
            "to": list(recipients),
            "subject": subject,
            "text": body,
            "html": body.replace("\n", "<br>\n"),
        }
        if attachments:
            payload["attachments"] = [
                {"filename": name, "content": base64.b64encode(content).decode("ascii")}
                for name, content in attachments
            ]

        try:
            resp = self.session.post(
                self.api_url,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise NotificationError(f"Email send failed: {e}") from e

        if resp.status_code >= 300:
            raise NotificationError(f"Email API error: {resp.status_code} | {resp.text[:200]}")
        logger.info("Sent '%s' to %d recipient(s)", subject, len(recipients))
