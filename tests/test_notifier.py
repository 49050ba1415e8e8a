import base64
from unittest.mock import MagicMock

import pytest
import requests

from transit_watch.config import Settings
from transit_watch.errors import NotificationError
from transit_watch.services.notifier import EmailNotifier

CONFIGURED = Settings(email_api_url="https://mail.example/send", email_api_key="mk", email_from="claims@merchant.example")


def notifier(session, settings=CONFIGURED):
    return EmailNotifier(settings, session=session)


def test_posts_json_with_bearer_key():
    session = MagicMock()
    session.post.return_value = MagicMock(status_code=202)

    notifier(session).notify(["a@x.example", "b@x.example"], "Acme - S1 - Lost in Transit Claim", "Hello,\n\nLost.",
                             attachments=[("label.pdf", b"%PDF")])

    url = session.post.call_args.args[0]
    kwargs = session.post.call_args.kwargs
    assert url == "https://mail.example/send"
    assert kwargs["headers"] == {"Authorization": "Bearer mk"}
    payload = kwargs["json"]
    assert payload["from"] == "claims@merchant.example"
    assert payload["to"] == ["a@x.example", "b@x.example"]
    assert payload["html"] == "Hello,<br>\n<br>\nLost."
    assert payload["attachments"] == [{"filename": "label.pdf", "content": base64.b64encode(b"%PDF").decode("ascii")}]


def test_unconfigured_or_no_recipients():
    session = MagicMock()
    with pytest.raises(NotificationError, match="not configured"):
        notifier(session, Settings()).notify(["a@x.example"], "s", "b")
    with pytest.raises(NotificationError, match="recipients"):
        notifier(session).notify([], "s", "b")
    session.post.assert_not_called()


def test_http_error_status_raises():
    session = MagicMock()
    session.post.return_value = MagicMock(status_code=422, text="invalid from address")
    with pytest.raises(NotificationError, match="422"):
        notifier(session).notify(["a@x.example"], "s", "b")


def test_transport_error_raises():
    session = MagicMock()
    session.post.side_effect = requests.ConnectionError("connection refused")
    with pytest.raises(NotificationError, match="connection refused"):
        notifier(session).notify(["a@x.example"], "s", "b")
