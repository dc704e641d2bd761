import json
from unittest.mock import patch

import httpx

from scripttask.core.config import settings
from scripttask.monitoring.alerting.notification import NotificationManager


def _client(status_code, captured=None):
    def handler(request):
        if captured is not None:
            captured.append(json.loads(request.content))
        return httpx.Response(status_code)

    return httpx.Client(transport=httpx.MockTransport(handler))


def test_log_only_notification_is_delivered():
    with patch.object(settings, "SENTRY_DSN", None), patch.object(
        settings, "ALERT_WEBHOOK_URL", None
    ):
        assert NotificationManager().notify("Workflow failed") is True


def test_webhook_receives_payload():
    captured = []
    manager = NotificationManager(
        webhook_url="https://alerts.example.com/hook", client=_client(200, captured)
    )

    assert manager.notify("Workflow failed", severity="critical", context={"node_id": "node-1"})
    assert captured == [
        {"title": "Workflow failed", "severity": "critical", "context": {"node_id": "node-1"}}
    ]


def test_webhook_error_status_is_not_delivered():
    manager = NotificationManager(
        webhook_url="https://alerts.example.com/hook", client=_client(500)
    )

    assert manager.notify("Workflow failed") is False


def test_sentry_capture_when_configured():
    with patch.object(settings, "SENTRY_DSN", "https://key@sentry.example.com/1"), patch(
        "scripttask.monitoring.alerting.notification.sentry_sdk.capture_message"
    ) as capture:
        delivered = NotificationManager(webhook_url=None).notify(
            "Escalation exhausted", severity="critical"
        )

    assert delivered is True
    capture.assert_called_once_with("Escalation exhausted (critical)")


def test_sentry_failure_is_reported():
    with patch.object(settings, "SENTRY_DSN", "https://key@sentry.example.com/1"), patch(
        "scripttask.monitoring.alerting.notification.sentry_sdk.capture_message",
        side_effect=RuntimeError("sentry down"),
    ):
        assert NotificationManager(webhook_url=None).notify("Workflow failed") is False
