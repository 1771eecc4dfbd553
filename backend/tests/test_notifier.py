import logging
import threading

import requests

import backend.services.notifier as notifier_module
from backend.services.notifier import LogNotifier, WebhookNotifier, build_notifier, notify_safely


EVENT = {
    "sessionId": "sess-1",
    "chainId": "chain-1",
    "newHolderId": "s2",
    "rotationCount": 3,
    "eventType": "TRANSFERRED",
}


def test_build_notifier_defaults_to_logging(monkeypatch):
    monkeypatch.setattr(notifier_module, "NOTIFY_WEBHOOK_URL", None)
    assert isinstance(build_notifier(), LogNotifier)

    monkeypatch.setattr(notifier_module, "NOTIFY_WEBHOOK_URL", "http://relay.local/events")
    built = build_notifier()
    assert isinstance(built, WebhookNotifier)
    assert built.url == "http://relay.local/events"


def test_webhook_posts_event_json(monkeypatch):
    delivered = threading.Event()
    calls = []

    class Response:
        status_code = 204

    def fake_post(url, json=None, timeout=None):
        calls.append((url, json, timeout))
        delivered.set()
        return Response()

    monkeypatch.setattr(notifier_module.requests, "post", fake_post)

    WebhookNotifier("http://relay.local/events", timeout=1.5).publish(EVENT)

    assert delivered.wait(timeout=5)
    assert calls == [("http://relay.local/events", EVENT, 1.5)]


def test_webhook_failure_is_logged_not_raised(monkeypatch, caplog):
    def failing_post(url, json=None, timeout=None):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(notifier_module.requests, "post", failing_post)

    with caplog.at_level(logging.WARNING, logger="backend.services.notifier"):
        WebhookNotifier("http://relay.local/events")._deliver(dict(EVENT))

    assert "unreachable" in caplog.text


def test_notify_safely_swallows_sink_errors(caplog):
    class Broken:
        def publish(self, event):
            raise RuntimeError("boom")

    with caplog.at_level(logging.ERROR, logger="backend.services.notifier"):
        notify_safely(Broken(), EVENT)

    assert "Notifier failed for chain chain-1" in caplog.text


def test_notify_safely_without_sink_is_noop():
    notify_safely(None, EVENT)
