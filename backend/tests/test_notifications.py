"""Tests for the notification webhook."""
import asyncio
import json

import httpx

from kessan.services.notifications import IMPORT_COMPLETE, Notifier


def test_notify_posts_event_payload():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(204)

    notifier = Notifier(webhook_url="https://hooks.test/kessan", transport=httpx.MockTransport(handler))

    delivered = asyncio.run(notifier.notify(IMPORT_COMPLETE, {"ticker": "7203", "imported": 2}))

    assert delivered is True
    assert json.loads(requests[0].content) == {"event": "import_complete", "ticker": "7203", "imported": 2}


def test_notify_without_webhook_only_logs():
    assert asyncio.run(Notifier(webhook_url="").notify(IMPORT_COMPLETE, {"imported": 0})) is False


def test_delivery_failure_never_raises():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    notifier = Notifier(webhook_url="https://hooks.test/kessan", transport=httpx.MockTransport(handler))
    assert asyncio.run(notifier.notify(IMPORT_COMPLETE, {"imported": 1})) is False

    failing = Notifier(
        webhook_url="https://hooks.test/kessan",
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
    )
    assert asyncio.run(failing.notify(IMPORT_COMPLETE, {"imported": 1})) is False
