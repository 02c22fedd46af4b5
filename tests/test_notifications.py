import json

import httpx
import pytest

from shared.redis_streams import publish_transition
from services.notifications import main as notifications


def gateway_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_email_sent_through_gateway(monkeypatch):
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(202, json={"queued": True})

    client = gateway_client(handler)
    monkeypatch.setattr(notifications, "EMAIL_GATEWAY_URL", "http://gateway")
    monkeypatch.setattr(notifications, "http_client", client)

    result = await notifications.send_email(
        "claim_verified", {"entry_id": "entry-1", "verification_id": "ver-1"}
    )
    await client.aclose()

    assert result == "sent"
    assert requests[0].url == "http://gateway/send"
    body = json.loads(requests[0].content)
    assert body["notification_type"] == "claim_verified"
    assert body["verification_id"] == "ver-1"
    assert "entry-1" in body["message"]


@pytest.mark.asyncio
async def test_gateway_error_is_reported_as_failed(monkeypatch):
    client = gateway_client(lambda request: httpx.Response(503))
    monkeypatch.setattr(notifications, "EMAIL_GATEWAY_URL", "http://gateway")
    monkeypatch.setattr(notifications, "http_client", client)

    result = await notifications.send_email("claim_rejected", {"entry_id": "entry-1"})
    await client.aclose()

    assert result == "failed"


@pytest.mark.asyncio
async def test_without_gateway_email_is_logged(monkeypatch):
    monkeypatch.setattr(notifications, "EMAIL_GATEWAY_URL", "")

    assert await notifications.send_email("auto_miss", {"entry_id": "entry-1"}) == "logged"


@pytest.mark.asyncio
async def test_handlers_skip_messages_without_entry(monkeypatch):
    sent = []

    async def record(notification_type, payload):
        sent.append(notification_type)
        return "logged"

    monkeypatch.setattr(notifications, "send_email", record)

    await notifications.handle_auto_miss({})
    await notifications.handle_claim_verified({"entry_id": "entry-1"})

    assert sent == ["claim_verified"]


class BrokenPublisher:
    async def publish(self, stream, data):
        raise ConnectionError("redis unavailable")


@pytest.mark.asyncio
async def test_publish_failure_does_not_propagate():
    assert await publish_transition(BrokenPublisher(), "claims:verified", {"entry_id": "e"}) is None
    assert await publish_transition(None, "claims:verified", {"entry_id": "e"}) is None


@pytest.mark.asyncio
async def test_auto_miss_template_follows_reason(monkeypatch):
    sent = []

    async def record(notification_type, payload):
        sent.append(notification_type)
        return "logged"

    monkeypatch.setattr(notifications, "send_email", record)

    await notifications.handle_auto_miss({"entry_id": "entry-1", "reason": "attempt_window_elapsed"})
    await notifications.handle_auto_miss(
        {"entry_id": "entry-2", "verification_id": "ver-2", "reason": "verification_deadline_elapsed"}
    )

    assert sent == ["auto_miss", "claim_deadline"]
    assert "deadline" in notifications.TEMPLATES["claim_deadline"]
