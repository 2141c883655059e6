"""Webhook delivery: signing, retries, drop policy and the event union."""

import json
import logging
from datetime import timedelta

import httpx
import pytest

from meetd.models import ProposalSlot
from meetd.security import verify_webhook_signature
from meetd.webhooks import (
    Delivery,
    FanoutNotifier,
    ProposalAccepted,
    ProposalAcceptedData,
    ProposalExpired,
    ProposalExpiredData,
    ProposalReceived,
    ProposalReceivedData,
    WebhookNotifier,
    event_body,
    parse_event,
)

from .conftest import EXPIRES, NOW, SLOT


class Endpoint:
    """Mock receiver answering with a scripted list of status codes."""

    def __init__(self, statuses=(200,)):
        self.statuses = list(statuses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        code = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if code == 0:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(code)


def _notifier(endpoint, sleeps=None, **kwargs) -> WebhookNotifier:
    sleeps = sleeps if sleeps is not None else []
    return WebhookNotifier(
        client=httpx.Client(transport=httpx.MockTransport(endpoint)),
        sleep=sleeps.append,
        **kwargs,
    )


@pytest.fixture
def hooked(custody, alice):
    return custody.register_webhook(alice, "https://hooks.example.com/meetd")


def _accepted() -> ProposalAccepted:
    return ProposalAccepted(
        timestamp=NOW,
        data=ProposalAcceptedData(proposal_id="prop_abc", by="bob@example.com", calendar_link=None),
    )


class TestDelivery:
    def test_signed_post(self, hooked):
        endpoint = Endpoint()
        notifier = _notifier(endpoint)
        notifier.notify(hooked, _accepted())
        assert notifier.drain() == 1

        request = endpoint.requests[0]
        assert str(request.url) == "https://hooks.example.com/meetd"
        assert request.headers["content-type"] == "application/json"
        assert verify_webhook_signature(request.content, request.headers["X-Meetd-Signature"], hooked.webhook_secret)
        body = json.loads(request.content)
        assert body["event"] == "proposal.accepted"
        assert body["timestamp"] == "2026-02-03T08:00:00Z"
        assert body["data"] == {"proposal_id": "prop_abc", "by": "bob@example.com", "calendar_link": None}

    def test_custom_header_name(self, hooked):
        endpoint = Endpoint()
        notifier = _notifier(endpoint, signature_header="X-Acme-Signature")
        notifier.notify(hooked, _accepted())
        notifier.drain()
        assert "X-Acme-Signature" in endpoint.requests[0].headers

    def test_retries_with_backoff_then_succeeds(self, hooked):
        endpoint = Endpoint([500, 0, 503, 200])
        sleeps = []
        notifier = _notifier(endpoint, sleeps, backoff_base=0.5, backoff_max=30.0)
        delivery = Delivery(hooked.id, hooked.webhook_url, hooked.webhook_secret, "proposal.accepted", b"{}")

        assert notifier.deliver(delivery)
        assert len(endpoint.requests) == 4
        assert sleeps == [0.5, 1.0, 2.0]

    def test_drops_after_max_attempts(self, hooked, caplog):
        endpoint = Endpoint([500])
        sleeps = []
        notifier = _notifier(endpoint, sleeps, max_attempts=3)
        delivery = Delivery(hooked.id, hooked.webhook_url, hooked.webhook_secret, "proposal.accepted", b"{}")

        with caplog.at_level(logging.ERROR, logger="meetd.webhooks"):
            assert not notifier.deliver(delivery)
        assert len(endpoint.requests) == 3
        assert len(sleeps) == 2
        assert "dropped after 3 attempts" in caplog.text

    def test_backoff_is_capped(self):
        notifier = WebhookNotifier(backoff_base=1.0, backoff_max=5.0)
        assert [notifier.backoff(a) for a in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_no_webhook_no_delivery(self, alice):
        endpoint = Endpoint()
        notifier = _notifier(endpoint)
        notifier.notify(alice, _accepted())
        assert notifier.drain() == 0

    def test_notify_never_raises(self, hooked):
        class BrokenQueue:
            def put(self, delivery):
                raise RuntimeError("queue full")

        notifier = WebhookNotifier(delivery_queue=BrokenQueue())
        notifier.notify(hooked, _accepted())

    def test_worker_threads_deliver(self, hooked):
        endpoint = Endpoint()
        notifier = _notifier(endpoint, workers=2)
        notifier.start()
        try:
            notifier.notify(hooked, _accepted())
            notifier.notify(hooked, _accepted())
            notifier.queue.join()
        finally:
            notifier.stop()
        assert len(endpoint.requests) == 2

    def test_send_test_reports_failure(self, hooked):
        notifier = _notifier(Endpoint([404]))
        ok, error = notifier.send_test(hooked, _accepted())
        assert not ok and "404" in error
        assert notifier.send_test(hooked.model_copy(update={"webhook_url": None}), _accepted()) == (
            False,
            "No webhook configured",
        )


class TestFanout:
    def test_failing_sink_does_not_stop_others(self, alice):
        seen = []

        class Broken:
            def notify(self, user, event):
                raise RuntimeError("boom")

        class Recording:
            def notify(self, user, event):
                seen.append(event.event)

        FanoutNotifier([Broken(), Recording()]).notify(alice, _accepted())
        assert seen == ["proposal.accepted"]


class TestEvents:
    def test_parse_discriminates_on_event(self):
        received = ProposalReceived(
            timestamp=NOW,
            data=ProposalReceivedData(
                proposal_id="prop_abc",
                from_email="alice@example.com",
                from_pubkey="PK",
                to_email="bob@example.com",
                slot=ProposalSlot(start=SLOT, duration_minutes=30),
                title="Sync",
                expires_at=EXPIRES,
                signature="SIG",
            ),
        )
        body = event_body(received)
        wire = json.loads(body)
        assert wire["data"]["from"] == "alice@example.com"
        assert wire["data"]["slot"]["start"] == "2026-02-03T10:00:00Z"
        assert parse_event(body) == received

    def test_expired_event(self):
        expired = ProposalExpired(
            timestamp=NOW + timedelta(days=1),
            data=ProposalExpiredData(proposal_id="p", from_email="a@x.io", to_email="b@x.io"),
        )
        parsed = parse_event(event_body(expired))
        assert isinstance(parsed, ProposalExpired)
        assert parsed.data.to_email == "b@x.io"

    def test_unknown_event_rejected(self):
        with pytest.raises(ValueError):
            parse_event(b'{"event":"proposal.teleported","timestamp":"2026-02-03T08:00:00Z","data":{}}')
