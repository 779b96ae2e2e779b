# tests/test_watcher.py

import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from app.client.watcher import (
    PaymentStatusUnavailable,
    PaymentWatcher,
    StorefrontClient,
    WatchOutcome,
)


class FakeSource:
    """Scripted answers of the status endpoint."""

    def __init__(self, statuses=(), check=None):
        self.statuses = list(statuses)
        self.check = check or {"success": False, "paymentStatus": {"status": "pending"}}
        self.polls = 0
        self.checks = 0

    async def fetch_status(self, payment_id):
        self.polls += 1
        answer = self.statuses.pop(0) if self.statuses else "pending"
        if isinstance(answer, Exception):
            raise answer
        if isinstance(answer, str):
            return {"id": payment_id, "status": answer}
        return answer

    async def check_order(self, order_id):
        self.checks += 1
        if isinstance(self.check, Exception):
            raise self.check
        return self.check


class FakeSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


def make_watcher(source, **kwargs):
    kwargs.setdefault("sleep", FakeSleep())
    kwargs.setdefault("poll_interval", 2.0)
    kwargs.setdefault("max_retries", 5)
    kwargs.setdefault("max_backoff", 30.0)
    return PaymentWatcher(source, payment_id="123", order_id="order-1", **kwargs)


async def test_gives_up_polling_after_five_failures_without_raising():
    source = FakeSource([PaymentStatusUnavailable("HTTP 500")] * 10)
    sleep = FakeSleep()
    fallbacks = []
    watcher = make_watcher(source, sleep=sleep, on_fallback=fallbacks.append)
    await watcher.start()

    await asyncio.wait_for(watcher.fallback.wait(), 1.0)

    assert watcher.manual_fallback
    assert not watcher.done
    assert fallbacks == [5]
    assert source.polls == 5
    assert sleep.delays == [1.0, 2.0, 4.0, 8.0]
    await watcher.close()
    assert (await watcher.wait()).outcome is WatchOutcome.CLOSED


async def test_manual_confirmation_completes_after_fallback():
    calls = []
    source = FakeSource(
        [PaymentStatusUnavailable("timeout")] * 10,
        check={"success": True, "message": "Pagamento confirmado!", "paymentStatus": {"status": "approved"}},
    )
    watcher = make_watcher(source, on_complete=calls.append)
    await watcher.start()
    await asyncio.wait_for(watcher.fallback.wait(), 1.0)

    answer = await watcher.confirm_paid()
    result = await watcher.wait()

    assert answer["success"] is True
    assert result.outcome is WatchOutcome.APPROVED
    assert result.channel == "manual"
    assert calls == [result]


async def test_websocket_push_completes_after_fallback():
    calls = []
    pushed = asyncio.Event()

    async def events():
        await pushed.wait()
        yield {"type": "PAYMENT_STATUS_UPDATE", "paymentId": "123", "status": "approved"}

    watcher = make_watcher(FakeSource([PaymentStatusUnavailable("HTTP 503")] * 10), on_complete=calls.append)
    await watcher.start()
    watcher.attach_events(events())
    await asyncio.wait_for(watcher.fallback.wait(), 1.0)

    pushed.set()
    result = await asyncio.wait_for(watcher.wait(), 1.0)

    assert result.outcome is WatchOutcome.APPROVED
    assert result.channel == "websocket"
    assert len(calls) == 1


async def test_non_object_body_counts_as_failure():
    source = FakeSource([None, ["approved"], "approved"])
    sleep = FakeSleep()

    result = await asyncio.wait_for(make_watcher(source, sleep=sleep).wait(), 1.0)

    assert result.outcome is WatchOutcome.APPROVED
    assert sleep.delays == [1.0, 2.0]


async def test_non_object_bodies_lead_to_fallback():
    watcher = make_watcher(FakeSource([None] * 10))
    await watcher.start()

    await asyncio.wait_for(watcher.fallback.wait(), 1.0)

    assert watcher.failures == 5
    await watcher.close()


def test_backoff_is_capped():
    watcher = make_watcher(FakeSource())
    assert [watcher.backoff_delay(n) for n in (0, 1, 4, 5, 10)] == [1.0, 2.0, 16.0, 30.0, 30.0]


async def test_success_resets_failure_count():
    failure = PaymentStatusUnavailable("timeout")
    source = FakeSource([failure, failure, "pending", failure, failure, failure, "approved"])
    sleep = FakeSleep()

    result = await make_watcher(source, sleep=sleep).wait()

    assert result.outcome is WatchOutcome.APPROVED
    assert result.channel == "poll"
    assert sleep.delays == [1.0, 2.0, 2.0, 1.0, 2.0, 4.0]


async def test_poll_rejected():
    result = await make_watcher(FakeSource(["pending", "rejected"])).wait()
    assert result.outcome is WatchOutcome.REJECTED


async def test_websocket_push_wins_and_callback_fires_once():
    calls = []
    source = FakeSource(["pending"] * 100)
    watcher = make_watcher(source, on_complete=calls.append)
    await watcher.start()
    await asyncio.sleep(0)

    watcher.notify({"type": "PAYMENT_STATUS_UPDATE", "paymentId": "999", "status": "approved"})
    assert not watcher.done

    watcher.notify({"type": "PAYMENT_STATUS_UPDATE", "paymentId": "123", "status": "approved"})
    watcher.notify({"type": "PAYMENT_STATUS_UPDATE", "paymentId": "123", "status": "rejected"})
    result = await watcher.wait()
    await watcher.close()

    assert result.outcome is WatchOutcome.APPROVED
    assert result.channel == "websocket"
    assert len(calls) == 1
    polls = source.polls
    await asyncio.sleep(0)
    assert source.polls == polls


async def test_attached_event_stream():
    async def events():
        yield {"type": "connection"}
        yield {"type": "PAYMENT_STATUS_UPDATE", "paymentId": "123", "status": "rejected"}

    watcher = make_watcher(FakeSource(["pending"] * 100))
    await watcher.start()
    watcher.attach_events(events())

    result = await watcher.wait()

    assert result.outcome is WatchOutcome.REJECTED
    assert result.channel == "websocket"


async def test_manual_confirmation():
    source = FakeSource(
        ["pending"] * 100,
        check={"success": True, "message": "Pagamento confirmado!", "paymentStatus": {"status": "approved"}},
    )
    watcher = make_watcher(source)
    await watcher.start()

    answer = await watcher.confirm_paid()
    result = await watcher.wait()

    assert answer["success"] is True
    assert result.outcome is WatchOutcome.APPROVED
    assert result.channel == "manual"


async def test_manual_confirmation_failure_is_a_message():
    watcher = make_watcher(FakeSource(check=PaymentStatusUnavailable("HTTP 502")))
    await watcher.start()

    answer = await watcher.confirm_paid()
    await watcher.close()

    assert answer["success"] is False
    assert (await watcher.wait()).outcome is WatchOutcome.CLOSED


async def test_countdown_is_cosmetic():
    now = [1000.0]
    watcher = make_watcher(FakeSource(["pending"] * 100), clock=lambda: now[0], expires_in=1800)
    assert watcher.seconds_remaining == 1800

    await watcher.start()
    now[0] += 90.5
    assert watcher.seconds_remaining == 1709

    now[0] += 5000
    assert watcher.seconds_remaining == 0
    assert not watcher.done
    await watcher.close()


async def test_close_does_not_cancel_running_completion_callback():
    finished = []
    release = asyncio.Event()

    async def on_complete(result):
        await release.wait()
        finished.append(result.outcome)

    watcher = make_watcher(FakeSource(["approved"]), on_complete=on_complete)
    await watcher.wait()

    await watcher.close()
    release.set()
    for _ in range(5):
        await asyncio.sleep(0)

    assert finished == [WatchOutcome.APPROVED]


async def test_manual_check_with_unexpected_body_is_a_message():
    watcher = make_watcher(FakeSource(check=["approved"]))
    await watcher.start()

    answer = await watcher.confirm_paid()
    await watcher.close()

    assert answer["success"] is False
    assert (await watcher.wait()).outcome is WatchOutcome.CLOSED


@pytest.mark.parametrize("body", [None, ["approved"], "approved"])
async def test_storefront_client_rejects_non_object_body(body):
    async def payment(request):
        return web.json_response(body)

    app = web.Application()
    app.router.add_get("/api/mercadopago/payment/{payment_id}", payment)
    server = TestServer(app)
    await server.start_server()
    client = StorefrontClient(str(server.make_url("")))

    try:
        with pytest.raises(PaymentStatusUnavailable):
            await client.fetch_status("123")
    finally:
        await client.close()
        await server.close()
