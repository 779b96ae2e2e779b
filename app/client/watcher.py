# app/client/watcher.py
"""
👀 PAYMENT WATCHER (client side)

What the PIX screen does while the customer pays in the bank app:

- polls GET /api/mercadopago/payment/{id} every 2 s
- listens to the WebSocket for PAYMENT_STATUS_UPDATE of its payment
- offers "Já paguei" (POST /api/orders/{id}/check-payment)

All three race; the first terminal status wins, the other channels are
stopped and on_complete is called exactly once.

When polling fails (HTTP error, timeout, bad body, server down) it backs
off 1 s, 2 s, 4 s, 8 s ... (max 30 s). After 5 failures in a row polling
stops and the watcher enters manual fallback (the fallback event is set,
on_fallback is called): the screen then shows only the "Já paguei"
button. The WebSocket and the manual check keep running and can still
complete the payment. Nothing here raises to the caller.

Example:
    async with StorefrontClient("https://delivery.example.com") as client:
        watcher = PaymentWatcher(client, payment_id="123", order_id=order_id)
        await watcher.start()
        result = await watcher.wait()
        result.outcome  # WatchOutcome.APPROVED
"""

import asyncio
import inspect
import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional, Protocol

import aiohttp
import structlog

from config.settings import config

logger = structlog.get_logger()


class PaymentStatusUnavailable(Exception):
    """The status endpoint could not answer (non-2xx or transport error)."""


class WatchOutcome(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    CLOSED = "closed"
    # Screen closed before any result


@dataclass
class WatchResult:
    outcome: WatchOutcome
    channel: str
    payment_status: Optional[str] = None
    failures: int = 0


TERMINAL_STATUSES = {
    "approved": WatchOutcome.APPROVED,
    "rejected": WatchOutcome.REJECTED,
    "cancelled": WatchOutcome.REJECTED,
}


class StatusSource(Protocol):
    async def fetch_status(self, payment_id: str) -> Dict[str, Any]: ...

    async def check_order(self, order_id: str) -> Dict[str, Any]: ...


# ==========================================
# HTTP / WS CLIENT
# ==========================================

class StorefrontClient:
    """aiohttp client for the three endpoints the PIX screen uses."""

    def __init__(self, base_url: str, timeout: float = 5.0, session: Optional[aiohttp.ClientSession] = None):
        self.base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def _call(self, method: str, path: str) -> Dict[str, Any]:
        try:
            async with self._get_session().request(method, f"{self.base_url}{path}") as response:
                if response.status >= 400:
                    raise PaymentStatusUnavailable(f"HTTP {response.status}")
                body = await response.json(content_type=None)

        except (aiohttp.ClientError, TimeoutError, ValueError) as e:
            raise PaymentStatusUnavailable(str(e) or type(e).__name__) from e

        if not isinstance(body, dict):
            raise PaymentStatusUnavailable(f"Unexpected body: {type(body).__name__}")
        return body

    async def fetch_status(self, payment_id: str) -> Dict[str, Any]:
        return await self._call("GET", f"/api/mercadopago/payment/{payment_id}")

    async def check_order(self, order_id: str) -> Dict[str, Any]:
        return await self._call("POST", f"/api/orders/{order_id}/check-payment")

    async def events(self, payment_id: str, order_id: Optional[str] = None) -> AsyncIterator[dict]:
        """
        Messages of the WebSocket, already subscribed to payment:<id>
        (and order:<id>). Ends when the socket closes.
        """
        ws_url = self.base_url.replace("http", "ws", 1) + config.websocket_path
        params = {"payment_id": payment_id}
        if order_id:
            params["order_id"] = order_id

        async with self._get_session().ws_connect(ws_url, params=params) as ws:
            async for message in ws:
                if message.type != aiohttp.WSMsgType.TEXT:
                    break
                try:
                    yield json.loads(message.data)
                except ValueError:
                    logger.warning("ws_message_invalid", payment_id=payment_id)


# ==========================================
# WATCHER
# ==========================================

class PaymentWatcher:
    """Races polling, WebSocket pushes and the manual check for one payment."""

    def __init__(
        self,
        source: StatusSource,
        payment_id: str,
        order_id: Optional[str] = None,
        on_complete: Optional[Callable[[WatchResult], Any]] = None,
        on_fallback: Optional[Callable[[int], Any]] = None,
        poll_interval: Optional[float] = None,
        max_retries: Optional[int] = None,
        max_backoff: Optional[float] = None,
        expires_in: Optional[float] = None,
        sleep: Callable = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source = source
        self.payment_id = str(payment_id)
        self.order_id = order_id
        self.on_complete = on_complete
        self.on_fallback = on_fallback
        self.poll_interval = poll_interval if poll_interval is not None else config.payment_poll_interval
        self.max_retries = max_retries if max_retries is not None else config.payment_poll_max_retries
        self.max_backoff = max_backoff if max_backoff is not None else config.payment_poll_max_backoff
        self.expires_in = expires_in if expires_in is not None else config.pix_expiration_minutes * 60

        self._sleep = sleep
        self._clock = clock
        self._started_at: Optional[float] = None
        self._result: Optional[asyncio.Future] = None
        self._tasks = []
        # Callback tasks live apart from the channels: close() must not cancel them
        self._callbacks = set()
        self.fallback = asyncio.Event()
        self.failures = 0

    @property
    def done(self) -> bool:
        return self._result is not None and self._result.done()

    @property
    def manual_fallback(self) -> bool:
        """Polling gave up; only the WebSocket and "Já paguei" are left."""
        return self.fallback.is_set()

    @property
    def seconds_remaining(self) -> int:
        """Countdown shown next to the QR code. Purely cosmetic."""
        if self._started_at is None:
            return int(self.expires_in)
        elapsed = self._clock() - self._started_at
        return max(0, int(self.expires_in - elapsed))

    def backoff_delay(self, retry: int) -> float:
        """
        Seconds to wait after a failed poll.

        Example:
            backoff_delay(0) → 1.0
            backoff_delay(3) → 8.0
            backoff_delay(9) → 30.0 (capped)
        """
        return min(1.0 * 2 ** retry, self.max_backoff)

    # ==========================================
    # LIFECYCLE
    # ==========================================

    async def start(self) -> None:
        if self._result is not None:
            return
        self._result = asyncio.get_running_loop().create_future()
        self._started_at = self._clock()
        self._tasks.append(asyncio.create_task(self._poll()))
        logger.info("payment_watch_started", payment_id=self.payment_id, order_id=self.order_id)

    def attach_events(self, events: AsyncIterator[dict]) -> None:
        """Feed WebSocket messages (e.g. StorefrontClient.events()) into the watcher."""
        self._tasks.append(asyncio.create_task(self._consume(events)))

    async def wait(self) -> WatchResult:
        if self._result is None:
            await self.start()
        return await self._result

    async def close(self) -> None:
        """Screen closed: stop every channel, report CLOSED if nothing was decided."""
        self._finish(WatchResult(WatchOutcome.CLOSED, channel="close", failures=self.failures))
        await self._cancel_tasks()

    # ==========================================
    # CHANNELS
    # ==========================================

    async def _poll(self) -> None:
        while not self.done:
            try:
                payment = await self.source.fetch_status(self.payment_id)
                if not isinstance(payment, dict):
                    raise PaymentStatusUnavailable(f"Unexpected body: {type(payment).__name__}")

            except PaymentStatusUnavailable as e:
                self.failures += 1
                logger.warning(
                    "payment_poll_failed",
                    payment_id=self.payment_id,
                    failures=self.failures,
                    error=str(e)
                )

                if self.failures >= self.max_retries:
                    self._enter_fallback()
                    return

                await self._sleep(self.backoff_delay(self.failures - 1))
                continue

            self.failures = 0
            self._observe(payment.get("status"), "poll")
            if self.done:
                return
            await self._sleep(self.poll_interval)

    async def _consume(self, events: AsyncIterator[dict]) -> None:
        try:
            async for message in events:
                if isinstance(message, dict):
                    self.notify(message)
                if self.done:
                    return
        except (aiohttp.ClientError, TimeoutError) as e:
            # Polling still covers us
            logger.warning("payment_ws_lost", payment_id=self.payment_id, error=str(e))

    def notify(self, message: dict) -> None:
        """Handle one WebSocket message; ignores other payments' events."""
        if message.get("type") != "PAYMENT_STATUS_UPDATE":
            return
        if str(message.get("paymentId")) != self.payment_id:
            return
        self._observe(message.get("status"), "websocket")

    async def confirm_paid(self) -> Dict[str, Any]:
        """
        "Já paguei": ask the server to check now.
        Returns the server answer ({success, message, ...}).
        """
        if not self.order_id:
            return {"success": False, "message": "Pedido não informado"}

        try:
            response = await self.source.check_order(self.order_id)
            if not isinstance(response, dict):
                raise PaymentStatusUnavailable(f"Unexpected body: {type(response).__name__}")
        except PaymentStatusUnavailable as e:
            logger.warning("payment_manual_check_failed", order_id=self.order_id, error=str(e))
            return {
                "success": False,
                "message": "Não foi possível verificar o pagamento. Tente novamente.",
            }

        payment_status = response.get("paymentStatus")
        status = payment_status.get("status") if isinstance(payment_status, dict) else None
        if response.get("success"):
            status = "approved"
        self._observe(status, "manual")
        return response

    # ==========================================
    # RESOLUTION
    # ==========================================

    def _enter_fallback(self) -> None:
        if self.fallback.is_set():
            return
        self.fallback.set()
        logger.warning("payment_poll_gave_up", payment_id=self.payment_id, failures=self.failures)
        if self.on_fallback is not None:
            self._run_callback(self.on_fallback, self.failures)

    def _observe(self, status: Optional[str], channel: str) -> None:
        outcome = TERMINAL_STATUSES.get(str(status or "").lower())
        if outcome is None:
            return
        self._finish(WatchResult(outcome, channel=channel, payment_status=status, failures=self.failures))

    def _finish(self, result: WatchResult) -> None:
        if self._result is None:
            self._result = asyncio.get_running_loop().create_future()
        if self._result.done():
            return

        self._result.set_result(result)
        logger.info(
            "payment_watch_finished",
            payment_id=self.payment_id,
            outcome=result.outcome.value,
            channel=result.channel,
            manual_fallback=self.manual_fallback
        )

        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()

        if self.on_complete is not None:
            self._run_callback(self.on_complete, result)

    def _run_callback(self, callback: Callable, argument: Any) -> None:
        outcome = callback(argument)
        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._callbacks.add(task)
            task.add_done_callback(self._callbacks.discard)

    async def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        pending = [task for task in self._tasks if task is not current and not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
