"""
Long-lived gateway event subscriptions.

A subscription performs the same connect handshake as an RPC call and then
forwards every pushed event frame to on_event until the socket closes.

Delivery contract:
  - `ready` settles at most once: {"url": ...} after connect, or a
    GatewayRpcError if the handshake fails or the socket closes first
    (on_error is called with the same error).
  - on_event fires zero or more times, in arrival order, only after connect.
  - on_close({"code", "reason"}) fires at most once, only after connect.
  - Socket open plus handshake must finish within connect_timeout_ms, else
    `ready` rejects with a timeout error.
  - There is no internal reconnect; callers own retry and backoff.
"""

import asyncio
from typing import Any, Callable, Optional

from gateway_client import DEFAULT_CONNECT_TIMEOUT_MS, GatewayClientConfig, positive_int, resolve_auth
from gateway_errors import GatewayFrameError, GatewayRpcError, normalize_gateway_error
from gateway_session import CHALLENGE_EVENT, GatewayAuth, GatewaySession, is_event_frame

DEFAULT_CONNECT_DELAY_MS = 750
MAX_CONNECT_DELAY_MS = 5_000

EventCallback = Callable[[dict], Any]
ErrorCallback = Callable[[GatewayRpcError], Any]
CloseCallback = Callable[[dict], Any]


def _consume_result(future: asyncio.Future):
    # Marks the error retrieved for callers that only use callbacks.
    if not future.cancelled():
        future.exception()


class Subscription:
    """Handle for one subscribed connection. Create via GatewayEventSubscriber."""

    def __init__(
        self,
        url: str,
        auth: GatewayAuth,
        *,
        connect_delay_ms: int,
        connect_timeout_ms: int = DEFAULT_CONNECT_TIMEOUT_MS,
        on_event: Optional[EventCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        on_close: Optional[CloseCallback] = None,
    ):
        loop = asyncio.get_running_loop()
        self.url = url
        self.ready: asyncio.Future = loop.create_future()
        self.ready.add_done_callback(_consume_result)
        self.connect_timeout_ms = connect_timeout_ms
        self._session = GatewaySession(url, auth, connect_delay_ms=connect_delay_ms, open_timeout=None)
        self._on_event = on_event
        self._on_error = on_error
        self._on_close = on_close
        self._closed = False
        self._close_notified = False
        self._task = loop.create_task(self._run())
        self._task.add_done_callback(self._task_done)

    @property
    def connected(self) -> bool:
        return self._session.connected

    @property
    def closed(self) -> bool:
        return self._closed or self._task.done()

    def close(self):
        """Stop the subscription. Idempotent and safe from inside callbacks."""
        if self._closed:
            return
        self._closed = True
        if not self.ready.done():
            self.ready.cancel()
        # From inside a callback the pump loop sees _closed and exits by itself.
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if current is not self._task:
            self._task.cancel()

    async def wait_closed(self):
        """Wait until the background task has torn the socket down."""
        try:
            await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise

    def _task_done(self, task: asyncio.Task):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            print(f"[gateway-events] Subscription to {self.url} stopped: {error!r}")

    def _fail_ready(self, error: GatewayRpcError):
        if self._on_error is not None:
            self._on_error(error)
        if not self.ready.done():
            self.ready.set_exception(error)

    def _notify_close(self, code: int, reason: str):
        if self._close_notified:
            return
        self._close_notified = True
        if self._on_close is not None:
            self._on_close({"code": code, "reason": reason})

    async def _run(self):
        try:
            if await self._connect():
                await self._pump()
        finally:
            await self._session.close(abort=True)

    async def _open_and_handshake(self):
        await self._session.open()
        await self._session.handshake()

    async def _connect(self) -> bool:
        try:
            await asyncio.wait_for(self._open_and_handshake(), self.connect_timeout_ms / 1000)
        except asyncio.TimeoutError:
            error = TimeoutError(f"gateway connect timeout after {self.connect_timeout_ms}ms")
            self._fail_ready(normalize_gateway_error(error, method="connect", url=self.url))
            return False
        except (GatewayFrameError, OSError) as e:
            self._fail_ready(normalize_gateway_error(e, method="connect", url=self.url))
            return False
        if not self.ready.done():
            self.ready.set_result({"url": self.url})
        return True

    async def _pump(self):
        while not self._closed:
            try:
                frame = await self._session.next_frame()
            except GatewayFrameError as e:
                if e.close_code is not None:
                    self._notify_close(e.close_code, e.close_reason)
                    return
                if self._on_error is not None:
                    self._on_error(normalize_gateway_error(e, method="subscribe", url=self.url))
                continue
            if not is_event_frame(frame) or frame.get("event") == CHALLENGE_EVENT:
                continue
            if self._on_event is not None:
                self._on_event(frame)


class GatewayEventSubscriber:
    """Opens event subscriptions using a shared client configuration."""

    def __init__(self, config: GatewayClientConfig):
        self.config = config

    def subscribe(
        self,
        on_event: Optional[EventCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        on_close: Optional[CloseCallback] = None,
        *,
        url: str = "",
        token: str = "",
        password: str = "",
        role: Optional[str] = None,
        scopes: Optional[list[str]] = None,
        connect_delay_ms: int = DEFAULT_CONNECT_DELAY_MS,
        connect_timeout_ms: Optional[int] = None,
    ) -> Subscription:
        """Start a subscription. Must be called from a running event loop."""
        target_url = (url or "").strip() or self.config.url
        auth = resolve_auth(self.config, token=token, password=password, role=role, scopes=scopes)
        try:
            delay = int(connect_delay_ms)
        except (TypeError, ValueError):
            delay = DEFAULT_CONNECT_DELAY_MS
        delay = max(0, min(MAX_CONNECT_DELAY_MS, delay))
        timeout = positive_int(
            connect_timeout_ms if connect_timeout_ms is not None else self.config.connect_timeout_ms,
            DEFAULT_CONNECT_TIMEOUT_MS,
        )
        return Subscription(
            target_url,
            auth,
            connect_delay_ms=delay,
            connect_timeout_ms=timeout,
            on_event=on_event,
            on_error=on_error,
            on_close=on_close,
        )
