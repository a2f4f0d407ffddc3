"""
Gateway event subscriber tests.

Run with: python -m pytest tests/test_gateway_events.py -v
"""

import asyncio
import gc

import pytest

from fake_gateway import FakeGateway, event_frame
from gateway_client import GatewayClientConfig
from gateway_errors import GatewayRpcError
from gateway_events import GatewayEventSubscriber


def make_subscriber(url, tmp_path):
    return GatewayEventSubscriber(GatewayClientConfig(url=url, identity_path=tmp_path / "device.json"))


class TestSubscription:
    """Event delivery over one subscribed connection."""

    def test_delivers_events_then_close(self, tmp_path):
        events_sent = [event_frame("chat", {"text": "a"}, seq=1), event_frame("agent", {"run": "r"}, seq=2)]

        async def scenario():
            received, closes, errors = [], [], []
            closed = asyncio.Event()

            def on_close(info):
                closes.append(info)
                closed.set()

            async with FakeGateway(
                challenge="first", events=events_sent, close_after_events=(4000, "bye")
            ) as gw:
                sub = make_subscriber(gw.url, tmp_path).subscribe(
                    on_event=received.append, on_error=errors.append, on_close=on_close, connect_delay_ms=0
                )
                ready = await asyncio.wait_for(sub.ready, 5)
                await asyncio.wait_for(closed.wait(), 5)
                await sub.wait_closed()
                return ready, received, closes, errors, gw.url, sub

        ready, received, closes, errors, url, sub = asyncio.run(scenario())

        assert ready == {"url": url}
        assert [frame["seq"] for frame in received] == [1, 2]
        assert closes == [{"code": 4000, "reason": "bye"}]
        assert errors == []
        assert sub.closed

    def test_rejected_connect_rejects_ready(self, tmp_path):
        async def scenario():
            errors, closes = [], []
            async with FakeGateway(connect_error={"code": "FORBIDDEN", "message": "forbidden role"}) as gw:
                sub = make_subscriber(gw.url, tmp_path).subscribe(
                    on_error=errors.append, on_close=closes.append, connect_delay_ms=0
                )
                with pytest.raises(GatewayRpcError) as exc_info:
                    await asyncio.wait_for(sub.ready, 5)
                await sub.wait_closed()
                return exc_info.value, errors, closes

        error, errors, closes = asyncio.run(scenario())

        assert error.type == "auth"
        assert errors == [error]
        assert closes == []

    def test_close_inside_callback(self, tmp_path):
        events_sent = [event_frame("chat", {"n": n}) for n in range(3)]

        async def scenario():
            received, closes = [], []
            holder = {}

            def on_event(frame):
                received.append(frame)
                holder["sub"].close()
                holder["sub"].close()

            async with FakeGateway(events=events_sent) as gw:
                sub = make_subscriber(gw.url, tmp_path).subscribe(
                    on_event=on_event, on_close=closes.append, connect_delay_ms=0
                )
                holder["sub"] = sub
                await asyncio.wait_for(sub.ready, 5)
                await asyncio.wait_for(sub.wait_closed(), 5)
                return received, closes, sub

        received, closes, sub = asyncio.run(scenario())

        assert [frame["payload"]["n"] for frame in received] == [0]
        assert closes == []
        assert sub.closed

    def test_parse_error_does_not_end_stream(self, tmp_path):
        async def scenario():
            received, errors = [], []
            closed = asyncio.Event()
            async with FakeGateway(
                raw_after_connect=["{garbage"],
                events=[event_frame("chat", {"ok": True})],
                close_after_events=(1000, "done"),
            ) as gw:
                sub = make_subscriber(gw.url, tmp_path).subscribe(
                    on_event=received.append,
                    on_error=errors.append,
                    on_close=lambda info: closed.set(),
                    connect_delay_ms=0,
                )
                await asyncio.wait_for(closed.wait(), 5)
                await sub.wait_closed()
                return received, errors

        received, errors = asyncio.run(scenario())

        assert len(received) == 1
        assert [e.type for e in errors] == ["protocol"]

    def test_close_before_connect_cancels_ready(self, tmp_path):
        async def scenario():
            closes = []
            async with FakeGateway() as gw:
                sub = make_subscriber(gw.url, tmp_path).subscribe(on_close=closes.append, connect_delay_ms=5000)
                sub.close()
                with pytest.raises(asyncio.CancelledError):
                    await sub.ready
                await sub.wait_closed()
                return closes, sub

        closes, sub = asyncio.run(scenario())

        assert closes == []
        assert sub.closed

    def test_connect_delay_is_clamped(self, tmp_path):
        async def scenario():
            subscriber = make_subscriber("ws://127.0.0.1:9/ws", tmp_path)
            high = subscriber.subscribe(connect_delay_ms=60_000)
            low = subscriber.subscribe(connect_delay_ms=-5)
            delays = (high._session.connect_delay_ms, low._session.connect_delay_ms)
            high.close()
            low.close()
            await high.wait_closed()
            await low.wait_closed()
            return delays

        assert asyncio.run(scenario()) == (5000, 0)


class TestConnectDeadline:
    """The handshake is bounded even when the gateway never answers."""

    def test_silent_gateway_rejects_ready_with_timeout(self, tmp_path):
        async def scenario():
            errors = []
            async with FakeGateway(silent=True) as gw:
                sub = make_subscriber(gw.url, tmp_path).subscribe(
                    on_error=errors.append, connect_delay_ms=0, connect_timeout_ms=300
                )
                with pytest.raises(GatewayRpcError) as exc_info:
                    await asyncio.wait_for(sub.ready, 5)
                await sub.wait_closed()
                return exc_info.value, errors, gw, sub

        error, errors, gw, sub = asyncio.run(scenario())

        assert error.type == "timeout"
        assert error.retryable
        assert "300ms" in error.message
        assert errors == [error]
        assert len(gw.connects) == 1
        assert sub.closed

    def test_timeout_defaults_to_config(self, tmp_path):
        async def scenario():
            config = GatewayClientConfig(url="ws://127.0.0.1:9/ws", identity_path=tmp_path / "device.json",
                                         connect_timeout_ms=250)
            subscriber = GatewayEventSubscriber(config)
            inherited = subscriber.subscribe(connect_delay_ms=5000)
            explicit = subscriber.subscribe(connect_delay_ms=5000, connect_timeout_ms=1200)
            timeouts = (inherited.connect_timeout_ms, explicit.connect_timeout_ms)
            for sub in (inherited, explicit):
                sub.close()
                await sub.wait_closed()
            return timeouts

        assert asyncio.run(scenario()) == (250, 1200)


class TestTeardown:
    def test_unawaited_rejection_is_not_reported(self, tmp_path):
        async def scenario():
            reported = []
            asyncio.get_running_loop().set_exception_handler(lambda loop, context: reported.append(context))
            failed = asyncio.Event()
            async with FakeGateway(connect_error={"code": "FORBIDDEN", "message": "forbidden role"}) as gw:
                sub = make_subscriber(gw.url, tmp_path).subscribe(
                    on_error=lambda error: failed.set(), connect_delay_ms=0
                )
                await asyncio.wait_for(failed.wait(), 5)
                await sub.wait_closed()
                del sub
                gc.collect()
            return reported

        reported = asyncio.run(scenario())

        assert [c for c in reported if "never retrieved" in str(c.get("message", ""))] == []

    def test_close_aborts_socket(self, tmp_path):
        async def scenario():
            async with FakeGateway() as gw:
                sub = make_subscriber(gw.url, tmp_path).subscribe(connect_delay_ms=0)
                await asyncio.wait_for(sub.ready, 5)
                sub.close()
                await asyncio.wait_for(sub.wait_closed(), 0.5)
                for _ in range(100):
                    if gw.close_codes:
                        break
                    await asyncio.sleep(0.02)
                return list(gw.close_codes)

        # 1006: the gateway saw the socket drop without a close frame.
        assert asyncio.run(scenario()) == [1006]
