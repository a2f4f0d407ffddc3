"""
One WebSocket session with the OpenClaw gateway.

    CONNECTING -> (connect.challenge?) -> CONNECT_SENT -> CONNECTED

After the socket opens we wait a short delay and send `connect` with an
empty nonce. If the gateway pushes `connect.challenge` first (or while our
connect is still unanswered) we send a new connect carrying its nonce and
forget the old request id. Only the newest connect request is honored.

Frames:
  request   {"type": "req", "id": uuid, "method": str, "params": {}}
  response  {"type": "res", "id": uuid, "ok": bool, "payload"|"error": {}}
  event     {"type": "event"|"evt", "event": str, "payload": {}, "seq": int}

The RPC client and the event subscriber both drive this class; neither
shares a session with anyone else.
"""

import asyncio
import json
import sys
import uuid
from dataclasses import dataclass, field
from typing import Optional

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from device_identity import CLIENT_ID, CLIENT_MODE, DeviceIdentity, build_connect_device
from gateway_errors import GatewayFrameError

PROTOCOL_VERSION = 3
CLIENT_DISPLAY_NAME = "openclaw-panel"
CLIENT_VERSION = "0.1.0"
DEFAULT_ROLE = "operator"
DEFAULT_SCOPES = ("operator.admin", "operator.approvals", "operator.pairing")
CHALLENGE_EVENT = "connect.challenge"


@dataclass
class GatewayAuth:
    identity: Optional[DeviceIdentity] = None
    token: str = ""
    password: str = ""
    role: str = DEFAULT_ROLE
    scopes: list[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))


def build_connect_params(auth: GatewayAuth, nonce: str = "") -> dict:
    """Params for the `connect` request, signed for this attempt."""
    token = (auth.token or "").strip()
    password = (auth.password or "").strip()
    params = {
        "minProtocol": PROTOCOL_VERSION,
        "maxProtocol": PROTOCOL_VERSION,
        "client": {
            "id": CLIENT_ID,
            "displayName": CLIENT_DISPLAY_NAME,
            "version": CLIENT_VERSION,
            "platform": sys.platform,
            "mode": CLIENT_MODE,
            "instanceId": str(uuid.uuid4()),
        },
        "caps": [],
        "role": auth.role,
        "scopes": list(auth.scopes),
    }
    device = build_connect_device(
        auth.identity,
        role=auth.role,
        scopes=list(auth.scopes),
        token=token,
        nonce=nonce,
    )
    if device is not None:
        params["device"] = device
    credentials = {}
    if token:
        credentials["token"] = token
    if password:
        credentials["password"] = password
    if credentials:
        params["auth"] = credentials
    return params


def frame_type(frame: dict) -> str:
    return str(frame.get("type") or "").strip().lower()


def is_event_frame(frame: dict) -> bool:
    return frame_type(frame) in ("evt", "event")


def is_response_frame(frame: dict) -> bool:
    return frame_type(frame) == "res"


def close_details(exc: ConnectionClosed) -> tuple[int, str]:
    """(code, reason) of a closed connection, 1006 when no close frame arrived."""
    received = exc.rcvd
    if received is None:
        return 1006, "no reason"
    return received.code, (received.reason or "").strip() or "no reason"


def closed_error(exc: ConnectionClosed) -> GatewayFrameError:
    code, reason = close_details(exc)
    return GatewayFrameError(
        f"gateway closed ({code}): {reason}",
        close_code=code,
        close_reason=reason,
    )


class GatewaySession:
    """A single gateway connection, from socket open through `connect`."""

    def __init__(
        self,
        url: str,
        auth: GatewayAuth,
        *,
        connect_delay_ms: int = 750,
        open_timeout: Optional[float] = 10,
        close_timeout: float = 1,
    ):
        self.url = url
        self.auth = auth
        self.connect_delay_ms = max(0, int(connect_delay_ms))
        self.open_timeout = open_timeout
        self.close_timeout = close_timeout
        self.connected = False
        self.hello: dict = {}
        self._ws: Optional[ClientConnection] = None
        self._connect_request_id: Optional[str] = None

    @property
    def connect_sent(self) -> bool:
        return self._connect_request_id is not None

    async def open(self):
        """Open the socket. Failures are raised as GatewayFrameError."""
        try:
            self._ws = await connect(
                self.url,
                open_timeout=self.open_timeout,
                close_timeout=self.close_timeout,
                max_size=None,
            )
        except ConnectionClosed as e:
            raise closed_error(e) from e
        except asyncio.TimeoutError:
            raise
        except Exception as e:
            raise GatewayFrameError(f"gateway socket error: {e}") from e

    async def send_frame(self, frame: dict):
        if self._ws is None:
            raise GatewayFrameError("gateway socket error: not connected")
        try:
            await self._ws.send(json.dumps(frame))
        except ConnectionClosed as e:
            raise closed_error(e) from e

    async def request(self, method: str, params: Optional[dict] = None) -> str:
        """Send a request frame and return its id."""
        request_id = str(uuid.uuid4())
        await self.send_frame({
            "type": "req",
            "id": request_id,
            "method": method,
            "params": params if params is not None else {},
        })
        return request_id

    async def next_frame(self) -> dict:
        """Receive and decode one frame. Non-object frames decode to {}."""
        if self._ws is None:
            raise GatewayFrameError("gateway socket error: not connected")
        try:
            raw = await self._ws.recv()
        except ConnectionClosed as e:
            raise closed_error(e) from e
        try:
            frame = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise GatewayFrameError("gateway protocol parse error") from e
        return frame if isinstance(frame, dict) else {}

    async def _send_connect(self, nonce: str = ""):
        # A new connect always replaces the one in flight.
        request_id = await self.request("connect", build_connect_params(self.auth, nonce))
        self._connect_request_id = request_id

    async def handshake(self):
        """
        Run the connect handshake until the gateway acknowledges us.

        Raises GatewayFrameError when the gateway rejects the connect or the
        socket fails. Frames other than the challenge and our connect
        response are dropped while handshaking.
        """
        loop = asyncio.get_running_loop()
        send_at = loop.time() + self.connect_delay_ms / 1000
        while not self.connected:
            if not self.connect_sent:
                remaining = send_at - loop.time()
                if remaining <= 0:
                    await self._send_connect("")
                    continue
                try:
                    frame = await asyncio.wait_for(self.next_frame(), remaining)
                except asyncio.TimeoutError:
                    await self._send_connect("")
                    continue
            else:
                frame = await self.next_frame()
            await self._handle_handshake_frame(frame)

    async def _handle_handshake_frame(self, frame: dict):
        if is_event_frame(frame):
            if frame.get("event") != CHALLENGE_EVENT:
                return
            payload = frame.get("payload") if isinstance(frame.get("payload"), dict) else {}
            nonce = str(payload.get("nonce") or "").strip()
            if nonce or not self.connect_sent:
                await self._send_connect(nonce)
            return

        if not is_response_frame(frame) or frame.get("id") != self._connect_request_id:
            return

        if not frame.get("ok"):
            error = frame.get("error") if isinstance(frame.get("error"), dict) else {}
            raise GatewayFrameError(
                error.get("message") or "gateway connect rejected",
                remote_error=error,
            )

        self.connected = True
        self._connect_request_id = None
        payload = frame.get("payload")
        self.hello = payload if isinstance(payload, dict) else {}

    async def close(self, abort: bool = False):
        """Close the socket. With abort=True the transport is dropped without a close handshake."""
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            if abort:
                ws.transport.abort()
                await ws.wait_closed()
            else:
                await ws.close()
        except Exception as e:
            print(f"[gateway-session] Error closing {self.url}: {e}")
