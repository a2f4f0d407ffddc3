"""
Gateway RPC client.

Each call() opens its own socket, performs the connect handshake, sends one
request and waits for its response. Transient failures (timeout, network,
protocol) are retried up to `retries` times with a fixed delay; everything
else fails immediately.

    client = GatewayRpcClient(GatewayClientConfig(url="ws://127.0.0.1:18789/ws"))
    sessions = await client.call("sessions.list")
"""

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from device_identity import DeviceIdentity, load_or_create, load_stored_device_token
from gateway_errors import GatewayFrameError, GatewayRpcError, normalize_gateway_error
from gateway_session import (
    DEFAULT_ROLE,
    DEFAULT_SCOPES,
    GatewayAuth,
    GatewaySession,
    is_response_frame,
)

DEFAULT_TIMEOUT_MS = 10_000
DEFAULT_RETRIES = 0
DEFAULT_RETRY_DELAY_MS = 1_000
DEFAULT_CONNECT_TIMEOUT_MS = 10_000
MAX_CONNECT_DELAY_MS = 750


@dataclass
class GatewayClientConfig:
    """Everything the client needs; built by the caller, never read from env here."""

    url: str
    identity_path: Optional[Path] = None
    token: str = ""
    password: str = ""
    role: str = DEFAULT_ROLE
    scopes: list[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    retries: int = DEFAULT_RETRIES
    retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS
    connect_timeout_ms: int = DEFAULT_CONNECT_TIMEOUT_MS


def positive_int(value, fallback: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return fallback
    return parsed if parsed > 0 else fallback


def non_negative_int(value, fallback: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return fallback
    return parsed if parsed >= 0 else fallback


def resolve_auth(
    config: GatewayClientConfig,
    *,
    token: str = "",
    password: str = "",
    role: Optional[str] = None,
    scopes: Optional[list[str]] = None,
) -> GatewayAuth:
    """
    Build connect credentials.

    Token precedence: explicit argument, config token, token stored for the
    role by a previous device pairing. With none of them the gateway only
    sees the device signature.
    """
    effective_role = role or config.role
    identity: Optional[DeviceIdentity] = None
    stored_token = ""
    if config.identity_path:
        identity = load_or_create(config.identity_path)
    explicit_token = (token or "").strip() or (config.token or "").strip()
    if not explicit_token and config.identity_path:
        stored_token = load_stored_device_token(config.identity_path, effective_role)
    return GatewayAuth(
        identity=identity,
        token=explicit_token or stored_token,
        password=(password or "").strip() or (config.password or "").strip(),
        role=effective_role,
        scopes=list(scopes) if scopes is not None else list(config.scopes),
    )


async def request_once(
    url: str,
    auth: GatewayAuth,
    method: str,
    params: Optional[dict] = None,
    *,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    expect_final: bool = False,
    attempt: int = 1,
) -> Any:
    """One full round trip on a fresh socket. Raises GatewayRpcError."""
    connect_delay_ms = min(MAX_CONNECT_DELAY_MS, max(0, timeout_ms // 5))
    session = GatewaySession(url, auth, connect_delay_ms=connect_delay_ms, open_timeout=None)

    async def round_trip():
        await session.open()
        await session.handshake()
        request_id = await session.request(method, params)
        while True:
            frame = await session.next_frame()
            if not is_response_frame(frame) or frame.get("id") != request_id:
                continue
            if not frame.get("ok"):
                error = frame.get("error") if isinstance(frame.get("error"), dict) else {}
                raise GatewayFrameError(error.get("message") or "gateway rpc failed", remote_error=error)
            payload = frame.get("payload")
            if expect_final and isinstance(payload, dict) and payload.get("status") == "accepted":
                continue
            return payload

    try:
        return await asyncio.wait_for(round_trip(), timeout_ms / 1000)
    except asyncio.TimeoutError as e:
        raise normalize_gateway_error(
            TimeoutError(f"gateway rpc timeout after {timeout_ms}ms"),
            method=method,
            url=url,
            attempt=attempt,
        ) from e
    except GatewayRpcError:
        raise
    except Exception as e:
        raise normalize_gateway_error(e, method=method, url=url, attempt=attempt) from e
    finally:
        await session.close()


class GatewayRpcClient:
    """Request/response calls against the gateway with timeout and retry."""

    def __init__(self, config: GatewayClientConfig):
        self.config = config

    async def call(
        self,
        method: str,
        params: Optional[dict] = None,
        *,
        url: str = "",
        timeout_ms: Optional[int] = None,
        retries: Optional[int] = None,
        retry_delay_ms: Optional[int] = None,
        expect_final: bool = False,
        role: Optional[str] = None,
        scopes: Optional[list[str]] = None,
        token: str = "",
        password: str = "",
    ) -> Any:
        """Call `method` and return the response payload. Raises GatewayRpcError."""
        target_url = (url or "").strip() or self.config.url
        auth = resolve_auth(self.config, token=token, password=password, role=role, scopes=scopes)
        effective_timeout = positive_int(
            timeout_ms if timeout_ms is not None else self.config.timeout_ms, DEFAULT_TIMEOUT_MS
        )
        effective_retries = non_negative_int(
            retries if retries is not None else self.config.retries, DEFAULT_RETRIES
        )
        effective_delay = positive_int(
            retry_delay_ms if retry_delay_ms is not None else self.config.retry_delay_ms, DEFAULT_RETRY_DELAY_MS
        )
        max_attempts = effective_retries + 1

        for attempt in range(1, max_attempts + 1):
            try:
                return await request_once(
                    target_url,
                    auth,
                    method,
                    params if params is not None else {},
                    timeout_ms=effective_timeout,
                    expect_final=expect_final,
                    attempt=attempt,
                )
            except GatewayRpcError as e:
                if attempt >= max_attempts or not e.retryable:
                    raise
                print(
                    f"[gateway-client] {method} attempt {attempt}/{max_attempts} failed "
                    f"({e.type}): {e.message}; retrying in {effective_delay}ms"
                )
                await asyncio.sleep(effective_delay / 1000)

        raise GatewayRpcError("gateway rpc failed", method=method)


async def call_gateway_rpc(
    config: GatewayClientConfig,
    method: str,
    params: Optional[dict] = None,
    **options,
) -> Any:
    """Shortcut for GatewayRpcClient(config).call(...)."""
    return await GatewayRpcClient(config).call(method, params, **options)
