#!/usr/bin/env python3
"""
OpenClaw Panel

Responsibilities:
- Gateway status (systemd or Docker)
- Gateway RPC passthrough and event relay (SSE)
- Chat sessions, messages and per-session event stream over the gateway RPC
- Gateway image update check, pull, upgrade and rollback; panel self-update via a helper
"""

import asyncio
import functools
import json
import os
import secrets
import subprocess
from typing import AsyncIterator, Awaitable, Callable, Literal, Optional

import docker
import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

import docker_update
from audit import read_audit_log
from chat_service import ChatService
from commands import run_command
from gateway_client import GatewayRpcClient, call_gateway_rpc
from gateway_errors import GatewayRpcError
from gateway_events import GatewayEventSubscriber, Subscription
from panel_config import PanelConfig, build_gateway_client_config, load_panel_config

# Configuration from environment
PANEL_CONFIG: PanelConfig = load_panel_config()
PANEL_API_TOKEN = os.environ.get("PANEL_API_TOKEN", "")
GITHUB_TOKEN = os.environ.get("GITHUB_TOKEN", "")

SSE_HEARTBEAT_SECONDS = 15.0
SSE_MAX_BACKOFF_SECONDS = 10.0

app = FastAPI(title="OpenClaw Panel", version="0.1.0")


# ============================================================
# Auth
# ============================================================

def verify_token(token: str) -> bool:
    """Verify the API token."""
    if not PANEL_API_TOKEN:
        return True
    return secrets.compare_digest(token, PANEL_API_TOKEN)


def check_auth(token: Optional[str] = None, auth_header: Optional[str] = None) -> bool:
    """
    Check if request is authenticated.

    Accepts:
    - ?token=... query parameter
    - Authorization: Bearer ... header
    """
    if not PANEL_API_TOKEN:
        return True
    if token and verify_token(token):
        return True
    if auth_header and auth_header.startswith("Bearer "):
        if verify_token(auth_header[7:]):
            return True
    return False


def require_auth(
    token: Optional[str] = Query(None),
    authorization: Optional[str] = Header(None),
):
    if not check_auth(token, authorization):
        raise HTTPException(status_code=401, detail="Unauthorized")


# ============================================================
# Gateway status
# ============================================================

def get_gateway_status() -> str:
    """Get gateway status (Docker container state or systemd unit state)."""
    openclaw = PANEL_CONFIG.openclaw
    try:
        if PANEL_CONFIG.runtime.mode == "docker":
            client = docker.from_env()
            container = client.containers.get(openclaw.container_name)
            return container.status
        result = subprocess.run(
            ["systemctl", "is-active", openclaw.service_name],
            capture_output=True, text=True, timeout=5
        )
        status = result.stdout.strip()
        # systemctl is-active returns: active, inactive, failed, activating, etc.
        return "running" if status == "active" else status or "unknown"
    except Exception as e:
        print(f"[panel] Cannot read gateway status: {e}")
        return "unknown"


# ============================================================
# Health & Status
# ============================================================

@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/status", dependencies=[Depends(require_auth)])
def status():
    """Get current gateway status."""
    return {
        "gateway_status": get_gateway_status(),
        "runtime": PANEL_CONFIG.runtime.mode,
        "gateway_url": build_gateway_client_config(PANEL_CONFIG).url,
    }


@app.get("/audit", dependencies=[Depends(require_auth)])
async def get_audit(limit: int = 50):
    """Get recent audit log entries, newest first."""
    return {"entries": read_audit_log(max(1, min(limit, 500)))}


# ============================================================
# Gateway RPC & events
# ============================================================

class RpcRequest(BaseModel):
    method: str = Field(min_length=1)
    params: dict = Field(default_factory=dict)
    timeout_ms: Optional[int] = None
    retries: Optional[int] = None
    expect_final: bool = False


def gateway_error_status(error: GatewayRpcError) -> int:
    if error.type == "auth":
        return 401
    if error.type == "timeout":
        return 504
    return 502


@app.post("/gateway/rpc", dependencies=[Depends(require_auth)])
async def gateway_rpc(body: RpcRequest):
    """Forward one RPC call to the gateway."""
    config = build_gateway_client_config(PANEL_CONFIG)
    try:
        payload = await call_gateway_rpc(
            config,
            body.method,
            body.params,
            timeout_ms=body.timeout_ms,
            retries=body.retries,
            expect_final=body.expect_final,
        )
    except GatewayRpcError as e:
        raise HTTPException(status_code=gateway_error_status(e), detail=e.to_dict())
    return {"ok": True, "payload": payload}


def format_sse(event: str, data) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


def reconnect_delay(attempt: int) -> float:
    """1s per attempt, capped at SSE_MAX_BACKOFF_SECONDS."""
    return min(SSE_MAX_BACKOFF_SECONDS, float(max(1, attempt)))


async def relay_gateway_events(
    subscribe: Callable[..., Subscription],
    is_disconnected: Callable[[], Awaitable[bool]],
    sleep=asyncio.sleep,
    heartbeat: float = SSE_HEARTBEAT_SECONDS,
    event_name: Callable[[dict], str] = lambda event: "gateway",
) -> AsyncIterator[str]:
    """
    Relay subscription events as SSE, reconnecting with a growing delay.

    `subscribe(on_event=, on_error=, on_close=)` opens one subscription per
    connect attempt; `event_name` picks the SSE event name for each event.
    The attempt counter resets after every successful connect.
    """
    attempt = 0
    while not await is_disconnected():
        queue: asyncio.Queue = asyncio.Queue()
        subscription = subscribe(
            on_event=lambda event: queue.put_nowait((event_name(event), event)),
            on_error=lambda error: queue.put_nowait(("gateway-error", error.to_dict())),
            on_close=lambda info: queue.put_nowait(("gateway-close", info)),
        )
        try:
            ready = await subscription.ready
            attempt = 0
            yield format_sse("ready", ready)
            while True:
                try:
                    kind, data = await asyncio.wait_for(queue.get(), heartbeat)
                except asyncio.TimeoutError:
                    if await is_disconnected():
                        return
                    yield ": heartbeat\n\n"
                    continue
                yield format_sse(kind, data)
                if kind == "gateway-close":
                    break
        except GatewayRpcError as e:
            yield format_sse("gateway-error", e.to_dict())
        finally:
            subscription.close()

        attempt += 1
        delay = reconnect_delay(attempt)
        yield format_sse("reconnect", {"attempt": attempt, "delay_ms": int(delay * 1000)})
        await sleep(delay)


@app.get("/gateway/events", dependencies=[Depends(require_auth)])
async def gateway_events(request: Request):
    """Server-sent stream of gateway events."""
    subscriber = GatewayEventSubscriber(build_gateway_client_config(PANEL_CONFIG))
    return StreamingResponse(
        relay_gateway_events(subscriber.subscribe, request.is_disconnected),
        media_type="text/event-stream",
        headers={"cache-control": "no-cache"},
    )


# ============================================================
# Chat
# ============================================================

def build_chat_service() -> ChatService:
    config = build_gateway_client_config(PANEL_CONFIG)
    return ChatService(GatewayRpcClient(config), GatewayEventSubscriber(config))


class ChatSendRequest(BaseModel):
    session_key: str = Field(min_length=1)
    message: str = ""
    thinking: str = ""
    attachments: list = Field(default_factory=list)
    idempotency_key: str = ""
    timeout_ms: Optional[int] = Field(default=None, gt=0, le=120_000)


class ChatAbortRequest(BaseModel):
    session_key: str = Field(min_length=1)
    run_id: str = ""


class ChatResetRequest(BaseModel):
    session_key: str = Field(min_length=1)
    reason: Literal["new", "reset"] = "new"


class ChatNewRequest(BaseModel):
    key_prefix: str = ""


async def _chat(call: Awaitable[dict]) -> dict:
    try:
        result = await call
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except GatewayRpcError as e:
        raise HTTPException(status_code=gateway_error_status(e), detail=e.to_dict())
    return {"ok": True, "result": result}


@app.get("/chat/sessions", dependencies=[Depends(require_auth)])
async def chat_sessions():
    return await _chat(build_chat_service().list_sessions())


@app.get("/chat/history", dependencies=[Depends(require_auth)])
async def chat_history(
    session_key: str = Query(min_length=1),
    limit: int = Query(200, gt=0, le=1000),
):
    return await _chat(build_chat_service().get_history(session_key, limit))


@app.post("/chat/send", dependencies=[Depends(require_auth)])
async def chat_send(body: ChatSendRequest):
    """Start a chat run; replies arrive on /chat/stream."""
    return await _chat(build_chat_service().send_message(
        body.session_key,
        body.message,
        thinking=body.thinking,
        attachments=body.attachments,
        idempotency_key=body.idempotency_key,
        timeout_ms=body.timeout_ms,
    ))


@app.post("/chat/abort", dependencies=[Depends(require_auth)])
async def chat_abort(body: ChatAbortRequest):
    return await _chat(build_chat_service().abort_run(body.session_key, body.run_id))


@app.post("/chat/session/reset", dependencies=[Depends(require_auth)])
async def chat_session_reset(body: ChatResetRequest):
    return await _chat(build_chat_service().reset_session(body.session_key, body.reason))


@app.post("/chat/session/new", dependencies=[Depends(require_auth)])
async def chat_session_new(body: ChatNewRequest):
    return await _chat(build_chat_service().create_session(body.key_prefix))


@app.get("/chat/stream", dependencies=[Depends(require_auth)])
async def chat_stream(
    request: Request,
    session_key: str = Query(min_length=1),
    include_agent: bool = True,
):
    """Server-sent chat, agent and terminal events for one session."""
    if not session_key.strip():
        raise HTTPException(status_code=400, detail="session_key is required")
    service = build_chat_service()
    subscribe = functools.partial(service.subscribe, session_key, include_agent=include_agent)
    return StreamingResponse(
        relay_gateway_events(subscribe, request.is_disconnected, event_name=lambda event: event["type"]),
        media_type="text/event-stream",
        headers={"cache-control": "no-cache"},
    )


# ============================================================
# Image updates
# ============================================================

UpdateTarget = Literal["gateway", "panel"]


class TagRequest(BaseModel):
    tag: str = Field(min_length=1)
    target: UpdateTarget = "gateway"


class ApplyRequest(BaseModel):
    tag: str = Field(min_length=1)


def _update_target(target: str = "gateway") -> tuple[str, str]:
    """(container name, image repo) of the gateway or of the panel itself."""
    if target == "panel":
        return PANEL_CONFIG.panel.container_name, PANEL_CONFIG.panel.image_repo
    return PANEL_CONFIG.openclaw.container_name, PANEL_CONFIG.openclaw.image_repo


@app.get("/update/check", dependencies=[Depends(require_auth)])
async def update_check(target: UpdateTarget = "gateway"):
    """Compare the running gateway (or panel) image with the newest release."""
    container_name, image_repo = _update_target(target)
    try:
        return await docker_update.check_for_updates(
            container_name, image_repo, run_cmd=run_command, github_token=GITHUB_TOKEN
        )
    except docker_update.DockerUpdateError as e:
        raise HTTPException(status_code=502, detail=str(e))


async def _run_update(operation, tag: str, target: str, *, with_container: bool = True) -> dict:
    container_name, image_repo = _update_target(target)
    try:
        if with_container:
            return await operation(tag, container_name, image_repo, run_cmd=run_command)
        return await operation(tag, image_repo, run_cmd=run_command)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except docker_update.DockerUpdateError as e:
        raise HTTPException(status_code=502, detail=str(e))


def _reject_panel_target(body: TagRequest):
    # The panel cannot recreate itself in-process.
    if body.target == "panel":
        raise HTTPException(status_code=400, detail="use /update/apply to update the panel")


@app.post("/update/pull", dependencies=[Depends(require_auth)])
async def update_pull(body: TagRequest):
    """Pull a gateway or panel image without touching any container."""
    return await _run_update(docker_update.pull_tag, body.tag, body.target, with_container=False)


@app.post("/update/upgrade", dependencies=[Depends(require_auth)])
async def update_upgrade(body: TagRequest):
    _reject_panel_target(body)
    return await _run_update(docker_update.upgrade_to_tag, body.tag, body.target)


@app.post("/update/rollback", dependencies=[Depends(require_auth)])
async def update_rollback(body: TagRequest):
    _reject_panel_target(body)
    return await _run_update(docker_update.rollback_to_tag, body.tag, body.target)


@app.post("/update/apply", dependencies=[Depends(require_auth)])
async def update_apply(body: ApplyRequest):
    """Recreate the panel container via a helper; the caller should expect to reconnect."""
    return await _run_update(docker_update.apply_pulled_tag, body.tag, "panel")


def main():
    listen = PANEL_CONFIG.panel
    uvicorn.run(app, host=listen.listen_host, port=listen.listen_port)


if __name__ == "__main__":
    main()
