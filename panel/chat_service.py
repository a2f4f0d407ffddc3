"""
Chat over the gateway's own RPC protocol.

Thin layer over GatewayRpcClient and GatewayEventSubscriber that the panel's
chat routes call:

    sessions.list   -> list_sessions()
    chat.history    -> get_history()
    chat.send       -> send_message()
    chat.abort      -> abort_run()
    sessions.reset  -> reset_session() / create_session()

subscribe() filters the gateway event stream down to one session and
normalizes `chat` and `agent` frames. A chat frame in a terminal state
(final, error, aborted) is followed by a synthetic `terminal` event.

Session keys look like `agent:<agent>:<name>`.
"""

import math
import time
import uuid
from typing import Any, Optional

from gateway_client import GatewayRpcClient, positive_int
from gateway_errors import GatewayRpcError
from gateway_events import CloseCallback, ErrorCallback, EventCallback, GatewayEventSubscriber, Subscription

CHAT_TIMEOUT_MS = 1_000
CHAT_RETRIES = 6
CHAT_RETRY_DELAY_MS = 1_000
DEFAULT_HISTORY_LIMIT = 200
DEFAULT_SESSION_PREFIX = "agent:main"
TERMINAL_CHAT_STATES = ("final", "error", "aborted")


def _text(value: Any) -> str:
    return str(value if value is not None else "").strip()


def _number(value: Any) -> Optional[float]:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(parsed):
        return None
    return int(parsed) if parsed.is_integer() else parsed


def _object(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _now_ms() -> int:
    return int(time.time() * 1000)


def _require_session_key(session_key: str) -> str:
    key = _text(session_key)
    if not key:
        raise ValueError("session_key is required")
    return key


def normalize_session_item(item: Any) -> dict:
    item = _object(item)
    key = _text(item.get("key"))
    return {
        "key": key,
        "display_name": _text(item.get("displayName")) or key,
        "kind": _text(item.get("kind")),
        "updated_at": _number(item.get("updatedAt")) or 0,
        "session_id": _text(item.get("sessionId")),
        "model_provider": _text(item.get("modelProvider")),
        "model": _text(item.get("model")),
        "context_tokens": _number(item.get("contextTokens")) or None,
        "total_tokens": _number(item.get("totalTokens")) or None,
        "aborted_last_run": item.get("abortedLastRun") is True,
    }


def canonical_session_prefix(sessions: list) -> str:
    """`agent:<name>` of the first agent session, or "" when there is none."""
    for session in sessions or []:
        key = _text(_object(session).get("key"))
        if key.startswith("agent:"):
            parts = key.split(":")
            return f"{parts[0]}:{parts[1]}"
    return ""


def normalize_session_prefix(value: str) -> str:
    raw = _text(value).rstrip(":")
    if not raw:
        return ""
    return raw if ":" in raw else f"agent:{raw}"


def build_session_key(prefix: str = "") -> str:
    final_prefix = normalize_session_prefix(prefix) or DEFAULT_SESSION_PREFIX
    return f"{final_prefix}:session-{_now_ms()}-{uuid.uuid4().hex[:8]}"


def normalize_chat_event(frame: dict) -> dict:
    payload = _object(frame.get("payload"))
    message = payload.get("message")
    return {
        "type": "chat",
        "event": "chat",
        "seq": _number(frame.get("seq")) or None,
        "at": _now_ms(),
        "run_id": _text(payload.get("runId")),
        "session_key": _text(payload.get("sessionKey")),
        "state": _text(payload.get("state")),
        "stop_reason": _text(payload.get("stopReason")),
        "error_message": _text(payload.get("errorMessage")),
        "message": message,
    }


def normalize_agent_event(frame: dict) -> dict:
    payload = _object(frame.get("payload"))
    data = _object(payload.get("data"))
    return {
        "type": "agent",
        "event": "agent",
        "seq": _number(frame.get("seq")) or None,
        "at": _now_ms(),
        "run_id": _text(payload.get("runId")),
        "session_key": _text(payload.get("sessionKey")),
        "stream": _text(payload.get("stream")),
        "phase": _text(data.get("phase")),
        "data": data,
    }


def terminal_event(chat_event: dict) -> dict:
    return {
        "type": "terminal",
        "event": "terminal",
        "at": _now_ms(),
        "run_id": chat_event["run_id"],
        "session_key": chat_event["session_key"],
        "state": chat_event["state"],
    }


class ChatService:
    """Chat operations for one gateway. Raises GatewayRpcError and ValueError."""

    def __init__(self, client: GatewayRpcClient, subscriber: GatewayEventSubscriber):
        self.client = client
        self.subscriber = subscriber

    async def _call(self, method: str, params: dict, timeout_ms: Optional[int] = None) -> dict:
        payload = await self.client.call(
            method,
            params,
            timeout_ms=positive_int(timeout_ms, CHAT_TIMEOUT_MS),
            retries=CHAT_RETRIES,
            retry_delay_ms=CHAT_RETRY_DELAY_MS,
        )
        return _object(payload)

    async def list_sessions(self) -> dict:
        payload = await self._call("sessions.list", {})
        raw = payload.get("sessions")
        sessions = [normalize_session_item(item) for item in raw] if isinstance(raw, list) else []
        return {
            "total": int(_number(payload.get("count")) or len(sessions)),
            "sessions": sessions,
        }

    async def get_history(self, session_key: str, limit: int = DEFAULT_HISTORY_LIMIT) -> dict:
        key = _require_session_key(session_key)
        payload = await self._call("chat.history", {
            "sessionKey": key,
            "limit": positive_int(limit, DEFAULT_HISTORY_LIMIT),
        })
        messages = payload.get("messages")
        return {
            "session_key": key,
            "session_id": _text(payload.get("sessionId")),
            "thinking_level": _text(payload.get("thinkingLevel")),
            "verbose_level": _text(payload.get("verboseLevel")),
            "messages": messages if isinstance(messages, list) else [],
        }

    async def send_message(
        self,
        session_key: str,
        message: str = "",
        *,
        thinking: str = "",
        attachments: Optional[list] = None,
        idempotency_key: str = "",
        timeout_ms: Optional[int] = None,
    ) -> dict:
        """
        Start a chat run. Returns as soon as the gateway accepts it; the
        reply arrives through subscribe().

        Either a message or at least one attachment is required. The
        idempotency key is generated when not given, so a retried send
        does not start a second run.
        """
        key = _require_session_key(session_key)
        text = _text(message)
        attachments = attachments if isinstance(attachments, list) else []
        if not text and not attachments:
            raise ValueError("message or attachments required")
        idempotency_key = _text(idempotency_key) or str(uuid.uuid4())
        payload = await self._call(
            "chat.send",
            {
                "sessionKey": key,
                "message": text,
                "thinking": _text(thinking),
                "attachments": attachments,
                "idempotencyKey": idempotency_key,
            },
            timeout_ms=timeout_ms,
        )
        return {
            "session_key": key,
            "run_id": _text(payload.get("runId")),
            "status": _text(payload.get("status")),
            "idempotency_key": idempotency_key,
        }

    async def abort_run(self, session_key: str, run_id: str = "") -> dict:
        key = _require_session_key(session_key)
        params = {"sessionKey": key}
        if _text(run_id):
            params["runId"] = _text(run_id)
        payload = await self._call("chat.abort", params)
        run_ids = payload.get("runIds")
        return {
            "session_key": key,
            "aborted": payload.get("aborted") is True,
            "run_ids": run_ids if isinstance(run_ids, list) else [],
        }

    async def reset_session(self, session_key: str, reason: str = "new") -> dict:
        key = _require_session_key(session_key)
        payload = await self._call("sessions.reset", {
            "key": key,
            "reason": "reset" if reason == "reset" else "new",
        })
        return {
            "key": _text(payload.get("key")) or key,
            "entry": _object(payload.get("entry")),
        }

    async def create_session(self, key_prefix: str = "") -> dict:
        """
        Create a session by resetting a fresh key.

        Without a prefix the agent of the first existing agent session is
        used, falling back to agent:main when the list is empty or cannot
        be read.
        """
        prefix = normalize_session_prefix(key_prefix)
        if not prefix:
            try:
                listed = await self.list_sessions()
            except GatewayRpcError as e:
                print(f"[chat] Cannot list sessions for key prefix, using {DEFAULT_SESSION_PREFIX}: {e}")
            else:
                prefix = canonical_session_prefix(listed["sessions"])
        return await self.reset_session(build_session_key(prefix), reason="new")

    def subscribe(
        self,
        session_key: str,
        *,
        include_agent: bool = True,
        on_event: Optional[EventCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        on_close: Optional[CloseCallback] = None,
    ) -> Subscription:
        """Stream normalized chat (and agent) events for one session."""
        key = _require_session_key(session_key)

        def emit(event: dict):
            if on_event is not None:
                on_event(event)

        def forward(frame: dict):
            name = _text(frame.get("event"))
            if name == "chat":
                event = normalize_chat_event(frame)
                if event["session_key"] != key:
                    return
                emit(event)
                if event["state"] in TERMINAL_CHAT_STATES:
                    emit(terminal_event(event))
            elif name == "agent" and include_agent:
                event = normalize_agent_event(frame)
                if event["session_key"] == key:
                    emit(event)

        return self.subscriber.subscribe(on_event=forward, on_error=on_error, on_close=on_close)
