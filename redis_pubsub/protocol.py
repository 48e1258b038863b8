"""Message shapes for the HTTP and WebSocket bridge (health, publish, subscribe, events)."""

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


# ---- Health ----

@dataclass
class HealthResponse:
    """Response for GET /health."""
    uptime_sec: float
    channels: int
    subscriptions: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_sec": int(self.uptime_sec),
            "channels": self.channels,
            "subscriptions": self.subscriptions,
        }


# ---- Publish ----

@dataclass
class PublishResponse:
    """Response for POST /publish. receivers is what Redis reports for PUBLISH."""
    trigger: str
    receivers: int
    status: str = "published"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---- Subscribe (WebSocket) ----

@dataclass
class SubscribeRequest:
    """Client request to stream one or more triggers."""
    triggers: List[str]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubscribeRequest":
        """Accept either "triggers": [...] or a single "trigger"."""
        raw = data.get("triggers")
        if raw is None and data.get("trigger") is not None:
            raw = [data["trigger"]]
        if isinstance(raw, str):
            raw = [raw]
        if not isinstance(raw, list):
            raise ValueError("subscribe requires trigger or triggers")
        triggers = [str(t).strip() for t in raw if str(t).strip()]
        if not triggers:
            raise ValueError("subscribe requires at least one non-empty trigger")
        return cls(triggers=triggers)


# ---- WebSocket: Server → Client ----

# Error codes (use with ws_error)
ERROR_BAD_REQUEST = "BAD_REQUEST"
ERROR_UNKNOWN_SUBSCRIPTION = "UNKNOWN_SUBSCRIPTION"
ERROR_TRANSPORT = "TRANSPORT_ERROR"
ERROR_UNAUTHORIZED = "UNAUTHORIZED"
ERROR_INTERNAL = "INTERNAL"


def ws_ts() -> str:
    """Current UTC timestamp in ISO 8601 (e.g. 2025-08-25T10:00:00Z)."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def ws_ack(request_id: Optional[str], ts: str, **fields: Any) -> Dict[str, Any]:
    out: Dict[str, Any] = {"type": "ack", "status": "ok", "ts": ts}
    if request_id is not None:
        out["request_id"] = request_id
    out.update({k: v for k, v in fields.items() if v is not None})
    return out


def ws_event(subscription: str, payload: Any, ts: str) -> Dict[str, Any]:
    return {"type": "event", "subscription": subscription, "payload": payload, "ts": ts}


def ws_error(request_id: Optional[str], code: str, message: str, ts: str) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "type": "error",
        "error": {"code": code, "message": message},
        "ts": ts,
    }
    if request_id is not None:
        out["request_id"] = request_id
    return out


def ws_pong(request_id: str, ts: str) -> Dict[str, Any]:
    return {"type": "pong", "request_id": request_id, "ts": ts}


def ws_info(msg: str, ts: str, subscription: Optional[str] = None) -> Dict[str, Any]:
    out: Dict[str, Any] = {"type": "info", "msg": msg, "ts": ts}
    if subscription is not None:
        out["subscription"] = subscription
    return out
