"""HTTP server: health, stats, publish. WebSocket: ping, subscribe, unsubscribe, publish."""

from dotenv import load_dotenv
load_dotenv()

import asyncio
import json
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Tuple

from fastapi import APIRouter, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware

from redis_pubsub import (
    PubSubAsyncIterator,
    PubSubError,
    RedisPubSub,
    SubscriptionRegistry,
)
from redis_pubsub.observability import get_logger
from redis_pubsub.protocol import (
    HealthResponse,
    PublishResponse,
    SubscribeRequest,
    ws_ack,
    ws_error,
    ws_event,
    ws_info,
    ws_pong,
    ws_ts,
    ERROR_BAD_REQUEST,
    ERROR_UNKNOWN_SUBSCRIPTION,
    ERROR_TRANSPORT,
    ERROR_UNAUTHORIZED,
    ERROR_INTERNAL,
)

logger = get_logger("redis_pubsub.server")

_start_time: float = 0.0

# Active WebSocket connections for server-initiated heartbeat
_ws_connections: set = set()
_heartbeat_task: asyncio.Task | None = None


# X-API-Key is enforced only when API_KEY is set in env (or .env)
def _get_expected_api_key() -> str | None:
    return (os.environ.get("API_KEY") or "").strip() or None


class XAPIKeyMiddleware(BaseHTTPMiddleware):
    """Require a matching X-API-Key header when API_KEY env is set."""
    async def dispatch(self, request: Request, call_next):
        if request.scope.get("type") == "websocket":
            return await call_next(request)
        expected = _get_expected_api_key()
        if not expected:
            return await call_next(request)
        key = (request.headers.get("X-API-Key") or "").strip()
        if key != expected:
            return JSONResponse(
                status_code=401,
                content={"error": ERROR_UNAUTHORIZED, "message": "invalid or missing X-API-Key"},
            )
        return await call_next(request)


async def _heartbeat_loop() -> None:
    """Periodically send info heartbeat (msg: ping) to all connected WebSocket clients."""
    try:
        interval = float(os.environ.get("HEARTBEAT_INTERVAL_SEC", "30"))
    except ValueError:
        interval = 30.0
    if interval <= 0:
        return
    while True:
        await asyncio.sleep(interval)
        payload = ws_info("ping", ws_ts())
        dead = []
        for ws in list(_ws_connections):
            try:
                await ws.send_json(payload)
            except Exception:
                dead.append(ws)
        for ws in dead:
            _ws_connections.discard(ws)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _start_time, _heartbeat_task
    _start_time = time.time()
    owned = getattr(app.state, "pubsub", None) is None
    if owned:
        app.state.pubsub = RedisPubSub()
    _heartbeat_task = asyncio.create_task(_heartbeat_loop())
    yield
    if _heartbeat_task is not None:
        _heartbeat_task.cancel()
        try:
            await _heartbeat_task
        except asyncio.CancelledError:
            pass
    if owned:
        await app.state.pubsub.close()
        app.state.pubsub = None


app = FastAPI(title="Redis Pub-Sub Bridge", lifespan=lifespan)
app.add_middleware(XAPIKeyMiddleware)

router = APIRouter(prefix="/api/v1")


def _pubsub(request_app: FastAPI) -> SubscriptionRegistry:
    return request_app.state.pubsub


# ---- Health ----

@router.get("/health")
def health(request: Request) -> JSONResponse:
    """GET /health → { uptime_sec, channels, subscriptions }."""
    pubsub = _pubsub(request.app)
    uptime = time.time() - _start_time
    body = HealthResponse(
        uptime_sec=uptime,
        channels=pubsub.channel_count,
        subscriptions=pubsub.subscription_count,
    ).to_dict()
    return JSONResponse(content=body, status_code=200)


# ---- Stats ----

@router.get("/stats")
def stats(request: Request) -> JSONResponse:
    """GET /stats → { subscriptions, channels, counters, gauges, per_channel }."""
    return JSONResponse(content=_pubsub(request.app).stats(), status_code=200)


# ---- Publish ----

class PublishBody(BaseModel):
    trigger: str
    payload: Any = None


@router.post("/publish")
async def publish(body: PublishBody, request: Request) -> JSONResponse:
    """POST /publish { trigger, payload } → 200 { status: published, trigger, receivers } or 502."""
    trigger = (body.trigger or "").strip()
    if not trigger:
        return JSONResponse(content={"error": "trigger is required"}, status_code=400)
    try:
        receivers = await _pubsub(request.app).publish(trigger, body.payload)
    except PubSubError as e:
        logger.warning("publish_failed", extra={"trigger": trigger, "error": str(e)})
        return JSONResponse(
            content={"error": ERROR_TRANSPORT, "message": str(e), "trigger": trigger},
            status_code=502,
        )
    return JSONResponse(
        content=PublishResponse(trigger=trigger, receivers=receivers).to_dict(),
        status_code=200,
    )


# ---- WebSocket (ping, subscribe, unsubscribe, publish) ----

async def _ws_send(websocket: WebSocket, payload: dict) -> bool:
    """Send JSON to client; returns False when the socket is gone."""
    try:
        await websocket.send_json(payload)
        return True
    except Exception:
        return False


async def _pump(websocket: WebSocket, key: str, iterator: PubSubAsyncIterator) -> None:
    """Forward every payload pulled from iterator to the client until the iterator closes."""
    async for payload in iterator:
        if not await _ws_send(websocket, ws_event(key, payload, ws_ts())):
            await iterator.aclose()
            break


def _ws_api_key_ok(websocket: WebSocket) -> bool:
    """Return True if API_KEY is unset or X-API-Key matches it."""
    expected = _get_expected_api_key()
    if not expected:
        return True
    key = (websocket.headers.get("x-api-key") or "").strip()
    return key == expected


async def _close_stream(entry: Tuple[PubSubAsyncIterator, asyncio.Task]) -> None:
    iterator, task = entry
    await iterator.aclose()
    try:
        await task
    except asyncio.CancelledError:
        pass


@router.websocket("/ws")
async def websocket_handler(websocket: WebSocket) -> None:
    """
    WebSocket endpoint. Messages: ping, subscribe, unsubscribe, publish.
    Server replies: pong, ack, event, error, info.
    """
    await websocket.accept()
    if not _ws_api_key_ok(websocket):
        await websocket.send_json(ws_error(
            None, ERROR_UNAUTHORIZED,
            "invalid or missing X-API-Key",
            ws_ts(),
        ))
        await websocket.close()
        return
    pubsub = websocket.app.state.pubsub
    _ws_connections.add(websocket)
    streams: Dict[str, Tuple[PubSubAsyncIterator, asyncio.Task]] = {}
    try:
        while True:
            data = await websocket.receive_text()
            try:
                msg = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_json(ws_error(None, ERROR_BAD_REQUEST, "Invalid JSON", ws_ts()))
                continue
            if not isinstance(msg, dict):
                await websocket.send_json(ws_error(None, ERROR_BAD_REQUEST, "Expected a JSON object", ws_ts()))
                continue
            msg_type = msg.get("type")
            request_id = msg.get("request_id")

            if msg_type == "ping":
                await websocket.send_json(ws_pong(msg.get("request_id", ""), ws_ts()))
                continue

            if msg_type == "subscribe":
                try:
                    req = SubscribeRequest.from_dict(msg)
                except ValueError as e:
                    await websocket.send_json(ws_error(request_id, ERROR_BAD_REQUEST, str(e), ws_ts()))
                    continue
                iterator = pubsub.async_iterator(req.triggers)
                try:
                    await iterator.wait_ready()
                except PubSubError as e:
                    await websocket.send_json(ws_error(request_id, ERROR_TRANSPORT, str(e), ws_ts()))
                    continue
                key = f"sub_{uuid.uuid4().hex[:8]}"
                task = asyncio.create_task(_pump(websocket, key, iterator))
                streams[key] = (iterator, task)
                await websocket.send_json(ws_ack(
                    request_id, ws_ts(),
                    subscription=key,
                    triggers=req.triggers,
                ))
                continue

            if msg_type == "unsubscribe":
                key = msg.get("subscription")
                if not key:
                    await websocket.send_json(ws_error(
                        request_id, ERROR_BAD_REQUEST,
                        "unsubscribe requires subscription",
                        ws_ts(),
                    ))
                    continue
                entry = streams.pop(key, None)
                if entry is None:
                    await websocket.send_json(ws_error(
                        request_id, ERROR_UNKNOWN_SUBSCRIPTION,
                        f'There is no subscription of id "{key}"',
                        ws_ts(),
                    ))
                    continue
                await _close_stream(entry)
                await websocket.send_json(ws_ack(request_id, ws_ts(), subscription=key))
                continue

            if msg_type == "publish":
                trigger = msg.get("trigger")
                if not trigger or not isinstance(trigger, str):
                    await websocket.send_json(ws_error(
                        request_id, ERROR_BAD_REQUEST,
                        "publish requires trigger",
                        ws_ts(),
                    ))
                    continue
                try:
                    receivers = await pubsub.publish(trigger, msg.get("payload"))
                except PubSubError as e:
                    await websocket.send_json(ws_error(request_id, ERROR_TRANSPORT, str(e), ws_ts()))
                    continue
                await websocket.send_json(ws_ack(
                    request_id, ws_ts(),
                    trigger=trigger,
                    receivers=receivers,
                ))
                continue

            await websocket.send_json(ws_error(
                request_id, ERROR_BAD_REQUEST,
                f"Unknown type: {msg_type!r}",
                ws_ts(),
            ))
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.exception("ws_error", extra={"error": str(e)})
        await _ws_send(websocket, ws_error(
            None, ERROR_INTERNAL,
            f"Unexpected server error: {e!s}",
            ws_ts(),
        ))
    finally:
        for entry in streams.values():
            await _close_stream(entry)
        _ws_connections.discard(websocket)


app.include_router(router)
