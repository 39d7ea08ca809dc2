"""
WebSocket endpoint for real-time map updates.

/ws/map - Live tracking map stream for dispatch consoles
    Server -> client:
    - connected:      handshake confirmation + current map snapshot
    - map_updated:    new snapshot after every recompute
    - notification:   presence notification forwarded untouched
                      (event-created, emergency-alert, ...)
    - auth_expired:   the console's own session with the backend expired
    - ping:           sent after 30s without client traffic
    Client -> server:
    - ping / pong:    keepalive
    - refresh:        cut the poll wait short
    - snapshot:       resend the current map

JWT validated at handshake before accept(); only command roles may connect.
Close codes: 4001 invalid/missing token, 4003 role not allowed.
"""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from typing import Set
import json
import logging
import asyncio

from jwt_auth import SessionUser, extract_token_from_websocket_params, validate_access_token

logger = logging.getLogger(__name__)

router = APIRouter()

# Idle time before the server pings, kept under proxy idle timeouts
MAP_IDLE_PING_SECONDS = 30


class MapHub:
    """Open /ws/map sockets. One hub per process."""

    def __init__(self):
        self.sockets: Set[WebSocket] = set()
        self.lock = asyncio.Lock()

    async def join(self, websocket: WebSocket):
        async with self.lock:
            self.sockets.add(websocket)
        logger.info(f"Map console connected ({len(self.sockets)} open)")

    async def leave(self, websocket: WebSocket):
        async with self.lock:
            self.sockets.discard(websocket)
        logger.info(f"Map console disconnected ({len(self.sockets)} open)")

    async def publish(self, message: dict):
        async with self.lock:
            targets = list(self.sockets)
        if not targets:
            return

        text = json.dumps(message, ensure_ascii=False)
        dead = []
        for websocket in targets:
            try:
                await websocket.send_text(text)
            except Exception as e:
                logger.warning(f"Dropping map console after send failure: {e}")
                dead.append(websocket)

        if dead:
            async with self.lock:
                self.sockets.difference_update(dead)


hub = MapHub()


def get_connection_count() -> int:
    return len(hub.sockets)


async def broadcast_map_message(message: dict):
    """ConsoleRuntime listener (registered in main.py lifespan)."""
    await hub.publish(message)


# =============================================================================
# Session
# =============================================================================

def _snapshot(websocket: WebSocket):
    runtime = getattr(websocket.app.state, "runtime", None)
    return runtime.map_view.snapshot() if runtime is not None else None


async def _handle_client_message(websocket: WebSocket, message: dict):
    kind = message.get("type")
    if kind == "ping":
        await websocket.send_json({"type": "pong"})
    elif kind == "refresh":
        runtime = getattr(websocket.app.state, "runtime", None)
        if runtime is not None:
            runtime.request_poll()
    elif kind == "snapshot":
        await websocket.send_json({"type": "map_updated", "rebuilt": True, "map": _snapshot(websocket)})
    elif kind != "pong":
        logger.debug(f"Ignoring map client message type {kind!r}")


async def _serve(websocket: WebSocket, user: SessionUser):
    """Read client frames; ping whenever the client has been quiet for a while."""
    while True:
        try:
            raw = await asyncio.wait_for(websocket.receive_text(), timeout=MAP_IDLE_PING_SECONDS)
        except asyncio.TimeoutError:
            await websocket.send_json({"type": "ping"})
            continue

        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Malformed frame from map console of user {user.id}")
            continue
        if isinstance(message, dict):
            await _handle_client_message(websocket, message)


# =============================================================================
# WebSocket endpoint
# =============================================================================

@router.websocket("/ws/map")
async def websocket_map(websocket: WebSocket):
    token = extract_token_from_websocket_params(websocket)
    user = validate_access_token(token) if token else None
    if user is None:
        await websocket.close(code=4001, reason="Invalid or expired token")
        return
    if not user.can_view_live_tracking:
        await websocket.close(code=4003, reason="Live tracking is restricted to command roles")
        return

    await websocket.accept()
    await websocket.send_json({"type": "connected", "user_id": user.id, "map": _snapshot(websocket)})
    await hub.join(websocket)

    try:
        await _serve(websocket, user)
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"Map console session for user {user.id} ended with error: {e}")
    finally:
        await hub.leave(websocket)


@router.get("/ws/status")
async def websocket_status():
    """Open map console count, for monitoring."""
    return {"map_connections": get_connection_count()}
