"""
Presence Channel client

Persistent WebSocket to the unit's presence server. Messages in both
directions are JSON envelopes:

    {"event": "<name>", "data": <payload>}

Client -> server:
    join-admin          {userId, role, username, fullName}   (on every connect)
    get-online-users    (1s after join, and on manual refresh)
    leave-admin         {userId}                             (on teardown)

Server -> client:
    online-users-updated    FULL roster. Each snapshot replaces the previous
                            one; rosters are never merged or diffed here.
    force-disconnect        session revoked; no reconnect, auth sink told
    event-created, event-updated, event-status-changed, user-marked-out,
    emergency-alert, notification-sent
                            forwarded untouched to the notification sink

Reconnection: exponential backoff (5s base, 60s cap, +/-1s jitter, 10
attempts). After an abnormal close (network drop, ping timeout) the last
roster is kept so the map does not empty during the reconnect; after a clean
close by the server it is cleared.
"""

import asyncio
import inspect
import json
import logging
import random
from typing import Callable, Dict, List, Optional

import websockets
from websockets import ConnectionClosed

from services.tracking.errors import AuthExpired
from services.tracking.models import OnlineUser
from services.tracking.reconciler import parse_roster

logger = logging.getLogger(__name__)

NOTIFICATION_EVENTS = (
    "event-created",
    "event-updated",
    "event-status-changed",
    "user-marked-out",
    "emergency-alert",
    "notification-sent",
)

# Close codes treated as transport failures (keep roster while reconnecting)
_ABNORMAL_CLOSE_CODES = {1006, 1011, 1012, 1013, 1014}


class ConnectionStatus:
    CONNECTED = "Connected"
    CONNECTING = "Connecting"
    RECONNECTING = "Reconnecting"
    OFFLINE = "Offline"


class Subscription:
    """Handle returned by the subscribe_* methods; call unsubscribe() on teardown."""

    def __init__(self, registry: list, callback: Callable):
        self._registry = registry
        self._callback = callback

    def unsubscribe(self):
        if self._callback in self._registry:
            self._registry.remove(self._callback)


class PresenceChannel:
    MAX_RECONNECT_ATTEMPTS = 10
    BASE_DELAY_SECONDS = 5.0
    MAX_DELAY_SECONDS = 60.0
    JITTER_RANGE = 1.0
    ROSTER_REQUEST_DELAY = 1.0

    def __init__(
        self,
        url: str,
        user: dict,
        token: Optional[str] = None,
        connect: Callable = websockets.connect,
    ):
        """
        Args:
            url: ws:// or wss:// presence endpoint
            user: identity sent with join-admin (id, role, username, full_name)
            token: bearer token for the handshake
            connect: websockets.connect or a test double with the same shape
        """
        self.url = url
        self.user = user
        self.token = token
        self._connect = connect
        self.ws = None
        self.status = ConnectionStatus.OFFLINE
        self.reconnect_attempts = 0
        self._roster: List[OnlineUser] = []
        self._roster_listeners: List[Callable] = []
        self._notification_listeners: List[Callable] = []
        self._auth_listeners: List[Callable] = []
        self._listen_task: Optional[asyncio.Task] = None
        self._roster_request_task: Optional[asyncio.Task] = None
        self._closing = False

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    @property
    def online_users(self) -> List[OnlineUser]:
        return list(self._roster)

    @property
    def connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED

    def subscribe_roster(self, callback: Callable) -> Subscription:
        self._roster_listeners.append(callback)
        return Subscription(self._roster_listeners, callback)

    def subscribe_notifications(self, callback: Callable) -> Subscription:
        self._notification_listeners.append(callback)
        return Subscription(self._notification_listeners, callback)

    def subscribe_auth_expired(self, callback: Callable) -> Subscription:
        self._auth_listeners.append(callback)
        return Subscription(self._auth_listeners, callback)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def connect(self):
        """Open the socket, join the admin room and start listening."""
        self._closing = False
        self.status = ConnectionStatus.CONNECTING
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else None
        try:
            self.ws = await self._connect(self.url, additional_headers=headers)
        except Exception as e:
            self.status = ConnectionStatus.OFFLINE
            logger.error(f"Presence connection error ({self.url}): {e}")
            raise

        self.status = ConnectionStatus.CONNECTED
        self.reconnect_attempts = 0
        logger.info(f"Connected to presence server {self.url}")

        await self.emit("join-admin", {
            "userId": self.user.get("id"),
            "role": self.user.get("role"),
            "username": self.user.get("username"),
            "fullName": self.user.get("full_name"),
        })
        self._roster_request_task = asyncio.create_task(self._delayed_roster_request())
        self._listen_task = asyncio.create_task(self._listen())

    async def disconnect(self):
        """Leave the admin room and close. No reconnect follows."""
        self._closing = True
        for task in (self._roster_request_task, self._listen_task):
            if task and not task.done() and task is not asyncio.current_task():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        if self.ws is not None:
            try:
                await self.emit("leave-admin", {"userId": self.user.get("id")})
            except ConnectionError:
                pass
        await self._close_socket()
        self._replace_roster([], notify=False)
        logger.info("Disconnected from presence server")

    async def _close_socket(self):
        ws, self.ws = self.ws, None
        self.status = ConnectionStatus.OFFLINE
        if ws is None:
            return
        try:
            await ws.close()
        except Exception as e:
            logger.debug(f"Error closing presence socket: {e}")

    def get_reconnect_delay(self, attempt: int) -> float:
        """Backoff without jitter: min(base * 2^attempt, cap)."""
        return min(self.BASE_DELAY_SECONDS * (2 ** attempt), self.MAX_DELAY_SECONDS)

    async def reconnect(self) -> bool:
        self.status = ConnectionStatus.RECONNECTING
        while self.reconnect_attempts < self.MAX_RECONNECT_ATTEMPTS and not self._closing:
            delay = self.get_reconnect_delay(self.reconnect_attempts)
            delay = max(0.0, delay + random.uniform(-self.JITTER_RANGE, self.JITTER_RANGE))
            attempt = self.reconnect_attempts + 1
            logger.info(f"Reconnecting to presence server in {delay:.1f}s ({attempt}/{self.MAX_RECONNECT_ATTEMPTS})")
            await asyncio.sleep(delay)
            if self._closing:
                break
            try:
                await self.connect()
                return True
            except Exception:
                self.reconnect_attempts += 1

        if not self._closing:
            logger.error("Presence reconnection failed, giving up")
        self.status = ConnectionStatus.OFFLINE
        return False

    # -------------------------------------------------------------------------
    # Outbound
    # -------------------------------------------------------------------------

    async def emit(self, event: str, data=None):
        if self.ws is None:
            raise ConnectionError("Not connected to presence server")
        try:
            await self.ws.send(json.dumps({"event": event, "data": data}))
        except ConnectionClosed:
            raise ConnectionError("Presence connection closed")

    async def request_online_users(self):
        if not self.connected:
            return
        logger.debug("Requesting online users")
        await self.emit("get-online-users")

    async def _delayed_roster_request(self):
        await asyncio.sleep(self.ROSTER_REQUEST_DELAY)
        try:
            await self.request_online_users()
        except ConnectionError as e:
            logger.debug(f"Roster request skipped: {e}")

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------

    async def _listen(self):
        close_code = None
        try:
            async for message in self.ws:
                try:
                    envelope = json.loads(message)
                except (TypeError, ValueError) as e:
                    logger.warning(f"Invalid JSON from presence server: {e}")
                    continue
                if not isinstance(envelope, dict):
                    continue
                await self.handle_message(envelope)
                if self._closing:
                    return
        except ConnectionClosed as e:
            close_code = e.rcvd.code if e.rcvd else 1006
        except ConnectionError as e:
            # A reply failed mid-dispatch: the socket is gone
            logger.warning(f"Presence send failed while listening: {e}")
            close_code = 1006
        if self._closing:
            return
        await self._on_connection_lost(close_code)

    async def _on_connection_lost(self, close_code: Optional[int]):
        self.status = ConnectionStatus.OFFLINE
        self.ws = None
        if close_code is None or close_code in _ABNORMAL_CLOSE_CODES:
            logger.warning(f"Presence connection lost (code {close_code}), keeping roster during reconnection")
        else:
            logger.info(f"Presence connection closed by server (code {close_code})")
            self._replace_roster([])
        await self.reconnect()

    async def handle_message(self, envelope: Dict):
        event = envelope.get("event")
        data = envelope.get("data")

        if event == "online-users-updated":
            if data is None:
                return
            self._replace_roster(parse_roster(data))
        elif event == "force-disconnect":
            message = (data or {}).get("message") if isinstance(data, dict) else None
            logger.warning(f"Force disconnected by server: {message}")
            self._closing = True
            error = AuthExpired(message or "Disconnected by administrator")
            await self._dispatch(self._auth_listeners, error)
            await self._close_socket()
        elif event in NOTIFICATION_EVENTS:
            await self._dispatch(self._notification_listeners, event, data)
        elif event == "ping":
            await self.emit("pong")
        else:
            logger.debug(f"Unhandled presence event: {event}")

    def _replace_roster(self, users: List[OnlineUser], notify: bool = True):
        self._roster = list(users)
        logger.debug(f"Roster snapshot: {len(self._roster)} online users")
        if notify:
            for listener in list(self._roster_listeners):
                try:
                    listener(self.online_users)
                except Exception as e:
                    logger.error(f"Roster listener failed: {e}", exc_info=True)

    @staticmethod
    async def _dispatch(listeners: List[Callable], *args):
        for listener in list(listeners):
            try:
                result = listener(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Presence listener failed: {e}", exc_info=True)
