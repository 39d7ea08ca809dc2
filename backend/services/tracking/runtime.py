"""
Console runtime

Wires the collaborators of the live tracking map together and owns their
background tasks:

    PresenceChannel ──roster──────────┐
                                      ├─> PresenceReconciler ─> MapView ─> listeners (/ws/map)
    RemoteAPI ──active tracking (poll)┘
    RemoteAPI ──active events (poll)──────────────────────────> MapView flags

Every roster snapshot and every poll result triggers a recompute from the
latest roster and the latest tracking list, whichever arrived first.
Presence notifications are forwarded to listeners untouched; event
notifications additionally trigger an early poll so flags stay current.

Poll interval adapts to the online roster: 120s below 20 users, 150s below
40, 180s otherwise.
"""

import asyncio
import inspect
import logging
from typing import Callable, List, Optional

import console_config
from services.tracking.errors import AuthExpired, NetworkFailure
from services.tracking.map_view import MapView
from services.tracking.models import Event, OnlineUser, TrackingRecord
from services.tracking.presence import PresenceChannel
from services.tracking.reconciler import PresenceReconciler, ReconcileResult, parse_tracking

logger = logging.getLogger(__name__)

# Notifications after which the active event list is re-fetched
EVENT_REFRESH_TRIGGERS = ("event-created", "event-updated", "event-status-changed")


def poll_interval_for(online_count: int) -> float:
    if online_count < 20:
        interval = 120.0
    elif online_count < 40:
        interval = 150.0
    else:
        interval = 180.0
    return min(max(interval, console_config.POLL_INTERVAL_MIN), console_config.POLL_INTERVAL_MAX)


class ConsoleRuntime:
    def __init__(
        self,
        api,
        presence: Optional[PresenceChannel] = None,
        map_view: Optional[MapView] = None,
        reconciler: Optional[PresenceReconciler] = None,
    ):
        self.api = api
        self.presence = presence
        self.map_view = map_view if map_view is not None else MapView(api=api)
        self.reconciler = reconciler if reconciler is not None else PresenceReconciler()

        self.roster: List[OnlineUser] = []
        self.tracking: List[TrackingRecord] = []
        self.events: List[Event] = []
        self.auth_expired = False
        self.last_result: Optional[ReconcileResult] = None

        self._listeners: List[Callable] = []
        self._subscriptions = []
        self._poll_task: Optional[asyncio.Task] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()
        self._background: set = set()

    # -------------------------------------------------------------------------
    # Listeners
    # -------------------------------------------------------------------------

    def add_listener(self, callback: Callable) -> Callable:
        """Register callback(message: dict). Returns an unsubscribe function."""
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)
        return unsubscribe

    async def _broadcast(self, message: dict):
        for listener in list(self._listeners):
            try:
                result = listener(message)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Map listener failed: {e}", exc_info=True)

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self):
        if self.presence is not None:
            self._subscriptions = [
                self.presence.subscribe_roster(self._on_roster),
                self.presence.subscribe_notifications(self._on_notification),
                self.presence.subscribe_auth_expired(self._on_auth_expired),
            ]
            self._connect_task = asyncio.create_task(self._connect_presence())
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info("Tracking console runtime started")

    async def stop(self):
        for task in (self._poll_task, self._connect_task, *self._background):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._poll_task = None
        self._connect_task = None

        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []
        if self.presence is not None:
            await self.presence.disconnect()
        self.map_view.close()
        logger.info("Tracking console runtime stopped")

    async def _connect_presence(self):
        try:
            await self.presence.connect()
        except Exception as e:
            logger.warning(f"Initial presence connection failed: {e}")
            await self.presence.reconnect()

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------

    def poll_interval(self) -> float:
        return poll_interval_for(len(self.roster))

    async def _poll_loop(self):
        while not self.auth_expired:
            await self.refresh()
            if self.auth_expired:
                break
            self._wake.clear()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval())
            except asyncio.TimeoutError:
                pass
        logger.warning("Polling stopped: console session expired")

    def request_poll(self):
        """Cut the current poll wait short."""
        self._wake.set()

    async def refresh(self) -> ReconcileResult:
        """Fetch active tracking and events, then recompute."""
        tracking_rows, event_rows = await asyncio.gather(
            self._fetch(self.api.get_active_tracking, "active tracking"),
            self._fetch(self.api.get_active_events_with_coordinates, "active events"),
        )
        if tracking_rows is not None:
            self.tracking = parse_tracking(tracking_rows)
        if event_rows is not None:
            self.events = [e for e in (Event.from_payload(row) for row in event_rows if isinstance(row, dict)) if e]
            self.map_view.set_events(self.events)
        return await self.recompute()

    async def _fetch(self, call: Callable, label: str):
        try:
            return await call()
        except AuthExpired:
            if not self.auth_expired:
                await self._on_auth_expired(AuthExpired())
            return None
        except NetworkFailure as e:
            logger.warning(f"Failed to load {label}, keeping previous data: {e}")
            return None

    # -------------------------------------------------------------------------
    # Reconcile
    # -------------------------------------------------------------------------

    async def recompute(self) -> ReconcileResult:
        result = self.reconciler.recompute(self.roster, self.tracking)
        rebuilt = self.map_view.render(result.entries)
        self.last_result = result
        await self._broadcast({
            "type": "map_updated",
            "rebuilt": rebuilt,
            "map": self.map_view.snapshot(result.computed_at),
        })
        return result

    def _on_roster(self, users: List[OnlineUser]):
        self.roster = list(users)
        self._spawn(self.recompute())

    async def _on_notification(self, event: str, data):
        await self._broadcast({"type": "notification", "event": event, "data": data})
        if event in EVENT_REFRESH_TRIGGERS:
            self.request_poll()

    async def _on_auth_expired(self, error: AuthExpired):
        self.auth_expired = True
        self._wake.set()
        logger.error(f"Console session expired: {error}")
        await self._broadcast({"type": "auth_expired", "message": str(error)})
