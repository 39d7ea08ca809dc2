"""
Tracking Console - live presence and mission tracking for the dispatch desk
"""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

import console_config
from api_client import RemoteAPI
from routers import tracking, location, websocket
from services.location.geocoding import NominatimGeocoder
from services.tracking.map_view import MapView
from services.tracking.presence import PresenceChannel
from services.tracking.runtime import ConsoleRuntime

logger = logging.getLogger(__name__)


def build_runtime(api: RemoteAPI, geocoder: NominatimGeocoder) -> ConsoleRuntime:
    presence = None
    if console_config.PRESENCE_ENABLED:
        presence = PresenceChannel(
            console_config.PRESENCE_URL,
            user={
                "id": console_config.CONSOLE_USER_ID,
                "role": console_config.CONSOLE_USER_ROLE,
                "username": console_config.CONSOLE_USERNAME,
                "full_name": console_config.CONSOLE_FULL_NAME,
            },
            token=console_config.REMOTE_API_TOKEN or None,
        )
    return ConsoleRuntime(api, presence=presence, map_view=MapView(api=api, geocoder=geocoder))


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Tracking console starting up...")
    api = RemoteAPI()
    geocoder = NominatimGeocoder()
    runtime = build_runtime(api, geocoder)
    runtime.add_listener(websocket.broadcast_map_message)
    app.state.geocoder = geocoder
    app.state.runtime = runtime
    await runtime.start()
    yield
    # Shutdown
    logger.info("Tracking console shutting down...")
    await runtime.stop()
    await geocoder.aclose()
    await api.aclose()

app = FastAPI(
    title="Tracking Console API",
    description="Live presence and mission tracking for the dispatch console",
    version="1.0.0",
    lifespan=lifespan
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Tighten in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(tracking.router, prefix="/api/tracking", tags=["Tracking"])
app.include_router(location.router, prefix="/api/location", tags=["Location"])
app.include_router(websocket.router, tags=["WebSocket"])

@app.get("/")
async def root():
    return {"status": "ok", "service": "Tracking Console API", "version": "1.0.0"}

@app.get("/health")
async def health(request: Request):
    runtime = getattr(request.app.state, "runtime", None)
    presence = runtime.presence if runtime is not None else None
    return {
        "status": "healthy",
        "presence": presence.status if presence is not None else "disabled",
        "map_connections": websocket.get_connection_count(),
    }
