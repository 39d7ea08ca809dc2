"""
Live Tracking Router

All endpoints require a command role (see jwt_auth.require_live_tracking_role).

Endpoints:
    GET    /api/tracking/map                         - Full map snapshot
    GET    /api/tracking/entries                     - Reconciled map entries
    GET    /api/tracking/roster                      - Latest presence roster
    POST   /api/tracking/refresh                     - Force a poll + recompute
    POST   /api/tracking/focus                       - Highlight/follow an entry (toggle)
    DELETE /api/tracking/focus                       - Clear highlight
    POST   /api/tracking/flags/{event_id}/drag-start - Begin dragging an event flag
    POST   /api/tracking/flags/{event_id}/drag-end   - Drop the flag, open confirmation
    POST   /api/tracking/relocation/confirm          - Persist the pending relocation
    POST   /api/tracking/relocation/cancel           - Revert the pending relocation
"""

import logging
from fastapi import APIRouter, Depends, HTTPException, Request

from jwt_auth import SessionUser, require_live_tracking_role
from schemas_tracking import (
    DragEndResponse, EventResponse, FlagDragEnd, FocusRequest, FocusResponse,
    MapSnapshot, RefreshResponse,
)
from services.tracking.errors import AuthExpired, InvalidCoordinates, NetworkFailure, RelocationConflict
from services.tracking.runtime import ConsoleRuntime

logger = logging.getLogger(__name__)

router = APIRouter()


def get_runtime(request: Request) -> ConsoleRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Tracking runtime not running")
    return runtime


def _raise_http(e: Exception):
    if isinstance(e, AuthExpired):
        raise HTTPException(status_code=401, detail=str(e))
    if isinstance(e, RelocationConflict):
        raise HTTPException(status_code=409, detail=str(e))
    if isinstance(e, InvalidCoordinates):
        raise HTTPException(status_code=400, detail=str(e))
    if isinstance(e, NetworkFailure):
        raise HTTPException(status_code=502, detail=str(e))
    raise e


# =============================================================================
# READ
# =============================================================================

@router.get("/map", response_model=MapSnapshot)
async def get_map(
    runtime: ConsoleRuntime = Depends(get_runtime),
    user: SessionUser = Depends(require_live_tracking_role),
):
    return runtime.map_view.snapshot()


@router.get("/entries")
async def get_entries(
    runtime: ConsoleRuntime = Depends(get_runtime),
    user: SessionUser = Depends(require_live_tracking_role),
):
    return [entry.to_dict() for entry in runtime.map_view.entries]


@router.get("/roster")
async def get_roster(
    runtime: ConsoleRuntime = Depends(get_runtime),
    user: SessionUser = Depends(require_live_tracking_role),
):
    return [u.to_dict() for u in runtime.roster]


@router.post("/refresh", response_model=RefreshResponse)
async def refresh(
    runtime: ConsoleRuntime = Depends(get_runtime),
    user: SessionUser = Depends(require_live_tracking_role),
):
    if runtime.presence is not None:
        try:
            await runtime.presence.request_online_users()
        except ConnectionError as e:
            logger.warning(f"Roster refresh request failed: {e}")
    result = await runtime.refresh()
    return RefreshResponse(
        entries=len(result.entries),
        online_count=result.online_count,
        tracking_count=result.tracking_count,
        stale_count=result.stale_count,
        changed=result.changed,
    )


# =============================================================================
# FOCUS
# =============================================================================

@router.post("/focus", response_model=FocusResponse)
async def focus(
    request: FocusRequest,
    runtime: ConsoleRuntime = Depends(get_runtime),
    user: SessionUser = Depends(require_live_tracking_role),
):
    view = runtime.map_view
    try:
        view.focus(request.entry_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Map entry {request.entry_id} not found")
    return FocusResponse(
        highlighted_volunteer=view.highlighted_volunteer,
        center={"latitude": view.center[0], "longitude": view.center[1]},
        zoom=view.zoom,
    )


@router.delete("/focus", response_model=FocusResponse)
async def clear_focus(
    runtime: ConsoleRuntime = Depends(get_runtime),
    user: SessionUser = Depends(require_live_tracking_role),
):
    view = runtime.map_view
    view.clear_focus()
    return FocusResponse(
        highlighted_volunteer=None,
        center={"latitude": view.center[0], "longitude": view.center[1]},
        zoom=view.zoom,
    )


# =============================================================================
# FLAG RELOCATION
# =============================================================================

@router.post("/flags/{event_id}/drag-start")
async def flag_drag_start(
    event_id: str,
    runtime: ConsoleRuntime = Depends(get_runtime),
    user: SessionUser = Depends(require_live_tracking_role),
):
    try:
        flag = runtime.map_view.drag_start(event_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"No flag for event {event_id}")
    except RelocationConflict as e:
        _raise_http(e)
    return flag.to_dict()


@router.post("/flags/{event_id}/drag-end", response_model=DragEndResponse)
async def flag_drag_end(
    event_id: str,
    request: FlagDragEnd,
    runtime: ConsoleRuntime = Depends(get_runtime),
    user: SessionUser = Depends(require_live_tracking_role),
):
    try:
        relocation = await runtime.map_view.drag_end(event_id, request.latitude, request.longitude)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"No flag for event {event_id}")
    except (RelocationConflict, InvalidCoordinates) as e:
        _raise_http(e)

    await runtime.recompute()
    if relocation is None:
        return DragEndResponse(pending=False)
    return DragEndResponse(pending=True, relocation=relocation.to_dict())


@router.post("/relocation/confirm", response_model=EventResponse)
async def confirm_relocation(
    runtime: ConsoleRuntime = Depends(get_runtime),
    user: SessionUser = Depends(require_live_tracking_role),
):
    try:
        event = await runtime.map_view.confirm_relocation()
    except (RelocationConflict, NetworkFailure, AuthExpired) as e:
        await runtime.recompute()
        _raise_http(e)

    logger.info(f"User {user.id} relocated event {event.id}")
    await runtime.recompute()
    return event.to_dict()


@router.post("/relocation/cancel", response_model=DragEndResponse)
async def cancel_relocation(
    runtime: ConsoleRuntime = Depends(get_runtime),
    user: SessionUser = Depends(require_live_tracking_role),
):
    runtime.map_view.cancel_relocation()
    await runtime.recompute()
    return DragEndResponse(pending=False)
