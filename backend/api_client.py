"""
Remote API client for the tracking console and field agent

Thin async wrapper over the unit's backend services. The backend is the
system of record for locations, assignments and events; nothing here
caches or persists.

Endpoints (relative to CONSOLE_REMOTE_API_URL):
    POST   /locations                                   - report own position
    GET    /volunteer-assignments/volunteer/{id}        - assignments for a volunteer
    GET    /volunteer-assignments/event/{id}            - assignments for an event
    POST   /volunteer-assignments                       - assign volunteers to an event
    DELETE /volunteer-assignments/{id}                  - remove an assignment
    PUT    /volunteer-assignments/{id}/tracking         - advance tracking status
    GET    /volunteer-assignments/{id}/tracking         - timestamps + response times
    GET    /volunteer-assignments/active-tracking       - all volunteers on missions
    GET    /admin/events/active-with-coordinates        - active events for the map
    PUT    /admin/events/{id}                           - write back coordinates/address

Error mapping:
    401                       -> AuthExpired
    other non-2xx, transport  -> NetworkFailure
"""

import logging
from typing import Optional, List

import httpx

import console_config
from services.tracking.errors import AuthExpired, NetworkFailure

logger = logging.getLogger(__name__)


class RemoteAPI:
    def __init__(
        self,
        base_url: str = console_config.REMOTE_API_URL,
        token: Optional[str] = console_config.REMOTE_API_TOKEN,
        timeout: float = console_config.REMOTE_API_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip('/'),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def aclose(self):
        await self._client.aclose()

    def set_token(self, token: Optional[str]):
        if token:
            self._client.headers["Authorization"] = f"Bearer {token}"
        else:
            self._client.headers.pop("Authorization", None)

    async def _request(self, method: str, path: str, **kwargs):
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException:
            logger.warning(f"{method} {path} timed out")
            raise NetworkFailure(f"{method} {path} timed out")
        except httpx.HTTPError as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise NetworkFailure(f"{method} {path} failed: {e}")

        if response.status_code == 401:
            raise AuthExpired()
        if response.status_code >= 400:
            detail = _error_detail(response)
            logger.warning(f"{method} {path} returned {response.status_code}: {detail}")
            raise NetworkFailure(f"{method} {path} returned {response.status_code}: {detail}",
                                 status_code=response.status_code)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            raise NetworkFailure(f"{method} {path} returned invalid JSON", status_code=response.status_code)

    # =========================================================================
    # LOCATIONS
    # =========================================================================

    async def update_location(self, latitude: float, longitude: float) -> dict:
        """Report the acting user's position. Returns {success, location}."""
        data = await self._request("POST", "/locations", json={
            "latitude": latitude,
            "longitude": longitude,
        })
        return data or {}

    # =========================================================================
    # ASSIGNMENTS
    # =========================================================================

    async def get_volunteer_assignments(self, volunteer_id) -> List[dict]:
        return await self._request("GET", f"/volunteer-assignments/volunteer/{volunteer_id}") or []

    async def get_event_assignments(self, event_id) -> List[dict]:
        return await self._request("GET", f"/volunteer-assignments/event/{event_id}") or []

    async def assign_volunteers(self, event_id, volunteer_ids: list, notes: Optional[str] = None) -> List[dict]:
        return await self._request("POST", "/volunteer-assignments", json={
            "event_id": event_id,
            "volunteer_ids": list(volunteer_ids),
            "notes": notes,
        }) or []

    async def remove_assignment(self, assignment_id) -> dict:
        return await self._request("DELETE", f"/volunteer-assignments/{assignment_id}") or {}

    async def update_tracking_status(
        self,
        assignment_id,
        status: str,
        latitude: float,
        longitude: float,
        notes: Optional[str] = None,
    ) -> dict:
        return await self._request("PUT", f"/volunteer-assignments/{assignment_id}/tracking", json={
            "status": status,
            "latitude": latitude,
            "longitude": longitude,
            "notes": notes,
        }) or {}

    async def get_tracking_info(self, assignment_id) -> dict:
        return await self._request("GET", f"/volunteer-assignments/{assignment_id}/tracking") or {}

    async def get_active_tracking(self) -> List[dict]:
        return await self._request("GET", "/volunteer-assignments/active-tracking") or []

    # =========================================================================
    # EVENTS
    # =========================================================================

    async def get_active_events_with_coordinates(self) -> List[dict]:
        return await self._request("GET", "/admin/events/active-with-coordinates") or []

    async def update_event_location(
        self,
        event_id,
        latitude: float,
        longitude: float,
        full_address: Optional[str] = None,
    ) -> dict:
        payload = {
            "event_latitude": latitude,
            "event_longitude": longitude,
        }
        if full_address:
            payload["full_address"] = full_address
        return await self._request("PUT", f"/admin/events/{event_id}", json=payload) or {}


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("error") or body.get("message") or body.get("detail") or body)
    return str(body)[:200]
