"""Tests for the tracking and location HTTP routes."""
import pytest
from fastapi.testclient import TestClient
from fastapi import WebSocketDisconnect

import jwt_auth
import main
from conftest import FakeAPI, FakeGeocoder
from services.tracking.errors import NetworkFailure
from services.tracking.map_view import MapView
from services.tracking.runtime import ConsoleRuntime
from test_runtime import EVENT_ROWS, TRACKING_ROWS


def auth(role="מוקדן", user_id=1):
    token = jwt_auth.create_access_token(user_id, role=role, username="console", full_name="Console")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def api():
    fake = FakeAPI()
    fake.active_tracking = TRACKING_ROWS
    fake.active_events = EVENT_ROWS
    return fake


@pytest.fixture
def client(api):
    # Lifespan is not entered; collaborators are injected directly
    geocoder = FakeGeocoder()
    main.app.state.runtime = ConsoleRuntime(api, map_view=MapView(api=api, geocoder=geocoder))
    main.app.state.geocoder = geocoder
    yield TestClient(main.app)
    del main.app.state.runtime
    del main.app.state.geocoder


class TestAuthorization:
    """Token and role checks"""

    def test_missing_token(self, client):
        """No bearer token is 401"""
        assert client.get("/api/tracking/map").status_code == 401

    def test_invalid_token(self, client):
        """Garbage token is 401"""
        response = client.get("/api/tracking/map", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_field_role_forbidden(self, client):
        """Patrol volunteers cannot view the live map"""
        assert client.get("/api/tracking/map", headers=auth(role="סייר")).status_code == 403

    def test_command_role_allowed(self, client):
        """Dispatchers can"""
        assert client.get("/api/tracking/map", headers=auth()).status_code == 200


class TestMapRoutes:
    """Snapshot, refresh and focus"""

    def test_refresh_then_snapshot(self, client):
        """Refresh polls the backend and the snapshot carries markers and flags"""
        response = client.post("/api/tracking/refresh", headers=auth())
        assert response.status_code == 200
        assert response.json()["tracking_count"] == 1

        snapshot = client.get("/api/tracking/map", headers=auth()).json()
        assert [m["id"] for m in snapshot["markers"]] == ["tracking_12"]
        assert [f["id"] for f in snapshot["flags"]] == ["3"]
        assert snapshot["counts"]["tracking"] == 1

    def test_entries(self, client):
        """Entries list the reconciled map entries"""
        client.post("/api/tracking/refresh", headers=auth())
        entries = client.get("/api/tracking/entries", headers=auth()).json()
        assert entries[0]["volunteer_id"] == "7"

    def test_focus_toggle(self, client):
        """Focusing twice clears the highlight"""
        client.post("/api/tracking/refresh", headers=auth())
        first = client.post("/api/tracking/focus", json={"entry_id": "tracking_12"}, headers=auth())
        assert first.status_code == 200
        assert first.json()["highlighted_volunteer"] == "7"
        assert first.json()["center"] == {"latitude": 32.09, "longitude": 34.79}

        second = client.post("/api/tracking/focus", json={"entry_id": "tracking_12"}, headers=auth())
        assert second.json()["highlighted_volunteer"] is None

    def test_focus_unknown_entry(self, client):
        """Unknown entry is 404"""
        response = client.post("/api/tracking/focus", json={"entry_id": "online_99"}, headers=auth())
        assert response.status_code == 404

    def test_clear_focus(self, client):
        client.post("/api/tracking/refresh", headers=auth())
        client.post("/api/tracking/focus", json={"entry_id": "tracking_12"}, headers=auth())
        response = client.delete("/api/tracking/focus", headers=auth())
        assert response.json()["highlighted_volunteer"] is None


class TestFlagRelocation:
    """Drag, confirm and cancel"""

    def drag(self, client, lat=32.09, lng=34.79):
        client.post("/api/tracking/refresh", headers=auth())
        assert client.post("/api/tracking/flags/3/drag-start", headers=auth()).status_code == 200
        return client.post("/api/tracking/flags/3/drag-end", json={"latitude": lat, "longitude": lng}, headers=auth())

    def test_drag_opens_confirmation(self, client):
        """A real move returns a pending relocation with the reverse-geocoded address"""
        response = self.drag(client)
        body = response.json()
        assert body["pending"] is True
        assert body["relocation"]["event_id"] == "3"
        assert body["relocation"]["new_address"] == "הרצל 10, תל אביב"
        assert body["relocation"]["original_position"] == {"latitude": 32.08, "longitude": 34.78}

    def test_small_drag_snaps_back(self, client):
        """Under ten metres nothing is pending"""
        response = self.drag(client, lat=32.08001, lng=34.78001)
        assert response.json() == {"pending": False, "relocation": None}

    def test_confirm_persists(self, client, api):
        """Confirm writes coordinates and address to the backend"""
        self.drag(client)
        response = client.post("/api/tracking/relocation/confirm", headers=auth())

        assert response.status_code == 200
        assert response.json()["latitude"] == 32.09
        assert response.json()["full_address"] == "הרצל 10, תל אביב"
        name, args, kwargs = api.called("update_event_location")[0]
        assert args == ("3", 32.09, 34.79)
        assert kwargs == {"full_address": "הרצל 10, תל אביב"}

    def test_confirm_failure_reverts(self, client, api):
        """Backend failure is 502 and the flag returns to its origin"""
        self.drag(client)
        api.fail["update_event_location"] = NetworkFailure("backend down", status_code=500)

        response = client.post("/api/tracking/relocation/confirm", headers=auth())
        assert response.status_code == 502

        flags = client.get("/api/tracking/map", headers=auth()).json()["flags"]
        assert (flags[0]["latitude"], flags[0]["longitude"]) == (32.08, 34.78)
        assert client.get("/api/tracking/map", headers=auth()).json()["pending_relocation"] is None

    def test_confirm_without_pending(self, client):
        """Nothing to confirm is 409"""
        assert client.post("/api/tracking/relocation/confirm", headers=auth()).status_code == 409

    def test_second_drag_while_pending(self, client):
        """Only one relocation may await confirmation"""
        self.drag(client)
        assert client.post("/api/tracking/flags/3/drag-start", headers=auth()).status_code == 409

    def test_cancel(self, client, api):
        """Cancel reverts without writing"""
        self.drag(client)
        response = client.post("/api/tracking/relocation/cancel", headers=auth())
        assert response.json()["pending"] is False
        assert api.called("update_event_location") == []

    def test_unknown_flag(self, client):
        """Dragging a flag that does not exist is 404"""
        assert client.post("/api/tracking/flags/404/drag-start", headers=auth()).status_code == 404

    def test_out_of_range_drop_rejected(self, client):
        """Coordinates outside WGS84 fail validation"""
        client.post("/api/tracking/refresh", headers=auth())
        client.post("/api/tracking/flags/3/drag-start", headers=auth())
        response = client.post(
            "/api/tracking/flags/3/drag-end", json={"latitude": 95, "longitude": 34.78}, headers=auth(),
        )
        assert response.status_code == 422


class TestLocationRoutes:
    """Geocoding endpoints"""

    def test_reverse(self, client):
        response = client.post("/api/location/reverse", json={"latitude": 32.06, "longitude": 34.77}, headers=auth("סייר"))
        assert response.json() == {"success": True, "address": "הרצל 10, תל אביב"}

    def test_geocode_miss(self, client):
        """Unresolvable address reports success false"""
        response = client.post("/api/location/geocode", json={"address": "אין כזה"}, headers=auth())
        assert response.status_code == 200
        assert response.json()["success"] is False

    def test_geocode_blank(self, client):
        response = client.post("/api/location/geocode", json={"address": "  "}, headers=auth())
        assert response.status_code == 400

    def test_config_is_public(self, client):
        assert "default_center" in client.get("/api/location/config").json()


class TestHealth:
    def test_health_without_presence(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["presence"] == "disabled"
        assert body["map_connections"] == 0


class TestMapWebSocket:
    """/ws/map handshake and client messages"""

    def token(self, role="מוקדן"):
        return jwt_auth.create_access_token(1, role=role)

    def test_rejects_missing_token(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws/map"):
                pass
        assert exc_info.value.code == 4001

    def test_rejects_field_role(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(f"/ws/map?token={self.token('סייר')}"):
                pass
        assert exc_info.value.code == 4003

    def test_connected_carries_snapshot(self, client):
        """Handshake sends the current map, then answers pings"""
        client.post("/api/tracking/refresh", headers=auth())
        with client.websocket_connect(f"/ws/map?token={self.token()}") as ws:
            hello = ws.receive_json()
            assert hello["type"] == "connected"
            assert hello["user_id"] == "1"
            assert hello["map"]["counts"]["tracking"] == 1

            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

            ws.send_json({"type": "snapshot"})
            assert ws.receive_json()["type"] == "map_updated"
