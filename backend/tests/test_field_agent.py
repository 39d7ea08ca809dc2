"""Tests for the field agent CLI."""
import argparse

import pytest

import field_agent
import jwt_auth
from services.tracking.errors import AuthExpired, PermissionDenied
from services.tracking.geolocation import (
    FixedPositionSource, GeolocationCapture, PositionSource, SimulatedPositionSource,
)


class DeniedSource(PositionSource):
    async def read(self, high_accuracy=True):
        raise PermissionDenied()


def make_args(**overrides):
    values = {"simulate": False, "lat": None, "lng": None, "to": None, "volunteer_id": "7"}
    values.update(overrides)
    return argparse.Namespace(**values)


class TestArguments:
    """Argument helpers"""

    def test_parse_point(self):
        assert field_agent.parse_point("32.08,34.78") == (32.08, 34.78)

    def test_parse_point_rejects_garbage(self):
        with pytest.raises(argparse.ArgumentTypeError):
            field_agent.parse_point("north")

    def test_volunteer_id_from_token(self):
        """Subject claim is read without the signing secret"""
        token = jwt_auth.create_access_token(42, role="סייר")
        assert field_agent.volunteer_id_from_token(token) == "42"
        assert field_agent.volunteer_id_from_token(None) is None
        assert field_agent.volunteer_id_from_token("not-a-jwt") is None

    def test_build_source(self):
        """Fixed with --lat/--lng, simulated with --simulate, none otherwise"""
        assert isinstance(field_agent.build_source(make_args(lat=32.08, lng=34.78)), FixedPositionSource)
        assert isinstance(field_agent.build_source(make_args(simulate=True)), SimulatedPositionSource)
        assert field_agent.build_source(make_args()) is None

    def test_status_requires_volunteer(self):
        """No --volunteer-id and no token subject is a usage error"""
        with pytest.raises(SystemExit) as exc_info:
            field_agent.main(["--token", "", "status"])
        assert exc_info.value.code == 2


class TestTrack:
    """Exit codes of the continuous reporter"""

    @pytest.mark.asyncio
    async def test_expired_session_exits_2(self, fake_api):
        """A 401 on a location report stops tracking with the auth exit code"""
        fake_api.fail["update_location"] = AuthExpired()
        capture = GeolocationCapture(FixedPositionSource(32.08, 34.78))

        code = await field_agent.cmd_track(make_args(), fake_api, capture)

        assert code == 2
        assert len(fake_api.called("update_location")) == 1
        assert capture.is_tracking is False

    @pytest.mark.asyncio
    async def test_permission_denied_exits_1(self, fake_api):
        """Denied location permission stops tracking with a generic failure"""
        capture = GeolocationCapture(DeniedSource())

        code = await field_agent.cmd_track(make_args(), fake_api, capture)

        assert code == 1
        assert fake_api.called("update_location") == []


class TestOneShotCommands:
    @pytest.mark.asyncio
    async def test_locate(self, fake_api, capsys):
        capture = GeolocationCapture(FixedPositionSource(32.08, 34.78))
        assert await field_agent.cmd_locate(make_args(), fake_api, capture) == 0
        assert fake_api.called("update_location")[0][1] == (32.08, 34.78)
        assert "Location updated" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_status_without_assignments(self, fake_api, capsys):
        capture = GeolocationCapture(FixedPositionSource(32.08, 34.78))
        assert await field_agent.cmd_status(make_args(), fake_api, capture) == 0
        assert "No open assignments" in capsys.readouterr().out
