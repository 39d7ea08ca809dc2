"""
Field Agent - volunteer-side location reporting and mission status

Runs the volunteer half of live tracking from a terminal: continuous
position reporting, one-off location updates, and assignment status
transitions (each with a fresh position fix).

Position source:
    --lat/--lng        fixed position (station, checkpoint)
    --simulate         walk from --lat/--lng (or the default map centre)
                       toward --to LAT,LNG

Usage:
    python field_agent.py --token $JWT --lat 32.08 --lng 34.78 track
    python field_agent.py --token $JWT --lat 32.08 --lng 34.78 locate
    python field_agent.py --token $JWT status
    python field_agent.py --token $JWT --lat 32.08 --lng 34.78 advance 42 --notes "on my way"
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional

import jwt  # PyJWT

import console_config
from api_client import RemoteAPI
from services.tracking.errors import AuthExpired, TrackingError
from services.tracking.geolocation import (
    FixedPositionSource, GeolocationCapture, PositionSource, SimulatedPositionSource,
)
from services.tracking.reporter import PositionReporter
from services.tracking.status_controller import STATUS_LABELS, AssignmentStatusController

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def parse_point(text: str) -> tuple:
    try:
        lat, lng = (float(part) for part in text.split(','))
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected LAT,LNG, got '{text}'")
    return lat, lng


def volunteer_id_from_token(token: Optional[str]) -> Optional[str]:
    """Read the subject claim without verifying; the backend verifies on every call."""
    if not token:
        return None
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.InvalidTokenError as e:
        logger.warning(f"Could not read token claims: {e}")
        return None
    user_id = claims.get("sub", claims.get("user_id"))
    return str(user_id) if user_id is not None else None


def build_source(args) -> Optional[PositionSource]:
    if args.simulate:
        start = (args.lat, args.lng) if args.lat is not None and args.lng is not None \
            else console_config.MAP_DEFAULT_CENTER
        return SimulatedPositionSource(start=start, destination=args.to)
    if args.lat is not None and args.lng is not None:
        return FixedPositionSource(args.lat, args.lng)
    return None


# =============================================================================
# COMMANDS
# =============================================================================

async def cmd_track(args, api: RemoteAPI, capture: GeolocationCapture) -> int:
    stopped = asyncio.Event()
    auth_expired = asyncio.Event()

    def on_auth_expired():
        auth_expired.set()
        stopped.set()

    reporter = PositionReporter(
        capture, api,
        on_auth_expired=on_auth_expired,
        on_permission_denied=lambda e: stopped.set(),
    )
    handle = reporter.start()
    logger.info("Reporting position, Ctrl+C to stop")
    waiters = [asyncio.create_task(stopped.wait()), asyncio.create_task(handle.wait())]
    try:
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in waiters:
            task.cancel()
        reporter.stop()
    logger.info(f"Stopped after {reporter.reports_sent} reports")
    if auth_expired.is_set():
        logger.error("Session expired, log in again and pass a fresh --token")
        return 2
    return 1 if stopped.is_set() else 0


async def cmd_locate(args, api: RemoteAPI, capture: GeolocationCapture) -> int:
    reporter = PositionReporter(capture, api)
    location = await reporter.update_location_now()
    print(f"Location updated: {location}")
    return 0


async def cmd_status(args, api: RemoteAPI, capture: GeolocationCapture) -> int:
    controller = AssignmentStatusController(api, capture)
    assignments = await controller.load_for_volunteer(args.volunteer_id)
    if not assignments:
        print("No open assignments")
        return 0
    for assignment in assignments:
        action = controller.available_action(assignment.id)
        next_step = f" -> {action.icon} {action.label}" if action else ""
        print(f"[{assignment.id}] event {assignment.event_id}: "
              f"{STATUS_LABELS.get(assignment.status, assignment.status)}{next_step}")
    return 0


async def cmd_advance(args, api: RemoteAPI, capture: GeolocationCapture) -> int:
    controller = AssignmentStatusController(api, capture)
    await controller.load_for_volunteer(args.volunteer_id)
    if controller.get(args.assignment_id) is None:
        logger.error(f"Assignment {args.assignment_id} is not open for volunteer {args.volunteer_id}")
        return 1
    assignment = await controller.advance(args.assignment_id, notes=args.notes)
    print(f"Assignment {assignment.id}: {STATUS_LABELS.get(assignment.status, assignment.status)}")
    if assignment.response_times:
        times = assignment.response_times
        print(f"  travel={times.travel_minutes} on_scene={times.on_scene_minutes} total={times.total_minutes} (minutes)")
    return 0


COMMANDS = {
    "track": cmd_track,
    "locate": cmd_locate,
    "status": cmd_status,
    "advance": cmd_advance,
}


async def run(args) -> int:
    source = build_source(args)
    capture = GeolocationCapture(source)
    async with RemoteAPI(base_url=args.api_url, token=args.token) as api:
        try:
            return await COMMANDS[args.command](args, api, capture)
        except AuthExpired:
            logger.error("Session expired, log in again and pass a fresh --token")
            return 2
        except TrackingError as e:
            logger.error(f"{args.command} failed: {e}")
            return 1


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description='Field agent for live tracking')
    parser.add_argument('--api-url', default=console_config.REMOTE_API_URL,
                        help=f'Backend API URL (default: {console_config.REMOTE_API_URL})')
    parser.add_argument('--token', default=console_config.REMOTE_API_TOKEN or None, help='Bearer token')
    parser.add_argument('--volunteer-id', help='Volunteer id (default: token subject)')
    parser.add_argument('--lat', type=float, help='Latitude of a fixed position')
    parser.add_argument('--lng', type=float, help='Longitude of a fixed position')
    parser.add_argument('--simulate', action='store_true', help='Simulate movement instead of a fixed position')
    parser.add_argument('--to', type=parse_point, help='Simulation destination as LAT,LNG')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')

    sub = parser.add_subparsers(dest='command', required=True)
    sub.add_parser('track', help='Report position continuously until interrupted')
    sub.add_parser('locate', help='Send one location update now')
    sub.add_parser('status', help='List open assignments and their next action')
    advance = sub.add_parser('advance', help='Advance an assignment to its next status')
    advance.add_argument('assignment_id')
    advance.add_argument('--notes')

    args = parser.parse_args(argv)

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.volunteer_id is None:
        args.volunteer_id = volunteer_id_from_token(args.token)
    if args.command in ('status', 'advance') and not args.volunteer_id:
        parser.error('--volunteer-id is required when the token carries no subject')

    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        print("\nShutting down...")
        return 0


if __name__ == '__main__':
    sys.exit(main())
