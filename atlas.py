#!/usr/bin/env python3
"""
GhostAtlas - Paranormal encounters on a map, from the command line.
Browse nearby encounters, submit your own, rate and verify them on site,
and moderate the submission queue.
"""

import argparse
import dataclasses
import datetime
import json
import logging
import mimetypes
import os
import sys
from typing import Callable, Dict, Optional, Sequence

from colorama import Fore, Style, init

from api_client import ApiError, ErrorKind, GhostAtlasAPI
from geolocation import (DEFAULT_VERIFICATION_RADIUS_METERS, Eligibility, format_distance,
                         is_eligible)
from ghostatlas.models import Encounter, EncounterPage
from ghostatlas.repositories import (ActivityRepository, DeviceRepository,
                                     PreferencesRepository)
from ghostatlas.services import ActivityService, DeviceService, PreferencesService
from query_cache import QueryCache, QueryState

# Initialize colorama for cross-platform colored terminal output
init(autoreset=True)

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

def setup_logging(level: str = 'WARNING') -> logging.Logger:
    """Configure the root GhostAtlas logger.

    Args:
        level: Log level string (DEBUG, INFO, WARNING, ERROR, CRITICAL).
               Defaults to WARNING so normal use is quiet.

    Returns:
        Configured logger instance.
    """
    numeric = getattr(logging, level.upper(), logging.WARNING)
    logger = logging.getLogger('ghostatlas')
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('[%(levelname)s] %(name)s: %(message)s'))
        logger.addHandler(handler)
    logger.setLevel(numeric)
    return logger


logger = logging.getLogger('ghostatlas.atlas')

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_CONFIG = {
    'api_url': 'http://127.0.0.1:5000/api',
    'admin_api_key': None,
    'debug': False,
    'log_level': 'WARNING',
    'data_dir': os.path.join('~', '.ghostatlas'),
}

_ENV_OVERRIDES = {
    'GHOSTATLAS_API_URL': 'api_url',
    'GHOSTATLAS_ADMIN_API_KEY': 'admin_api_key',
    'GHOSTATLAS_DEBUG': 'debug',
    'GHOSTATLAS_LOG_LEVEL': 'log_level',
    'GHOSTATLAS_DATA_DIR': 'data_dir',
}


def load_config(config_path: str = 'config.json') -> Dict:
    """Load configuration from an optional JSON file with environment overrides.

    Environment variables take precedence over config file values:
    - GHOSTATLAS_API_URL overrides api_url
    - GHOSTATLAS_ADMIN_API_KEY overrides admin_api_key
    - GHOSTATLAS_DEBUG overrides debug ("1", "true" or "yes" enable it)
    - GHOSTATLAS_LOG_LEVEL overrides log_level
    - GHOSTATLAS_DATA_DIR overrides data_dir
    """
    config = dict(DEFAULT_CONFIG)
    if config_path and os.path.exists(config_path):
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                loaded = json.load(f)
            if isinstance(loaded, dict):
                config.update(loaded)
            else:
                logger.warning("Ignoring %s: expected a JSON object", config_path)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Could not read %s: %s", config_path, e)

    for env_name, key in _ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            config[key] = value
    if isinstance(config['debug'], str):
        config['debug'] = config['debug'].strip().lower() in ('1', 'true', 'yes')
    config['data_dir'] = os.path.expanduser(config['data_dir'])
    return config


# ---------------------------------------------------------------------------
# Cache keys
# ---------------------------------------------------------------------------

LIST_STALE_TIME = 300
DETAIL_STALE_TIME = 600
ADMIN_STALE_TIME = 60
PROFILE_STALE_TIME = 120


class EncounterKeys:
    LISTS = ('encounters', 'list')
    ALL_LISTS = ('encounters', 'all')

    @staticmethod
    def list(params: Dict) -> tuple:
        return ('encounters', 'list', params)

    @staticmethod
    def all(limit: int) -> tuple:
        return ('encounters', 'all', limit)

    @staticmethod
    def detail(encounter_id: str) -> tuple:
        return ('encounters', 'detail', encounter_id)


class AdminKeys:
    PENDING = ('admin', 'pending')

    @staticmethod
    def pending(params: Dict) -> tuple:
        return ('admin', 'pending', params)


def profile_key(device_id: str) -> tuple:
    return ('profile', device_id)


# ---------------------------------------------------------------------------
# Context object
# ---------------------------------------------------------------------------

class Atlas:
    """Everything a GhostAtlas front end needs, created once and closed at exit.

    Owns the API client, the query cache and the device-local state.  Reads
    go through the cache; mutations call the API and then invalidate the
    entries they affect:

    * submit -> encounter lists
    * rate -> the encounter's detail (its rating is patched in first)
    * verify, trigger enhancement -> the encounter's detail
    * approve -> pending queue, encounter lists and the detail
    * reject -> pending queue and the detail

    Failed calls raise :class:`~api_client.ApiError`.
    """

    def __init__(self, config: Optional[Dict] = None, api: Optional[GhostAtlasAPI] = None,
                 cache: Optional[QueryCache] = None) -> None:
        self.config = dict(DEFAULT_CONFIG, **(config or {}))
        data_dir = os.path.expanduser(self.config['data_dir'])
        os.makedirs(data_dir, exist_ok=True)

        self.api = api or GhostAtlasAPI(self.config['api_url'],
                                        debug=bool(self.config['debug']),
                                        api_key=self.config.get('admin_api_key'))
        self.cache = cache or QueryCache(stale_time=LIST_STALE_TIME)
        self.devices = DeviceService(DeviceRepository(os.path.join(data_dir, 'device.json')))
        self.preferences = PreferencesService(
            PreferencesRepository(os.path.join(data_dir, 'preferences.json')))
        self.device_id = self.devices.initialize_device_id()
        self.activity = ActivityService(
            ActivityRepository(os.path.join(data_dir, 'activity.json')), self.device_id)

    def close(self) -> None:
        self.cache.close()
        self.api.close()

    def __enter__(self) -> 'Atlas':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _read(self, key, fetcher, stale_time: float, force: bool):
        """Fetch through the cache after dropping entries unused for ``gc_time``."""
        self.cache.collect_garbage()
        return self.cache.fetch(key, fetcher, stale_time=stale_time, force=force)

    def nearby(self, latitude: float, longitude: float, radius: float = 50,
               limit: int = 100, next_token: str = None, force: bool = False) -> EncounterPage:
        params = {'latitude': latitude, 'longitude': longitude, 'radius': radius,
                  'limit': limit, 'nextToken': next_token}
        return self._read(
            EncounterKeys.list(params),
            lambda: self.api.list_encounters(latitude, longitude, radius, limit,
                                             next_token).unwrap(),
            stale_time=LIST_STALE_TIME, force=force)

    def all_encounters(self, limit: int = 100, force: bool = False) -> EncounterPage:
        return self._read(EncounterKeys.all(limit),
                          lambda: self.api.list_all_encounters(limit).unwrap(),
                          stale_time=LIST_STALE_TIME, force=force)

    def encounter(self, encounter_id: str, force: bool = False) -> Encounter:
        return self._read(EncounterKeys.detail(encounter_id),
                          lambda: self.api.get_encounter(encounter_id).unwrap(),
                          stale_time=DETAIL_STALE_TIME, force=force)

    def pending(self, limit: int = 20, next_token: str = None,
                force: bool = False) -> EncounterPage:
        params = {'limit': limit, 'nextToken': next_token}
        return self._read(AdminKeys.pending(params),
                          lambda: self.api.list_pending(limit, next_token).unwrap(),
                          stale_time=ADMIN_STALE_TIME, force=force)

    def profile(self, force: bool = False) -> Dict:
        return self._read(profile_key(self.device_id), self.activity.profile,
                          stale_time=PROFILE_STALE_TIME, force=force)

    def check_eligibility(self, encounter_id: str, latitude: float,
                          longitude: float) -> Eligibility:
        """Whether a point is close enough to *encounter_id* to verify it."""
        location = self.encounter(encounter_id).location
        return is_eligible((latitude, longitude), location)

    def subscribe(self, key, listener: Callable[[QueryState], None]) -> Callable[[], None]:
        return self.cache.subscribe(key, listener)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def submit(self, author_name: str, latitude: float, longitude: float, story: str,
               encounter_time: str = None, address: str = None,
               images: Sequence[str] = ()) -> Dict:
        """Submit an encounter and upload *images* (file paths) to its upload URLs.

        Every image is read before the encounter is created, so an unreadable
        file raises :class:`OSError` without touching the server.

        Returns:
            ``{'encounterId', 'uploadUrls', 'uploaded'}``.
        """
        encounter_time = encounter_time or datetime.datetime.now(
            datetime.timezone.utc).isoformat().replace('+00:00', 'Z')
        payloads = []
        for path in images:
            with open(path, 'rb') as fh:
                payloads.append((path, mimetypes.guess_type(path)[0] or 'image/jpeg',
                                 fh.read()))

        created = self.api.submit_encounter(
            author_name, latitude, longitude, story, encounter_time,
            image_count=len(images), address=address, device_id=self.device_id).unwrap()

        uploaded = 0
        upload_urls = created.get('uploadUrls', [])
        for (path, content_type, body), url in zip(payloads, upload_urls):
            result = self.api.upload_image(url, body, content_type)
            if result.ok:
                uploaded += 1
            else:
                logger.warning("Upload of %s failed: %s", path, result.error.message)

        self.activity.record_submission(created['encounterId'], author_name, story)
        self.cache.invalidate(EncounterKeys.LISTS)
        self.cache.invalidate(EncounterKeys.ALL_LISTS)
        self.cache.invalidate(profile_key(self.device_id))
        return dict(created, uploaded=uploaded)

    def rate(self, encounter_id: str, rating: int, force: bool = False) -> Dict:
        """Rate an encounter 1-5.

        A rating already recorded on this device is refused locally unless
        *force* is set; the server has the final word either way.
        """
        if self.activity.has_rated(encounter_id) and not force:
            raise ApiError('You have already rated this encounter', 'CONFLICT',
                           kind=ErrorKind.CLIENT_ERROR)
        try:
            stats = self.api.rate_encounter(encounter_id, self.device_id, rating).unwrap()
        except ApiError as e:
            if e.is_conflict:
                self.activity.record_rating(encounter_id, rating)
            raise

        key = EncounterKeys.detail(encounter_id)
        if self.cache.get_data(key) is not None:
            self.cache.set_data(key, lambda current: _with_rating(current, stats))
        self.cache.invalidate(key)
        self.activity.record_rating(encounter_id, rating)
        self.cache.invalidate(profile_key(self.device_id))
        return stats

    def verify(self, encounter_id: str, latitude: float, longitude: float,
               spookiness_score: int, notes: str = None) -> Dict:
        result = self.api.verify_location(encounter_id, latitude, longitude,
                                          spookiness_score, notes,
                                          device_id=self.device_id).unwrap()
        self.activity.record_verification(encounter_id, result['verificationId'],
                                          spookiness_score, result['isTimeMatched'],
                                          result.get('distanceMeters'))
        self.cache.invalidate(EncounterKeys.detail(encounter_id))
        self.cache.invalidate(profile_key(self.device_id))
        return result

    def trigger_enhancement(self, encounter_id: str) -> Dict:
        result = self.api.trigger_enhancement(encounter_id).unwrap()
        self.cache.invalidate(EncounterKeys.detail(encounter_id))
        return result

    def approve(self, encounter_id: str) -> Dict:
        result = self.api.approve(encounter_id).unwrap()
        self.cache.invalidate(AdminKeys.PENDING)
        self.cache.invalidate(EncounterKeys.LISTS)
        self.cache.invalidate(EncounterKeys.ALL_LISTS)
        self.cache.invalidate(EncounterKeys.detail(encounter_id))
        return result

    def reject(self, encounter_id: str, reason: str = None) -> Dict:
        result = self.api.reject(encounter_id, reason).unwrap()
        self.cache.invalidate(AdminKeys.PENDING)
        self.cache.invalidate(EncounterKeys.detail(encounter_id))
        return result

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    @property
    def audio_volume(self) -> float:
        return self.preferences.get_audio_volume()

    def set_audio_volume(self, volume: float) -> float:
        return self.preferences.set_audio_volume(volume)


def _with_rating(current: Optional[Encounter], stats: Dict) -> Optional[Encounter]:
    if current is None:
        return None
    rating_stats = dict(current.rating_stats or {})
    rating_stats.update(averageRating=stats['averageRating'], ratingCount=stats['ratingCount'])
    return dataclasses.replace(current, rating=stats['averageRating'],
                               rating_count=stats['ratingCount'], rating_stats=rating_stats)


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

def _stars(rating: float) -> str:
    full = int(round(rating or 0))
    return '★' * full + '☆' * (5 - full)


def print_encounter_summary(encounter: Encounter) -> None:
    where = encounter.location.address or f'{encounter.location.latitude:.4f}, ' \
                                          f'{encounter.location.longitude:.4f}'
    distance = ''
    if encounter.distance is not None:
        distance = f' {Fore.CYAN}({format_distance(encounter.distance * 1000)})'
    print(f"{Fore.GREEN}{encounter.id}  {Fore.WHITE}{encounter.author_name}"
          f"{distance}  {Fore.YELLOW}{_stars(encounter.rating)} ({encounter.rating_count})")
    print(f"    {Fore.WHITE}{where}")


def print_encounter(encounter: Encounter) -> None:
    print(f"\n{Fore.GREEN}{'=' * 60}")
    print(f"{Fore.CYAN}{Style.BRIGHT}👻 {encounter.author_name}")
    print(f"{Fore.GREEN}{'=' * 60}")
    print(f"{Fore.YELLOW}Status: {Fore.WHITE}{encounter.status}")
    print(f"{Fore.YELLOW}When: {Fore.WHITE}{encounter.encounter_time}")
    if encounter.location.address:
        print(f"{Fore.YELLOW}Where: {Fore.WHITE}{encounter.location.address}")
    print(f"{Fore.YELLOW}Location: {Fore.WHITE}{encounter.location.latitude:.5f}, "
          f"{encounter.location.longitude:.5f}")
    print(f"{Fore.YELLOW}Rating: {Fore.WHITE}{_stars(encounter.rating)} "
          f"{encounter.rating:.1f} ({encounter.rating_count} ratings)")
    print(f"{Fore.YELLOW}Verifications: {Fore.WHITE}{encounter.verification_count}")
    if encounter.average_spookiness:
        print(f"{Fore.YELLOW}Spookiness: {Fore.WHITE}{encounter.average_spookiness:.1f}/5")
    print(f"\n{Fore.WHITE}{encounter.story}")
    for url in encounter.image_urls:
        print(f"{Fore.CYAN}🖼  {url}")
    if encounter.illustration_url:
        print(f"{Fore.MAGENTA}🎨 {encounter.illustration_url}")
    for verification in encounter.verifications:
        matched = f'{Fore.GREEN}time matched' if verification.is_time_matched else ''
        print(f"{Fore.YELLOW}✔ {verification.verified_at} spookiness "
              f"{verification.spookiness_score}/5 {matched}")
        if verification.notes:
            print(f"    {Fore.WHITE}{verification.notes}")


def print_page(page: EncounterPage, empty_message: str) -> None:
    if not page.encounters:
        print(f"{Fore.YELLOW}{empty_message}")
        return
    for encounter in page.encounters:
        print_encounter_summary(encounter)
    print(f"\n{Fore.WHITE}{page.count} encounter(s)")
    if page.next_token:
        print(f"{Fore.CYAN}More available: --next-token {page.next_token}")


def _parse_point(value: str):
    try:
        lat, lon = (float(part) for part in value.split(','))
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected LAT,LON but got '{value}'")
    return lat, lon


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='GhostAtlas - paranormal encounters near you',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  ghostatlas --nearby 40.71,-74.00 --radius 10     # Encounters within 10 km
  ghostatlas --show ENCOUNTER_ID                   # Full story and verifications
  ghostatlas --submit --author Sam --at 40.7,-74 --story "I saw..."
  ghostatlas --rate ENCOUNTER_ID --stars 4
  ghostatlas --verify ENCOUNTER_ID --at 40.7,-74 --score 5
  ghostatlas --pending                             # Admin moderation queue
        """
    )
    parser.add_argument('--config', '-c', default='config.json',
                        help='Path to config file (default: config.json)')
    parser.add_argument('--nearby', type=_parse_point, metavar='LAT,LON',
                        help='List encounters near a point')
    parser.add_argument('--radius', type=float, default=50, help='Search radius in km (max 100)')
    parser.add_argument('--limit', type=int, help='Maximum number of encounters to list')
    parser.add_argument('--next-token', help='Continue a previous listing')
    parser.add_argument('--all', action='store_true', help='List all public encounters')
    parser.add_argument('--show', metavar='ID', help='Show one encounter')
    parser.add_argument('--submit', action='store_true', help='Submit a new encounter')
    parser.add_argument('--author', help='Author name for --submit')
    parser.add_argument('--story', help='Story text for --submit')
    parser.add_argument('--at', type=_parse_point, metavar='LAT,LON',
                        help='Location for --submit and --verify')
    parser.add_argument('--when', help='ISO 8601 encounter time for --submit (default: now)')
    parser.add_argument('--address', help='Optional address for --submit')
    parser.add_argument('--image', action='append', default=[], metavar='FILE',
                        help='Image to upload with --submit (repeatable, up to 5)')
    parser.add_argument('--rate', metavar='ID', help='Rate an encounter')
    parser.add_argument('--stars', type=int, help='Rating 1-5 for --rate')
    parser.add_argument('--force', action='store_true',
                        help='Send a rating even if this device already rated, or a '
                             'verification from more than 50m away')
    parser.add_argument('--verify', metavar='ID', help='Verify an encounter on site')
    parser.add_argument('--score', type=int, help='Spookiness 1-5 for --verify')
    parser.add_argument('--notes', help='Optional notes for --verify')
    parser.add_argument('--enhance', metavar='ID', help='Trigger AI enhancement of an encounter')
    parser.add_argument('--pending', action='store_true', help='List encounters awaiting review')
    parser.add_argument('--approve', metavar='ID', help='Approve a pending encounter')
    parser.add_argument('--reject', metavar='ID', help='Reject a pending encounter')
    parser.add_argument('--reason', help='Reason for --reject')
    parser.add_argument('--profile', action='store_true', help='Show this device\'s activity')
    parser.add_argument('--volume', type=float, help='Set the audio volume (0-1)')
    parser.add_argument('--device-id', action='store_true', help='Print this device\'s id')
    return parser


def run(atlas: Atlas, args: argparse.Namespace) -> int:
    """Execute the action selected by *args*; return the process exit code."""
    if args.device_id:
        print(atlas.device_id)
        return 0

    if args.volume is not None:
        print(f"{Fore.GREEN}Audio volume set to {atlas.set_audio_volume(args.volume):.2f}")
        return 0

    if args.nearby:
        lat, lon = args.nearby
        page = atlas.nearby(lat, lon, radius=args.radius, limit=args.limit or 100,
                            next_token=args.next_token)
        print_page(page, f"No encounters within {args.radius:g} km")
        return 0

    if args.all:
        print_page(atlas.all_encounters(limit=args.limit or 100), "No encounters yet")
        return 0

    if args.show:
        print_encounter(atlas.encounter(args.show))
        return 0

    if args.submit:
        if not (args.author and args.story and args.at):
            print(f"{Fore.RED}Error: --submit needs --author, --story and --at")
            return 1
        lat, lon = args.at
        created = atlas.submit(args.author, lat, lon, args.story, args.when,
                               args.address, args.image)
        print(f"{Fore.GREEN}Encounter submitted: {created['encounterId']}")
        if args.image:
            print(f"{Fore.WHITE}Uploaded {created['uploaded']} of {len(args.image)} image(s)")
        print(f"{Fore.YELLOW}It will appear once a moderator approves it.")
        return 0

    if args.rate:
        if args.stars is None:
            print(f"{Fore.RED}Error: --rate needs --stars")
            return 1
        stats = atlas.rate(args.rate, args.stars, force=args.force)
        print(f"{Fore.GREEN}Thanks! Average rating is now {stats['averageRating']:.1f} "
              f"from {stats['ratingCount']} rating(s)")
        return 0

    if args.verify:
        if args.score is None or not args.at:
            print(f"{Fore.RED}Error: --verify needs --at and --score")
            return 1
        lat, lon = args.at
        if not args.force:
            eligibility = atlas.check_eligibility(args.verify, lat, lon)
            if not eligibility.is_eligible:
                print(f"{Fore.RED}You are {format_distance(eligibility.distance)} from the "
                      f"reported spot; verification needs to be within "
                      f"{DEFAULT_VERIFICATION_RADIUS_METERS}m (use --force to send anyway)")
                return 1
        result = atlas.verify(args.verify, lat, lon, args.score, args.notes)
        print(f"{Fore.GREEN}Verified at {format_distance(result['distanceMeters'])} "
              f"from the reported spot")
        if result['isTimeMatched']:
            print(f"{Fore.MAGENTA}Time matched: you are there at the same hour!")
        return 0

    if args.enhance:
        result = atlas.trigger_enhancement(args.enhance)
        print(f"{Fore.GREEN}{result['message']} ({result['status']})")
        return 0

    if args.pending:
        print_page(atlas.pending(limit=args.limit or 20, next_token=args.next_token),
                   "No encounters awaiting review")
        return 0

    if args.approve:
        print(f"{Fore.GREEN}{atlas.approve(args.approve)['message']}")
        return 0

    if args.reject:
        print(f"{Fore.YELLOW}{atlas.reject(args.reject, args.reason)['message']}")
        return 0

    if args.profile:
        profile = atlas.profile()
        print(f"{Fore.CYAN}{Style.BRIGHT}Device {profile['deviceId']}")
        print(f"{Fore.YELLOW}Submissions: {Fore.WHITE}{profile['submissionCount']}")
        print(f"{Fore.YELLOW}Ratings: {Fore.WHITE}{profile['ratingCount']}")
        print(f"{Fore.YELLOW}Verifications: {Fore.WHITE}{profile['verificationCount']}")
        for item in profile['submissions']:
            print(f"  {Fore.GREEN}{item['encounterId']} {Fore.WHITE}{item['excerpt']}")
        return 0

    return -1


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)
    setup_logging(config.get('log_level', 'WARNING'))

    with Atlas(config) as atlas:
        try:
            code = run(atlas, args)
        except ApiError as e:
            print(f"{Fore.RED}Error: {e.message}")
            if e.request_id:
                print(f"{Fore.RED}Request id: {e.request_id}")
            sys.exit(1)
        except OSError as e:
            print(f"{Fore.RED}Error: {e}")
            sys.exit(1)

    if code < 0:
        parser.print_help()
        return
    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
