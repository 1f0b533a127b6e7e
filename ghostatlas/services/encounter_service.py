"""Business logic for submitting, listing and viewing encounters."""
import base64
import binascii
import json
import logging
import uuid
from typing import Callable, Dict, Optional

from ..errors import ErrorCode, ServiceError
from ..models import EncounterStatus, PUBLIC_STATUSES, can_transition
from ..uploads import UploadSigner
from ..validation import sanitize_input, validate_encounter_submission
from geolocation import distance, geohash_cells_covering, validate_coordinates

logger = logging.getLogger('ghostatlas.services.encounters')

DEFAULT_RADIUS_KM = 50
MAX_RADIUS_KM = 100
DEFAULT_LIMIT = 100
MAX_LIMIT = 500

_PUBLIC = [s.value for s in PUBLIC_STATUSES]


def encode_page_token(offset: int) -> str:
    return base64.b64encode(json.dumps({'offset': offset}).encode('utf-8')).decode('ascii')


def decode_page_token(token: Optional[str]) -> int:
    """Return the offset stored in *token* (``0`` for no token).

    Raises:
        ServiceError: ``VALIDATION_ERROR`` when the token is not one we issued.
    """
    if not token:
        return 0
    try:
        offset = json.loads(base64.b64decode(token.encode('ascii'), validate=True))['offset']
    except (binascii.Error, ValueError, KeyError, TypeError, UnicodeEncodeError):
        raise ServiceError(ErrorCode.VALIDATION_ERROR, 'Invalid nextToken')
    if not isinstance(offset, int) or offset < 0:
        raise ServiceError(ErrorCode.VALIDATION_ERROR, 'Invalid nextToken')
    return offset


def parse_number(raw, name: str, cast=float):
    """Convert a query-string value, raising ``VALIDATION_ERROR`` on junk."""
    try:
        value = cast(raw)
    except (TypeError, ValueError):
        raise ServiceError(ErrorCode.VALIDATION_ERROR, f'{name} must be a number')
    if value != value:  # NaN
        raise ServiceError(ErrorCode.VALIDATION_ERROR, f'{name} must be a number')
    return value


def enhancement_message(encounter_dict: Dict) -> Dict:
    """Build the work item the enhancement pipeline consumes."""
    return {
        'encounterId': encounter_dict['id'],
        'originalStory': encounter_dict['originalStory'],
        'location': encounter_dict['location'],
        'encounterTime': encounter_dict['encounterTime'],
    }


def require_encounter(db_module, db, encounter_id: str):
    """Return the encounter row or raise ``NOT_FOUND``."""
    row = db_module.get_encounter(db, encounter_id)
    if row is None:
        raise ServiceError(ErrorCode.NOT_FOUND, 'Encounter not found')
    return row


def apply_transition(db_module, db, row, target: EncounterStatus, **changes):
    """Move *row* to *target* status, raising ``INVALID_TRANSITION`` if not allowed."""
    if not can_transition(row.status, target.value):
        raise ServiceError(
            ErrorCode.INVALID_TRANSITION,
            f'Cannot move encounter from {row.status} to {target.value}')
    logger.debug("Encounter %s: %s -> %s", row.id, row.status, target.value)
    return db_module.update_encounter(db, row, status=target.value, **changes)


class EncounterService:
    """Validates and applies encounter operations, delegating persistence to
    the ``database`` module's helper functions.

    All methods accept a *db* SQLAlchemy session as the first argument so
    that callers (Flask route handlers) control the session lifecycle.

    Rules
    -----
    * Only ``approved`` and ``enhanced`` encounters are publicly listed or
      viewable.
    * Text fields are sanitised before they are stored.
    * A submission gets one signed upload URL per declared image (0-5).
    """

    def __init__(self, db_module, signer: Optional[UploadSigner] = None,
                 enqueue: Optional[Callable[[Dict], None]] = None) -> None:
        """
        Args:
            db_module: The imported ``database`` module.
            signer:    Issues upload URLs; without one no URLs are returned.
            enqueue:   Called with an enhancement message when a pipeline
                       run should start.
        """
        self._db = db_module
        self._signer = signer
        self._enqueue = enqueue

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, db, body: Dict) -> Dict:
        """Store a new ``pending`` encounter.

        Returns:
            ``{'encounterId', 'uploadUrls'}``.
        """
        if not isinstance(body, dict):
            raise ServiceError(ErrorCode.VALIDATION_ERROR, 'Request body is required')
        errors = validate_encounter_submission(body)
        if errors:
            raise ServiceError(ErrorCode.VALIDATION_ERROR, ', '.join(errors))

        location = body['location']
        address = location.get('address')
        encounter = self._db.create_encounter(
            db,
            encounter_id=str(uuid.uuid4()),
            author_name=sanitize_input(body['authorName']),
            latitude=float(location['latitude']),
            longitude=float(location['longitude']),
            address=sanitize_input(address) if address else None,
            original_story=sanitize_input(body['originalStory']),
            encounter_time=body['encounterTime'],
            device_id=body.get('deviceId'),
        )
        image_count = body.get('imageCount', 0)
        upload_urls = self._signer.sign_all(encounter.id, image_count) if self._signer else []
        logger.info("Encounter %s submitted with %d upload slot(s)", encounter.id, image_count)
        return {'encounterId': encounter.id, 'uploadUrls': upload_urls}

    def list_nearby(self, db, latitude, longitude, radius=None, limit=None,
                    next_token: Optional[str] = None) -> Dict:
        """Return public encounters within *radius* km of a point, nearest first.

        Each encounter carries ``distance`` in km rounded to 2 decimals and
        ``enhancedStory`` falling back to the original text.
        """
        if latitude in (None, '') or longitude in (None, ''):
            raise ServiceError(ErrorCode.VALIDATION_ERROR,
                               'latitude and longitude query parameters are required')
        lat = parse_number(latitude, 'latitude')
        lon = parse_number(longitude, 'longitude')
        if not validate_coordinates(lat, lon):
            raise ServiceError(ErrorCode.VALIDATION_ERROR,
                               'latitude must be between -90 and 90 and longitude '
                               'between -180 and 180')

        radius_km = DEFAULT_RADIUS_KM
        if radius not in (None, ''):
            radius_km = parse_number(radius, 'radius')
            if radius_km <= 0:
                raise ServiceError(ErrorCode.VALIDATION_ERROR, 'radius must be a positive number')
            if radius_km > MAX_RADIUS_KM:
                raise ServiceError(ErrorCode.VALIDATION_ERROR,
                                   f'radius cannot exceed {MAX_RADIUS_KM} km')

        page_size = self._parse_limit(limit, DEFAULT_LIMIT, MAX_LIMIT)
        offset = decode_page_token(next_token)

        nearby = []
        cells = geohash_cells_covering(lat, lon, radius_km)
        for row in self._db.list_encounters_in_cells(db, _PUBLIC, cells):
            km = distance(lat, lon, row.latitude, row.longitude) / 1000
            if km <= radius_km:
                nearby.append((km, row))
        nearby.sort(key=lambda pair: pair[0])

        page = nearby[offset:offset + page_size]
        encounters = []
        for km, row in page:
            item = self._db.encounter_to_dict(row)
            item['enhancedStory'] = item['enhancedStory'] or item['originalStory']
            item['distance'] = round(km, 2)
            encounters.append(item)

        response = {'encounters': encounters, 'count': len(encounters)}
        if offset + page_size < len(nearby):
            response['nextToken'] = encode_page_token(offset + page_size)
        return response

    def list_all(self, db, limit=None) -> Dict:
        """Return public encounters newest first, without geographic filtering."""
        page_size = self._parse_limit(limit, DEFAULT_LIMIT, MAX_LIMIT)
        rows = self._db.list_encounters_by_status(db, _PUBLIC, limit=page_size)
        encounters = [self._db.encounter_to_dict(row) for row in rows]
        return {'encounters': encounters, 'count': len(encounters)}

    def get_detail(self, db, encounter_id: str) -> Dict:
        """Return an encounter with its verifications and rating statistics.

        Raises:
            ServiceError: ``NOT_FOUND`` when missing, ``FORBIDDEN`` when the
                encounter is not publicly visible.
        """
        row = self._require(db, encounter_id)
        if row.status not in _PUBLIC:
            raise ServiceError(ErrorCode.FORBIDDEN, 'This encounter is not available for viewing')

        detail = self._db.encounter_to_dict(row)
        verifications = self._db.list_verifications(db, encounter_id)
        detail['verifications'] = [self._db.verification_to_dict(v) for v in verifications]
        detail['averageSpookiness'] = round(row.average_spookiness or 0.0, 1)
        detail['ratingStats'] = {
            'averageRating': detail['rating'],
            'ratingCount': detail['ratingCount'],
            'ratingDistribution': self._db.rating_distribution(db, encounter_id),
        }
        return detail

    def attach_image(self, db, encounter_id: str, url: str) -> bool:
        """Record an uploaded image URL; ``False`` when it was already recorded."""
        row = self._require(db, encounter_id)
        return self._db.add_image_url(db, row, url)

    def trigger_enhancement(self, db, encounter_id: str) -> Dict:
        """Move an encounter into ``enhancing`` and queue a pipeline run.

        Re-triggering an encounter that is already enhancing or enhanced is
        answered with its current status and queues nothing.
        """
        row = self._require(db, encounter_id)
        if row.status in (EncounterStatus.ENHANCING.value, EncounterStatus.ENHANCED.value):
            return {
                'message': 'Enhancement already in progress or complete',
                'encounterId': encounter_id,
                'status': row.status,
            }
        self._transition(db, row, EncounterStatus.ENHANCING)
        self._queue(self._db.encounter_to_dict(row))
        logger.info("Enhancement triggered for %s", encounter_id)
        return {
            'message': 'AI enhancement pipeline triggered',
            'encounterId': encounter_id,
            'status': EncounterStatus.ENHANCING.value,
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require(self, db, encounter_id: str):
        return require_encounter(self._db, db, encounter_id)

    def _transition(self, db, row, target: EncounterStatus, **changes):
        return apply_transition(self._db, db, row, target, **changes)

    def _queue(self, encounter_dict: Dict) -> None:
        if self._enqueue is not None:
            self._enqueue(enhancement_message(encounter_dict))

    @staticmethod
    def _parse_limit(raw, default: int, maximum: int) -> int:
        if raw in (None, ''):
            return default
        value = parse_number(raw, 'limit', cast=int)
        if value < 1:
            raise ServiceError(ErrorCode.VALIDATION_ERROR, 'limit must be a positive integer')
        if value > maximum:
            raise ServiceError(ErrorCode.VALIDATION_ERROR, f'limit cannot exceed {maximum}')
        return value
