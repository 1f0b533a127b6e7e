"""Business logic for on-site location verifications."""
import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from ..errors import ErrorCode, ServiceError
from ..validation import (MAX_NOTES_LENGTH, is_valid_uuid, sanitize_input,
                          validate_coordinate_range, validate_length,
                          validate_spookiness)
from .encounter_service import require_encounter
from geolocation import distance

logger = logging.getLogger('ghostatlas.services.verifications')

MAX_DISTANCE_METERS = 100
TIME_MATCH_WINDOW_MINUTES = 120
_MINUTES_PER_DAY = 24 * 60


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 timestamp (``Z`` suffix allowed) into UTC."""
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def is_time_matched(encounter_time: datetime, verified_at: datetime,
                    window_minutes: int = TIME_MATCH_WINDOW_MINUTES) -> bool:
    """True when both instants fall within *window_minutes* of each other's
    time of day (UTC), wrapping around midnight."""
    a = encounter_time.hour * 60 + encounter_time.minute
    b = verified_at.hour * 60 + verified_at.minute
    diff = abs(a - b)
    if diff > _MINUTES_PER_DAY // 2:
        diff = _MINUTES_PER_DAY - diff
    return diff <= window_minutes


class VerificationService:
    """Checks proximity and stores verifications via the ``database`` module.

    Rules
    -----
    * The verifier must be within **100 m** of the recorded location.
    * ``spookinessScore`` is an integer **1-5**; ``notes`` at most 500 chars.
    * A verification is *time matched* when made within two hours of the
      encounter's time of day.
    """

    def __init__(self, db_module, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._db = db_module
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def verify(self, db, encounter_id: str, body: Dict) -> Dict:
        """Record a verification of *encounter_id*.

        Returns:
            ``{'verificationId', 'isTimeMatched', 'distanceMeters'}``.
        """
        if not isinstance(body, dict):
            raise ServiceError(ErrorCode.VALIDATION_ERROR, 'Request body is required')
        location = body.get('location')
        score = body.get('spookinessScore')
        notes = body.get('notes')
        device_id = body.get('deviceId')

        if location is None:
            raise ServiceError(ErrorCode.VALIDATION_ERROR, 'location is required')
        if score is None:
            raise ServiceError(ErrorCode.VALIDATION_ERROR, 'spookinessScore is required')
        problems = validate_coordinate_range(location)
        score_problem = validate_spookiness(score)
        if score_problem:
            problems.append(score_problem)
        if notes is not None:
            if not isinstance(notes, str):
                problems.append('notes must be a string')
            else:
                problem = validate_length(notes, 'notes', MAX_NOTES_LENGTH)
                if problem:
                    problems.append(problem)
        if device_id is not None and not is_valid_uuid(device_id):
            problems.append('deviceId must be a valid UUID')
        if problems:
            raise ServiceError(ErrorCode.VALIDATION_ERROR, ', '.join(problems))

        encounter = require_encounter(self._db, db, encounter_id)
        meters = distance(location['latitude'], location['longitude'],
                          encounter.latitude, encounter.longitude)
        if meters > MAX_DISTANCE_METERS:
            raise ServiceError(
                ErrorCode.VALIDATION_ERROR,
                f'Verification location is {round(meters)} meters from encounter location. '
                f'Must be within {MAX_DISTANCE_METERS} meters.')

        now = self._clock()
        try:
            matched = is_time_matched(parse_timestamp(encounter.encounter_time), now)
        except ValueError:
            logger.warning("Encounter %s has unparseable time %r", encounter_id,
                           encounter.encounter_time)
            matched = False

        verification = self._db.add_verification(
            db, encounter,
            verification_id=str(uuid.uuid4()),
            latitude=float(location['latitude']),
            longitude=float(location['longitude']),
            spookiness_score=score,
            distance_meters=meters,
            is_time_matched=matched,
            notes=sanitize_input(notes) if notes else None,
            device_id=device_id,
            verified_at=now.astimezone(timezone.utc).replace(tzinfo=None),
        )
        logger.info("Encounter %s verified at %.1fm (time matched: %s)",
                    encounter_id, meters, matched)
        return {
            'verificationId': verification.id,
            'isTimeMatched': matched,
            'distanceMeters': round(meters, 2),
        }
