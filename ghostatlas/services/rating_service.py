"""Business logic for device ratings of encounters."""
import logging
from typing import Dict

from ..errors import ErrorCode, ServiceError
from ..validation import is_valid_uuid, validate_rating
from .encounter_service import require_encounter

logger = logging.getLogger('ghostatlas.services.ratings')


class RatingService:
    """Records ratings, delegating persistence to the ``database`` module.

    Rules
    -----
    * ``rating`` must be an integer in the range **1-5** (inclusive).
    * ``deviceId`` must be a UUID; each device rates an encounter once.
      A second attempt is answered with ``CONFLICT``.
    * The encounter's rating is the mean of all ratings rounded to one
      decimal place.
    """

    def __init__(self, db_module) -> None:
        self._db = db_module

    def rate(self, db, encounter_id: str, body: Dict) -> Dict:
        """Store a rating for *encounter_id*.

        Returns:
            ``{'averageRating', 'ratingCount'}`` after the new rating.
        """
        if not isinstance(body, dict):
            raise ServiceError(ErrorCode.VALIDATION_ERROR, 'Request body is required')
        device_id = body.get('deviceId')
        rating = body.get('rating')
        if not device_id:
            raise ServiceError(ErrorCode.VALIDATION_ERROR, 'deviceId is required')
        if rating is None:
            raise ServiceError(ErrorCode.VALIDATION_ERROR, 'rating is required')
        if not is_valid_uuid(device_id):
            raise ServiceError(ErrorCode.VALIDATION_ERROR, 'deviceId must be a valid UUID')
        problem = validate_rating(rating)
        if problem:
            raise ServiceError(ErrorCode.VALIDATION_ERROR, problem)

        encounter = require_encounter(self._db, db, encounter_id)
        if self._db.get_rating(db, encounter_id, device_id) is not None:
            raise ServiceError(ErrorCode.CONFLICT, 'Already rated')
        updated = self._db.add_rating(db, encounter, device_id, rating)
        if updated is None:
            raise ServiceError(ErrorCode.CONFLICT, 'Already rated')

        logger.info("Encounter %s rated %d (mean %.1f over %d)", encounter_id,
                    rating, updated.rating, updated.rating_count)
        return {'averageRating': updated.rating, 'ratingCount': updated.rating_count}
