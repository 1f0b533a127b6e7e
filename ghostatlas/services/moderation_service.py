"""Business logic for the admin moderation queue."""
import logging
from typing import Callable, Dict, Optional

from ..errors import ErrorCode, ServiceError
from ..models import EncounterStatus
from ..validation import sanitize_input
from .encounter_service import (apply_transition, decode_page_token, encode_page_token,
                                enhancement_message, parse_number, require_encounter)

logger = logging.getLogger('ghostatlas.services.moderation')

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
MAX_REASON_LENGTH = 500


class ModerationService:
    """Lists pending submissions and applies admin decisions.

    Approving queues the encounter for enhancement through *enqueue*;
    rejecting is terminal.
    """

    def __init__(self, db_module, enqueue: Optional[Callable[[Dict], None]] = None) -> None:
        self._db = db_module
        self._enqueue = enqueue

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def list_pending(self, db, limit=None, next_token: Optional[str] = None) -> Dict:
        """Return one page of ``pending`` encounters, newest first.

        *limit* defaults to 20 and is capped at 100.
        """
        page_size = DEFAULT_PAGE_SIZE
        if limit not in (None, ''):
            page_size = parse_number(limit, 'limit', cast=int)
            if page_size < 1:
                raise ServiceError(ErrorCode.VALIDATION_ERROR, 'Limit must be a positive integer')
            page_size = min(page_size, MAX_PAGE_SIZE)
        offset = decode_page_token(next_token)

        statuses = [EncounterStatus.PENDING.value]
        rows = self._db.list_encounters_by_status(db, statuses, limit=page_size, offset=offset)
        encounters = [self._db.encounter_to_dict(row) for row in rows]
        response = {'encounters': encounters, 'count': len(encounters)}
        if offset + len(rows) < self._db.count_encounters_by_status(db, statuses):
            response['nextToken'] = encode_page_token(offset + len(rows))
        return response

    def approve(self, db, encounter_id: str) -> Dict:
        row = require_encounter(self._db, db, encounter_id)
        apply_transition(self._db, db, row, EncounterStatus.APPROVED)
        if self._enqueue is not None:
            self._enqueue(enhancement_message(self._db.encounter_to_dict(row)))
        logger.info("Encounter %s approved and queued for enhancement", encounter_id)
        return {
            'status': EncounterStatus.APPROVED.value,
            'encounterId': encounter_id,
            'message': 'Encounter approved successfully and queued for enhancement',
        }

    def reject(self, db, encounter_id: str, reason: Optional[str] = None) -> Dict:
        if reason is not None and not isinstance(reason, str):
            raise ServiceError(ErrorCode.VALIDATION_ERROR, 'reason must be a string')
        row = require_encounter(self._db, db, encounter_id)
        cleaned = sanitize_input(reason)[:MAX_REASON_LENGTH] if reason else None
        apply_transition(self._db, db, row, EncounterStatus.REJECTED,
                         rejection_reason=cleaned)
        logger.info("Encounter %s rejected", encounter_id)
        return {
            'status': EncounterStatus.REJECTED.value,
            'encounterId': encounter_id,
            'message': 'Encounter rejected',
        }
