"""Advisory record of what this device has submitted, rated and verified."""
import datetime
from typing import Dict, List, Optional

from ..repositories.activity_repository import ActivityRepository


class ActivityService:
    """Keeps the local activity record behind the profile view.

    The record only drives display hints ("you already rated this"); the
    server decides whether a rating is a duplicate.
    """

    def __init__(self, repository: ActivityRepository, device_id: str) -> None:
        self._repo = repository
        self._device_id = device_id

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def record_submission(self, encounter_id: str, author_name: str,
                          story: str = '') -> None:
        self._repo.append(self._device_id, 'submissions', {
            'encounterId': encounter_id,
            'authorName': author_name,
            'excerpt': story[:120],
            'submittedAt': _now(),
        })

    def record_rating(self, encounter_id: str, rating: int) -> None:
        self._repo.set_rating(self._device_id, encounter_id, int(rating))

    def has_rated(self, encounter_id: str) -> bool:
        return encounter_id in self._record()['ratings']

    def rating_for(self, encounter_id: str) -> Optional[int]:
        return self._record()['ratings'].get(encounter_id)

    def record_verification(self, encounter_id: str, verification_id: str,
                            spookiness_score: int, is_time_matched: bool,
                            distance_meters: float = None) -> None:
        self._repo.append(self._device_id, 'verifications', {
            'verificationId': verification_id,
            'encounterId': encounter_id,
            'spookinessScore': spookiness_score,
            'isTimeMatched': is_time_matched,
            'distanceMeters': distance_meters,
            'verifiedAt': _now(),
        })

    def submissions(self) -> List[Dict]:
        return list(self._record()['submissions'])

    def verifications(self) -> List[Dict]:
        return list(self._record()['verifications'])

    def profile(self) -> Dict:
        """Return a summary of this device's activity.

        Returns:
            Dict with ``deviceId``, the three counts and the underlying lists.
        """
        record = self._record()
        return {
            'deviceId': self._device_id,
            'submissionCount': len(record['submissions']),
            'verificationCount': len(record['verifications']),
            'ratingCount': len(record['ratings']),
            'submissions': list(record['submissions']),
            'verifications': list(record['verifications']),
            'ratings': dict(record['ratings']),
        }

    def _record(self) -> Dict:
        return self._repo.for_device(self._device_id)


def _now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()
