"""Repository for the per-device record of submissions, ratings and verifications."""
from typing import Any, Dict, List

from .base import BaseRepository


class ActivityRepository(BaseRepository):
    """Persists what this device has done, keyed by device id.

    The record is advisory; the server remains the authority on duplicates.

    Schema::

        {
          "<device_id>": {
            "submissions":   [ {"encounterId", "authorName", "submittedAt"} ],
            "ratings":       { "<encounter_id>": <1-5> },
            "verifications": [ {"verificationId", "encounterId", ...} ]
          }
        }
    """

    def __init__(self, file_path: str = '.ghostatlas_activity.json') -> None:
        super().__init__(file_path)
        self.data: Dict[str, Dict[str, Any]] = self._load({})

    def for_device(self, device_id: str) -> Dict[str, Any]:
        """Return the record for *device_id*, creating an empty one in memory."""
        record = self.data.setdefault(device_id, {})
        record.setdefault('submissions', [])
        record.setdefault('ratings', {})
        record.setdefault('verifications', [])
        return record

    def append(self, device_id: str, section: str, entry: Dict[str, Any]) -> None:
        items: List[Dict[str, Any]] = self.for_device(device_id)[section]
        items.append(entry)
        self.save()

    def set_rating(self, device_id: str, encounter_id: str, rating: int) -> None:
        self.for_device(device_id)['ratings'][encounter_id] = rating
        self.save()
