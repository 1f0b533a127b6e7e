"""Repository for user preferences ({name: value})."""
from typing import Any, Dict

from .base import BaseRepository

DEFAULT_PREFERENCES: Dict[str, Any] = {
    'audioVolume': 0.7,
}


class PreferencesRepository(BaseRepository):
    """Persists user preferences, filling in defaults for absent keys.

    Schema::

        { "audioVolume": 0.7 }
    """

    def __init__(self, file_path: str = '.ghostatlas_preferences.json') -> None:
        super().__init__(file_path)
        self.data: Dict[str, Any] = dict(DEFAULT_PREFERENCES)
        self.data.update(self._load({}))

    def get(self, name: str) -> Any:
        return self.data.get(name, DEFAULT_PREFERENCES.get(name))

    def put(self, name: str, value: Any) -> None:
        self.data[name] = value
        self.save()
