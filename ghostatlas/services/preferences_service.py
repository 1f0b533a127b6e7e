"""User preferences kept on this device."""
from ..repositories.preferences_repository import PreferencesRepository


class PreferencesService:
    """Reads and updates preferences in a
    :class:`~ghostatlas.repositories.preferences_repository.PreferencesRepository`.

    Rules
    -----
    * ``audioVolume`` is clamped into **[0, 1]**; the default is ``0.7``.
    """

    def __init__(self, repository: PreferencesRepository) -> None:
        self._repo = repository

    def get_audio_volume(self) -> float:
        try:
            return min(1.0, max(0.0, float(self._repo.get('audioVolume'))))
        except (TypeError, ValueError):
            return 0.7

    def set_audio_volume(self, volume: float) -> float:
        """Store *volume* clamped into [0, 1] and return the stored value."""
        clamped = min(1.0, max(0.0, float(volume)))
        self._repo.put('audioVolume', clamped)
        return clamped

    def get_all(self) -> dict:
        return dict(self._repo.data)
