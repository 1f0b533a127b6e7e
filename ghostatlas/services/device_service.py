"""Device identity used as a pseudo-account key."""
import uuid

from ..repositories.device_repository import DeviceRepository


class DeviceService:
    """Creates the device identifier once and hands it out afterwards.

    The identifier is a random UUID4 stored in
    :class:`~ghostatlas.repositories.device_repository.DeviceRepository`.
    It is never rotated.
    """

    def __init__(self, repository: DeviceRepository) -> None:
        self._repo = repository

    def initialize_device_id(self) -> str:
        """Return the stored identifier, generating and persisting one if absent.

        Calling this repeatedly always yields the same value.
        """
        existing = self._repo.get()
        if existing:
            return existing
        device_id = str(uuid.uuid4())
        self._repo.set(device_id)
        return device_id

    def get_device_id(self):
        """Return the stored identifier or ``None`` before initialisation."""
        return self._repo.get()
