"""Repository for the locally generated device identifier."""
from typing import Dict, Optional

from .base import BaseRepository


class DeviceRepository(BaseRepository):
    """Persists the device identifier.

    Schema::

        { "deviceId": "<uuid4>" }
    """

    def __init__(self, file_path: str = '.ghostatlas_device.json') -> None:
        super().__init__(file_path)
        self.data: Dict[str, str] = self._load({})

    def get(self) -> Optional[str]:
        value = self.data.get('deviceId')
        return value if isinstance(value, str) and value else None

    def set(self, device_id: str) -> None:
        self.data['deviceId'] = device_id
        self.save()
