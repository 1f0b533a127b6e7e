"""Repository package: expose all concrete repositories from one import."""
from .device_repository import DeviceRepository
from .preferences_repository import PreferencesRepository
from .activity_repository import ActivityRepository

__all__ = [
    'DeviceRepository',
    'PreferencesRepository',
    'ActivityRepository',
]
