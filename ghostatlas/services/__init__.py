"""Services package: expose all concrete services from one import."""
from .device_service import DeviceService
from .preferences_service import PreferencesService
from .activity_service import ActivityService
from .encounter_service import EncounterService
from .rating_service import RatingService
from .verification_service import VerificationService
from .moderation_service import ModerationService

__all__ = [
    'DeviceService',
    'PreferencesService',
    'ActivityService',
    'EncounterService',
    'RatingService',
    'VerificationService',
    'ModerationService',
]
