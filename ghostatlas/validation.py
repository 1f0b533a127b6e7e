"""Input sanitisation and request validation for the REST service."""
import re
from typing import Any, Dict, List, Optional

MAX_AUTHOR_NAME_LENGTH = 100
MAX_STORY_LENGTH = 5000
MAX_NOTES_LENGTH = 500
MAX_IMAGE_COUNT = 5

_TAG_RE = re.compile(r'<[^>]*>')
_CONTROL_RE = re.compile(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]')
_UUID_RE = re.compile(
    r'^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$',
    re.IGNORECASE,
)
_HTML_ESCAPES = {
    '&': '&amp;',
    '<': '&lt;',
    '>': '&gt;',
    '"': '&quot;',
    "'": '&#x27;',
    '/': '&#x2F;',
}


def sanitize_input(value: Any) -> str:
    """Strip markup, escape HTML-significant characters and drop control chars.

    Non-string input yields ``''``.  Newlines and tabs are preserved so
    multi-paragraph stories survive.
    """
    if not isinstance(value, str):
        return ''
    text = _TAG_RE.sub('', value)
    text = ''.join(_HTML_ESCAPES.get(ch, ch) for ch in text)
    return _CONTROL_RE.sub('', text).strip()


def is_valid_uuid(value: Any) -> bool:
    return isinstance(value, str) and bool(_UUID_RE.match(value))


def validate_required(data: Dict[str, Any], fields: List[str]) -> List[str]:
    """Return an error message for every name in *fields* missing from *data*."""
    errors = []
    for name in fields:
        value = data.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            errors.append(f'{name} is required')
    return errors


def validate_length(value: Optional[str], name: str, max_length: int,
                    min_length: int = 0) -> Optional[str]:
    if value is None:
        return None
    if len(value) < min_length:
        return f'{name} must be at least {min_length} characters'
    if len(value) > max_length:
        return f'{name} must be {max_length} characters or less'
    return None


def validate_coordinate_range(location: Any) -> List[str]:
    if not isinstance(location, dict):
        return ['location must be an object with latitude and longitude']
    errors = []
    lat = location.get('latitude')
    lon = location.get('longitude')
    if not _is_number(lat) or not -90 <= lat <= 90:
        errors.append('latitude must be a number between -90 and 90')
    if not _is_number(lon) or not -180 <= lon <= 180:
        errors.append('longitude must be a number between -180 and 180')
    return errors


def validate_rating(value: Any) -> Optional[str]:
    if not _is_int(value) or not 1 <= value <= 5:
        return 'rating must be an integer between 1 and 5'
    return None


def validate_spookiness(value: Any) -> Optional[str]:
    if not _is_int(value) or not 1 <= value <= 5:
        return 'spookinessScore must be an integer between 1 and 5'
    return None


def validate_encounter_submission(body: Dict[str, Any]) -> List[str]:
    """Validate a ``POST /encounters`` body.

    Returns:
        List of human-readable problems; empty when the body is acceptable.
    """
    errors = validate_required(
        body, ['authorName', 'location', 'originalStory', 'encounterTime'])
    if errors:
        return errors

    for name, limit in (('authorName', MAX_AUTHOR_NAME_LENGTH),
                        ('originalStory', MAX_STORY_LENGTH)):
        value = body.get(name)
        if not isinstance(value, str):
            errors.append(f'{name} must be a string')
            continue
        problem = validate_length(value, name, limit, min_length=1)
        if problem:
            errors.append(problem)

    location = body.get('location')
    errors.extend(validate_coordinate_range(location))
    if isinstance(location, dict):
        address = location.get('address')
        if address is not None and not isinstance(address, str):
            errors.append('location.address must be a string')

    if not isinstance(body.get('encounterTime'), str):
        errors.append('encounterTime must be an ISO 8601 string')

    image_count = body.get('imageCount', 0)
    if not _is_int(image_count) or not 0 <= image_count <= MAX_IMAGE_COUNT:
        errors.append(f'imageCount must be between 0 and {MAX_IMAGE_COUNT}')

    device_id = body.get('deviceId')
    if device_id is not None and not is_valid_uuid(device_id):
        errors.append('deviceId must be a valid UUID')
    return errors


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
