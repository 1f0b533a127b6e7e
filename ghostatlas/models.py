"""Client-side data model parsed from the camelCase JSON wire format."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class EncounterStatus(str, Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'
    ENHANCING = 'enhancing'
    ENHANCED = 'enhanced'
    ENHANCEMENT_FAILED = 'enhancement_failed'


# Statuses whose encounters are listed and viewable by anyone.
PUBLIC_STATUSES = (EncounterStatus.APPROVED, EncounterStatus.ENHANCED)

# Lifecycle transitions the service accepts; anything else is INVALID_TRANSITION.
ALLOWED_TRANSITIONS = {
    EncounterStatus.PENDING: {EncounterStatus.APPROVED, EncounterStatus.REJECTED,
                              EncounterStatus.ENHANCING},
    EncounterStatus.APPROVED: {EncounterStatus.ENHANCING},
    EncounterStatus.ENHANCING: {EncounterStatus.ENHANCED,
                                EncounterStatus.ENHANCEMENT_FAILED},
    EncounterStatus.ENHANCEMENT_FAILED: {EncounterStatus.ENHANCING},
    EncounterStatus.REJECTED: set(),
    EncounterStatus.ENHANCED: set(),
}


def can_transition(current: str, target: str) -> bool:
    """Return ``True`` if an encounter in *current* status may move to *target*."""
    try:
        return EncounterStatus(target) in ALLOWED_TRANSITIONS[EncounterStatus(current)]
    except (ValueError, KeyError):
        return False


@dataclass
class Location:
    latitude: float
    longitude: float
    address: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Location':
        return cls(
            latitude=float(data.get('latitude', 0.0)),
            longitude=float(data.get('longitude', 0.0)),
            address=data.get('address') or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {'latitude': self.latitude, 'longitude': self.longitude}
        if self.address:
            out['address'] = self.address
        return out


@dataclass
class Verification:
    id: str
    encounter_id: str
    spookiness_score: int
    verified_at: str
    is_time_matched: bool
    distance_meters: float
    notes: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], encounter_id: str = '') -> 'Verification':
        return cls(
            id=data.get('id') or data.get('verificationId', ''),
            encounter_id=data.get('encounterId', encounter_id),
            spookiness_score=int(data.get('spookinessScore', 0)),
            verified_at=data.get('verifiedAt', ''),
            is_time_matched=bool(data.get('isTimeMatched', False)),
            distance_meters=max(0.0, float(data.get('distanceMeters', 0.0))),
            notes=data.get('notes'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'encounterId': self.encounter_id,
            'spookinessScore': self.spookiness_score,
            'notes': self.notes,
            'verifiedAt': self.verified_at,
            'isTimeMatched': self.is_time_matched,
            'distanceMeters': self.distance_meters,
        }


@dataclass
class Encounter:
    """An encounter as returned by the list, detail and pending endpoints.

    Fields the endpoint omits keep their defaults; ``distance`` (km) is only
    present in geospatial list results.
    """

    id: str
    author_name: str
    location: Location
    original_story: str = ''
    enhanced_story: Optional[str] = None
    encounter_time: str = ''
    image_urls: List[str] = field(default_factory=list)
    illustration_urls: List[str] = field(default_factory=list)
    narration_url: Optional[str] = None
    rating: float = 0.0
    rating_count: int = 0
    verification_count: int = 0
    status: Optional[str] = None
    created_at: str = ''
    updated_at: str = ''
    distance: Optional[float] = None
    average_spookiness: Optional[float] = None
    verifications: List[Verification] = field(default_factory=list)
    rating_stats: Optional[Dict[str, Any]] = None

    @property
    def illustration_url(self) -> Optional[str]:
        return self.illustration_urls[0] if self.illustration_urls else None

    @property
    def story(self) -> str:
        """The text to show: the enhanced story when there is one."""
        return self.enhanced_story or self.original_story

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Encounter':
        encounter_id = data.get('id', '')
        illustrations = list(data.get('illustrationUrls') or [])
        if not illustrations and data.get('illustrationUrl'):
            illustrations = [data['illustrationUrl']]
        rating = float(data.get('rating') or 0.0)
        return cls(
            id=encounter_id,
            author_name=data.get('authorName', ''),
            location=Location.from_dict(data.get('location') or {}),
            original_story=data.get('originalStory', ''),
            enhanced_story=data.get('enhancedStory'),
            encounter_time=data.get('encounterTime', ''),
            image_urls=list(data.get('imageUrls') or []),
            illustration_urls=illustrations,
            narration_url=data.get('narrationUrl'),
            rating=min(5.0, max(0.0, rating)),
            rating_count=max(0, int(data.get('ratingCount') or 0)),
            verification_count=max(0, int(data.get('verificationCount') or 0)),
            status=data.get('status'),
            created_at=data.get('createdAt', ''),
            updated_at=data.get('updatedAt', ''),
            distance=data.get('distance'),
            average_spookiness=data.get('averageSpookiness'),
            verifications=[Verification.from_dict(v, encounter_id)
                           for v in data.get('verifications') or []],
            rating_stats=data.get('ratingStats'),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            'id': self.id,
            'authorName': self.author_name,
            'location': self.location.to_dict(),
            'originalStory': self.original_story,
            'enhancedStory': self.enhanced_story,
            'encounterTime': self.encounter_time,
            'imageUrls': list(self.image_urls),
            'illustrationUrls': list(self.illustration_urls),
            'narrationUrl': self.narration_url,
            'rating': self.rating,
            'ratingCount': self.rating_count,
            'verificationCount': self.verification_count,
            'status': self.status,
            'createdAt': self.created_at,
            'updatedAt': self.updated_at,
        }
        if self.distance is not None:
            out['distance'] = self.distance
        if self.verifications:
            out['verifications'] = [v.to_dict() for v in self.verifications]
        return out


@dataclass
class EncounterPage:
    """One page of an encounter list plus the token for the next one."""

    encounters: List[Encounter]
    count: int
    next_token: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EncounterPage':
        encounters = [Encounter.from_dict(e) for e in data.get('encounters') or []]
        return cls(
            encounters=encounters,
            count=int(data.get('count', len(encounters))),
            next_token=data.get('nextToken'),
        )
