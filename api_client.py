"""
api_client.py
=============
HTTP client for the GhostAtlas REST API.

Every backend call goes through :meth:`ApiClient.send`, which applies the
timeout and default headers, retries transient failures with bounded
exponential backoff and turns every failure into an :class:`ApiError`
inside a :class:`Result` instead of raising.

Usage
-----
::

    from api_client import GhostAtlasAPI

    api = GhostAtlasAPI("http://localhost:5000/api")
    result = api.list_encounters(40.71, -74.0, radius=10)
    if result.ok:
        for encounter in result.value.encounters:
            print(encounter.author_name, encounter.distance)
    else:
        print(result.error.message)
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Generic, Optional, TypeVar

import requests

from ghostatlas.models import Encounter, EncounterPage

logger = logging.getLogger('ghostatlas.api')

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
_DEFAULT_TIMEOUT = 30  # seconds
_RETRYABLE_STATUSES = frozenset({500, 502, 503, 504})
_IDEMPOTENT_METHODS = frozenset({'GET', 'HEAD', 'OPTIONS', 'PUT', 'DELETE'})

T = TypeVar('T')


class ErrorKind(str, Enum):
    NETWORK_FAILURE = 'network_failure'
    SERVER_ERROR = 'server_error'
    CLIENT_ERROR = 'client_error'
    VALIDATION_FAILURE = 'validation_failure'


class ApiError(Exception):
    """A failed API call, normalised from whatever went wrong.

    Attributes mirror the server's error envelope; ``status`` is ``None``
    when no response was received.
    """

    def __init__(self, message: str, error_code: str = 'UNKNOWN_ERROR',
                 status: Optional[int] = None, request_id: Optional[str] = None,
                 timestamp: Optional[str] = None,
                 kind: ErrorKind = ErrorKind.SERVER_ERROR) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status = status
        self.request_id = request_id
        self.timestamp = timestamp or datetime.now(timezone.utc).isoformat()
        self.kind = kind

    @property
    def is_conflict(self) -> bool:
        return self.error_code == 'CONFLICT'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'message': self.message,
            'errorCode': self.error_code,
            'status': self.status,
            'requestId': self.request_id,
            'timestamp': self.timestamp,
        }

    @classmethod
    def from_response(cls, response: requests.Response) -> 'ApiError':
        """Build an error from a non-2xx response and its JSON envelope, if any."""
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        status = response.status_code
        kind = ErrorKind.SERVER_ERROR if status >= 500 else ErrorKind.CLIENT_ERROR
        return cls(
            message=body.get('message') or response.reason or f'HTTP {status}',
            error_code=body.get('errorCode') or 'UNKNOWN_ERROR',
            status=status,
            request_id=body.get('requestId') or response.headers.get('X-Request-Id'),
            timestamp=body.get('timestamp'),
            kind=kind,
        )

    def __repr__(self) -> str:
        return f'ApiError({self.error_code!r}, status={self.status!r}, {self.message!r})'


@dataclass
class Result(Generic[T]):
    """Either a parsed value or an :class:`ApiError`."""

    value: Optional[T] = None
    error: Optional[ApiError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value, raising the stored :class:`ApiError` on failure."""
        if self.error is not None:
            raise self.error
        return self.value

    def map(self, fn: Callable[[Any], Any]) -> 'Result':
        if self.error is not None:
            return self
        return Result(value=fn(self.value))


@dataclass
class ApiRequest:
    method: str
    path: str
    params: Optional[Dict[str, Any]] = None
    json: Optional[Any] = None
    data: Optional[bytes] = None
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay: float = 0.0


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    The Nth retry (1-indexed) waits ``min(max_delay, initial_delay * 2**(N-1))``
    seconds; with the defaults that is 1, 2 then 4 seconds.  Only responses
    in ``retryable_statuses`` and failures with no response at all are
    retried, and ``POST`` only when ``retry_mutations`` is set.
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    retryable_statuses: FrozenSet[int] = _RETRYABLE_STATUSES
    retry_mutations: bool = False

    def delay_for(self, retry_number: int) -> float:
        return min(self.max_delay, self.initial_delay * 2 ** (retry_number - 1))

    def is_retryable(self, error: ApiError) -> bool:
        if error.kind is ErrorKind.NETWORK_FAILURE:
            return True
        return error.status in self.retryable_statuses

    def decide(self, retry_number: int, error: ApiError, method: str = 'GET') -> RetryDecision:
        """Decide whether to make retry number *retry_number* after *error*."""
        if retry_number > self.max_retries:
            return RetryDecision(False)
        if method.upper() not in _IDEMPOTENT_METHODS and not self.retry_mutations:
            return RetryDecision(False)
        if not self.is_retryable(error):
            return RetryDecision(False)
        return RetryDecision(True, self.delay_for(retry_number))


class ApiClient:
    """Issues requests against *base_url* with retry and error normalisation."""

    def __init__(
        self,
        base_url: str,
        timeout: float = _DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
        retry_policy: Optional[RetryPolicy] = None,
        debug: bool = False,
        api_key: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Args:
            base_url:     API root, e.g. ``http://localhost:5000/api``.
            timeout:      Per-attempt timeout in seconds.
            session:      ``requests.Session`` to reuse (one is created if omitted).
            retry_policy: Backoff settings; defaults to :class:`RetryPolicy`.
            debug:        Log every request/response pair.
            api_key:      Sent as ``X-Api-Key`` (needed for admin routes).
            sleep:        Called with each backoff delay.
        """
        if not base_url:
            raise ValueError("base_url must not be empty")
        self.base_url = base_url.rstrip('/')
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        })
        if api_key:
            self._session.headers['X-Api-Key'] = api_key
        self.retry_policy = retry_policy or RetryPolicy()
        self._debug = debug
        self._sleep = sleep

    def close(self) -> None:
        self._session.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def send(self, request: ApiRequest) -> Result:
        """Perform *request*, retrying per :attr:`retry_policy`.

        Returns:
            ``Result(value=<parsed JSON or None>)`` on a 2xx response,
            otherwise ``Result(error=ApiError)`` carrying the last failure.
        """
        retry_number = 0
        while True:
            value, error = self._attempt(request)
            if error is None:
                return Result(value=value)
            retry_number += 1
            decision = self.retry_policy.decide(retry_number, error, request.method)
            if not decision.retry:
                if retry_number > 1:
                    logger.warning("%s %s failed after %d attempt(s): %s",
                                   request.method, request.path, retry_number, error.message)
                return Result(error=error)
            logger.debug("Retrying %s %s in %.1fs (retry %d/%d): %s",
                         request.method, request.path, decision.delay, retry_number,
                         self.retry_policy.max_retries, error.message)
            self._sleep(decision.delay)

    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Result:
        return self.send(ApiRequest('GET', path, params=params))

    def post(self, path: str, body: Any = None) -> Result:
        return self.send(ApiRequest('POST', path, json=body))

    def put(self, path: str, body: Any = None) -> Result:
        return self.send(ApiRequest('PUT', path, json=body))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _attempt(self, request: ApiRequest):
        url = request.path if request.path.startswith(('http://', 'https://')) \
            else self.base_url + request.path
        headers = {'X-Request-Id': str(uuid.uuid4())}
        headers.update(request.headers)
        if self._debug:
            logger.debug("→ %s %s params=%s body=%s", request.method, url,
                         request.params, request.json)
        try:
            response = self._session.request(
                request.method,
                url,
                params=request.params,
                json=request.json,
                data=request.data,
                headers=headers,
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            logger.debug("Network error calling %s %s: %s", request.method, url, exc)
            return None, ApiError(
                message=f'Network error: {exc}',
                error_code='NETWORK_ERROR',
                request_id=headers['X-Request-Id'],
                kind=ErrorKind.NETWORK_FAILURE,
            )

        if self._debug:
            logger.debug("← %s %s %s", response.status_code, request.method, url)
        if not 200 <= response.status_code < 300:
            return None, ApiError.from_response(response)
        if response.status_code == 204 or not response.content:
            return None, None
        try:
            return response.json(), None
        except ValueError:
            return None, ApiError(
                message='Response body is not valid JSON',
                error_code='INVALID_RESPONSE',
                status=response.status_code,
                kind=ErrorKind.SERVER_ERROR,
            )


def _validation_error(message: str) -> Result:
    return Result(error=ApiError(message, error_code='VALIDATION_ERROR',
                                 kind=ErrorKind.VALIDATION_FAILURE))


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class GhostAtlasAPI:
    """Resource methods for every GhostAtlas endpoint.

    Search parameters outside their valid range are clamped before the call;
    ratings and spookiness scores outside 1-5 fail locally without a request.
    """

    MAX_RADIUS_KM = 100
    MAX_LIST_LIMIT = 500
    MAX_PENDING_LIMIT = 100

    def __init__(self, base_url: str = None, client: ApiClient = None, **client_kwargs) -> None:
        if client is None:
            client = ApiClient(base_url, **client_kwargs)
        self.client = client

    def close(self) -> None:
        self.client.close()

    # ------------------------------------------------------------------
    # Encounters
    # ------------------------------------------------------------------

    def list_encounters(self, latitude: float, longitude: float, radius: float = 50,
                        limit: int = 100, next_token: str = None) -> Result:
        """Return a :class:`EncounterPage` of public encounters near a point."""
        params = {
            'latitude': _clamp(float(latitude), -90, 90),
            'longitude': _clamp(float(longitude), -180, 180),
            'radius': _clamp(float(radius), 0.001, self.MAX_RADIUS_KM),
            'limit': int(_clamp(int(limit), 1, self.MAX_LIST_LIMIT)),
        }
        if next_token:
            params['nextToken'] = next_token
        return self.client.get('/encounters', params).map(EncounterPage.from_dict)

    def list_all_encounters(self, limit: int = 100) -> Result:
        params = {'limit': int(_clamp(int(limit), 1, self.MAX_LIST_LIMIT))}
        return self.client.get('/encounters/all', params).map(EncounterPage.from_dict)

    def get_encounter(self, encounter_id: str) -> Result:
        """Return the full :class:`Encounter` with verifications and ``rating_stats``."""
        return self.client.get(f'/encounters/{encounter_id}').map(Encounter.from_dict)

    def submit_encounter(self, author_name: str, latitude: float, longitude: float,
                         story: str, encounter_time: str, image_count: int = 0,
                         address: str = None, device_id: str = None) -> Result:
        """Submit a new encounter; the value is ``{'encounterId', 'uploadUrls'}``."""
        location = {'latitude': latitude, 'longitude': longitude}
        if address:
            location['address'] = address
        body = {
            'authorName': author_name,
            'location': location,
            'originalStory': story,
            'encounterTime': encounter_time,
            'imageCount': image_count,
        }
        if device_id:
            body['deviceId'] = device_id
        return self.client.post('/encounters', body)

    def upload_image(self, upload_url: str, data: bytes,
                     content_type: str = 'image/jpeg') -> Result:
        """PUT raw image bytes to a signed upload URL from :meth:`submit_encounter`."""
        return self.client.send(ApiRequest('PUT', upload_url, data=data,
                                           headers={'Content-Type': content_type}))

    def trigger_enhancement(self, encounter_id: str) -> Result:
        return self.client.put(f'/encounters/{encounter_id}/upload-complete')

    def rate_encounter(self, encounter_id: str, device_id: str, rating: int) -> Result:
        """Rate an encounter 1-5; the value is ``{'averageRating', 'ratingCount'}``."""
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            return _validation_error('rating must be an integer between 1 and 5')
        return self.client.post(f'/encounters/{encounter_id}/rate',
                                {'deviceId': device_id, 'rating': rating})

    def verify_location(self, encounter_id: str, latitude: float, longitude: float,
                        spookiness_score: int, notes: str = None,
                        device_id: str = None) -> Result:
        """Verify an encounter on site.

        The value is ``{'verificationId', 'isTimeMatched', 'distanceMeters'}``.
        """
        if (isinstance(spookiness_score, bool) or not isinstance(spookiness_score, int)
                or not 1 <= spookiness_score <= 5):
            return _validation_error('spookinessScore must be an integer between 1 and 5')
        body = {
            'location': {'latitude': latitude, 'longitude': longitude},
            'spookinessScore': spookiness_score,
        }
        if notes:
            body['notes'] = notes
        if device_id:
            body['deviceId'] = device_id
        return self.client.post(f'/encounters/{encounter_id}/verify', body)

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    def list_pending(self, limit: int = 20, next_token: str = None) -> Result:
        params = {'limit': int(_clamp(int(limit), 1, self.MAX_PENDING_LIMIT))}
        if next_token:
            params['nextToken'] = next_token
        return self.client.get('/admin/encounters/pending', params).map(EncounterPage.from_dict)

    def approve(self, encounter_id: str) -> Result:
        return self.client.post(f'/admin/encounters/{encounter_id}/approve')

    def reject(self, encounter_id: str, reason: str = None) -> Result:
        body = {'reason': reason} if reason else {}
        return self.client.post(f'/admin/encounters/{encounter_id}/reject', body)
