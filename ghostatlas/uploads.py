"""Signed, expiring upload URLs for encounter images."""
import hashlib
import hmac
import time
from typing import Callable, List, Optional
from urllib.parse import urlencode

UPLOAD_URL_EXPIRY_SECONDS = 900


class UploadSigner:
    """Issues and checks ``PUT /uploads/<encounter>/<index>`` URLs.

    The signature is an HMAC-SHA256 over ``"<encounter>/<index>/<expires>"``
    so a URL cannot be replayed for another encounter, slot or deadline.
    """

    def __init__(self, secret: str, public_url: str,
                 expiry: int = UPLOAD_URL_EXPIRY_SECONDS,
                 clock: Optional[Callable[[], float]] = None) -> None:
        self._secret = secret.encode('utf-8')
        self._public_url = public_url.rstrip('/')
        self._expiry = expiry
        self._clock = clock or time.time

    def _signature(self, encounter_id: str, index: int, expires: int) -> str:
        message = f'{encounter_id}/{index}/{expires}'.encode('utf-8')
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def sign(self, encounter_id: str, index: int) -> str:
        expires = int(self._clock()) + self._expiry
        query = urlencode({
            'expires': expires,
            'signature': self._signature(encounter_id, index, expires),
        })
        return f'{self._public_url}/api/uploads/{encounter_id}/{index}?{query}'

    def sign_all(self, encounter_id: str, count: int) -> List[str]:
        return [self.sign(encounter_id, index) for index in range(count)]

    def verify(self, encounter_id: str, index: int, expires, signature: str) -> bool:
        """Return ``True`` if *signature* is valid and has not expired."""
        try:
            expires = int(expires)
        except (TypeError, ValueError):
            return False
        if expires < self._clock():
            return False
        expected = self._signature(encounter_id, index, expires)
        return hmac.compare_digest(expected, signature or '')
