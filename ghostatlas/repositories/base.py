"""Repository base class for the locally persisted client state."""
import json
import logging
import os
import tempfile
from typing import Any


class BaseRepository:
    """JSON-file persistence for one piece of device-local state.

    Sub-classes read their document with :meth:`_load` and keep it in
    ``self.data``; after mutating it they call :meth:`save`.  Writes go to a
    temporary file in the same directory which is then renamed over the
    target, so a crash never leaves a half-written document behind.
    """

    def __init__(self, file_path: str) -> None:
        self._path = file_path
        self._log = logging.getLogger(f'ghostatlas.repository.{type(self).__name__}')

    @property
    def path(self) -> str:
        return self._path

    def _load(self, default: Any) -> Any:
        """Return the decoded document, or *default* if it is missing or unreadable."""
        if not os.path.exists(self._path):
            return default
        try:
            with open(self._path, 'r', encoding='utf-8') as fh:
                loaded = json.load(fh)
        except (json.JSONDecodeError, OSError) as exc:
            self._log.warning("Ignoring unreadable %s: %s", self._path, exc)
            return default
        if not isinstance(loaded, type(default)):
            self._log.warning("Ignoring %s: expected %s", self._path,
                              type(default).__name__)
            return default
        return loaded

    def _save(self, data: Any) -> None:
        dir_name = os.path.dirname(os.path.abspath(self._path))
        os.makedirs(dir_name, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=dir_name, suffix='.tmp')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as fh:
                json.dump(data, fh, indent=2)
            os.replace(tmp_path, self._path)
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def save(self) -> None:
        self._save(self.data)
