"""
GhostAtlas application package.

Layered the same way on both sides of the wire:

  ghostatlas/repositories/  pure I/O: the device-local JSON documents
                              (device identity, preferences, activity record).
  ghostatlas/services/      business logic: clamping and idempotence rules for
                              the local state, and the encounter, rating,
                              verification and moderation rules the REST
                              service enforces.

``Atlas`` (in ``atlas.py``) is the client-side integration point: it creates
repository and service instances in ``__init__`` and exposes them as public
attributes (``atlas.devices``, ``atlas.preferences``, ``atlas.activity``).  Route handlers in
``atlas_server.py`` use the database-backed services directly.
"""
