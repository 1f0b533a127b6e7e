#!/usr/bin/env python3
"""
Database models and configuration for the GhostAtlas service.
Stores encounters, device ratings and location verifications with SQLAlchemy.
"""

import os
import json
import logging
from datetime import datetime

from sqlalchemy import (create_engine, Column, Integer, String, Boolean, DateTime,
                        Text, Float, ForeignKey, UniqueConstraint, or_)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker, relationship
from sqlalchemy.pool import StaticPool

from geolocation import encode_geohash

logger = logging.getLogger('ghostatlas.database')

DEFAULT_DATABASE_URL = 'sqlite:///ghostatlas.db'

Base = declarative_base()
engine = None
SessionLocal = None


def configure(url: str = None):
    """(Re)create the engine and session factory for *url*.

    ``sqlite://`` (in-memory) shares one connection across threads so that
    the Flask handlers and the enhancement worker see the same data.
    """
    global engine, SessionLocal
    url = url or os.getenv('GHOSTATLAS_DATABASE_URL', DEFAULT_DATABASE_URL)
    kwargs = {'echo': False}
    if url.startswith('sqlite'):
        kwargs['connect_args'] = {'check_same_thread': False}
        if url in ('sqlite://', 'sqlite:///:memory:'):
            kwargs['poolclass'] = StaticPool
    if engine is not None:
        engine.dispose()
    engine = create_engine(url, **kwargs)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    logger.debug("Database configured for %s", engine.url.render_as_string(hide_password=True))
    return engine


class Encounter(Base):
    """A submitted paranormal encounter and its moderation/enhancement state."""
    __tablename__ = "encounters"

    id = Column(String(36), primary_key=True)
    author_name = Column(String(100), nullable=False)
    device_id = Column(String(36), nullable=True, index=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    address = Column(String(500), nullable=True)
    geohash = Column(String(12), index=True)
    original_story = Column(Text, nullable=False)
    enhanced_story = Column(Text, nullable=True)
    encounter_time = Column(String(40), nullable=False)  # ISO 8601, as submitted
    image_urls = Column(Text, default='[]')  # JSON list
    illustration_urls = Column(Text, default='[]')  # JSON list
    narration_url = Column(String(1000), nullable=True)
    rating = Column(Float, default=0.0)
    rating_count = Column(Integer, default=0)
    verification_count = Column(Integer, default=0)
    average_spookiness = Column(Float, default=0.0)
    status = Column(String(30), default='pending', index=True)
    rejection_reason = Column(String(500), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    ratings = relationship("Rating", back_populates="encounter", cascade="all, delete-orphan")
    verifications = relationship("Verification", back_populates="encounter",
                                 cascade="all, delete-orphan")


class Rating(Base):
    """One device's star rating of an encounter."""
    __tablename__ = "ratings"
    __table_args__ = (UniqueConstraint('encounter_id', 'device_id', name='uq_rating_device'),)

    id = Column(Integer, primary_key=True)
    encounter_id = Column(String(36), ForeignKey("encounters.id"), index=True)
    device_id = Column(String(36), nullable=False)
    rating = Column(Integer, nullable=False)
    rated_at = Column(DateTime, default=datetime.utcnow)

    encounter = relationship("Encounter", back_populates="ratings")


class Verification(Base):
    """An on-site confirmation of an encounter location."""
    __tablename__ = "verifications"

    id = Column(String(36), primary_key=True)
    encounter_id = Column(String(36), ForeignKey("encounters.id"), index=True)
    device_id = Column(String(36), nullable=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    spookiness_score = Column(Integer, nullable=False)
    notes = Column(String(500), nullable=True)
    is_time_matched = Column(Boolean, default=False)
    distance_meters = Column(Float, default=0.0)
    verified_at = Column(DateTime, default=datetime.utcnow)

    encounter = relationship("Encounter", back_populates="verifications")


def init_db():
    """Create all tables on the configured engine."""
    if engine is None:
        configure()
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables initialized")
    return True


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------

def _iso(value):
    if value is None:
        return None
    return value.isoformat(timespec='milliseconds') + 'Z'


def _json_list(raw):
    try:
        value = json.loads(raw or '[]')
    except (TypeError, ValueError):
        return []
    return value if isinstance(value, list) else []


def encounter_to_dict(encounter: Encounter) -> dict:
    """Render an encounter row in the camelCase wire format."""
    location = {'latitude': encounter.latitude, 'longitude': encounter.longitude}
    if encounter.address:
        location['address'] = encounter.address
    return {
        'id': encounter.id,
        'authorName': encounter.author_name,
        'location': location,
        'originalStory': encounter.original_story,
        'enhancedStory': encounter.enhanced_story,
        'encounterTime': encounter.encounter_time,
        'imageUrls': _json_list(encounter.image_urls),
        'illustrationUrls': _json_list(encounter.illustration_urls),
        'narrationUrl': encounter.narration_url,
        'rating': encounter.rating or 0.0,
        'ratingCount': encounter.rating_count or 0,
        'verificationCount': encounter.verification_count or 0,
        'status': encounter.status,
        'createdAt': _iso(encounter.created_at),
        'updatedAt': _iso(encounter.updated_at),
    }


def verification_to_dict(verification: Verification) -> dict:
    return {
        'id': verification.id,
        'encounterId': verification.encounter_id,
        'location': {'latitude': verification.latitude,
                     'longitude': verification.longitude},
        'spookinessScore': verification.spookiness_score,
        'notes': verification.notes,
        'verifiedAt': _iso(verification.verified_at),
        'isTimeMatched': bool(verification.is_time_matched),
        'distanceMeters': verification.distance_meters,
    }


# ---------------------------------------------------------------------------
# Encounters
# ---------------------------------------------------------------------------

def create_encounter(db, encounter_id: str, author_name: str, latitude: float,
                     longitude: float, original_story: str, encounter_time: str,
                     address: str = None, device_id: str = None) -> Encounter:
    """Insert a new ``pending`` encounter and return it."""
    encounter = Encounter(
        id=encounter_id,
        author_name=author_name,
        device_id=device_id,
        latitude=latitude,
        longitude=longitude,
        address=address,
        geohash=encode_geohash(latitude, longitude, 6),
        original_story=original_story,
        encounter_time=encounter_time,
        image_urls='[]',
        illustration_urls='[]',
        status='pending',
    )
    try:
        db.add(encounter)
        db.commit()
    except SQLAlchemyError as e:
        logger.error("Error creating encounter %s: %s", encounter_id, e)
        db.rollback()
        raise
    return encounter


def get_encounter(db, encounter_id: str):
    """Return the encounter row for *encounter_id*, or ``None``."""
    return db.get(Encounter, encounter_id)


def list_encounters_by_status(db, statuses, limit: int = None, offset: int = 0,
                              newest_first: bool = True):
    """Return encounters whose status is in *statuses*."""
    query = db.query(Encounter).filter(Encounter.status.in_(list(statuses)))
    order = Encounter.created_at.desc() if newest_first else Encounter.created_at.asc()
    query = query.order_by(order, Encounter.id)
    if offset:
        query = query.offset(offset)
    if limit is not None:
        query = query.limit(limit)
    return query.all()


def list_encounters_in_cells(db, statuses, prefixes):
    """Return encounters in *statuses* whose geohash starts with one of *prefixes*.

    ``prefixes=None`` skips the area filter.
    """
    query = db.query(Encounter).filter(Encounter.status.in_(list(statuses)))
    if prefixes is not None:
        query = query.filter(or_(*[Encounter.geohash.startswith(prefix)
                                   for prefix in sorted(prefixes)]))
    return query.order_by(Encounter.created_at.desc(), Encounter.id).all()


def count_encounters_by_status(db, statuses) -> int:
    return db.query(Encounter).filter(Encounter.status.in_(list(statuses))).count()


def update_encounter(db, encounter: Encounter, **changes) -> Encounter:
    """Apply column *changes* to *encounter* and commit.

    ``image_urls`` / ``illustration_urls`` may be passed as lists.
    """
    for name in ('image_urls', 'illustration_urls'):
        if isinstance(changes.get(name), list):
            changes[name] = json.dumps(changes[name])
    try:
        for name, value in changes.items():
            setattr(encounter, name, value)
        encounter.updated_at = datetime.utcnow()
        db.commit()
    except SQLAlchemyError as e:
        logger.error("Error updating encounter %s: %s", encounter.id, e)
        db.rollback()
        raise
    return encounter


def add_image_url(db, encounter: Encounter, url: str) -> bool:
    """Append *url* to the encounter's images; ``False`` if already present."""
    urls = _json_list(encounter.image_urls)
    if url in urls:
        return False
    urls.append(url)
    update_encounter(db, encounter, image_urls=urls)
    return True


# ---------------------------------------------------------------------------
# Ratings
# ---------------------------------------------------------------------------

def get_rating(db, encounter_id: str, device_id: str):
    return db.query(Rating).filter(
        Rating.encounter_id == encounter_id,
        Rating.device_id == device_id,
    ).first()


def add_rating(db, encounter: Encounter, device_id: str, rating: int):
    """Store a rating and refresh the encounter's mean and count.

    Returns:
        The updated encounter, or ``None`` if this device already rated it.
    """
    try:
        db.add(Rating(encounter_id=encounter.id, device_id=device_id, rating=rating))
        db.flush()
        values = [r for (r,) in db.query(Rating.rating).filter(
            Rating.encounter_id == encounter.id)]
        encounter.rating_count = len(values)
        encounter.rating = round(sum(values) / len(values), 1)
        encounter.updated_at = datetime.utcnow()
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info("Duplicate rating for %s from %s", encounter.id, device_id)
        return None
    except SQLAlchemyError as e:
        logger.error("Error rating encounter %s: %s", encounter.id, e)
        db.rollback()
        raise
    return encounter


def rating_distribution(db, encounter_id: str) -> dict:
    """Return ``{'1': n, ..., '5': n}`` counts for *encounter_id*."""
    distribution = {str(star): 0 for star in range(1, 6)}
    for (value,) in db.query(Rating.rating).filter(Rating.encounter_id == encounter_id):
        key = str(value)
        if key in distribution:
            distribution[key] += 1
    return distribution


# ---------------------------------------------------------------------------
# Verifications
# ---------------------------------------------------------------------------

def add_verification(db, encounter: Encounter, verification_id: str, latitude: float,
                     longitude: float, spookiness_score: int, distance_meters: float,
                     is_time_matched: bool, notes: str = None, device_id: str = None,
                     verified_at: datetime = None) -> Verification:
    """Store a verification and refresh the encounter's count and mean spookiness."""
    verification = Verification(
        id=verification_id,
        encounter_id=encounter.id,
        device_id=device_id,
        latitude=latitude,
        longitude=longitude,
        spookiness_score=spookiness_score,
        notes=notes,
        is_time_matched=is_time_matched,
        distance_meters=distance_meters,
        verified_at=verified_at or datetime.utcnow(),
    )
    try:
        count = encounter.verification_count or 0
        average = encounter.average_spookiness or 0.0
        db.add(verification)
        encounter.verification_count = count + 1
        encounter.average_spookiness = (average * count + spookiness_score) / (count + 1)
        encounter.updated_at = datetime.utcnow()
        db.commit()
    except SQLAlchemyError as e:
        logger.error("Error storing verification for %s: %s", encounter.id, e)
        db.rollback()
        raise
    return verification


def list_verifications(db, encounter_id: str):
    """Return verifications of *encounter_id*, most recent first."""
    return db.query(Verification).filter(
        Verification.encounter_id == encounter_id
    ).order_by(Verification.verified_at.desc()).all()


configure()
