"""
Persistence for tracked artists.

ArtistRepository is the narrow interface the tracker talks to.
SqlArtistRepository is the production implementation on SQLAlchemy;
InMemoryArtistRepository backs the tests.
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

from sqlalchemy import Column, String, DateTime, JSON, Index, create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import StorageError
from .tracker import ArtistStatus, TrackedArtist, VisaDocument

Base = declarative_base()


class ArtistRow(Base):
    __tablename__ = "tracked_artists"

    id = Column(String(32), primary_key=True)
    owner_email = Column(String(320), nullable=False)
    status = Column(String(16), nullable=False, default=ArtistStatus.PENDING.value)
    record = Column(JSON, nullable=False)
    visa_documents = Column(JSON, nullable=False, default=list)
    email_id = Column(String(255))
    recipient_email = Column(String(320))
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                        onupdate=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("ix_tracked_artists_owner", "owner_email"),
    )


class ArtistRepository(ABC):
    @abstractmethod
    def save(self, artist: TrackedArtist):
        """Inserts or updates an artist."""

    @abstractmethod
    def get(self, artist_id: str) -> Optional[TrackedArtist]:
        """Returns the artist or None."""

    @abstractmethod
    def find_by_user(self, owner_email: str) -> List[TrackedArtist]:
        """Returns one user's artists, oldest first."""

    @abstractmethod
    def find_all(self) -> List[TrackedArtist]:
        """Returns every artist."""

    @abstractmethod
    def delete(self, artist_id: str) -> bool:
        """Removes an artist. Returns False when it did not exist."""


def _to_artist(row: ArtistRow) -> TrackedArtist:
    created_at = row.created_at
    if created_at is not None and created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return TrackedArtist(
        record=dict(row.record or {}),
        owner_email=row.owner_email,
        artist_id=row.id,
        status=ArtistStatus(row.status),
        visa_documents=[VisaDocument.from_dict(d) for d in (row.visa_documents or [])],
        email_id=row.email_id,
        recipient_email=row.recipient_email,
        created_at=created_at,
    )


class SqlArtistRepository(ArtistRepository):
    """Stores tracked artists in one SQL table via SQLAlchemy."""

    def __init__(self, config: Dict[str, Any], engine=None):
        """
        Initializes the repository and creates its table if needed.

        Args:
            config: The configuration dictionary from config.yaml.
            engine: An existing SQLAlchemy engine; built from database.url when omitted.
        """
        self.config = config.get('database', {})
        self.logger = logging.getLogger(__name__)
        if engine is None:
            url = self.config.get('url', 'sqlite:///cos_portal.db')
            kwargs = {}
            if url.startswith("sqlite") and ":memory:" in url:
                kwargs = {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
            engine = create_engine(url, **kwargs)
        self.engine = engine
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)
        Base.metadata.create_all(self.engine)
        self.logger.info(f"Artist repository ready on {self.engine.url.render_as_string(hide_password=True)}")

    def save(self, artist: TrackedArtist):
        try:
            with self.Session() as session, session.begin():
                row = session.get(ArtistRow, artist.id)
                if row is None:
                    row = ArtistRow(id=artist.id, created_at=artist.created_at)
                    session.add(row)
                row.owner_email = artist.owner_email
                row.status = artist.status.value
                row.record = dict(artist.record)
                row.visa_documents = [d.to_dict() for d in artist.visa_documents]
                row.email_id = artist.email_id
                row.recipient_email = artist.recipient_email
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to save artist {artist.id}: {e}")
            raise StorageError(f"Failed to save artist: {e}")

    def get(self, artist_id: str) -> Optional[TrackedArtist]:
        try:
            with self.Session() as session:
                row = session.get(ArtistRow, artist_id)
                return _to_artist(row) if row else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load artist {artist_id}: {e}")

    def find_by_user(self, owner_email: str) -> List[TrackedArtist]:
        try:
            with self.Session() as session:
                rows = (session.query(ArtistRow)
                        .filter(ArtistRow.owner_email == owner_email)
                        .order_by(ArtistRow.created_at)
                        .all())
                return [_to_artist(r) for r in rows]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list artists: {e}")

    def find_all(self) -> List[TrackedArtist]:
        try:
            with self.Session() as session:
                return [_to_artist(r) for r in session.query(ArtistRow).order_by(ArtistRow.created_at).all()]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list artists: {e}")

    def delete(self, artist_id: str) -> bool:
        try:
            with self.Session() as session, session.begin():
                row = session.get(ArtistRow, artist_id)
                if row is None:
                    return False
                session.delete(row)
                return True
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to delete artist {artist_id}: {e}")
            raise StorageError(f"Failed to delete artist: {e}")


class InMemoryArtistRepository(ArtistRepository):
    """Process-local repository. Not durable; used as a test double."""

    def __init__(self):
        self._artists: Dict[str, TrackedArtist] = {}
        self._lock = threading.Lock()

    def save(self, artist: TrackedArtist):
        with self._lock:
            self._artists[artist.id] = copy.deepcopy(artist)

    def get(self, artist_id: str) -> Optional[TrackedArtist]:
        with self._lock:
            artist = self._artists.get(artist_id)
            return copy.deepcopy(artist) if artist else None

    def find_by_user(self, owner_email: str) -> List[TrackedArtist]:
        with self._lock:
            return [copy.deepcopy(a) for a in self._artists.values() if a.owner_email == owner_email]

    def find_all(self) -> List[TrackedArtist]:
        with self._lock:
            return [copy.deepcopy(a) for a in self._artists.values()]

    def delete(self, artist_id: str) -> bool:
        with self._lock:
            return self._artists.pop(artist_id, None) is not None
