"""
Tracked artists and their workflow status.

A merge run yields PersonRecords; reconciliation turns them into tracked
entries without creating duplicates. Matching is by passport number when
both sides carry one, otherwise by the (givenName, familyName) pair. A
match keeps the existing entry untouched. Name-only matches are still
merged but are reported back as possible duplicates for the user to check.

Status only ever moves forward: pending -> processing -> approved.
"""

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, List, Optional

from .errors import NotFound, ValidationFailure
from .schema import canonicalize, display_name, is_blank, is_placeholder


class ArtistStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    APPROVED = "approved"


_STATUS_RANK = {ArtistStatus.PENDING: 0, ArtistStatus.PROCESSING: 1, ArtistStatus.APPROVED: 2}


class VisaDocument:
    def __init__(self, url: str, filename: str, mime_type: str):
        self.url = url
        self.filename = filename
        self.mime_type = mime_type

    def to_dict(self) -> Dict[str, str]:
        return {"url": self.url, "filename": self.filename, "mimeType": self.mime_type}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VisaDocument":
        return cls(data.get("url", ""), data.get("filename", ""), data.get("mimeType", ""))


class TrackedArtist:
    """A PersonRecord plus the workflow state that drives the dashboard."""
    def __init__(self, record: Dict[str, Any], owner_email: str,
                 artist_id: Optional[str] = None,
                 status: ArtistStatus = ArtistStatus.PENDING,
                 visa_documents: Optional[List[VisaDocument]] = None,
                 email_id: Optional[str] = None,
                 recipient_email: Optional[str] = None,
                 created_at: Optional[datetime] = None):
        self.id = artist_id or uuid.uuid4().hex
        self.record = record
        self.owner_email = owner_email
        self.status = ArtistStatus(status)
        self.visa_documents = visa_documents or []
        self.email_id = email_id or record.get("sourceEmailId")
        self.recipient_email = recipient_email or record.get("sourceEmailFrom")
        self.created_at = created_at or datetime.now(timezone.utc)

    def __repr__(self):
        return f"TrackedArtist(id={self.id}, name='{display_name(self.record)}', status='{self.status.value}')"

    def advance_to(self, status: ArtistStatus) -> bool:
        """Moves the status forward. Returns False when that would be a regression."""
        status = ArtistStatus(status)
        if _STATUS_RANK[status] < _STATUS_RANK[self.status]:
            return False
        self.status = status
        return True

    def matches(self, record: Dict[str, Any]) -> Optional[str]:
        """
        Tells whether a record describes this artist.

        Returns:
            "passport" or "name" for the rule that matched, None otherwise.
        """
        ours = str(self.record.get("passportNumber") or "").strip()
        theirs = str(record.get("passportNumber") or "").strip()
        if ours and theirs and ours == theirs:
            return "passport"

        names = []
        for source in (self.record, record):
            given = str(source.get("givenName") or "").strip()
            family = str(source.get("familyName") or "").strip()
            names.append((given, family) if given and family else None)
        if names[0] and names[0] == names[1]:
            return "name"
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.record,
            "id": self.id,
            "status": self.status.value,
            "visaDocuments": [d.to_dict() for d in self.visa_documents],
            "emailId": self.email_id,
            "recipientEmail": self.recipient_email,
            "createdAt": self.created_at.isoformat(),
        }


class ReconcileResult:
    def __init__(self):
        self.added: List[TrackedArtist] = []
        self.duplicates: List[TrackedArtist] = []
        self.possible_duplicates: List[Dict[str, Any]] = []
        self.skipped: List[Dict[str, Any]] = []

    def to_dict(self) -> Dict[str, Any]:
        return {
            "added": [a.to_dict() for a in self.added],
            "duplicates": [a.id for a in self.duplicates],
            "possibleDuplicates": self.possible_duplicates,
            "skipped": len(self.skipped),
        }


class ArtistTracker:
    """
    Reconciles merged records into a user's tracked artists and moves their status.

    All persistence goes through an ArtistRepository.
    """
    def __init__(self, config: Dict[str, Any], repository):
        self.config = config.get('tracker', {})
        self.track_placeholders = bool(self.config.get('track_placeholders', False))
        self.repository = repository
        self.logger = logging.getLogger(__name__)

    def list_artists(self, owner_email: str) -> List[TrackedArtist]:
        return self.repository.find_by_user(owner_email)

    def reconcile(self, owner_email: str, records: List[Dict[str, Any]],
                  recipient_email: Optional[str] = None) -> ReconcileResult:
        """
        Adds new artists from a merge run to the owner's tracker.

        Args:
            owner_email: The user whose tracker is updated.
            records: Merged PersonRecords, in order.
            recipient_email: Reply address for the source email, when known.

        Returns:
            A ReconcileResult listing what was added and what matched existing entries.
        """
        if not owner_email:
            raise ValidationFailure("A user email is required to track artists.")

        result = ReconcileResult()
        existing = self.repository.find_by_user(owner_email)

        for record in records:
            if not isinstance(record, dict):
                raise ValidationFailure("Each record must be a JSON object.")
            if is_placeholder(record) and not self.track_placeholders:
                self.logger.warning("Skipping placeholder record; it holds no extracted data.")
                result.skipped.append(record)
                continue

            match, rule = None, None
            for artist in existing:
                rule = artist.matches(record)
                if rule:
                    match = artist
                    break

            if match:
                self.logger.info(f"{display_name(record)} is already tracked as {match.id} (matched by {rule}).")
                result.duplicates.append(match)
                if rule == "name":
                    result.possible_duplicates.append({
                        "existingId": match.id,
                        "name": display_name(record),
                        "existingPassport": match.record.get("passportNumber", ""),
                        "incomingPassport": record.get("passportNumber", ""),
                    })
                continue

            artist = TrackedArtist(canonicalize(record), owner_email, recipient_email=recipient_email)
            self.repository.save(artist)
            existing.append(artist)
            result.added.append(artist)
            self.logger.info(f"Tracking new artist {display_name(record)} ({artist.id}).")

        if result.possible_duplicates:
            self.logger.warning(f"{len(result.possible_duplicates)} record(s) matched only by name. Please review.")
        return result

    def get(self, owner_email: str, artist_id: str) -> TrackedArtist:
        artist = self.repository.get(artist_id)
        if artist is None or artist.owner_email != owner_email:
            raise NotFound(f"Artist {artist_id} not found.")
        return artist

    def mark_copied(self, owner_email: str, artist_id: str) -> TrackedArtist:
        """Records that the artist's JSON was copied. Pending artists move to processing."""
        artist = self.get(owner_email, artist_id)
        if artist.status == ArtistStatus.PENDING:
            artist.advance_to(ArtistStatus.PROCESSING)
            self.repository.save(artist)
            self.logger.info(f"Artist {artist_id} moved to processing.")
        return artist

    def attach_document(self, owner_email: str, artist_id: str, document: VisaDocument) -> TrackedArtist:
        """Appends an uploaded visa document and approves the artist."""
        if is_blank(document.url):
            raise ValidationFailure("Uploaded document has no URL.")
        artist = self.get(owner_email, artist_id)
        artist.visa_documents.append(document)
        artist.advance_to(ArtistStatus.APPROVED)
        self.repository.save(artist)
        self.logger.info(f"Attached {document.filename} to artist {artist_id}; status approved.")
        return artist

    def delete(self, owner_email: str, artist_id: str):
        self.get(owner_email, artist_id)
        self.repository.delete(artist_id)
        self.logger.info(f"Deleted artist {artist_id}.")

    def stats(self) -> Dict[str, Any]:
        """Aggregate counts across every user's tracker."""
        artists = self.repository.find_all()
        by_status = {s.value: 0 for s in ArtistStatus}
        users = set()
        for artist in artists:
            by_status[artist.status.value] += 1
            users.add(artist.owner_email)
        return {"totalArtists": len(artists), "byStatus": by_status, "users": len(users)}
