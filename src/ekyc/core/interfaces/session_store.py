"""
Contract: Session Store

Durable, local key-value persistence of verification sessions with a
capacity bound and TTL-based eviction.
"""

from abc import ABC, abstractmethod
from typing import Callable

from ekyc.core.entities.document import DocumentType
from ekyc.core.entities.session import Session

SessionPatch = dict | Session | Callable[[Session], None]


class ISessionStore(ABC):
    """
    Port: Session Store

    Read-modify-write on one session id is serialized; distinct ids do not
    block each other. Expired sessions read as not-found.
    """

    @abstractmethod
    def create(self, document_type: DocumentType) -> str:
        """Create an in-progress session and return its id."""
        ...

    @abstractmethod
    def get(self, session_id: str) -> Session | None:
        """Return the session, or None if missing, expired or unreadable."""
        ...

    @abstractmethod
    def update(self, session_id: str, patch: SessionPatch) -> bool:
        """
        Apply a patch and persist.

        Args:
            session_id: Target session.
            patch: A full Session, a dict of attribute values, or a
                callable mutating the session in place.

        Returns:
            False when the session does not exist (or expired).
        """
        ...

    @abstractmethod
    def mutate(self, session_id: str, fn: Callable[[Session], None]) -> Session | None:
        """
        Atomic read-modify-write. Returns the updated session, or None.

        A session that fn leaves expired is deleted instead of written back.
        """
        ...

    @abstractmethod
    def delete(self, session_id: str) -> bool:
        ...

    @abstractmethod
    def list_active(self) -> list[Session]:
        """Non-expired in-progress sessions, oldest first."""
        ...

    @abstractmethod
    def purge_expired(self) -> int:
        """Delete expired sessions. Returns the number removed."""
        ...
