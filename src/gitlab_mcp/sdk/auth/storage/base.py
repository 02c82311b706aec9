"""Storage backend contract for the session store.

Backends are passive mirrors: the session store owns the records and decides
what is expired. Getters therefore return whatever is stored, and only
``cleanup`` applies expiry rules.

Every backend must produce identical results for identical operation
sequences, so the session store can run on any of them unchanged.
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

from ..records import (
    AuthCodeFlowState,
    AuthorizationCode,
    CleanupResult,
    DeviceFlowState,
    OAuthSession,
    StorageSnapshot,
    StorageStats,
)

# Fields that identify a session and can never be changed by an update.
IMMUTABLE_SESSION_FIELDS = frozenset({"session_id", "created_at"})


class StorageError(Exception):
    """Raised by backends when a read or write cannot be completed."""


class StorageBackend(ABC):
    """Abstract interface for session and flow persistence."""

    #: Name reported in stats and logs.
    name: str = "abstract"

    @property
    def is_durable(self) -> bool:
        """Whether records survive a process restart."""
        return False

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare the backend (open files, create tables, load snapshots)."""

    @abstractmethod
    async def close(self) -> None:
        """Flush pending state and release resources."""

    # Session operations
    @abstractmethod
    async def create_session(self, session: OAuthSession) -> None:
        """Store a new session, replacing any session with the same id."""

    @abstractmethod
    async def get_session(self, session_id: str) -> OAuthSession | None:
        """Load a session by id."""

    @abstractmethod
    async def get_session_by_token(self, access_token: str) -> OAuthSession | None:
        """Load a session by its current gateway access token."""

    @abstractmethod
    async def get_session_by_refresh_token(self, refresh_token: str) -> OAuthSession | None:
        """Load a session by its current gateway refresh token."""

    @abstractmethod
    async def update_session(
        self, session_id: str, updates: Mapping[str, Any]
    ) -> OAuthSession | None:
        """Apply ``updates`` verbatim and return the updated session, or None if missing."""

    @abstractmethod
    async def delete_session(self, session_id: str) -> bool:
        """Delete a session and its external-session mappings."""

    # Device flow operations
    @abstractmethod
    async def store_device_flow(self, flow: DeviceFlowState) -> None:
        """Store a device flow keyed by ``flow_id``."""

    @abstractmethod
    async def get_device_flow(self, flow_id: str) -> DeviceFlowState | None:
        """Load a device flow by flow id."""

    @abstractmethod
    async def get_device_flow_by_device_code(self, device_code: str) -> DeviceFlowState | None:
        """Load a device flow by the provider's device code."""

    @abstractmethod
    async def delete_device_flow(self, flow_id: str) -> bool:
        """Delete a device flow."""

    # Authorization-code flow operations
    @abstractmethod
    async def store_auth_code_flow(self, flow: AuthCodeFlowState) -> None:
        """Store an auth-code flow keyed by ``internal_state``."""

    @abstractmethod
    async def get_auth_code_flow(self, internal_state: str) -> AuthCodeFlowState | None:
        """Load an auth-code flow by its internal state."""

    @abstractmethod
    async def delete_auth_code_flow(self, internal_state: str) -> bool:
        """Delete an auth-code flow."""

    # Authorization code operations
    @abstractmethod
    async def store_auth_code(self, code: AuthorizationCode) -> None:
        """Store an authorization code."""

    @abstractmethod
    async def get_auth_code(self, code: str) -> AuthorizationCode | None:
        """Load an authorization code."""

    @abstractmethod
    async def delete_auth_code(self, code: str) -> bool:
        """Delete an authorization code."""

    # External session mapping operations
    @abstractmethod
    async def associate_external_session(
        self, external_session_id: str, session_id: str, created_at: int
    ) -> None:
        """Map a transport session id to a gateway session id."""

    @abstractmethod
    async def get_session_by_external_id(self, external_session_id: str) -> OAuthSession | None:
        """Resolve a transport session id to its gateway session."""

    @abstractmethod
    async def remove_external_session(self, external_session_id: str) -> bool:
        """Remove a transport session mapping."""

    # Bulk and maintenance operations
    @abstractmethod
    async def load_snapshot(self) -> StorageSnapshot:
        """Return every stored record, ordered by key."""

    @abstractmethod
    async def cleanup(self, max_session_age_ms: int, now: int | None = None) -> CleanupResult:
        """Delete sessions older than ``max_session_age_ms`` and expired flows and codes."""

    @abstractmethod
    async def get_stats(self) -> StorageStats:
        """Return record counts."""


def validate_session_updates(updates: Mapping[str, Any]) -> None:
    """Reject updates that would change a session's identity."""
    forbidden = IMMUTABLE_SESSION_FIELDS.intersection(updates)
    if forbidden:
        raise StorageError(f"Cannot update immutable session fields: {sorted(forbidden)}")
    unknown = set(updates) - set(OAuthSession.model_fields)
    if unknown:
        raise StorageError(f"Unknown session fields: {sorted(unknown)}")


__all__ = [
    "IMMUTABLE_SESSION_FIELDS",
    "StorageBackend",
    "StorageError",
    "validate_session_updates",
]
