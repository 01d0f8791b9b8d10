"""
Directory source interface.

Every backend (Azure AD, LDAP) implements this class once. Besides listing
snapshots it knows how to decode a raw payload stored in the registry back
into one of its own entities, which lets the engine stay backend-agnostic.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List

from directory_sync.models import SourceGroup, SourceGroupWithMembers, SourceUser

logger = logging.getLogger(__name__)


class DirectorySource(ABC):
    """Abstract base class for directory backends."""

    source_type: str = ''

    def connect(self):
        """Open connections or acquire credentials before listing."""
        pass

    def close(self):
        """Release connections."""
        pass

    @abstractmethod
    def get_users(self) -> List[SourceUser]:
        """
        List current directory users.

        Raises:
            FetchError: If listing fails
        """
        pass

    @abstractmethod
    def get_groups_with_members(self) -> List[SourceGroupWithMembers]:
        """
        List current directory groups with their member ObjectIDs.

        Raises:
            FetchError: If listing fails
        """
        pass

    @abstractmethod
    def create_user_from_raw(self, raw: Dict[str, Any]) -> SourceUser:
        """
        Decode a stored user payload.

        Raises:
            DecodeError: If the payload doesn't describe a user of this backend
        """
        pass

    @abstractmethod
    def create_group_from_raw(self, raw: Dict[str, Any]) -> SourceGroup:
        pass

    def maybe_print_debug_logs(self, object_id: str, debug_ids: List[str], **fields):
        if object_id in (debug_ids or []):
            details = ', '.join(f"{key}={value!r}" for key, value in fields.items())
            logger.debug(f"Debug info for {object_id}: {details}")

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
