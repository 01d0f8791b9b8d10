"""
Registry (target store) interface.

Implementations return only managed entities from their listing calls and
refuse to mutate entities without directory provenance.
"""

from abc import ABC, abstractmethod
from typing import List

from directory_sync.errors import ManualManagementViolation
from directory_sync.models import TargetGroup, TargetGroupWithMembers, TargetUser

__all__ = ['TargetStore', 'ManualManagementViolation']


class TargetStore(ABC):
    """Read/write access to registry users, groups and memberships."""

    @abstractmethod
    def get_users(self) -> List[TargetUser]:
        pass

    @abstractmethod
    def get_groups_with_members(self) -> List[TargetGroupWithMembers]:
        pass

    @abstractmethod
    def create_user(self, user: TargetUser):
        pass

    @abstractmethod
    def update_user(self, old_username: str, user: TargetUser):
        """
        Update a user, addressing it by the name the registry currently knows.

        ``user.username`` may differ from ``old_username``, in which case the
        user is renamed.
        """
        pass

    @abstractmethod
    def remove_user(self, username: str):
        pass

    @abstractmethod
    def ban_user(self, username: str):
        pass

    @abstractmethod
    def create_group(self, group: TargetGroup):
        pass

    @abstractmethod
    def update_group(self, old_name: str, group: TargetGroup):
        pass

    @abstractmethod
    def remove_group(self, name: str):
        pass

    @abstractmethod
    def add_member(self, username: str, group_name: str):
        pass

    @abstractmethod
    def remove_member(self, username: str, group_name: str):
        pass

    def check_connection(self) -> bool:
        """Return True if the registry is reachable."""
        return True

    def close(self):
        """Release any held connections."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
