"""
Mapping of directory names onto registry identifiers.

Registry names are derived, not stable: a changed replacement rule or a
renamed directory object yields a new name for the same ObjectID, which the
engine then applies as a rename.
"""

from typing import Any, Dict, Iterable, List, Optional

from directory_sync.models import SourceGroup, SourceUser


class ReplacementPair:
    """Literal substring replacement applied to directory names."""

    def __init__(self, from_: str, to: str = ''):
        self.from_ = from_
        self.to = to

    @classmethod
    def from_config(cls, item: Dict[str, Any]) -> 'ReplacementPair':
        return cls(str(item.get('from', '')), str(item.get('to') or ''))

    def apply(self, value: str) -> str:
        return value.replace(self.from_, self.to)

    def __eq__(self, other):
        return isinstance(other, ReplacementPair) and (self.from_, self.to) == (other.from_, other.to)

    def __repr__(self):
        return f"ReplacementPair({self.from_!r} -> {self.to!r})"


def apply_replacements(name: str, replacements: Optional[Iterable[ReplacementPair]]) -> str:
    """Apply replacements in order, each over the whole intermediate string, then lowercase."""
    for replacement in replacements or []:
        name = replacement.apply(name)
    return name.lower()


class IdentityMapper:
    """Builds registry usernames and group names from directory entities."""

    def __init__(self,
                 username_replacements: Optional[List[ReplacementPair]] = None,
                 groupname_replacements: Optional[List[ReplacementPair]] = None):
        self.username_replacements = list(username_replacements or [])
        self.groupname_replacements = list(groupname_replacements or [])

    @classmethod
    def from_config(cls, app_config: Dict[str, Any]) -> 'IdentityMapper':
        return cls(
            [ReplacementPair.from_config(item) for item in app_config.get('username_replacements') or []],
            [ReplacementPair.from_config(item) for item in app_config.get('groupname_replacements') or []],
        )

    def build_username(self, source_user: SourceUser) -> str:
        return apply_replacements(source_user.get_name(), self.username_replacements)

    def build_group_name(self, source_group: SourceGroup) -> str:
        return apply_replacements(source_group.get_name(), self.groupname_replacements)
