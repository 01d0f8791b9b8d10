"""
Data model shared by the directory backends, the registry and the engine.

Source entities are read-only snapshots of directory objects exposed through
a small capability interface. Target entities are the registry-resident
records; their ``source_raw`` payload is the provenance the engine uses both
to recover the directory ObjectID and to detect changes.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from directory_sync.errors import SerializationError, DecodeError

ObjectID = str

TIME_FORMAT = '%Y-%m-%dT%H:%M:%SZ'


class SourceUser(ABC):
    """Directory user as seen by the engine."""

    @abstractmethod
    def get_id(self) -> ObjectID:
        pass

    @abstractmethod
    def get_name(self) -> str:
        pass

    @abstractmethod
    def get_raw(self) -> Dict[str, Any]:
        """Return the attribute bag stored as provenance in the registry."""
        pass


class SourceGroup(ABC):
    """Directory group as seen by the engine."""

    @abstractmethod
    def get_id(self) -> ObjectID:
        pass

    @abstractmethod
    def get_name(self) -> str:
        pass

    @abstractmethod
    def get_raw(self) -> Dict[str, Any]:
        pass


@dataclass
class SourceGroupWithMembers:
    source_group: SourceGroup
    # ObjectIDs of the member users
    members: Set[ObjectID] = field(default_factory=set)


@dataclass
class TargetUser:
    """Registry user. ``banned_since`` is None for active users."""
    username: str
    source_raw: Optional[Dict[str, Any]] = None
    source_type: Optional[str] = None
    banned_since: Optional[datetime] = None

    def is_manually_managed(self, source_type: str) -> bool:
        return not self.source_raw or self.source_type != source_type

    def is_banned(self) -> bool:
        return self.banned_since is not None

    def banned_since_string(self) -> str:
        return format_time(self.banned_since)


@dataclass
class TargetGroup:
    name: str
    source_raw: Optional[Dict[str, Any]] = None
    source_type: Optional[str] = None

    def is_manually_managed(self, source_type: str) -> bool:
        return not self.source_raw or self.source_type != source_type


@dataclass
class TargetGroupWithMembers:
    group: TargetGroup
    # Usernames in the registry identifier space
    members: Set[str] = field(default_factory=set)

    @property
    def name(self) -> str:
        return self.group.name


@dataclass
class UpdatedTargetUser:
    """New user state plus the username the registry currently knows it by."""
    user: TargetUser
    old_username: str


@dataclass
class UpdatedTargetGroup:
    group: TargetGroup
    old_name: str


@dataclass(frozen=True)
class TargetMembership:
    username: str
    group_name: str


def serialize_raw(raw: Optional[Dict[str, Any]]) -> str:
    """
    Encode a raw attribute bag into its canonical form.

    Keys are sorted and separators are fixed so two bags with the same content
    always produce the same string regardless of insertion order.

    Raises:
        SerializationError: If the bag holds values JSON can't represent
    """
    try:
        return json.dumps(raw or {}, sort_keys=True, separators=(',', ':'), ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Failed to serialize raw payload: {e}")


def raw_equal(left: Optional[Dict[str, Any]], right: Optional[Dict[str, Any]]) -> bool:
    return serialize_raw(left) == serialize_raw(right)


def format_time(value: Optional[datetime]) -> str:
    if value is None:
        return ''
    return value.astimezone(timezone.utc).strftime(TIME_FORMAT)


def parse_time(value: Optional[str]) -> Optional[datetime]:
    """Parse a persisted timestamp; empty values mean "not set"."""
    if not value:
        return None
    try:
        return datetime.strptime(value, TIME_FORMAT).replace(tzinfo=timezone.utc)
    except (TypeError, ValueError) as e:
        raise DecodeError(f"Failed to parse timestamp {value!r}: {e}")


def string_field(raw: Dict[str, Any], key: str) -> str:
    """Read a string attribute from a raw bag, treating absent values as empty."""
    value = raw.get(key)
    if value is None:
        return ''
    if not isinstance(value, str):
        raise DecodeError(f"Attribute {key!r} must be a string, got {type(value).__name__}")
    return value


def ensure_mapping(raw: Any) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise DecodeError(f"Raw payload must be a mapping, got {type(raw).__name__}")
    return raw
