"""
Diff computation between a directory snapshot and a registry snapshot.

Both sides are indexed by directory ObjectID. For the registry side the
ObjectID is recovered by decoding each record's stored raw payload through
the active backend, so renamed records are still matched to their directory
counterpart.
"""

import logging
from typing import Callable, Dict, List, Optional, Set

from directory_sync.errors import DecodeError
from directory_sync.identity import IdentityMapper
from directory_sync.models import (
    ObjectID,
    SourceGroup,
    SourceGroupWithMembers,
    SourceUser,
    TargetGroup,
    TargetGroupWithMembers,
    TargetMembership,
    TargetUser,
    UpdatedTargetGroup,
    UpdatedTargetUser,
    serialize_raw,
)

logger = logging.getLogger(__name__)

UserDecoder = Callable[[dict], SourceUser]
GroupDecoder = Callable[[dict], SourceGroup]


class UsersDiff:
    """Planned user operations plus the ObjectID -> TargetUser map after applying them."""

    def __init__(self):
        self.create: List[TargetUser] = []
        self.update: List[UpdatedTargetUser] = []
        self.remove: List[TargetUser] = []
        self.result: Dict[ObjectID, TargetUser] = {}

    def is_empty(self) -> bool:
        return not (self.create or self.update or self.remove)


class GroupsDiff:

    def __init__(self):
        self.groups_to_create: List[TargetGroup] = []
        self.groups_to_remove: List[TargetGroup] = []
        self.groups_to_update: List[UpdatedTargetGroup] = []
        self.members_to_add: List[TargetMembership] = []
        self.members_to_remove: List[TargetMembership] = []

    def is_empty(self) -> bool:
        return not (self.groups_to_create or self.groups_to_remove or self.groups_to_update
                    or self.members_to_add or self.members_to_remove)


def build_target_user(source_user: SourceUser, mapper: IdentityMapper, source_type: str) -> TargetUser:
    # A user present in the directory is never banned.
    return TargetUser(
        username=mapper.build_username(source_user),
        source_raw=source_user.get_raw(),
        source_type=source_type,
        banned_since=None,
    )


def build_target_group(source_group: SourceGroup, mapper: IdentityMapper, source_type: str) -> TargetGroup:
    return TargetGroup(
        name=mapper.build_group_name(source_group),
        source_raw=source_group.get_raw(),
        source_type=source_type,
    )


def build_group_members(source_group: SourceGroupWithMembers, user_map: Dict[ObjectID, TargetUser]) -> Set[str]:
    """Resolve member ObjectIDs to registry usernames, dropping unknown ones."""
    members = set()
    for object_id in source_group.members:
        user = user_map.get(object_id)
        if user is None:
            # Unknown to the registry, e.g. a disabled directory account.
            continue
        members.add(user.username)
    return members


def user_changed(new_user: TargetUser, old_user: TargetUser) -> Optional[UpdatedTargetUser]:
    """Return an update carrying the old username if any compared field differs."""
    if (new_user.username == old_user.username
            and serialize_raw(new_user.source_raw) == serialize_raw(old_user.source_raw)
            and new_user.banned_since == old_user.banned_since):
        return None
    return UpdatedTargetUser(user=new_user, old_username=old_user.username)


def group_changed(new_group: TargetGroup, old_group: TargetGroup) -> Optional[UpdatedTargetGroup]:
    new_raw = serialize_raw(new_group.source_raw)
    old_raw = serialize_raw(old_group.source_raw)
    if new_raw == old_raw:
        return None
    logger.debug(f"Group is changed: name '{old_group.name}' -> '{new_group.name}', "
                 f"raw {old_raw} -> {new_raw}")
    return UpdatedTargetGroup(group=new_group, old_name=old_group.name)


def _decode(decoder, raw, kind: str, name: str):
    try:
        return decoder(raw)
    except DecodeError:
        raise
    except Exception as e:
        raise DecodeError(f"Failed to decode stored {kind} {name}: {e}")


def diff_users(source_users: List[SourceUser],
               target_users: List[TargetUser],
               mapper: IdentityMapper,
               decode_user: UserDecoder,
               source_type: str) -> UsersDiff:
    """
    Compute the user diff.

    Raises:
        DecodeError: If a stored payload can't be decoded or serialized
    """
    source_map: Dict[ObjectID, SourceUser] = {}
    for user in source_users:
        source_map[user.get_id()] = user

    target_map: Dict[ObjectID, TargetUser] = {}
    for user in target_users:
        if user.is_manually_managed(source_type):
            logger.debug(f"Skipping manually managed user {user.username}")
            continue
        object_id = _decode(decode_user, user.source_raw, 'user', user.username).get_id()
        if object_id in target_map:
            logger.warning(f"Users {target_map[object_id].username} and {user.username} "
                           f"share the directory id {object_id}")
        target_map[object_id] = user

    diff = UsersDiff()
    diff.result = dict(target_map)

    for object_id, source_user in source_map.items():
        if object_id not in target_map:
            new_user = build_target_user(source_user, mapper, source_type)
            diff.create.append(new_user)
            diff.result[object_id] = new_user

    for object_id, target_user in target_map.items():
        source_user = source_map.get(object_id)
        if source_user is None:
            diff.remove.append(target_user)
            del diff.result[object_id]
            continue

        updated = user_changed(build_target_user(source_user, mapper, source_type), target_user)
        if updated is None:
            continue
        diff.update.append(updated)
        diff.result[object_id] = updated.user

    return diff


def diff_groups(source_groups: List[SourceGroupWithMembers],
                target_groups: List[TargetGroupWithMembers],
                user_map: Dict[ObjectID, TargetUser],
                mapper: IdentityMapper,
                decode_group: GroupDecoder,
                source_type: str) -> GroupsDiff:
    """
    Compute the group and membership diff against the post-user-sync map.

    Raises:
        DecodeError: If a stored payload can't be decoded or serialized
    """
    source_map: Dict[ObjectID, SourceGroupWithMembers] = {}
    for group in source_groups:
        source_map[group.source_group.get_id()] = group

    target_map: Dict[ObjectID, TargetGroupWithMembers] = {}
    for group in target_groups:
        if group.group.is_manually_managed(source_type):
            logger.debug(f"Skipping manually managed group {group.name}")
            continue
        object_id = _decode(decode_group, group.group.source_raw, 'group', group.name).get_id()
        target_map[object_id] = group

    diff = GroupsDiff()

    for object_id, source_group in source_map.items():
        if object_id in target_map:
            continue
        new_group = build_target_group(source_group.source_group, mapper, source_type)
        diff.groups_to_create.append(new_group)
        for username in sorted(build_group_members(source_group, user_map)):
            diff.members_to_add.append(TargetMembership(username=username, group_name=new_group.name))

    for object_id, target_group in target_map.items():
        source_group = source_map.get(object_id)
        if source_group is None:
            diff.groups_to_remove.append(target_group.group)
            continue

        # Membership calls must address the group by its post-rename name.
        actual_name = target_group.name
        updated = group_changed(
            build_target_group(source_group.source_group, mapper, source_type),
            target_group.group,
        )
        if updated is not None:
            logger.warning(f"Detected group fields change: '{target_group.name}' -> '{updated.group.name}'")
            diff.groups_to_update.append(updated)
            actual_name = updated.group.name

        desired = build_group_members(source_group, user_map)
        actual = set(target_group.members)
        for username in sorted(desired - actual):
            diff.members_to_add.append(TargetMembership(username=username, group_name=actual_name))
        for username in sorted(actual - desired):
            diff.members_to_remove.append(TargetMembership(username=username, group_name=actual_name))

    return diff
