"""
Reconciliation engine.

Runs one sync pass: users first, then groups and memberships. Each phase
fetches both snapshots, computes a diff, checks the remove limit and only
then applies mutations in a fixed order. A failing mutation is logged and
counted; it never stops its siblings.
"""

import logging
from datetime import timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from directory_sync.clock import Clock, RealClock
from directory_sync.diff import GroupsDiff, UsersDiff, diff_groups, diff_users
from directory_sync.errors import (
    DecodeError,
    FetchError,
    PerEntityMutationError,
    RemoveLimitExceeded,
    SyncError,
)
from directory_sync.identity import IdentityMapper
from directory_sync.lifecycle import LifecycleAction, ban_state_of, next_state
from directory_sync.models import ObjectID, TargetUser
from directory_sync.registry.base import TargetStore
from directory_sync.sources.base import DirectorySource

logger = logging.getLogger(__name__)

STATUS_OK = 'ok'
STATUS_FAILED = 'failed'
STATUS_SKIPPED = 'skipped'


def new_pass_stats() -> Dict[str, Any]:
    """Empty statistics for one sync pass."""
    return {
        'start_time': None,
        'end_time': None,
        'runtime_seconds': 0,
        'users': {
            'status': STATUS_SKIPPED,
            'error': None,
            'exception': None,
            'created': 0,
            'create_errors': 0,
            'updated': 0,
            'update_errors': 0,
            'removed': 0,
            'banned': 0,
            'ban_or_remove_errors': 0,
        },
        'groups': {
            'status': STATUS_SKIPPED,
            'error': None,
            'exception': None,
            'created': 0,
            'create_errors': 0,
            'updated': 0,
            'update_errors': 0,
            'removed': 0,
            'remove_errors': 0,
        },
        'memberships': {
            'status': STATUS_SKIPPED,
            'added': 0,
            'add_errors': 0,
            'removed': 0,
            'remove_errors': 0,
        },
    }


class ReconciliationEngine:
    """
    Keeps registry users and groups consistent with a directory snapshot.

    The engine is backend-agnostic: the directory backend provides the
    snapshots and the raw payload decoder, the store applies mutations.
    """

    def __init__(self,
                 source: DirectorySource,
                 store: TargetStore,
                 mapper: Optional[IdentityMapper] = None,
                 clock: Optional[Clock] = None,
                 remove_limit: int = 0,
                 ban_duration: timedelta = timedelta(0)):
        """
        Initialize reconciliation engine.

        Args:
            source: Directory backend
            store: Registry backend
            mapper: Name mapping rules
            clock: Time source for the ban lifecycle
            remove_limit: Abort a phase with this many remove candidates (0 disables)
            ban_duration: Grace period between ban and removal (0 removes immediately)
        """
        self.source = source
        self.store = store
        self.mapper = mapper or IdentityMapper()
        self.clock = clock or RealClock()
        self.remove_limit = remove_limit
        self.ban_duration = ban_duration
        self.last_stats: Optional[Dict[str, Any]] = None

    def is_remove_limit_reached(self, objects_count: int) -> bool:
        if self.remove_limit <= 0:
            return False
        return objects_count >= self.remove_limit

    def sync_once(self) -> Dict[str, Any]:
        """
        Run a single reconciliation pass.

        Phase failures are logged and recorded in the returned statistics;
        they are never raised.
        """
        stats = new_pass_stats()
        stats['start_time'] = self.clock.now()
        logger.info("Start syncing")

        user_map = None
        try:
            user_map = self.sync_users(stats['users'])
            stats['users']['status'] = STATUS_OK
        except SyncError as e:
            stats['users']['status'] = STATUS_FAILED
            stats['users']['error'] = str(e)
            stats['users']['exception'] = e
            logger.error(f"User sync failed: {e}")

        if user_map is not None:
            try:
                self.sync_groups(user_map, stats['groups'], stats['memberships'])
                stats['groups']['status'] = STATUS_OK
                stats['memberships']['status'] = STATUS_OK
            except SyncError as e:
                stats['groups']['status'] = STATUS_FAILED
                stats['groups']['error'] = str(e)
                stats['groups']['exception'] = e
                logger.error(f"Group sync failed: {e}")
        else:
            logger.warning("Skipping group sync because user sync failed")

        stats['end_time'] = self.clock.now()
        stats['runtime_seconds'] = (stats['end_time'] - stats['start_time']).total_seconds()
        self.last_stats = stats
        log_pass_summary(stats)
        logger.info("Finish syncing")
        return stats

    def sync_users(self, stats: Optional[Dict[str, Any]] = None) -> Dict[ObjectID, TargetUser]:
        """
        Sync directory users into the registry.

        Returns:
            ObjectID -> TargetUser map reflecting the applied changes

        Raises:
            FetchError: If either snapshot can't be listed
            DecodeError: If a stored payload can't be decoded
            RemoveLimitExceeded: If too many users would be banned or removed
        """
        if stats is None:
            stats = new_pass_stats()['users']
        logger.info("Start syncing users")

        source_users = _fetch(self.source.get_users, "directory users")
        target_users = _fetch(self.store.get_users, "registry users")

        diff = diff_users(
            source_users,
            target_users,
            self.mapper,
            self.source.create_user_from_raw,
            self.source.source_type,
        )
        if self.is_remove_limit_reached(len(diff.remove)):
            names = [user.username for user in diff.remove]
            logger.warning(f"Users to ban or remove: {', '.join(names)}")
            raise RemoveLimitExceeded('users', len(diff.remove), self.remove_limit, names)

        self._apply_users_diff(diff, stats)
        logger.info(
            f"Finish syncing users: created={stats['created']} create_errors={stats['create_errors']} "
            f"updated={stats['updated']} update_errors={stats['update_errors']} "
            f"removed={stats['removed']} banned={stats['banned']} "
            f"ban_or_remove_errors={stats['ban_or_remove_errors']}"
        )
        return diff.result

    def _apply_users_diff(self, diff: UsersDiff, stats: Dict[str, Any]):
        for user in diff.remove:
            try:
                was_banned, was_removed = self.ban_or_remove_user(user)
            except Exception as e:
                stats['ban_or_remove_errors'] += 1
                _log_mutation_error('ban or remove user', user.username, e)
                continue
            if was_banned:
                stats['banned'] += 1
            if was_removed:
                stats['removed'] += 1

        for user in diff.create:
            if _apply('create user', user.username, lambda: self.store.create_user(user)):
                stats['created'] += 1
            else:
                stats['create_errors'] += 1

        for updated in diff.update:
            if updated.old_username != updated.user.username:
                logger.info(f"Renaming user {updated.old_username} -> {updated.user.username}")
            if _apply('update user', updated.old_username,
                      lambda: self.store.update_user(updated.old_username, updated.user)):
                stats['updated'] += 1
            else:
                stats['update_errors'] += 1

    def ban_or_remove_user(self, user: TargetUser) -> Tuple[bool, bool]:
        """
        Advance the lifecycle of a user missing from the directory.

        Returns:
            Tuple of (was_banned, was_removed)
        """
        _, action = next_state(
            ban_state_of(user),
            present_in_source=False,
            banned_since=user.banned_since,
            now=self.clock.now(),
            grace=self.ban_duration,
        )
        if action == LifecycleAction.REMOVE:
            self.store.remove_user(user.username)
            return False, True
        if action == LifecycleAction.BAN:
            self.store.ban_user(user.username)
            return True, False
        logger.debug(f"User {user.username} is banned since {user.banned_since_string()}, not yet removed")
        return False, False

    def sync_groups(self,
                    user_map: Dict[ObjectID, TargetUser],
                    stats: Optional[Dict[str, Any]] = None,
                    membership_stats: Optional[Dict[str, Any]] = None) -> GroupsDiff:
        """
        Sync directory groups and memberships into the registry.

        Raises:
            FetchError: If either snapshot can't be listed
            DecodeError: If a stored payload can't be decoded
            RemoveLimitExceeded: If too many groups would be removed
        """
        if stats is None:
            stats = new_pass_stats()['groups']
        if membership_stats is None:
            membership_stats = new_pass_stats()['memberships']
        logger.info("Start syncing groups")

        source_groups = _fetch(self.source.get_groups_with_members, "directory groups")
        target_groups = _fetch(self.store.get_groups_with_members, "registry groups")

        diff = diff_groups(
            source_groups,
            target_groups,
            user_map,
            self.mapper,
            self.source.create_group_from_raw,
            self.source.source_type,
        )
        if self.is_remove_limit_reached(len(diff.groups_to_remove)):
            names = [group.name for group in diff.groups_to_remove]
            logger.warning(f"Groups to remove: {', '.join(names)}")
            raise RemoveLimitExceeded('groups', len(diff.groups_to_remove), self.remove_limit, names)

        for group in diff.groups_to_remove:
            if _apply('remove group', group.name, lambda: self.store.remove_group(group.name)):
                stats['removed'] += 1
            else:
                stats['remove_errors'] += 1

        for group in diff.groups_to_create:
            if _apply('create group', group.name, lambda: self.store.create_group(group)):
                stats['created'] += 1
            else:
                stats['create_errors'] += 1

        for updated in diff.groups_to_update:
            if _apply('update group', updated.old_name,
                      lambda: self.store.update_group(updated.old_name, updated.group)):
                stats['updated'] += 1
            else:
                stats['update_errors'] += 1

        logger.info(
            f"Finish syncing groups: created={stats['created']} create_errors={stats['create_errors']} "
            f"updated={stats['updated']} update_errors={stats['update_errors']} "
            f"removed={stats['removed']} remove_errors={stats['remove_errors']}"
        )

        logger.info("Start syncing group memberships")
        for membership in diff.members_to_remove:
            target = f"{membership.username} from {membership.group_name}"
            if _apply('remove member', target,
                      lambda: self.store.remove_member(membership.username, membership.group_name)):
                membership_stats['removed'] += 1
            else:
                membership_stats['remove_errors'] += 1

        for membership in diff.members_to_add:
            target = f"{membership.username} to {membership.group_name}"
            if _apply('add member', target,
                      lambda: self.store.add_member(membership.username, membership.group_name)):
                membership_stats['added'] += 1
            else:
                membership_stats['add_errors'] += 1

        logger.info(
            f"Finish syncing group memberships: added={membership_stats['added']} "
            f"add_errors={membership_stats['add_errors']} removed={membership_stats['removed']} "
            f"remove_errors={membership_stats['remove_errors']}"
        )
        return diff


def _fetch(getter: Callable, what: str):
    try:
        return getter()
    except (FetchError, DecodeError):
        raise
    except Exception as e:
        raise FetchError(f"Failed to get {what}: {e}")


def _apply(operation: str, target: str, call: Callable) -> bool:
    """Run one registry mutation; failures are logged and reported as False."""
    try:
        call()
        return True
    except Exception as e:
        _log_mutation_error(operation, target, e)
        return False


def _log_mutation_error(operation: str, target: str, error: Exception):
    logger.error(str(PerEntityMutationError(operation, target, error)))


def log_pass_summary(stats: Dict[str, Any]):
    """Log statistics of a finished pass."""
    runtime = stats.get('runtime_seconds', 0)
    runtime_str = f"{runtime:.2f} seconds"
    if runtime > 60:
        runtime_str = f"{int(runtime // 60)}m {runtime % 60:.1f}s"

    users = stats['users']
    groups = stats['groups']
    memberships = stats['memberships']

    logger.info("=== Sync Summary ===")
    logger.info(f"Total runtime: {runtime_str}")
    logger.info(f"Users [{users['status']}]: created={users['created']} ({users['create_errors']} errors), "
                f"updated={users['updated']} ({users['update_errors']} errors), "
                f"banned={users['banned']}, removed={users['removed']} "
                f"({users['ban_or_remove_errors']} ban/remove errors)")
    if users['error']:
        logger.info(f"  Users error: {users['error']}")
    logger.info(f"Groups [{groups['status']}]: created={groups['created']} ({groups['create_errors']} errors), "
                f"updated={groups['updated']} ({groups['update_errors']} errors), "
                f"removed={groups['removed']} ({groups['remove_errors']} errors)")
    if groups['error']:
        logger.info(f"  Groups error: {groups['error']}")
    logger.info(f"Memberships [{memberships['status']}]: added={memberships['added']} "
                f"({memberships['add_errors']} errors), removed={memberships['removed']} "
                f"({memberships['remove_errors']} errors)")


def pass_failed(stats: Dict[str, Any]) -> bool:
    return STATUS_FAILED in (stats['users']['status'], stats['groups']['status'])


def pass_error_count(stats: Dict[str, Any]) -> int:
    users = stats['users']
    groups = stats['groups']
    memberships = stats['memberships']
    return (users['create_errors'] + users['update_errors'] + users['ban_or_remove_errors']
            + groups['create_errors'] + groups['update_errors'] + groups['remove_errors']
            + memberships['add_errors'] + memberships['remove_errors'])
