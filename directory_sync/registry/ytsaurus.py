"""
YTsaurus registry backend over the HTTP proxy API (v4).

Users live under ``//sys/users`` and groups under ``//sys/groups``. An entity
is managed when it carries the provenance attribute (``@source`` by default)
written by this service together with ``@source_type``.
"""

import os
import json
import logging
from typing import Any, Callable, Dict, List, Optional

from directory_sync.clock import Clock, RealClock
from directory_sync.errors import FetchError, ManualManagementViolation
from directory_sync.http_client import RestClientBase, RestAPIError
from directory_sync.logging_setup import audit_logger
from directory_sync.models import (
    TargetGroup,
    TargetGroupWithMembers,
    TargetUser,
    format_time,
    parse_time,
)
from directory_sync.registry.base import TargetStore
from directory_sync.retry import MaxRetriesExceeded, retry_with_config

logger = logging.getLogger(__name__)

USERS_PATH = '//sys/users'
GROUPS_PATH = '//sys/groups'
DEFAULT_SECRET_ENV_VAR = 'YT_TOKEN'
DEFAULT_SOURCE_ATTRIBUTE = 'source'


class YtsaurusClient(RestClientBase):
    """Thin client for YTsaurus HTTP proxy commands."""

    API_PREFIX = '/api/v4'

    def __init__(self, config: Dict[str, Any]):
        secret_env_var = config.get('secret_env_var') or DEFAULT_SECRET_ENV_VAR
        token = config.get('token') or os.environ.get(secret_env_var)
        if not token:
            raise ValueError(f"YTsaurus secret in {secret_env_var} env var shouldn't be empty")

        proxy = config['proxy']
        if '://' not in proxy:
            proxy = f"http://{proxy}"

        super().__init__({
            'name': 'YTsaurus',
            'base_url': proxy.rstrip('/') + self.API_PREFIX,
            'timeout': config.get('timeout', 30),
            'verify_ssl': config.get('verify_ssl', True),
            'truststore_file': config.get('truststore_file'),
            'auth': {'method': 'oauth', 'token': token},
        })

    def execute(self, command: str, parameters: Dict[str, Any], body: Optional[Any] = None,
                method: str = 'POST') -> Any:
        """
        Run a proxy command.

        Returns:
            The ``value`` of the response for commands that return one,
            otherwise the whole decoded response
        """
        headers = {
            'X-YT-Parameters': json.dumps(parameters),
            'X-YT-Header-Format': 'json',
            'X-YT-Output-Format': 'json',
        }
        if body is not None:
            headers['X-YT-Input-Format'] = 'json'
        response = self.request(method, command, body=body, headers=headers)
        if isinstance(response, dict) and 'value' in response:
            return response['value']
        return response


def _node_value(node: Any) -> Any:
    if isinstance(node, dict) and '$value' in node:
        return node['$value']
    return node


def _node_attributes(node: Any) -> Dict[str, Any]:
    if isinstance(node, dict):
        return node.get('$attributes') or {}
    return {}


def _optional_string(value: Any) -> Optional[str]:
    value = _node_value(value)
    return value if isinstance(value, str) else None


class YtsaurusStore(TargetStore):
    """Registry store backed by a YTsaurus cluster."""

    def __init__(self, config: Dict[str, Any], source_type: str,
                 clock: Optional[Clock] = None, client: Optional[YtsaurusClient] = None):
        """
        Initialize YTsaurus store.

        Args:
            config: ``ytsaurus`` configuration section (with ``error_handling``)
            source_type: Type of the active directory backend
            clock: Time source for ban timestamps
            client: Pre-built proxy client, created from config when omitted
        """
        self.source_type = source_type
        self.clock = clock or RealClock()
        self.client = client or YtsaurusClient(config)
        self.error_handling = config.get('error_handling', {})

        self.dry_run_users = not config.get('apply_user_changes', False)
        self.dry_run_groups = not config.get('apply_group_changes', False)
        self.dry_run_members = not config.get('apply_member_changes', False)

        self.debug_usernames = config.get('debug_usernames') or []
        self.debug_groupnames = config.get('debug_groupnames') or []
        self.source_attribute = config.get('source_attribute_name') or DEFAULT_SOURCE_ATTRIBUTE

        if self.dry_run_users or self.dry_run_groups or self.dry_run_members:
            logger.warning(f"YTsaurus dry-run mode: users={self.dry_run_users} "
                           f"groups={self.dry_run_groups} members={self.dry_run_members}")

    def close(self):
        self.client.close_connection()

    def check_connection(self) -> bool:
        return bool(self.client.execute('exists', {'path': USERS_PATH}, method='GET'))

    def _list(self, path: str, attributes: List[str]) -> List[Any]:
        try:
            return retry_with_config(
                self.client.execute, self.error_handling, f"YTsaurus list {path}",
                'list', {'path': path, 'attributes': attributes}, method='GET',
            )
        except (RestAPIError, MaxRetriesExceeded) as e:
            raise FetchError(f"Failed to list {path}: {e}")

    def get_users(self) -> List[TargetUser]:
        """
        List managed users.

        Raises:
            FetchError: If the listing fails
            DecodeError: If a ``banned_since`` value can't be parsed
        """
        nodes = self._list(USERS_PATH, [self.source_attribute, 'source_type', 'banned_since'])

        users = []
        managed = []
        for node in nodes:
            attributes = _node_attributes(node)
            user = TargetUser(
                username=str(_node_value(node)),
                source_raw=_node_value(attributes.get(self.source_attribute)),
                source_type=_optional_string(attributes.get('source_type')),
                banned_since=parse_time(_optional_string(attributes.get('banned_since'))),
            )
            users.append(user)
            self._maybe_print_extra_logs(user.username, 'get_user', user=user)
            if not user.is_manually_managed(self.source_type):
                managed.append(user)

        logger.info(f"Fetched all users from YTsaurus: total={len(users)} managed={len(managed)}")
        return managed

    def get_groups_with_members(self) -> List[TargetGroupWithMembers]:
        nodes = self._list(GROUPS_PATH, [self.source_attribute, 'source_type', 'members'])

        groups = []
        managed = []
        for node in nodes:
            attributes = _node_attributes(node)
            group = TargetGroupWithMembers(
                group=TargetGroup(
                    name=str(_node_value(node)),
                    source_raw=_node_value(attributes.get(self.source_attribute)),
                    source_type=_optional_string(attributes.get('source_type')),
                ),
                members={str(_node_value(member)) for member in _node_value(attributes.get('members')) or []},
            )
            groups.append(group)
            self._maybe_print_extra_logs(group.name, 'get_group', group=group)
            if not group.group.is_manually_managed(self.source_type):
                managed.append(group)

        logger.info(f"Fetched all groups from YTsaurus: total={len(groups)} managed={len(managed)}")
        return managed

    def _is_managed(self, path: str) -> bool:
        return bool(self.client.execute('exists', {'path': f"{path}/@{self.source_attribute}"}, method='GET'))

    def _ensure_user_managed(self, username: str):
        if not self._is_managed(f"{USERS_PATH}/{username}"):
            raise ManualManagementViolation(f"Prevented attempt to change manually managed user {username}")

    def _ensure_group_managed(self, name: str):
        if not self._is_managed(f"{GROUPS_PATH}/{name}"):
            raise ManualManagementViolation(f"Prevented attempt to change manually managed group {name}")

    def _ensure_member_managed(self, username: str, group_name: str):
        self._ensure_user_managed(username)
        self._ensure_group_managed(group_name)

    def _mutate(self, operation: str, target: str, dry_run: bool, call: Callable,
                guard: Optional[Callable[[], None]] = None):
        """
        Run a mutation unless in dry-run mode, recording it in the audit log.

        ``guard`` runs only for real writes. Group and membership changes pass
        their managed-entity checks here, since in a dry run the entities they
        address may have been created in the same pass and not exist yet.
        """
        if dry_run:
            logger.info(f"[DRY-RUN] Going to {operation} {target}")
            audit_logger.log_mutation(operation, target, success=True, dry_run=True)
            return
        if guard is not None:
            guard()
        logger.debug(f"Going to {operation} {target}")
        try:
            call()
        except Exception:
            audit_logger.log_mutation(operation, target, success=False)
            raise
        audit_logger.log_mutation(operation, target, success=True)

    def _set_attributes(self, path: str, attributes: Dict[str, Any]):
        self.client.execute('multiset_attributes', {'path': f"{path}/@"}, body=attributes)

    def _user_attributes(self, old_username: str, user: TargetUser) -> Dict[str, Any]:
        attributes = {
            self.source_attribute: user.source_raw,
            'source_type': user.source_type,
            'banned': user.is_banned(),
            'banned_since': user.banned_since_string(),
        }
        # Setting @name to its current value is rejected by the cluster
        if user.username != old_username:
            attributes['name'] = user.username
        return attributes

    def create_user(self, user: TargetUser):
        self._maybe_print_extra_logs(user.username, 'create_user', user=user)
        attributes = {
            'name': user.username,
            self.source_attribute: user.source_raw,
            'source_type': user.source_type,
        }
        self._mutate('create user', user.username, self.dry_run_users,
                     lambda: self.client.execute('create_object', {'type': 'user', 'attributes': attributes}))

    def update_user(self, old_username: str, user: TargetUser):
        self._ensure_user_managed(old_username)
        self._maybe_print_extra_logs(old_username, 'update_user', username=old_username, user=user)
        self._maybe_print_extra_logs(user.username, 'update_user', username=old_username, user=user)
        attributes = self._user_attributes(old_username, user)
        self._mutate('update user', old_username, self.dry_run_users,
                     lambda: self._set_attributes(f"{USERS_PATH}/{old_username}", attributes))

    def remove_user(self, username: str):
        self._ensure_user_managed(username)
        self._maybe_print_extra_logs(username, 'remove_user', username=username)
        self._mutate('remove user', username, self.dry_run_users,
                     lambda: self.client.execute('remove', {'path': f"{USERS_PATH}/{username}"}))

    def ban_user(self, username: str):
        self._ensure_user_managed(username)
        self._maybe_print_extra_logs(username, 'ban_user', username=username)
        attributes = {
            'banned': True,
            'banned_since': format_time(self.clock.now()),
        }
        self._mutate('ban user', username, self.dry_run_users,
                     lambda: self._set_attributes(f"{USERS_PATH}/{username}", attributes))

    def create_group(self, group: TargetGroup):
        self._maybe_print_extra_logs(group.name, 'create_group', group=group)
        attributes = {
            'name': group.name,
            self.source_attribute: group.source_raw,
            'source_type': group.source_type,
        }
        self._mutate('create group', group.name, self.dry_run_groups,
                     lambda: self.client.execute('create_object', {'type': 'group', 'attributes': attributes}))

    def update_group(self, old_name: str, group: TargetGroup):
        self._maybe_print_extra_logs(old_name, 'update_group', groupname=old_name, group=group)
        self._maybe_print_extra_logs(group.name, 'update_group', groupname=old_name, group=group)
        attributes = {
            self.source_attribute: group.source_raw,
            'source_type': group.source_type,
        }
        if group.name != old_name:
            attributes['name'] = group.name
        self._mutate('update group', old_name, self.dry_run_groups,
                     lambda: self._set_attributes(f"{GROUPS_PATH}/{old_name}", attributes),
                     guard=lambda: self._ensure_group_managed(old_name))

    def remove_group(self, name: str):
        self._maybe_print_extra_logs(name, 'remove_group', groupname=name)
        self._mutate('remove group', name, self.dry_run_groups,
                     lambda: self.client.execute('remove', {'path': f"{GROUPS_PATH}/{name}"}),
                     guard=lambda: self._ensure_group_managed(name))

    def add_member(self, username: str, group_name: str):
        self._maybe_print_extra_logs(group_name, 'add_member', username=username, groupname=group_name)
        self._maybe_print_extra_logs(username, 'add_member', username=username, groupname=group_name)
        self._mutate('add member', f"{username} to {group_name}", self.dry_run_members,
                     lambda: self.client.execute('add_member', {'group': group_name, 'member': username}),
                     guard=lambda: self._ensure_member_managed(username, group_name))

    def remove_member(self, username: str, group_name: str):
        self._maybe_print_extra_logs(group_name, 'remove_member', username=username, groupname=group_name)
        self._maybe_print_extra_logs(username, 'remove_member', username=username, groupname=group_name)
        self._mutate('remove member', f"{username} from {group_name}", self.dry_run_members,
                     lambda: self.client.execute('remove_member', {'group': group_name, 'member': username}),
                     guard=lambda: self._ensure_member_managed(username, group_name))

    def _maybe_print_extra_logs(self, name: str, event: str, **fields):
        if name in self.debug_usernames or name in self.debug_groupnames:
            details = ', '.join(f"{key}={value!r}" for key, value in fields.items())
            logger.info(f"Debug info: debug_name={name} event={event} {details}")
