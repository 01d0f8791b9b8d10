"""
Azure AD directory backend over the Microsoft Graph REST API.
"""

import os
import re
import logging
from typing import Any, Dict, List, Optional

from directory_sync.errors import FetchError
from directory_sync.http_client import RestClientBase, RestAPIError
from directory_sync.models import (
    ObjectID,
    SourceGroup,
    SourceGroupWithMembers,
    SourceUser,
    ensure_mapping,
    string_field,
)
from directory_sync.retry import retry_with_config
from directory_sync.sources.base import DirectorySource

logger = logging.getLogger(__name__)

SOURCE_TYPE = 'azure'

GRAPH_URL = 'https://graph.microsoft.com/v1.0'
LOGIN_URL = 'https://login.microsoftonline.com'
GRAPH_SCOPE = 'https://graph.microsoft.com/.default'
DEFAULT_SECRET_ENV_VAR = 'AZURE_CLIENT_SECRET'

# $expand returns at most this many members per group
GRAPH_EXPAND_LIMIT = 20

USER_FIELDS = ['userPrincipalName', 'id', 'mail', 'givenName', 'surname', 'displayName', 'accountEnabled']
GROUP_FIELDS = ['id', 'displayName']


class AzureUser(SourceUser):
    """Azure AD user. The principal name becomes the registry username."""

    def __init__(self, principal_name: str = '', azure_id: str = '', email: str = '',
                 first_name: str = '', last_name: str = '', display_name: str = ''):
        self.principal_name = principal_name
        self.azure_id = azure_id
        self.email = email
        self.first_name = first_name
        self.last_name = last_name
        self.display_name = display_name

    @classmethod
    def from_raw(cls, raw: Any) -> 'AzureUser':
        raw = ensure_mapping(raw)
        return cls(
            principal_name=string_field(raw, 'principal_name'),
            azure_id=string_field(raw, 'id'),
            email=string_field(raw, 'email'),
            first_name=string_field(raw, 'first_name'),
            last_name=string_field(raw, 'last_name'),
            display_name=string_field(raw, 'display_name'),
        )

    def get_id(self) -> ObjectID:
        return self.azure_id

    def get_name(self) -> str:
        return self.principal_name

    def get_raw(self) -> Dict[str, Any]:
        return {
            'principal_name': self.principal_name,
            'id': self.azure_id,
            'email': self.email,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'display_name': self.display_name,
        }

    def __eq__(self, other):
        return isinstance(other, AzureUser) and self.get_raw() == other.get_raw()

    def __repr__(self):
        return f"AzureUser({self.principal_name!r}, id={self.azure_id!r})"


class AzureGroup(SourceGroup):
    """Azure AD group. ``identity`` becomes the registry group name."""

    def __init__(self, identity: str = '', azure_id: str = '', display_name: str = ''):
        self.identity = identity
        self.azure_id = azure_id
        self.display_name = display_name

    @classmethod
    def from_raw(cls, raw: Any) -> 'AzureGroup':
        raw = ensure_mapping(raw)
        return cls(
            identity=string_field(raw, 'identity'),
            azure_id=string_field(raw, 'id'),
            display_name=string_field(raw, 'display_name'),
        )

    def get_id(self) -> ObjectID:
        return self.azure_id

    def get_name(self) -> str:
        return self.identity

    def get_raw(self) -> Dict[str, Any]:
        return {
            'identity': self.identity,
            'id': self.azure_id,
            'display_name': self.display_name,
        }

    def __eq__(self, other):
        return isinstance(other, AzureGroup) and self.get_raw() == other.get_raw()

    def __repr__(self):
        return f"AzureGroup({self.identity!r}, id={self.azure_id!r})"


class GraphClient(RestClientBase):
    """Microsoft Graph client authenticated with OAuth2 client credentials."""

    def __init__(self, config: Dict[str, Any]):
        secret_env_var = config.get('client_secret_env_var') or DEFAULT_SECRET_ENV_VAR
        secret = config.get('client_secret') or os.environ.get(secret_env_var)
        if not secret:
            raise ValueError(f"Azure secret in {secret_env_var} env var shouldn't be empty")

        client_config = {
            'name': 'Microsoft Graph',
            'base_url': config.get('graph_url', GRAPH_URL),
            'timeout': config.get('timeout', 30),
            'verify_ssl': config.get('verify_ssl', True),
            'auth': {
                'method': 'oauth2',
                'client_id': config.get('client_id'),
                'client_secret': secret,
                'token_url': config.get('token_url') or
                             f"{LOGIN_URL}/{config.get('tenant')}/oauth2/v2.0/token",
                'scope': GRAPH_SCOPE,
            },
        }
        super().__init__(client_config)

    def get_all(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        Collect every item of a paged collection by following ``@odata.nextLink``.

        Raises:
            RestAPIError: If any page request fails
        """
        if not self.authenticate():
            raise RestAPIError(f"Failed to authenticate to {self.name}")

        headers = {'ConsistencyLevel': 'eventual'}
        items = []
        response = self.request('GET', path, headers=headers, params=params)
        items.extend(response.get('value', []))
        next_link = response.get('@odata.nextLink')
        while next_link:
            response = self.request('GET', next_link, headers=headers)
            items.extend(response.get('value', []))
            next_link = response.get('@odata.nextLink')
        return items


class AzureSource(DirectorySource):
    """Azure AD users and groups."""

    source_type = SOURCE_TYPE

    def __init__(self, config: Dict[str, Any], client: Optional[GraphClient] = None,
                 error_handling: Optional[Dict[str, Any]] = None):
        """
        Initialize Azure source.

        Args:
            config: ``azure`` configuration section
            client: Pre-built Graph client, created from config when omitted
            error_handling: Retry settings for listing calls

        Raises:
            ValueError: If the secret is missing or the post filter is not a valid regex
        """
        self.config = config
        self.users_filter = config.get('users_filter', '')
        self.groups_filter = config.get('groups_filter', '')
        self.debug_azure_ids = config.get('debug_azure_ids') or []
        self.error_handling = error_handling or {}

        if config.get('groups_display_name_suffix_post_filter'):
            raise ValueError("groups_display_name_suffix_post_filter is deprecated, "
                             "use groups_display_name_regex_post_filter")

        self.groups_post_filter = None
        post_filter = config.get('groups_display_name_regex_post_filter')
        if post_filter:
            try:
                self.groups_post_filter = re.compile(post_filter)
            except re.error as e:
                raise ValueError(f"Failed to compile groups_display_name_regex_post_filter: {e}")

        self.client = client or GraphClient(config)

    def close(self):
        self.client.close_connection()

    def create_user_from_raw(self, raw: Dict[str, Any]) -> AzureUser:
        return AzureUser.from_raw(raw)

    def create_group_from_raw(self, raw: Dict[str, Any]) -> AzureGroup:
        return AzureGroup.from_raw(raw)

    def _list(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        try:
            return retry_with_config(self.client.get_all, self.error_handling,
                                     f"Azure listing of {path}", path, params)
        except Exception as e:
            raise FetchError(f"Failed to list {path} from Azure: {e}")

    def get_users(self) -> List[AzureUser]:
        params = {
            '$select': ','.join(USER_FIELDS),
            '$count': 'true',
        }
        if self.users_filter:
            params['$filter'] = self.users_filter
        raw_users = self._list('users', params)

        users = []
        skipped = 0
        for item in raw_users:
            user = AzureUser(
                principal_name=item.get('userPrincipalName') or '',
                azure_id=item.get('id') or '',
                email=item.get('mail') or '',
                first_name=item.get('givenName') or '',
                last_name=item.get('surname') or '',
                display_name=item.get('displayName') or '',
            )
            self.maybe_print_debug_logs(
                user.azure_id, self.debug_azure_ids,
                principal_name=user.principal_name,
                mail=user.email,
                first_name=user.first_name,
                last_name=user.last_name,
                display_name=user.display_name,
            )
            if not user.principal_name:
                logger.debug(f"Skipping user with empty principal name: {user.azure_id}")
                skipped += 1
                continue
            users.append(user)

        logger.info(f"Fetched users from Azure AD: got={len(raw_users)} skipped={skipped}")
        return users

    def get_groups_with_members(self) -> List[SourceGroupWithMembers]:
        params = {
            '$select': ','.join(GROUP_FIELDS),
            '$expand': 'members($select=id)',
            '$count': 'true',
        }
        if self.groups_filter:
            params['$filter'] = self.groups_filter
        raw_groups = self._list('groups', params)

        groups = []
        skipped = 0
        for item in raw_groups:
            group_id = item.get('id') or ''
            display_name = item.get('displayName') or ''
            self.maybe_print_debug_logs(group_id, self.debug_azure_ids, display_name=display_name)

            if not display_name:
                logger.debug(f"Skipping group with empty display name: {group_id}")
                skipped += 1
                continue

            if self.groups_post_filter and not self.groups_post_filter.search(display_name):
                continue

            members = item.get('members') or []
            if len(members) == GRAPH_EXPAND_LIMIT:
                members = self._list(f"groups/{group_id}/members", {'$select': 'id'})

            member_ids = set()
            for member in members:
                member_id = member.get('id')
                if not member_id:
                    logger.error(f"Empty group member id in group {display_name}")
                    continue
                member_ids.add(member_id)
            self.maybe_print_debug_logs(group_id, self.debug_azure_ids, azure_members_count=len(member_ids))

            groups.append(SourceGroupWithMembers(
                source_group=AzureGroup(identity=display_name, azure_id=group_id, display_name=display_name),
                members=member_ids,
            ))

        logger.info(f"Fetched groups from Azure AD: got={len(raw_groups)} skipped={skipped}")
        return groups
