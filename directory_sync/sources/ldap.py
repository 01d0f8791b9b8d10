"""
LDAP directory backend.

Users and groups are read with paged subtree searches under ``base_dn``.
Attribute names are configurable so both OpenLDAP (``uid``/``memberUid``)
and Active Directory style schemas can be used.
"""

import os
import ssl
import time
import logging
from typing import Any, Dict, List, Optional

from ldap3 import Server, Connection, SUBTREE, ALL, Tls
from ldap3.core.exceptions import LDAPException, LDAPBindError

from directory_sync.errors import FetchError
from directory_sync.logging_setup import audit_logger
from directory_sync.models import (
    ObjectID,
    SourceGroup,
    SourceGroupWithMembers,
    SourceUser,
    ensure_mapping,
    string_field,
)
from directory_sync.sources.base import DirectorySource

logger = logging.getLogger(__name__)

SOURCE_TYPE = 'ldap'
DEFAULT_BIND_PASSWORD_ENV_VAR = 'LDAP_BIND_PASSWORD'
PAGED_RESULTS_CONTROL = '1.2.840.113556.1.4.319'


class LDAPConnectionError(ConnectionError):
    """Raised when LDAP connection fails."""
    pass


class LdapUser(SourceUser):

    def __init__(self, username: str = '', uid: str = '', first_name: str = ''):
        self.username = username
        self.uid = uid
        self.first_name = first_name

    @classmethod
    def from_raw(cls, raw: Any) -> 'LdapUser':
        raw = ensure_mapping(raw)
        return cls(
            username=string_field(raw, 'username'),
            uid=string_field(raw, 'uid'),
            first_name=string_field(raw, 'first_name'),
        )

    def get_id(self) -> ObjectID:
        return self.uid

    def get_name(self) -> str:
        return self.username

    def get_raw(self) -> Dict[str, Any]:
        return {
            'username': self.username,
            'uid': self.uid,
            'first_name': self.first_name,
        }

    def __eq__(self, other):
        return isinstance(other, LdapUser) and self.get_raw() == other.get_raw()

    def __repr__(self):
        return f"LdapUser({self.username!r}, uid={self.uid!r})"


class LdapGroup(SourceGroup):
    """LDAP group; the group name doubles as its ObjectID."""

    def __init__(self, groupname: str = ''):
        self.groupname = groupname

    @classmethod
    def from_raw(cls, raw: Any) -> 'LdapGroup':
        raw = ensure_mapping(raw)
        return cls(groupname=string_field(raw, 'groupname'))

    def get_id(self) -> ObjectID:
        return self.groupname

    def get_name(self) -> str:
        return self.groupname

    def get_raw(self) -> Dict[str, Any]:
        return {'groupname': self.groupname}

    def __eq__(self, other):
        return isinstance(other, LdapGroup) and self.groupname == other.groupname

    def __repr__(self):
        return f"LdapGroup({self.groupname!r})"


def _first_value(attributes: Dict[str, List[Any]], name: Optional[str]) -> str:
    if not name:
        return ''
    values = attributes.get(name) or []
    return str(values[0]) if values else ''


class LdapSource(DirectorySource):
    """Users and groups from an LDAP directory."""

    source_type = SOURCE_TYPE

    def __init__(self, config: Dict[str, Any], error_handling: Optional[Dict[str, Any]] = None):
        """
        Initialize LDAP source.

        Args:
            config: ``ldap`` configuration section
            error_handling: Retry settings for connecting
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config.get('bind_dn', '')
        password_env_var = config.get('bind_password_env_var') or DEFAULT_BIND_PASSWORD_ENV_VAR
        self.bind_password = config.get('bind_password') or os.environ.get(password_env_var, '')
        self.base_dn = config['base_dn']

        users_config = config.get('users') or {}
        self.users_filter = users_config.get('filter', '(objectClass=posixAccount)')
        self.username_attribute = users_config.get('username_attribute_type', 'uid')
        self.uid_attribute = users_config.get('uid_attribute_type', 'uidNumber')
        self.first_name_attribute = users_config.get('first_name_attribute_type')

        groups_config = config.get('groups') or {}
        self.groups_filter = groups_config.get('filter', '(objectClass=posixGroup)')
        self.groupname_attribute = groups_config.get('groupname_attribute_type', 'cn')
        self.member_uid_attribute = groups_config.get('member_uid_attribute_type', 'memberUid')

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.page_size = config.get('page_size', 1000)

        error_handling = error_handling or {}
        self.max_retries = error_handling.get('max_retries', 3)
        self.retry_wait = error_handling.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None

    def connect(self):
        """
        Establish connection to LDAP server with retry logic.

        Raises:
            LDAPConnectionError: If connection fails after all retries
        """
        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
        except LDAPException as e:
            raise LDAPConnectionError(f"Failed to create LDAP server: {e}")

        attempts = max(1, self.max_retries)
        last_exception = None
        for attempt in range(attempts):
            try:
                self.connection = Connection(
                    self.server,
                    user=self.bind_dn,
                    password=self.bind_password,
                    auto_bind=False,
                    receive_timeout=self.receive_timeout
                )

                if not self.connection.open():
                    raise LDAPConnectionError(f"Failed to open connection: {self.connection.result}")

                if self.start_tls and not self.use_ssl:
                    if not self.connection.start_tls():
                        raise LDAPConnectionError(f"Failed to start TLS: {self.connection.result}")
                    logger.debug("StartTLS negotiation successful")

                if not self.connection.bind():
                    raise LDAPBindError(f"Bind failed: {self.connection.result}")

                audit_logger.log_authentication_attempt("LDAP", self.bind_dn, success=True)
                logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
                return

            except (LDAPException, LDAPConnectionError) as e:
                last_exception = e
                logger.warning(f"LDAP connection attempt {attempt + 1}/{attempts} failed: {e}")
                self.close()
                if attempt < attempts - 1:
                    time.sleep(self.retry_wait)

        audit_logger.log_authentication_attempt("LDAP", self.bind_dn, success=False)
        raise LDAPConnectionError(f"Failed to connect to LDAP after {attempts} attempts: {last_exception}")

    def _create_tls_config(self) -> Optional[Tls]:
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {'validate': ssl.CERT_REQUIRED if self.verify_ssl else ssl.CERT_NONE}
        if not self.verify_ssl:
            logger.warning("SSL certificate verification disabled")
        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file
            logger.debug("Client certificate configured for mutual TLS")

        try:
            return Tls(**tls_config)
        except LDAPException as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}")

    def close(self):
        if self.connection:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except LDAPException as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self.connection = None

    def create_user_from_raw(self, raw: Dict[str, Any]) -> LdapUser:
        return LdapUser.from_raw(raw)

    def create_group_from_raw(self, raw: Dict[str, Any]) -> LdapGroup:
        return LdapGroup.from_raw(raw)

    def _search(self, search_filter: str, attributes: List[str]) -> List[Dict[str, List[Any]]]:
        """
        Run a paged subtree search under ``base_dn``.

        Returns:
            Attribute dictionaries of all found entries

        Raises:
            FetchError: If not connected or the search fails
        """
        if self.connection is None:
            raise FetchError("Not connected to LDAP server")

        results = []
        cookie = None
        page_count = 0
        try:
            while True:
                success = self.connection.search(
                    search_base=self.base_dn,
                    search_filter=search_filter,
                    search_scope=SUBTREE,
                    attributes=attributes,
                    paged_size=self.page_size,
                    paged_cookie=cookie
                )
                if not success and self.connection.result.get('description') != 'success':
                    raise FetchError(f"LDAP search {search_filter} failed: {self.connection.result}")

                page_count += 1
                results.extend(entry.entry_attributes_as_dict for entry in self.connection.entries)

                controls = self.connection.result.get('controls') or {}
                cookie = controls.get(PAGED_RESULTS_CONTROL, {}).get('value', {}).get('cookie')
                if not cookie:
                    break
        except LDAPException as e:
            raise FetchError(f"LDAP search {search_filter} failed: {e}")

        logger.debug(f"LDAP search {search_filter}: {len(results)} entries across {page_count} pages")
        return results

    def get_users(self) -> List[LdapUser]:
        attributes = [self.username_attribute, self.uid_attribute]
        if self.first_name_attribute:
            attributes.append(self.first_name_attribute)

        users = []
        for entry in self._search(self.users_filter, attributes):
            users.append(LdapUser(
                username=_first_value(entry, self.username_attribute),
                uid=_first_value(entry, self.uid_attribute),
                first_name=_first_value(entry, self.first_name_attribute),
            ))

        logger.info(f"Fetched {len(users)} users from LDAP")
        return users

    def get_groups_with_members(self) -> List[SourceGroupWithMembers]:
        attributes = [self.groupname_attribute, self.member_uid_attribute]

        groups = []
        for entry in self._search(self.groups_filter, attributes):
            members = {str(value) for value in entry.get(self.member_uid_attribute) or []}
            groups.append(SourceGroupWithMembers(
                source_group=LdapGroup(groupname=_first_value(entry, self.groupname_attribute)),
                members=members,
            ))

        logger.info(f"Fetched {len(groups)} groups from LDAP")
        return groups
