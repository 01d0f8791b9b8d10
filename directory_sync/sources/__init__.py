"""Directory backends."""

from typing import Any, Dict

from directory_sync.sources.base import DirectorySource
from directory_sync.sources.azure import AzureSource
from directory_sync.sources.ldap import LdapSource


def create_source(config: Dict[str, Any]) -> DirectorySource:
    """
    Create the directory backend named by the configuration.

    Args:
        config: Full application configuration; exactly one of ``azure`` or
            ``ldap`` sections must be present

    Raises:
        ValueError: If no backend or both backends are configured
    """
    error_handling = config.get('error_handling', {})
    has_azure = bool(config.get('azure'))
    has_ldap = bool(config.get('ldap'))

    if has_azure and has_ldap:
        raise ValueError("Both azure and ldap sources are configured, exactly one is allowed")
    if has_azure:
        return AzureSource(config['azure'], error_handling=error_handling)
    if has_ldap:
        return LdapSource(config['ldap'], error_handling=error_handling)
    raise ValueError("No directory source configured, set either azure or ldap")
