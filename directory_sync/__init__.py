"""
Directory Sync - Reconcile users, groups and memberships from a corporate directory into YTsaurus.

Supports Azure AD (Microsoft Graph) and LDAP directories as sources. The
registry keeps the directory payload of every managed entity, which is used
to track renames and to leave manually created users and groups untouched.
"""

__version__ = "1.0.0"
