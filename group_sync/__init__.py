"""
Group Sync - Copy group memberships from one directory to another.

Groups selected by name prefix in a source directory (an Azure AD tenant, or a
read-only LDAP directory) are matched by name with the groups of a destination
Azure AD tenant, and their members are matched by a configurable user attribute.
"""

__version__ = "1.0.0"
__author__ = "Group Sync Team"
