"""
Base directory gateway interface.

This module defines the abstract base class that all directory integrations must
implement. The reconciliation engine only talks to directories through it.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Iterator, Optional

from group_sync.identity import IdentityResolver
from group_sync.retry import RetryableError

logger = logging.getLogger(__name__)

# Properties copied from a source group when it is created at the destination
GROUP_CREATION_FIELDS = (
    'description',
    'displayName',
    'isAssignableToRole',
    'mailEnabled',
    'securityEnabled',
    'mailNickname',
)


class GatewayError(Exception):
    """Base exception for directory gateway errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GatewayNotFoundError(GatewayError):
    """Raised when the requested directory object does not exist."""

    def __init__(self, message: str):
        super().__init__(message, status_code=404)


class GatewayAuthenticationError(GatewayError):
    """Raised when authentication to the directory fails."""
    pass


class GatewayConnectionError(GatewayError, RetryableError):
    """Raised when the directory cannot be reached."""
    pass


class DirectoryGateway(ABC):
    """
    Abstract base class for directory integrations.

    Groups and users are plain dictionaries keyed by the directory's property
    names ('id', 'displayName', ...). A "not found" condition on read paths is
    returned as None or as an empty sequence, never raised.
    """

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    def find_group_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        """
        Return the group whose display name equals the given name, ignoring case.

        Args:
            name: Group display name

        Returns:
            Group dictionary (at least 'id' and 'displayName') or None
        """

    @abstractmethod
    def get_group(self, group_id: str) -> Optional[Dict[str, Any]]:
        """Return the group with all properties in GROUP_CREATION_FIELDS, or None."""

    @abstractmethod
    def find_user_by_key(self, key: str, resolver: IdentityResolver) -> Optional[Dict[str, Any]]:
        """
        Return the user whose identity key (as read by the resolver) equals the key.

        Args:
            key: Identity key to look for
            resolver: Identity resolver configured for this directory

        Returns:
            User dictionary or None
        """

    @abstractmethod
    def list_groups_by_prefixes(self, prefixes: Iterable[str]) -> Iterator[Dict[str, Any]]:
        """Lazily yield every group whose display name starts with one of the prefixes."""

    @abstractmethod
    def list_group_members(self, group_id: Optional[str], resolver: IdentityResolver) -> Iterator[Dict[str, Any]]:
        """
        Lazily yield the users that are direct members of a group.

        Non-user members are skipped. An absent group yields nothing.
        """

    def create_group(self, group: Dict[str, Any]) -> Dict[str, Any]:
        """Create a group and return it as stored by the directory."""
        raise GatewayError(f"Directory {self.name} is read-only")

    def add_member(self, group_id: str, user_id: str):
        """Add a user as a member of a group."""
        raise GatewayError(f"Directory {self.name} is read-only")

    def remove_member(self, group_id: str, user_id: str):
        """Remove a user from the members of a group."""
        raise GatewayError(f"Directory {self.name} is read-only")

    def close(self):
        """Release any connection held by the gateway."""

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()


def copy_group_fields(group: Dict[str, Any]) -> Dict[str, Any]:
    """New, unsaved group carrying the creation properties of an existing one."""
    return {field: group.get(field) for field in GROUP_CREATION_FIELDS}
