"""
User identity resolution for cross-directory matching.

Users living in two independent directories never share an object id, so they
are matched by a configurable attribute (display name by default). This module
turns the configured attribute name into a function that extracts the
comparison key from a user record.
"""

import logging
from functools import lru_cache
from typing import Any, Callable, Dict, Optional, Tuple

from group_sync.config import ConfigurationError

logger = logging.getLogger(__name__)


FIELD_ID = 'id'
FIELD_DISPLAY_NAME = 'displayName'
FIELD_USER_PRINCIPAL_NAME = 'userPrincipalName'
FIELD_SAM_ACCOUNT_NAME = 'onPremisesSamAccountName'
FIELD_EMPLOYEE_ID = 'employeeId'

DEFAULT_USER_FIELD_NAME = FIELD_DISPLAY_NAME


def _display_name(user: Dict[str, Any]) -> Optional[str]:
    return user.get(FIELD_DISPLAY_NAME)


def _user_principal_name(user: Dict[str, Any]) -> Optional[str]:
    return user.get(FIELD_USER_PRINCIPAL_NAME)


def _sam_account_name(user: Dict[str, Any]) -> Optional[str]:
    return user.get(FIELD_SAM_ACCOUNT_NAME)


def _object_id(user: Dict[str, Any]) -> Optional[str]:
    return user.get(FIELD_ID)


def _employee_id(user: Dict[str, Any]) -> Optional[str]:
    return user.get(FIELD_EMPLOYEE_ID)


# Commonly used attributes, keyed by lower-cased name
WELL_KNOWN_ACCESSORS: Dict[str, Tuple[str, Callable[[Dict[str, Any]], Optional[str]]]] = {
    FIELD_DISPLAY_NAME.lower(): (FIELD_DISPLAY_NAME, _display_name),
    FIELD_USER_PRINCIPAL_NAME.lower(): (FIELD_USER_PRINCIPAL_NAME, _user_principal_name),
    FIELD_SAM_ACCOUNT_NAME.lower(): (FIELD_SAM_ACCOUNT_NAME, _sam_account_name),
    FIELD_ID.lower(): (FIELD_ID, _object_id),
    FIELD_EMPLOYEE_ID.lower(): (FIELD_EMPLOYEE_ID, _employee_id),
}

# String-valued properties of a directory user that may also serve as identity
USER_STRING_ATTRIBUTES = (
    'mail',
    'mailNickname',
    'givenName',
    'surname',
    'department',
    'jobTitle',
    'companyName',
    'employeeType',
    'officeLocation',
    'city',
    'country',
    'state',
    'postalCode',
    'streetAddress',
    'mobilePhone',
    'usageLocation',
    'preferredLanguage',
    'externalUserState',
    'userType',
    'onPremisesImmutableId',
    'onPremisesUserPrincipalName',
    'onPremisesDistinguishedName',
    'onPremisesDomainName',
    'onPremisesSecurityIdentifier',
    'securityIdentifier',
)

_STRING_ATTRIBUTES_BY_LOWER = {name.lower(): name for name in USER_STRING_ATTRIBUTES}


def _named_string_field(attribute: str) -> Callable[[Dict[str, Any]], Optional[str]]:
    """Build an accessor reading one string property from a user record."""
    def accessor(user: Dict[str, Any]) -> Optional[str]:
        value = user.get(attribute)
        return value if isinstance(value, str) else None
    return accessor


class IdentityResolver:
    """
    Extracts the identity key of a user record for one side of the sync.

    The key is compared case-insensitively, one character at a time. Only a
    missing value means "no key"; an empty string is a key like any other.
    """

    def __init__(self, attribute: str):
        if not attribute or not attribute.strip():
            raise ConfigurationError("User attribute name must not be empty")

        lowered = attribute.strip().lower()
        if lowered in WELL_KNOWN_ACCESSORS:
            self.attribute, self._accessor = WELL_KNOWN_ACCESSORS[lowered]
        elif lowered in _STRING_ATTRIBUTES_BY_LOWER:
            self.attribute = _STRING_ATTRIBUTES_BY_LOWER[lowered]
            self._accessor = _named_string_field(self.attribute)
        else:
            raise ConfigurationError(
                f"Unknown or unsupported user attribute '{attribute}'"
            )

    @property
    def is_id(self) -> bool:
        return self.attribute == FIELD_ID

    @property
    def is_display_name(self) -> bool:
        return self.attribute == FIELD_DISPLAY_NAME

    def key_of(self, user: Dict[str, Any]) -> Optional[str]:
        """Return the identity key of the user, or None if it has none."""
        value = self._accessor(user)
        if value is None:
            return None
        return str(value)

    def matches(self, user: Dict[str, Any], key: Optional[str]) -> bool:
        """Check if the user's identity key equals the given key, ignoring case."""
        if key is None:
            return False
        value = self.key_of(user)
        return value is not None and normalize_key(value) == normalize_key(key)

    def select_fields(self) -> str:
        """Comma separated list of properties to request when reading users."""
        if self.is_id or self.is_display_name:
            return 'displayName,id'
        return f'displayName,id,{self.attribute}'

    def __repr__(self) -> str:
        return f"IdentityResolver({self.attribute!r})"


@lru_cache(maxsize=None)
def resolve_identity(attribute: str) -> IdentityResolver:
    """
    Return the resolver for an attribute name.

    Resolvers are memoized, so asking twice for the same configuration returns
    the same object.

    Raises:
        ConfigurationError: If the attribute is not a known user property
    """
    resolver = IdentityResolver(attribute)
    logger.debug(f"Resolved user identity attribute '{attribute}' -> {resolver.attribute}")
    return resolver


def _fold_char(char: str) -> str:
    upper = char.upper()
    if len(upper) == 1:
        char = upper
    lower = char.lower()
    return lower if len(lower) == 1 else char


def normalize_key(key: str) -> str:
    """
    Case-insensitive, locale-independent form of an identity key.

    Each character is upper-cased then lower-cased on its own, and mappings
    that would change the length of the text are skipped, so 'Straße' and
    'STRASSE' stay distinct keys while 'Jane.Doe' and 'JANE.DOE' do not.
    """
    return ''.join(_fold_char(char) for char in key)
