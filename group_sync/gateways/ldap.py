"""
Read-only LDAP directory gateway.

Lets an on-premises Active Directory act as the source of a sync. Entries are
mapped onto the same property names the Graph API uses, so identity attributes
such as 'onPremisesSamAccountName' work against both kinds of directory.
"""

import ssl
import time
import logging
import threading
from typing import Any, Dict, Iterable, Iterator, List, Optional

from ldap3 import Server, Connection, SUBTREE, BASE, Tls
from ldap3.core.exceptions import LDAPException, LDAPSocketOpenError, LDAPBindError
from ldap3.utils.conv import escape_filter_chars

from group_sync.config import ConfigurationError
from group_sync.gateways.base import DirectoryGateway, GatewayConnectionError, GatewayError
from group_sync.identity import IdentityResolver, normalize_key

logger = logging.getLogger(__name__)


PAGED_RESULTS_CONTROL = '1.2.840.113556.1.4.319'

GROUP_FILTER = '(objectClass=group)'
USER_FILTER = '(&(objectCategory=person)(objectClass=user))'

# Graph user property -> LDAP attribute
USER_ATTRIBUTE_MAP = {
    'displayName': 'displayName',
    'userPrincipalName': 'userPrincipalName',
    'onPremisesSamAccountName': 'sAMAccountName',
    'employeeId': 'employeeID',
    'mail': 'mail',
    'mailNickname': 'mailNickname',
    'givenName': 'givenName',
    'surname': 'sn',
    'department': 'department',
    'jobTitle': 'title',
    'companyName': 'company',
    'employeeType': 'employeeType',
    'officeLocation': 'physicalDeliveryOfficeName',
    'city': 'l',
    'country': 'co',
    'state': 'st',
    'postalCode': 'postalCode',
    'streetAddress': 'streetAddress',
    'mobilePhone': 'mobile',
}

GROUP_ATTRIBUTES = ['cn', 'displayName', 'description', 'mail', 'mailNickname', 'sAMAccountName', 'groupType']

# groupType bit marking a security group
SECURITY_ENABLED_FLAG = 0x80000000


def _first(attributes: Dict[str, Any], name: str) -> Optional[Any]:
    values = attributes.get(name)
    if isinstance(values, (list, tuple)):
        return values[0] if values else None
    return values


class LDAPGateway(DirectoryGateway):
    """
    Source directory gateway over LDAP.

    Group and user ids are distinguished names. All searches share one
    connection, serialized with a lock.
    """

    def __init__(self, name: str, config: Dict[str, Any], user_field_name: str = 'displayName'):
        super().__init__(name)
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.base_dn = config.get('base_dn') or ''
        self.page_size = config.get('page_size', 1000)
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')

        if user_field_name.lower() != 'id' and not self._ldap_attribute(user_field_name):
            raise ConfigurationError(
                f"User attribute '{user_field_name}' is not available in LDAP directory {name}"
            )

        self.server = None
        self.connection = None
        self._connected = False
        self._lock = threading.Lock()

    @staticmethod
    def _ldap_attribute(graph_name: str) -> Optional[str]:
        for graph_attribute, ldap_attribute in USER_ATTRIBUTE_MAP.items():
            if graph_attribute.lower() == graph_name.lower():
                return ldap_attribute
        return None

    def connect(self, max_retries: int = 3, retry_wait: float = 5) -> bool:
        """
        Establish connection to the LDAP server with retry logic.

        Raises:
            GatewayConnectionError: If connection fails after all retries
        """
        tls_config = None
        if self.use_ssl or self.start_tls:
            tls_args = {'validate': ssl.CERT_REQUIRED if self.verify_ssl else ssl.CERT_NONE}
            if not self.verify_ssl:
                logger.warning("SSL certificate verification disabled")
            if self.ca_cert_file:
                tls_args['ca_certs_file'] = self.ca_cert_file
            tls_config = Tls(**tls_args)

        self.server = Server(
            self.server_url,
            use_ssl=self.use_ssl,
            tls=tls_config,
            connect_timeout=self.connection_timeout
        )

        last_exception = None
        for attempt in range(max_retries):
            try:
                self.connection = Connection(
                    self.server,
                    user=self.bind_dn,
                    password=self.bind_password,
                    auto_bind=False,
                    receive_timeout=self.receive_timeout
                )
                if not self.connection.open():
                    raise LDAPSocketOpenError(f"Failed to open connection: {self.connection.result}")
                if self.start_tls and not self.use_ssl and not self.connection.start_tls():
                    raise LDAPSocketOpenError(f"Failed to start TLS: {self.connection.result}")
                if not self.connection.bind():
                    raise LDAPBindError(f"Bind failed: {self.connection.result}")

                self._connected = True
                logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
                return True

            except LDAPException as e:
                last_exception = e
                logger.warning(f"LDAP connection attempt {attempt + 1}/{max_retries} failed: {e}")
                self._unbind()
                if attempt < max_retries - 1:
                    time.sleep(retry_wait)

        raise GatewayConnectionError(
            f"Failed to connect to LDAP after {max_retries} attempts: {last_exception}"
        )

    def _unbind(self):
        if self.connection is None:
            return
        try:
            self.connection.unbind()
        except LDAPException as e:
            logger.debug(f"Error closing LDAP connection: {e}")
        finally:
            self.connection = None
            self._connected = False

    def close(self):
        with self._lock:
            if self._connected:
                logger.debug("LDAP connection closed")
            self._unbind()

    def _search_page(self, search_base: str, search_filter: str, attributes: List[str],
                     scope=SUBTREE, cookie: Optional[bytes] = None):
        """Run one page of a search, returning (entries, next_cookie)."""
        with self._lock:
            if not self._connected:
                self.connect()
            try:
                success = self.connection.search(
                    search_base=search_base,
                    search_filter=search_filter,
                    search_scope=scope,
                    attributes=attributes,
                    paged_size=self.page_size if scope == SUBTREE else None,
                    paged_cookie=cookie
                )
            except LDAPException as e:
                raise GatewayError(f"LDAP search failed at {self.name}: {e}")

            result = self.connection.result or {}
            if not success:
                # noSuchObject
                if result.get('result') == 32:
                    return [], None
                raise GatewayError(f"LDAP search failed at {self.name}: {result.get('description')}")

            entries = [(str(entry.entry_dn), entry.entry_attributes_as_dict) for entry in self.connection.entries]
            control = (result.get('controls') or {}).get(PAGED_RESULTS_CONTROL)
            next_cookie = control['value'].get('cookie') if control else None
            return entries, next_cookie or None

    def _search(self, search_filter: str, attributes: List[str]) -> Iterator[tuple]:
        """Yield (dn, attributes) of every entry matching the filter, page by page."""
        cookie = None
        page_count = 0
        while True:
            entries, cookie = self._search_page(self.base_dn, search_filter, attributes, cookie=cookie)
            page_count += 1
            logger.debug(f"Page {page_count}: Retrieved {len(entries)} entries for {search_filter}")
            for entry in entries:
                yield entry
            if not cookie:
                break

    def _read_entry(self, dn: str, attributes: List[str]) -> Optional[Dict[str, Any]]:
        entries, _ = self._search_page(dn, '(objectClass=*)', attributes, scope=BASE)
        return entries[0][1] if entries else None

    def _to_group(self, dn: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        group_type = _first(attributes, 'groupType')
        mail = _first(attributes, 'mail')
        return {
            'id': dn,
            'displayName': _first(attributes, 'displayName') or _first(attributes, 'cn'),
            'description': _first(attributes, 'description'),
            'mailEnabled': bool(mail),
            'mailNickname': _first(attributes, 'mailNickname') or _first(attributes, 'sAMAccountName'),
            'securityEnabled': bool(int(group_type) & SECURITY_ENABLED_FLAG) if group_type is not None else True,
            'isAssignableToRole': False,
        }

    def _to_user(self, dn: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        user = {'id': dn}
        for graph_attribute, ldap_attribute in USER_ATTRIBUTE_MAP.items():
            value = _first(attributes, ldap_attribute)
            if value is not None:
                user[graph_attribute] = str(value)
        return user

    def _user_attributes(self, resolver: IdentityResolver) -> List[str]:
        attributes = ['displayName']
        ldap_attribute = self._ldap_attribute(resolver.attribute)
        if ldap_attribute and ldap_attribute not in attributes:
            attributes.append(ldap_attribute)
        return attributes

    # DirectoryGateway interface

    def find_group_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        search_filter = f"(&{GROUP_FILTER}(cn={escape_filter_chars(name)}))"
        folded = normalize_key(name)
        for dn, attributes in self._search(search_filter, GROUP_ATTRIBUTES):
            group = self._to_group(dn, attributes)
            names = (group['displayName'] or '', _first(attributes, 'cn') or '')
            if any(normalize_key(candidate) == folded for candidate in names):
                return group
        return None

    def get_group(self, group_id: str) -> Optional[Dict[str, Any]]:
        attributes = self._read_entry(group_id, GROUP_ATTRIBUTES)
        return self._to_group(group_id, attributes) if attributes is not None else None

    def find_user_by_key(self, key: str, resolver: IdentityResolver) -> Optional[Dict[str, Any]]:
        attributes = self._user_attributes(resolver)
        if resolver.is_id:
            entry = self._read_entry(key, attributes)
            return self._to_user(key, entry) if entry is not None else None

        ldap_attribute = self._ldap_attribute(resolver.attribute)
        search_filter = f"(&{USER_FILTER}({ldap_attribute}={escape_filter_chars(key)}))"
        for dn, entry in self._search(search_filter, attributes):
            user = self._to_user(dn, entry)
            if resolver.matches(user, key):
                return user
        return None

    def list_groups_by_prefixes(self, prefixes: Iterable[str]) -> Iterator[Dict[str, Any]]:
        disjuncts = ''.join(f"(cn={escape_filter_chars(prefix)}*)" for prefix in prefixes)
        search_filter = f"(&{GROUP_FILTER}(|{disjuncts}))"
        for dn, attributes in self._search(search_filter, GROUP_ATTRIBUTES):
            yield self._to_group(dn, attributes)

    def list_group_members(self, group_id: Optional[str], resolver: IdentityResolver) -> Iterator[Dict[str, Any]]:
        if not group_id:
            return
        search_filter = f"(&{USER_FILTER}(memberOf={escape_filter_chars(group_id)}))"
        for dn, attributes in self._search(search_filter, self._user_attributes(resolver)):
            yield self._to_user(dn, attributes)

    def __repr__(self) -> str:
        return f"LDAPGateway({self.name!r}, server={self.server_url!r})"
